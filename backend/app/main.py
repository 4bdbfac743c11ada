"""
Prompt Generator SaaS - FastAPI Application

Main entry point for the backend API.
Provides endpoints for plans, entitlements, checkout and Stripe webhooks.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    PromptGeneratorError,
    ValidationError,
    NotFoundError,
    InvalidStateTransitionError,
    UnknownPlanReferenceError,
    ConcurrentUpdateError,
    PaymentProviderError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Prompt Generator SaaS starting in {settings.environment} mode...")

    scheduler_started = False
    if settings.database_url:
        try:
            from app.infrastructure.db.database import init_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")

        if settings.expiry_sweep_enabled:
            from app.infrastructure.scheduler import start_scheduler
            start_scheduler()
            scheduler_started = True

    yield

    # Shutdown
    if scheduler_started:
        from app.infrastructure.scheduler import shutdown_scheduler
        shutdown_scheduler()

    if settings.database_url:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")

    logger.info("Prompt Generator SaaS shutting down...")


app = FastAPI(
    title="Prompt Generator SaaS",
    description="Subscription plans and billing for the prompt generator",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
@app.exception_handler(UnknownPlanReferenceError)
async def validation_error_handler(request: Request, exc: PromptGeneratorError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(InvalidStateTransitionError)
async def invalid_state_error_handler(request: Request, exc: InvalidStateTransitionError):
    """Handle lifecycle operations not allowed in the current state."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update_error_handler(request: Request, exc: ConcurrentUpdateError):
    """Handle write conflicts that outlasted the retries."""
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
        headers={"Retry-After": "1"},
    )


@app.exception_handler(PaymentProviderError)
async def payment_provider_error_handler(request: Request, exc: PaymentProviderError):
    """Handle Stripe failures; timeouts and connection errors are retryable."""
    return JSONResponse(
        status_code=503 if exc.retryable else 502,
        content=exc.to_dict(),
    )


@app.exception_handler(PromptGeneratorError)
async def general_error_handler(request: Request, exc: PromptGeneratorError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "prompt-generator-saas"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Prompt Generator SaaS API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import subscriptions, webhooks

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
