"""
Test configuration and fixtures for Prompt Generator SaaS.

Provides shared fixtures for unit and integration tests. Lifecycle tests
run against a throwaway SQLite database built from SQLModel metadata.
"""

import pytest
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import AsyncGenerator
from uuid import uuid4

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.infrastructure.db import models as _models  # noqa: F401  (registers tables)
from app.config.settings import Settings
from app.domain.billing_reconciler import BillingEventReconciler
from app.domain.subscription_service import SubscriptionService
from app.infrastructure.db.repositories.user_repository import UserRepository


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from app.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Get async test client (shares the test event loop)."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Async SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'subscriptions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_scope(engine):
    """Unit-of-work factory bound to the test engine."""
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


# =============================================================================
# Service Fixtures
# =============================================================================

class FixedClock:
    """Controllable "today" for lifecycle tests."""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int) -> None:
        self.today = self.today + timedelta(days=days)


@pytest.fixture
def clock():
    return FixedClock(date(2026, 3, 1))


@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        stripe_price_id_premium="price_premium_monthly",
        stripe_price_id_pro="price_pro_monthly",
        strict_price_mapping=False,
        max_retries=3,
        sweep_batch_size=2,
    )


@pytest.fixture
def service(session_scope, test_settings, clock):
    return SubscriptionService(
        session_scope=session_scope,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def reconciler(service):
    return BillingEventReconciler(service)


@pytest.fixture
def make_user(session_scope):
    """Create a bare user (no subscription) and return its ID."""
    async def _make(email: str = None) -> str:
        async with session_scope() as session:
            user = await UserRepository(session).create_user(
                email or f"{uuid4().hex[:12]}@example.com"
            )
            return str(user.id)

    return _make


@pytest.fixture
def register_user(service):
    """Register a user on the free plan and return its ID."""
    async def _register(email: str = None) -> str:
        user, _ = await service.register_user(
            email or f"{uuid4().hex[:12]}@example.com"
        )
        return user.id

    return _register


# =============================================================================
# Stripe Payload Fixtures
# =============================================================================

@pytest.fixture
def stripe_event():
    """Build a Stripe event payload."""
    def _event(event_type: str, obj: dict, event_id: str = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid4().hex[:10]}",
            "type": event_type,
            "data": {"object": obj},
        }

    return _event


@pytest.fixture
def subscription_object():
    """Build a Stripe subscription object."""
    def _subscription(
        sub_id: str = "sub_123",
        customer: str = "cus_123",
        price: str = "price_premium_monthly",
        status: str = "active",
        metadata: dict = None,
        **extra,
    ) -> dict:
        obj = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "items": {"data": [{"price": {"id": price}}]},
            "metadata": metadata or {},
        }
        obj.update(extra)
        return obj

    return _subscription
