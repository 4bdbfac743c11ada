"""
API Dependencies

FastAPI dependency injection for authentication and common services.

Security: bearer tokens are issued by the identity service and verified
here with the shared JWT secret. Never decode without verification.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """
    Verify a JWT and return its claims.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, or missing claims
    """
    settings = get_settings()
    if not settings.jwt_secret:
        raise jwt.InvalidTokenError("JWT_SECRET is not configured")

    options = {"require": ["exp", "sub"]}
    if not settings.jwt_audience:
        options["verify_aud"] = False

    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options=options,
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Extract and verify user ID from a JWT.

    Returns:
        Authenticated user ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return user_id


# =============================================================================
# Re-export service dependencies for a single import source
# Routers should import from api.dependencies, not db.dependencies directly.
# =============================================================================
from app.infrastructure.db.dependencies import (  # noqa: E402, F401
    get_subscription_service,
    get_billing_reconciler,
    SubscriptionServiceDep,
    BillingReconcilerDep,
)
