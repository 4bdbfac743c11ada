"""
Dependency Injection Providers for Prompt Generator SaaS

Provides FastAPI dependencies for the subscription services.
Each service opens its own unit of work per operation, so providers
hand out process-wide instances instead of request-scoped sessions.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from app.domain.billing_reconciler import BillingEventReconciler
from app.domain.subscription_service import SubscriptionService
from app.infrastructure.payments.stripe_service import get_stripe_service


@lru_cache
def get_subscription_service() -> SubscriptionService:
    """
    Dependency provider for SubscriptionService.

    Usage:
        @router.get("/me")
        async def get_me(service: SubscriptionServiceDep):
            ...
    """
    return SubscriptionService()


@lru_cache
def get_billing_reconciler() -> BillingEventReconciler:
    """Dependency provider for BillingEventReconciler."""
    return BillingEventReconciler(get_subscription_service(), get_stripe_service())


# Type aliases for service dependencies
SubscriptionServiceDep = Annotated[
    SubscriptionService,
    Depends(get_subscription_service)
]
BillingReconcilerDep = Annotated[
    BillingEventReconciler,
    Depends(get_billing_reconciler)
]
