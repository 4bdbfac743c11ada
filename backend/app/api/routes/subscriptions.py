"""
Subscription API Routes

REST API endpoints for plans, entitlements, checkout, plan changes and
cancellation.
Domain errors propagate to the application exception handlers.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.domain.subscription import (
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutResponse,
    CreateCheckoutRequest,
    FeaturesResponse,
    Plan,
    PlanChangeResponse,
    PlanId,
    SubscriptionResponse,
    SubscriptionStatus,
)
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)
from app.api.dependencies import SubscriptionServiceDep, get_current_user_id


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Catalog & Entitlement Endpoints
# =============================================================================

@router.get("/subscriptions/plans", response_model=List[Plan])
async def get_plans(service: SubscriptionServiceDep):
    """List all plans in upgrade order."""
    return service.list_plans()


@router.get("/subscriptions/me", response_model=SubscriptionResponse)
async def get_my_subscription(
    service: SubscriptionServiceDep,
    user_id: str = Depends(get_current_user_id),
):
    """
    Get the current user's subscription.

    Enrolls the user on the free plan if they have none yet.
    """
    subscription = await service.get_subscription(user_id)
    if subscription is None:
        subscription = await service.create_free_subscription(user_id)

    return SubscriptionResponse(
        plan=subscription.plan_id,
        status=subscription.status,
        is_active=subscription.is_active,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        external_subscription_ref=subscription.external_subscription_ref,
    )


@router.get("/subscriptions/features", response_model=FeaturesResponse)
async def get_features(
    service: SubscriptionServiceDep,
    user_id: str = Depends(get_current_user_id),
):
    """Get the entitlements of the current user's plan."""
    plan = await service.get_current_plan(user_id)

    return FeaturesResponse(
        plan=plan.id,
        is_active=await service.is_active(user_id),
        can_create_prompt=await service.can_create_prompt(user_id),
        prompt_limit=plan.prompt_limit,
        has_custom_prompts=plan.has_custom_prompts,
        has_priority_support=plan.has_priority_support,
    )


@router.get("/subscriptions/can-upgrade", response_model=PlanChangeResponse)
async def check_upgrade(
    service: SubscriptionServiceDep,
    plan: PlanId = Query(..., description="Target plan"),
    user_id: str = Depends(get_current_user_id),
):
    """Check whether the user may upgrade to ``plan``."""
    return PlanChangeResponse(
        target_plan=plan,
        allowed=await service.can_upgrade(user_id, plan),
    )


@router.get("/subscriptions/can-downgrade", response_model=PlanChangeResponse)
async def check_downgrade(
    service: SubscriptionServiceDep,
    plan: PlanId = Query(..., description="Target plan"),
    user_id: str = Depends(get_current_user_id),
):
    """Check whether the user may downgrade to ``plan``."""
    return PlanChangeResponse(
        target_plan=plan,
        allowed=await service.can_downgrade(user_id, plan),
    )


# =============================================================================
# Checkout & Cancellation Endpoints
# =============================================================================

@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    service: SubscriptionServiceDep,
    user_id: str = Depends(get_current_user_id),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Create a Stripe Checkout session for a paid plan.

    The plan is activated later, when Stripe reports the new
    subscription through the webhook.

    Args:
        request: Checkout request with plan and redirect URLs

    Returns:
        CheckoutResponse with checkout URL and session ID
    """
    if request.plan == PlanId.FREE:
        raise ValidationError("Cannot purchase the free plan", details={"plan": request.plan.value})

    if not await service.can_upgrade(user_id, request.plan):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot upgrade to {request.plan.value} from the current plan",
        )

    user = await service.resolve_user(user_id)
    subscription = await service.get_subscription(user_id)

    customer = await stripe_service.get_or_create_customer(
        user_id=user.id,
        email=user.email,
        existing_customer_id=subscription.external_customer_ref if subscription else None,
        name=user.display_name,
    )

    session = await stripe_service.create_checkout_session(
        customer_id=customer.id,
        plan=request.plan,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        user_id=user.id,
    )

    return CheckoutResponse(
        checkout_url=session.url,
        session_id=session.id,
    )


@router.post("/subscriptions/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    request: ChangePlanRequest,
    service: SubscriptionServiceDep,
    user_id: str = Depends(get_current_user_id),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Switch the current paid subscription to another paid plan.

    Stripe prorates the change on the existing subscription; the new plan
    period starts when the resulting update reaches the webhook.
    """
    if request.plan == PlanId.FREE:
        raise ValidationError(
            "Cancel the subscription to return to the free plan",
            details={"plan": request.plan.value},
        )

    subscription = await service.get_subscription(user_id)
    if (
        subscription is None
        or not subscription.is_active
        or not subscription.external_subscription_ref
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No active paid subscription to change, use checkout instead",
        )

    if await service.can_upgrade(user_id, request.plan):
        direction = "upgrade"
    elif await service.can_downgrade(user_id, request.plan):
        direction = "downgrade"
    else:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Already on the {request.plan.value} plan",
        )

    await stripe_service.change_subscription_plan(
        subscription.external_subscription_ref,
        request.plan,
        user_id=user_id,
    )
    logger.info(
        f"User {user_id} requested {direction} "
        f"{subscription.plan_id.value} -> {request.plan.value}"
    )

    return ChangePlanResponse(
        subscription_id=subscription.external_subscription_ref,
        previous_plan=subscription.plan_id,
        target_plan=request.plan,
        direction=direction,
    )


@router.post("/subscriptions/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    service: SubscriptionServiceDep,
    user_id: str = Depends(get_current_user_id),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Cancel the current user's subscription.

    Paid subscriptions are canceled in Stripe first, so billing stops
    before the local record changes.
    """
    subscription = await service.get_subscription(user_id)

    if (
        subscription is not None
        and subscription.external_subscription_ref
        and subscription.status != SubscriptionStatus.CANCELED
    ):
        await stripe_service.cancel_subscription(subscription.external_subscription_ref)

    canceled = await service.cancel(user_id)
    logger.info(f"User {user_id} canceled their {canceled.plan_id.value} subscription")

    return SubscriptionResponse(
        plan=canceled.plan_id,
        status=canceled.status,
        is_active=canceled.is_active,
        start_date=canceled.start_date,
        end_date=canceled.end_date,
        external_subscription_ref=canceled.external_subscription_ref,
    )
