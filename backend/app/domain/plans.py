"""
Plan Catalog

Static definition of plan tiers, pricing, feature flags and the
upgrade/downgrade hierarchy. Pure lookups, no state.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from app.config.settings import Settings, get_settings
from app.domain.subscription import Plan, PlanId, UNLIMITED
from app.infrastructure.exceptions import UnknownPlanReferenceError


logger = logging.getLogger(__name__)


# Catalog order is the upgrade order: free < premium < pro
PLAN_ORDER = (PlanId.FREE, PlanId.PREMIUM, PlanId.PRO)


def list_plans(settings: Optional[Settings] = None) -> List[Plan]:
    """Get all plans in upgrade order."""
    settings = settings or get_settings()
    return [
        Plan(
            id=PlanId.FREE,
            display_name="Free",
            description="Basic access with limited prompts",
            external_price_ref=None,
            price_amount=Decimal("0.00"),
            prompt_limit=10,
        ),
        Plan(
            id=PlanId.PREMIUM,
            display_name="Premium",
            description="Enhanced features with more prompts",
            external_price_ref=settings.stripe_price_id_premium,
            price_amount=Decimal("9.99"),
            prompt_limit=100,
            has_custom_prompts=True,
        ),
        Plan(
            id=PlanId.PRO,
            display_name="Pro",
            description="Unlimited access with priority support",
            external_price_ref=settings.stripe_price_id_pro,
            price_amount=Decimal("19.99"),
            prompt_limit=UNLIMITED,
            has_custom_prompts=True,
            has_priority_support=True,
        ),
    ]


def parse_plan_id(value: "str | PlanId") -> PlanId:
    """
    Parse a plan id case-insensitively.

    Raises:
        UnknownPlanReferenceError: if no plan has that id
    """
    if isinstance(value, PlanId):
        return value
    try:
        return PlanId(str(value).strip().lower())
    except ValueError:
        raise UnknownPlanReferenceError(value)


def get_plan(plan_id: "str | PlanId", settings: Optional[Settings] = None) -> Plan:
    """Get a single plan by id."""
    plan_id = parse_plan_id(plan_id)
    for plan in list_plans(settings):
        if plan.id == plan_id:
            return plan
    raise UnknownPlanReferenceError(plan_id.value)


def get_free_plan(settings: Optional[Settings] = None) -> Plan:
    return get_plan(PlanId.FREE, settings)


def tier_rank(plan_id: "str | PlanId") -> int:
    """Position of a plan in the upgrade order (free=0)."""
    return PLAN_ORDER.index(parse_plan_id(plan_id))


def resolve_plan_for_external_price_ref(
    ref: Optional[str],
    strict: Optional[bool] = None,
    settings: Optional[Settings] = None,
) -> PlanId:
    """
    Resolve a Stripe price ref to a plan.

    Matches configured price refs exactly first, then falls back to the
    legacy naming pattern (``*premium*`` / ``*pro*``).

    Args:
        ref: Stripe price ID
        strict: Raise instead of defaulting to free on unknown refs.
            Defaults to the STRICT_PRICE_MAPPING setting.

    Returns:
        Resolved plan id

    Raises:
        UnknownPlanReferenceError: unknown ref while strict
    """
    settings = settings or get_settings()
    if strict is None:
        strict = settings.strict_price_mapping

    if not ref:
        return PlanId.FREE

    for plan in list_plans(settings):
        if plan.external_price_ref and plan.external_price_ref == ref:
            return plan.id

    lowered = ref.lower()
    if "premium" in lowered:
        return PlanId.PREMIUM
    if "pro" in lowered:
        return PlanId.PRO

    if strict:
        raise UnknownPlanReferenceError(ref)

    logger.warning(f"Unknown Stripe price {ref}, falling back to free plan")
    return PlanId.FREE
