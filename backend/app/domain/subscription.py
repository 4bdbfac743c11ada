"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the subscription bounded context.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class PlanId(str, Enum):
    """Plan tiers, declared in upgrade order."""
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, value: "str | SubscriptionStatus") -> "SubscriptionStatus":
        """Parse a status case-insensitively (``"active"`` -> ``ACTIVE``)."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class ExternalStatus(str, Enum):
    """Subscription status vocabulary used by Stripe."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"


# Stripe status -> local status. EXPIRED is reserved for the expiry sweep.
EXTERNAL_STATUS_MAP = {
    ExternalStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ExternalStatus.TRIALING: SubscriptionStatus.ACTIVE,
    ExternalStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ExternalStatus.INCOMPLETE: SubscriptionStatus.PAST_DUE,
    ExternalStatus.UNPAID: SubscriptionStatus.UNPAID,
    ExternalStatus.CANCELED: SubscriptionStatus.CANCELED,
    ExternalStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.CANCELED,
}


def normalize_external_status(value: str) -> SubscriptionStatus:
    """
    Map a Stripe status string onto the local status enum.

    Raises:
        ValueError: if the status is not part of Stripe's vocabulary
    """
    external = ExternalStatus(value.strip().lower())
    return EXTERNAL_STATUS_MAP[external]


# Sentinel prompt limit for unlimited plans
UNLIMITED = -1


# =============================================================================
# Domain Entities
# =============================================================================

class Plan(BaseModel):
    """A subscription tier with pricing and entitlements."""
    model_config = ConfigDict(frozen=True)

    id: PlanId
    display_name: str
    description: str
    external_price_ref: Optional[str] = None
    price_amount: Decimal
    currency: str = "USD"
    billing_interval: str = "monthly"
    prompt_limit: int
    has_custom_prompts: bool = False
    has_priority_support: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.prompt_limit == UNLIMITED


class Subscription(BaseModel):
    """Core subscription domain entity (one per plan period)."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    user_id: str
    plan_id: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    external_price_ref: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    is_current: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class User(BaseModel):
    """User as seen by the subscription core."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    display_name: Optional[str] = None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateCheckoutRequest(BaseModel):
    """Request DTO for creating a checkout session."""
    plan: PlanId = Field(
        default=PlanId.PREMIUM,
        description="Plan to purchase"
    )
    success_url: str = Field(..., description="Redirect URL after successful payment")
    cancel_url: str = Field(..., description="Redirect URL after cancelled payment")


class CheckoutResponse(BaseModel):
    """Response DTO for checkout session creation."""
    checkout_url: str
    session_id: str


class SubscriptionResponse(BaseModel):
    """Response DTO for the caller's current subscription."""
    plan: PlanId
    status: SubscriptionStatus
    is_active: bool
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    external_subscription_ref: Optional[str] = None


class FeaturesResponse(BaseModel):
    """Response DTO for entitlement checks."""
    plan: PlanId
    is_active: bool
    can_create_prompt: bool
    prompt_limit: int = Field(description="Prompt quota, -1 means unlimited")
    has_custom_prompts: bool
    has_priority_support: bool


class PlanChangeResponse(BaseModel):
    """Response DTO for upgrade/downgrade eligibility."""
    target_plan: PlanId
    allowed: bool


class ChangePlanRequest(BaseModel):
    """Request DTO for switching an existing paid subscription to another plan."""
    plan: PlanId = Field(..., description="Paid plan to switch to")


class ChangePlanResponse(BaseModel):
    """Response DTO for a requested plan change (applied via webhook)."""
    subscription_id: str
    previous_plan: PlanId
    target_plan: PlanId
    direction: str = Field(description="upgrade or downgrade")
