"""
Stripe Payment Service

Infrastructure service for Stripe payment processing.
Handles customers, checkout sessions, cancellation and webhook verification.

- Hosted Checkout for minimal PCI burden
- Every outbound call is bounded by STRIPE_TIMEOUT_SECONDS
- Failures surface as PaymentProviderError (retryable on timeouts and
  connection problems)
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
from stripe import APIConnectionError, RateLimitError, StripeError

from app.config.settings import Settings, get_settings
from app.domain.subscription import PlanId
from app.infrastructure.exceptions import ConfigurationError, PaymentProviderError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stripe errors worth retrying from the caller's side
RETRYABLE_ERRORS = (APIConnectionError, RateLimitError)


class StripeService:
    """
    Stripe payment processing service.

    The blocking Stripe SDK runs in a worker thread so request handlers
    never stall the event loop.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize Stripe with API key from settings."""
        settings = settings or get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._timeout = settings.stripe_timeout_seconds
        self._price_map = {
            PlanId.PREMIUM: settings.stripe_price_id_premium,
            PlanId.PRO: settings.stripe_price_id_pro,
        }

        if self._api_key:
            stripe.api_key = self._api_key

    def get_price_id(self, plan: PlanId) -> str:
        """Get Stripe Price ID for a paid plan."""
        price_id = self._price_map.get(plan)
        if not price_id:
            raise PaymentProviderError(
                f"No price configured for plan {plan.value}",
                operation="checkout",
            )
        return price_id

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a Stripe SDK call with a bounded timeout.

        Raises:
            PaymentProviderError: on Stripe errors or timeout
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise PaymentProviderError(
                f"Payment provider timed out during {operation}",
                retryable=True,
                operation=operation,
                original_error=e,
            )
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise PaymentProviderError(
                f"Payment provider error during {operation}: {e.user_message or e}",
                retryable=isinstance(e, RETRYABLE_ERRORS),
                operation=operation,
                original_error=e,
            )

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def create_customer(
        self,
        user_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> stripe.Customer:
        """
        Create a new Stripe customer.

        Args:
            user_id: Internal user ID (stored in metadata)
            email: Customer email for receipts
            name: Optional customer name

        Returns:
            stripe.Customer object
        """
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={
                "user_id": user_id,
                "source": "prompt_generator",
            },
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer

    async def get_or_create_customer(
        self,
        user_id: str,
        email: str,
        existing_customer_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> stripe.Customer:
        """
        Get existing customer or create new one.

        Args:
            user_id: Internal user ID
            email: Customer email
            existing_customer_id: Stripe customer ID from a previous plan period
        """
        if existing_customer_id:
            try:
                customer = await self._call(
                    "retrieve_customer",
                    stripe.Customer.retrieve,
                    existing_customer_id,
                )
                if not getattr(customer, "deleted", False):
                    return customer
            except PaymentProviderError as e:
                if e.retryable:
                    raise
                logger.warning(f"Customer {existing_customer_id} not found, creating new")

        return await self.create_customer(user_id, email, name)

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        plan: PlanId,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> stripe.checkout.Session:
        """
        Create a Stripe Checkout Session for a plan subscription.

        The internal user ID travels in both the session and subscription
        metadata so subscription.created events resolve to the user even
        before a customer ID is stored locally.

        Args:
            customer_id: Stripe customer ID
            plan: Paid plan to purchase
            success_url: Redirect after successful payment
            cancel_url: Redirect after cancelled payment
            user_id: Internal user ID for metadata

        Returns:
            stripe.checkout.Session with checkout URL
        """
        price_id = self.get_price_id(plan)

        session = await self._call(
            "checkout",
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            metadata={"user_id": user_id, "plan": plan.value},
            subscription_data={"metadata": {"user_id": user_id, "plan": plan.value}},
        )

        logger.info(
            f"Created checkout session {session.id} for user {user_id}, plan={plan.value}"
        )
        return session

    # =========================================================================
    # Subscription Management
    # =========================================================================

    async def cancel_subscription(self, subscription_id: str) -> stripe.Subscription:
        """
        Cancel a Stripe subscription immediately.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Canceled stripe.Subscription
        """
        subscription = await self._call(
            "cancel_subscription",
            stripe.Subscription.cancel,
            subscription_id,
        )
        logger.info(f"Cancelled Stripe subscription {subscription_id}")
        return subscription

    async def change_subscription_plan(
        self,
        subscription_id: str,
        plan: PlanId,
        user_id: str,
    ) -> stripe.Subscription:
        """
        Move a Stripe subscription to another plan's price, prorated.

        The local plan period changes when Stripe reports the new price
        through customer.subscription.updated.

        Args:
            subscription_id: Stripe subscription ID
            plan: Paid plan to switch to
            user_id: Internal user ID for metadata

        Returns:
            Updated stripe.Subscription
        """
        price_id = self.get_price_id(plan)

        current = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
        )
        item_id = current["items"]["data"][0]["id"]

        subscription = await self._call(
            "change_plan",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
            cancel_at_period_end=False,
            metadata={"user_id": user_id, "plan": plan.value},
        )
        logger.info(
            f"Moved Stripe subscription {subscription_id} to plan={plan.value} for user {user_id}"
        )
        return subscription

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Decoded event payload

        Raises:
            ConfigurationError: STRIPE_WEBHOOK_SECRET not set
            ValueError: payload is not valid JSON
            SignatureVerificationError: signature does not match
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "STRIPE_WEBHOOK_SECRET is required to verify webhooks",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        return json.loads(payload)


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance

