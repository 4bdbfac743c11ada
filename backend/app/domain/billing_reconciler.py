"""
Billing Event Reconciler

Applies verified Stripe events onto local subscription state.

Handled events:
- checkout.session.completed: logged only (subscription.created supersedes it)
- customer.subscription.created: activate the paid plan and cancel the
  Stripe subscription it replaces
- customer.subscription.updated: sync status, plan changes and period-end
  cancellation
- customer.subscription.deleted: mark canceled
- invoice.payment_succeeded: mark active
- invoice.payment_failed: mark past due

A bad event never stops the stream: failures are logged and reported as
an outcome, never raised.
"""

import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from app.domain.subscription import Subscription, SubscriptionStatus, normalize_external_status
from app.domain.subscription_service import SubscriptionService
from app.infrastructure.exceptions import (
    DuplicateEventError,
    NotFoundError,
    PaymentProviderError,
    PromptGeneratorError,
)
from app.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


class BillingEventType(str, Enum):
    """Stripe event types the reconciler acts on."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"


class ReconcileOutcome(str, Enum):
    """Result of reconciling one event."""
    APPLIED = "applied"
    IGNORED = "ignored"   # event type not handled
    SKIPPED = "skipped"   # missing local state or unusable payload
    FAILED = "failed"     # unexpected error


def _timestamp_to_date(value: Any) -> Optional[date]:
    """
    Convert a Stripe epoch timestamp to a UTC date.

    Raises:
        ValueError: value is not a usable timestamp
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).date()
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise ValueError(f"Invalid timestamp: {value!r}") from e


def _first_price_ref(obj: Dict[str, Any]) -> Optional[str]:
    """Price ID of the first subscription item."""
    items = (obj.get("items") or {}).get("data") or []
    if items:
        price = items[0].get("price") or {}
        if price.get("id"):
            return price["id"]
    return (obj.get("plan") or {}).get("id")


def _period_end(obj: Dict[str, Any]) -> Optional[date]:
    """Current period end; newer API versions carry it per item."""
    if obj.get("current_period_end") is not None:
        return _timestamp_to_date(obj["current_period_end"])
    items = (obj.get("items") or {}).get("data") or []
    if items:
        return _timestamp_to_date(items[0].get("current_period_end"))
    return None


def _invoice_subscription_ref(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription ID linked to an invoice (legacy and current layouts)."""
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


class BillingEvent(BaseModel):
    """A verified billing event, flattened to the fields reconciliation uses."""
    event_id: Optional[str] = None
    event_type: str
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    external_price_ref: Optional[str] = None
    status: Optional[str] = Field(default=None, description="Stripe status vocabulary")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    cancel_at_period_end: Optional[bool] = None
    current_period_end: Optional[date] = None

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> "BillingEvent":
        """
        Build a BillingEvent from a Stripe event payload.

        Args:
            event: Decoded Stripe event (``{"id", "type", "data": {"object"}}``)
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        fields: Dict[str, Any] = {
            "event_id": event.get("id"),
            "event_type": event_type,
            "external_customer_ref": obj.get("customer"),
            "metadata": obj.get("metadata") or {},
        }

        if event_type.startswith("customer.subscription."):
            fields.update(
                external_subscription_ref=obj.get("id"),
                external_price_ref=_first_price_ref(obj),
                status=obj.get("status"),
                cancel_at_period_end=obj.get("cancel_at_period_end"),
                current_period_end=_period_end(obj),
            )
        elif event_type.startswith("invoice."):
            fields["external_subscription_ref"] = _invoice_subscription_ref(obj)
        elif event_type == BillingEventType.CHECKOUT_COMPLETED.value:
            fields["external_subscription_ref"] = obj.get("subscription")

        return cls(**fields)


class BillingEventReconciler:
    """
    Maps billing events onto SubscriptionService calls.

    Each applied event ID is recorded in the same transaction as its
    state change, so Stripe redeliveries are skipped. When a new Stripe
    subscription supersedes another one of the same user, the old one is
    canceled in Stripe so it stops billing.
    """

    def __init__(
        self,
        subscription_service: SubscriptionService,
        payment_provider: Optional[StripeService] = None,
    ):
        self._service = subscription_service
        self._payments = payment_provider
        self._handlers: Dict[str, Callable[[BillingEvent], Awaitable[ReconcileOutcome]]] = {
            BillingEventType.CHECKOUT_COMPLETED.value: self._on_checkout_completed,
            BillingEventType.SUBSCRIPTION_CREATED.value: self._on_subscription_created,
            BillingEventType.SUBSCRIPTION_UPDATED.value: self._on_subscription_updated,
            BillingEventType.SUBSCRIPTION_DELETED.value: self._on_subscription_deleted,
            BillingEventType.INVOICE_PAID.value: self._on_invoice_paid,
            BillingEventType.INVOICE_FAILED.value: self._on_invoice_failed,
        }

    async def handle(self, event: BillingEvent) -> ReconcileOutcome:
        """
        Reconcile one event. Never raises.

        Returns:
            ReconcileOutcome describing what happened
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug(f"Unhandled event type: {event.event_type}")
            return ReconcileOutcome.IGNORED

        logger.info(f"Processing billing event: {event.event_type} ({event.event_id})")

        try:
            return await handler(event)
        except DuplicateEventError:
            logger.info(f"Event {event.event_id} already processed, skipping")
            return ReconcileOutcome.SKIPPED
        except NotFoundError as e:
            logger.warning(f"Dropping {event.event_type} ({event.event_id}): {e.message}")
            return ReconcileOutcome.SKIPPED
        except (PromptGeneratorError, SQLAlchemyError) as e:
            logger.error(f"Error processing billing event {event.event_type} ({event.event_id}): {e}")
            return ReconcileOutcome.FAILED
        except Exception:
            logger.exception(f"Unexpected error processing billing event {event.event_id}")
            return ReconcileOutcome.FAILED

    async def handle_many(self, events: Iterable[BillingEvent]) -> List[ReconcileOutcome]:
        """Reconcile events in order; one failure does not stop the rest."""
        return [await self.handle(event) for event in events]

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _on_checkout_completed(self, event: BillingEvent) -> ReconcileOutcome:
        logger.info(
            f"Checkout completed for customer {event.external_customer_ref}, "
            f"waiting for subscription {event.external_subscription_ref}"
        )
        return ReconcileOutcome.APPLIED

    async def _on_subscription_created(self, event: BillingEvent) -> ReconcileOutcome:
        user_id = None
        if event.external_customer_ref:
            user_id = await self._service.find_user_id_by_customer_ref(
                event.external_customer_ref
            )
        if user_id is None:
            user_id = event.metadata.get("user_id")

        if not user_id:
            logger.warning(
                f"No user found for customer {event.external_customer_ref}, "
                f"dropping subscription {event.external_subscription_ref}"
            )
            return ReconcileOutcome.SKIPPED

        previous = await self._service.get_subscription(user_id)

        await self._service.activate(
            user_id,
            event.external_subscription_ref,
            event.external_customer_ref,
            event.external_price_ref,
            event_id=event.event_id,
            event_type=event.event_type,
        )

        await self._cancel_superseded(previous, event)
        return ReconcileOutcome.APPLIED

    async def _on_subscription_updated(self, event: BillingEvent) -> ReconcileOutcome:
        if not event.external_subscription_ref or not event.status:
            logger.warning(f"Subscription update {event.event_id} without ID or status")
            return ReconcileOutcome.SKIPPED

        try:
            status = normalize_external_status(event.status)
        except ValueError:
            logger.warning(
                f"Unknown Stripe status '{event.status}' for subscription "
                f"{event.external_subscription_ref}, dropping event"
            )
            return ReconcileOutcome.SKIPPED

        await self._service.sync_subscription(
            event.external_subscription_ref,
            status,
            external_price_ref=event.external_price_ref,
            external_customer_ref=event.external_customer_ref,
            cancel_at_period_end=event.cancel_at_period_end,
            period_end=event.current_period_end,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return ReconcileOutcome.APPLIED

    async def _on_subscription_deleted(self, event: BillingEvent) -> ReconcileOutcome:
        return await self._set_status(event, SubscriptionStatus.CANCELED)

    async def _on_invoice_paid(self, event: BillingEvent) -> ReconcileOutcome:
        return await self._set_status(event, SubscriptionStatus.ACTIVE)

    async def _on_invoice_failed(self, event: BillingEvent) -> ReconcileOutcome:
        return await self._set_status(event, SubscriptionStatus.PAST_DUE)

    async def _set_status(
        self,
        event: BillingEvent,
        status: SubscriptionStatus,
    ) -> ReconcileOutcome:
        if not event.external_subscription_ref:
            logger.warning(f"{event.event_type} ({event.event_id}) has no subscription ID")
            return ReconcileOutcome.SKIPPED

        await self._service.update_status(
            event.external_subscription_ref,
            status,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return ReconcileOutcome.APPLIED

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _cancel_superseded(
        self,
        previous: Optional[Subscription],
        event: BillingEvent,
    ) -> None:
        """Stop billing on the Stripe subscription a new one replaced."""
        if (
            self._payments is None
            or previous is None
            or not previous.external_subscription_ref
            or previous.external_subscription_ref == event.external_subscription_ref
            or previous.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)
        ):
            return

        try:
            await self._payments.cancel_subscription(previous.external_subscription_ref)
            logger.info(
                f"Canceled superseded Stripe subscription {previous.external_subscription_ref} "
                f"for user {previous.user_id}"
            )
        except PaymentProviderError as e:
            # Local state is already correct; the old period cannot be revived
            logger.error(
                f"Could not cancel superseded Stripe subscription "
                f"{previous.external_subscription_ref}: {e.message}"
            )
