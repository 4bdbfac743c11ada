"""
Stripe Webhook Handler

Verifies Stripe webhook signatures and hands events to the billing
reconciler.

Verified events are always acknowledged with 200: an event that cannot
be applied is logged and dropped, never retried through an error status.
Redeliveries of an applied event ID are skipped by the reconciler.
"""

import logging

from fastapi import APIRouter, Request, HTTPException, status
from pydantic import ValidationError as PayloadValidationError
from stripe import SignatureVerificationError

from app.domain.billing_reconciler import BillingEvent, ReconcileOutcome
from app.infrastructure.db.dependencies import get_billing_reconciler
from app.infrastructure.payments.stripe_service import get_stripe_service


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Returns:
        ``{"status": <outcome>}`` where outcome is applied, ignored,
        skipped or failed
    """
    stripe_service = get_stripe_service()

    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    try:
        event = stripe_service.verify_webhook_signature(payload, signature)
    except (SignatureVerificationError, ValueError) as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    try:
        billing_event = BillingEvent.from_stripe(event)
    except (PayloadValidationError, ValueError, TypeError) as e:
        logger.warning(f"Dropping malformed Stripe event {event.get('id')}: {e}")
        return {"status": ReconcileOutcome.SKIPPED.value}

    outcome = await get_billing_reconciler().handle(billing_event)

    return {"status": outcome.value}
