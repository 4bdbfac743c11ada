"""
Payments Infrastructure Module

Stripe payment processing for plan checkout and cancellation.
"""

from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service

__all__ = ["StripeService", "get_stripe_service"]
