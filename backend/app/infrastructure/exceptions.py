"""
Custom Exceptions for Prompt Generator SaaS

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class PromptGeneratorError(Exception):
    """Base exception for all Prompt Generator SaaS errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(PromptGeneratorError):
    """Raised when input validation fails."""
    pass


class DatabaseError(PromptGeneratorError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class UserNotFoundError(NotFoundError):
    """Raised when a user reference does not resolve."""

    def __init__(self, user_id: Any):
        super().__init__(
            f"User not found with ID: {user_id}",
            operation="resolve_user",
            table="users",
        )
        self.user_id = user_id


class SubscriptionNotFoundError(NotFoundError):
    """Raised when no subscription matches an external subscription ref."""

    def __init__(self, external_subscription_ref: str):
        super().__init__(
            f"Subscription not found with Stripe ID: {external_subscription_ref}",
            operation="find_by_external_ref",
            table="subscriptions",
        )
        self.external_subscription_ref = external_subscription_ref


class SupersededSubscriptionError(SubscriptionNotFoundError):
    """Raised when a Stripe ref only matches a closed plan period."""

    def __init__(self, external_subscription_ref: str):
        super().__init__(external_subscription_ref)
        self.message = (
            f"Stripe subscription {external_subscription_ref} belongs to a "
            f"superseded plan period"
        )
        self.args = (self.message,)


class DuplicateEventError(PromptGeneratorError):
    """Raised when a billing event ID was already applied."""

    def __init__(self, event_id: str):
        super().__init__(
            f"Billing event already processed: {event_id}",
            details={"event_id": event_id},
        )
        self.event_id = event_id


class ConcurrentUpdateError(DatabaseError):
    """Raised when a subscription write keeps conflicting with another writer."""

    def __init__(
        self,
        message: str = "Subscription was modified concurrently, try again",
        attempts: int = 0,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, operation="write", table="subscriptions", original_error=original_error)
        self.details["attempts"] = attempts


class InvalidStateTransitionError(PromptGeneratorError):
    """Raised when a lifecycle operation is not allowed from the current state."""
    pass


class NoActiveSubscriptionError(InvalidStateTransitionError):
    """Raised when canceling a user that has no subscription."""

    def __init__(self, user_id: Any):
        super().__init__(
            f"No active subscription found for user: {user_id}",
            details={"user_id": str(user_id)},
        )


class AlreadyCanceledError(InvalidStateTransitionError):
    """Raised when canceling a subscription that is already canceled."""

    def __init__(self, user_id: Any):
        super().__init__(
            "Subscription is already canceled",
            details={"user_id": str(user_id)},
        )


class UnknownPlanReferenceError(PromptGeneratorError):
    """Raised when a plan id or Stripe price ref matches no catalog plan."""

    def __init__(self, reference: Optional[str]):
        super().__init__(
            f"Unknown plan reference: {reference}",
            details={"reference": reference},
        )
        self.reference = reference


class PaymentProviderError(PromptGeneratorError):
    """Raised when a call to Stripe fails or times out."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"retryable": retryable}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)
        self.retryable = retryable


class ConfigurationError(PromptGeneratorError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
