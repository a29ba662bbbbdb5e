"""
Billing exceptions.

Exception Hierarchy:
    BillingError (base for the billing domain)
    ├── WebhookAuthenticationError - Signature verification failed (reject)
    ├── DuplicateEventError - Event already reached a final outcome
    ├── UnknownEventTypeError - No handler for the event type (ignored)
    ├── StaleEventError - Event older than the ledger row (discarded)
    └── RetryExhaustedError - Payment retries are used up

    InvalidTransitionError - Lifecycle change not reachable (ConflictError)
    ConflictingActiveSubscriptionError - Second live subscription (ConflictError)
    StaleRecordError - Optimistic locking conflict (ConflictError)
    LockAcquisitionError - Distributed lock contention (ConflictError)

    SubscriptionNotFoundError, InvoiceNotFoundError (NotFoundError)

    GatewayCallError (ExternalServiceError) - Base for all Stripe errors
    ├── StripeCardDeclinedError - Card declined (permanent)
    ├── StripeInsufficientFundsError - Insufficient funds (permanent)
    ├── StripeInvalidRequestError - Invalid request params (permanent)
    ├── StripeRateLimitError - Rate limited (transient)
    ├── StripeAPIUnavailableError - API unavailable (transient)
    └── StripeTimeoutError - Request timeout (transient)

Stale, duplicate and unknown events are committed outcomes, not failures:
the reconciler records them and answers the gateway with success.
Anything else raised while applying an event rolls the ledger back and
leaves the event in ERROR for redelivery.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Billing Domain Exceptions
# =============================================================================


class BillingError(BaseApplicationError):
    """Base exception for billing operations."""

    default_error_code: str = "BILLING_ERROR"
    http_status: int = 400


class WebhookAuthenticationError(BillingError):
    """
    Webhook signature is missing, malformed or does not match.

    The event is rejected without touching the ledger or the event store.
    """

    default_error_code: str = "WEBHOOK_SIGNATURE_INVALID"


class DuplicateEventError(BillingError):
    """
    Event id was already processed to a final outcome.

    Raised inside the reconciler to short-circuit; callers see
    ProcessOutcome.DUPLICATE.
    """

    default_error_code: str = "DUPLICATE_EVENT"


class UnknownEventTypeError(BillingError):
    """No handler is registered for the event type."""

    default_error_code: str = "UNKNOWN_EVENT_TYPE"


class StaleEventError(BillingError):
    """
    Event is older than the last event applied to the target row.

    Example:
        if event.created < subscription.last_event_at:
            raise StaleEventError(
                "Event predates subscription state",
                details={"event_id": event.event_id},
            )
    """

    default_error_code: str = "STALE_EVENT"


class RetryExhaustedError(BillingError):
    """Payment retries for an invoice are used up."""

    default_error_code: str = "RETRY_EXHAUSTED"
    http_status: int = 409


# =============================================================================
# Lookup and State Conflicts
# =============================================================================


class SubscriptionNotFoundError(NotFoundError):
    """No subscription matches the lookup."""

    default_error_code: str = "SUBSCRIPTION_NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """No invoice matches the lookup."""

    default_error_code: str = "INVOICE_NOT_FOUND"


class InvalidTransitionError(ConflictError):
    """
    Requested lifecycle change is not reachable from the current state.

    Wraps django-fsm's TransitionNotAllowed at the service boundary.

    Example:
        raise InvalidTransitionError(
            "Cannot reactivate subscription in 'active' state",
            details={"current_state": "active", "transition": "reactivate"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class ConflictingActiveSubscriptionError(ConflictError):
    """Customer already has a subscription in a live state."""

    default_error_code: str = "ACTIVE_SUBSCRIPTION_EXISTS"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayCallError(ExternalServiceError):
    """
    Base exception for all Stripe-related errors.

    Attributes:
        stripe_code: Stripe's internal error code
        decline_code: Card decline code (if applicable)
        is_retryable: Whether the call is safe to repeat with backoff

    Example:
        try:
            StripeAdapter.pay_invoice(invoice_id, idempotency_key=key)
        except GatewayCallError as e:
            failure.failure_reason = e.message
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(GatewayCallError):
    """
    Card was declined by the issuing bank.

    The decline_code attribute carries the reason (generic_decline,
    expired_card, lost_card, ...).
    """

    default_error_code: str = "CARD_DECLINED"


class StripeInsufficientFundsError(GatewayCallError):
    """Insufficient funds on the payment method."""

    default_error_code: str = "INSUFFICIENT_FUNDS"


class StripeInvalidRequestError(GatewayCallError):
    """
    Invalid request parameters sent to Stripe.

    Usually a bug on our side (unknown invoice id, bad price); log for
    developer investigation.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(GatewayCallError):
    """Rate limited by the Stripe API."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(GatewayCallError):
    """Network failure or Stripe 5xx."""

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(GatewayCallError):
    """
    Stripe API call timed out.

    The operation may have succeeded on Stripe's side; retry with the
    same idempotency key.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    details carries pk, expected_version and current_version.
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """Raised when a distributed lock cannot be acquired."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Billing domain
    "BillingError",
    "WebhookAuthenticationError",
    "DuplicateEventError",
    "UnknownEventTypeError",
    "StaleEventError",
    "RetryExhaustedError",
    # Lookups and conflicts
    "SubscriptionNotFoundError",
    "InvoiceNotFoundError",
    "InvalidTransitionError",
    "ConflictingActiveSubscriptionError",
    # Gateway
    "GatewayCallError",
    "StripeCardDeclinedError",
    "StripeInsufficientFundsError",
    "StripeInvalidRequestError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
]
