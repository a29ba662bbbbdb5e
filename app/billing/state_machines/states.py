"""
State enums for billing models.

These are Django TextChoices for database storage and admin integration.
FSM fields on the models use them as choices.

State Machines Overview:

Subscription States:
    incomplete → trialing → active ⇄ past_due → canceled
    incomplete → active (paid on creation)
    any live state → canceled
    canceled → active (reactivation, policy-guarded)

Invoice Status:
    draft → open → paid / failed / void
    failed → paid (successful retry)
    paid → partially_refunded → refunded
"""

from django.db import models


class SubscriptionState(models.TextChoices):
    """
    States for the Subscription lifecycle.

    LIVE states (trialing, active, past_due) count toward the
    one-live-subscription-per-customer rule. CANCELED is terminal except
    for reactivation.
    """

    INCOMPLETE = "incomplete", "Incomplete"
    TRIALING = "trialing", "Trialing"
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past Due"
    CANCELED = "canceled", "Canceled"

    @classmethod
    def live_states(cls) -> list[str]:
        return [cls.TRIALING, cls.ACTIVE, cls.PAST_DUE]


class SubscriptionTier(models.TextChoices):
    """
    Plan tiers, declared cheapest first.

    Use rank() to compare tiers; the string values do not sort meaningfully.
    """

    STARTER = "starter", "Starter"
    PROFESSIONAL = "professional", "Professional"
    PREMIUM = "premium", "Premium"

    @classmethod
    def rank(cls, tier: str) -> int:
        return list(cls.values).index(tier)


class InvoiceStatus(models.TextChoices):
    """
    Status of a billing-cycle invoice.

    Terminal states: PAID (until refunded), VOID, REFUNDED
    """

    DRAFT = "draft", "Draft"
    OPEN = "open", "Open"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    VOID = "void", "Void"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"

    @classmethod
    def terminal_states(cls) -> list[str]:
        return [cls.PAID, cls.VOID, cls.REFUNDED, cls.PARTIALLY_REFUNDED]


class FailureResolution(models.TextChoices):
    """How an unresolved PaymentFailure was closed."""

    PAID = "paid", "Paid"
    CANCELED = "canceled", "Canceled"
    REFUNDED = "refunded", "Refunded"
    EXHAUSTED = "exhausted", "Retries Exhausted"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    PROCESSING is transient: a record left in it (crash mid-flight) is
    retried on redelivery, the same as ERROR. APPLIED, STALE and IGNORED
    are final; redelivery of a final event is a duplicate.
    """

    PROCESSING = "processing", "Processing"
    APPLIED = "applied", "Applied"
    STALE = "stale", "Stale"
    IGNORED = "ignored", "Ignored"
    ERROR = "error", "Error"

    @classmethod
    def final_states(cls) -> list[str]:
        return [cls.APPLIED, cls.STALE, cls.IGNORED]


class ProcessOutcome(models.TextChoices):
    """Result of WebhookReconciler.process_event() as seen by the caller."""

    APPLIED = "applied", "Applied"
    DUPLICATE = "duplicate", "Duplicate"
    REJECTED = "rejected", "Rejected"


class ExhaustionPolicy(models.TextChoices):
    """What happens to a subscription once payment retries run out."""

    CANCEL = "cancel", "Cancel subscription"
    REVIEW = "review", "Flag for administrator review"


class ReactivationPolicy(models.TextChoices):
    """How long a canceled subscription may be reactivated."""

    PERIOD_END = "period_end", "Until the current period ends"
    UNLIMITED = "unlimited", "While the gateway subscription exists"
