"""
Subscription model - the Subscription Ledger.

One row per gateway subscription. A customer may accumulate many rows over
time (cancel, subscribe again) but at most one of them is live
(trialing, active or past_due) at any moment.

Usage:
    from billing.models import Subscription
    from billing.state_machines import SubscriptionState

    subscription = Subscription.objects.create(
        customer=user,
        stripe_subscription_id="sub_xxx",
        stripe_customer_id="cus_xxx",
        stripe_price_id="price_professional",
        tier="professional",
    )

    subscription.start_trial()      # incomplete -> trialing
    subscription.save()

Note:
    ``state`` is a protected FSM field. Reload rows with
    ``Subscription.objects.get(pk=...)``; ``refresh_from_db()`` on the full
    row cannot reassign a protected field.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin

from billing.exceptions import InvalidTransitionError
from billing.state_machines import (
    ReactivationPolicy,
    SubscriptionState,
    SubscriptionTier,
)

# Transitions that carry a row from one state to a state reported by the
# gateway. Pairs that are missing cannot be reached; canceled rows are
# only revived through the management API.
GATEWAY_STATE_PATHS: dict[tuple[str, str], tuple[str, ...]] = {
    ("incomplete", "trialing"): ("start_trial",),
    ("incomplete", "active"): ("activate",),
    ("trialing", "active"): ("activate",),
    ("past_due", "active"): ("recover",),
    ("active", "past_due"): ("mark_past_due",),
    ("trialing", "past_due"): ("mark_past_due",),
    ("incomplete", "past_due"): ("activate", "mark_past_due"),
    ("incomplete", "canceled"): ("cancel",),
    ("trialing", "canceled"): ("cancel",),
    ("active", "canceled"): ("cancel",),
    ("past_due", "canceled"): ("cancel",),
}

# Gateway subscription status -> local state. Statuses not listed
# (paused, anything new) leave the local state untouched.
GATEWAY_STATUS_MAP: dict[str, str] = {
    "incomplete": "incomplete",
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


def reactivation_window_open(subscription: Subscription) -> bool:
    """FSM condition for Subscription.reactivate()."""
    policy = getattr(
        settings, "BILLING_REACTIVATION_POLICY", ReactivationPolicy.PERIOD_END
    )
    if policy == ReactivationPolicy.UNLIMITED:
        return True
    period_end = subscription.current_period_end
    return period_end is not None and timezone.now() < period_end


class Subscription(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    A customer's subscription to one plan tier.

    State Flow:
        INCOMPLETE -> TRIALING (trial started at checkout)
        INCOMPLETE/TRIALING -> ACTIVE (first successful charge)
        ACTIVE/TRIALING -> PAST_DUE (charge failed)
        PAST_DUE -> ACTIVE (retry succeeded)
        any live state -> CANCELED
        CANCELED -> ACTIVE (reactivation, policy-guarded)

    ``cancel_at_period_end`` is a pending cancellation: the row stays in
    its live state until the period elapses without renewal.

    Fields:
        customer: Owning user
        stripe_subscription_id: Stripe Subscription ID (sub_xxx)
        stripe_customer_id: Stripe Customer ID (cus_xxx)
        stripe_price_id: Stripe Price ID the tier was derived from
        tier: Plan tier (starter < professional < premium)
        state: Current FSM state
        current_period_start/end: Current billing period
        trial_end: End of the trial, if any
        cancel_at_period_end: Pending cancellation flag
        canceled_at: When the subscription reached CANCELED
        needs_review: Set when retries ran out under the review policy
        last_event_at: Timestamp of the newest gateway event applied
        version: Optimistic locking version
        metadata: Flexible JSON storage
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Customer owning the subscription",
    )

    # ==========================================================================
    # Stripe Integration
    # ==========================================================================

    stripe_subscription_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Subscription ID (sub_xxx)",
    )

    stripe_customer_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Stripe Customer ID (cus_xxx)",
    )

    stripe_price_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe Price ID (price_xxx)",
    )

    # ==========================================================================
    # Plan & State
    # ==========================================================================

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        help_text="Plan tier",
    )

    state = FSMField(
        default=SubscriptionState.INCOMPLETE,
        choices=SubscriptionState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the subscription (managed by FSM)",
    )

    # ==========================================================================
    # Billing Period
    # ==========================================================================

    current_period_start = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Start of current billing period",
    )

    current_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of current billing period",
    )

    trial_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of the trial period, if any",
    )

    # ==========================================================================
    # Cancellation & Review
    # ==========================================================================

    cancel_at_period_end = models.BooleanField(
        default=False,
        help_text="Whether subscription will cancel at period end",
    )

    canceled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When subscription was canceled",
    )

    needs_review = models.BooleanField(
        default=False,
        help_text="Payment retries ran out and an administrator must decide",
    )

    # ==========================================================================
    # Event Ordering
    # ==========================================================================

    last_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Creation time of the newest gateway event applied to this row",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(fields=["customer", "state"], name="billing_sub_custome_3c1f0a_idx"),
            models.Index(fields=["state", "current_period_end"], name="billing_sub_state_8d2e41_idx"),
            models.Index(
                fields=["cancel_at_period_end", "current_period_end"],
                name="billing_sub_cancel__5a7b92_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["customer"],
                condition=Q(state__in=SubscriptionState.live_states()),
                name="billing_one_live_subscription_per_customer",
            ),
        ]

    def __str__(self) -> str:
        return f"Subscription({self.id}, {self.tier}, {self.state})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=SubscriptionState.INCOMPLETE,
        target=SubscriptionState.TRIALING,
    )
    def start_trial(self):
        """Transition: INCOMPLETE -> TRIALING"""

    @transition(
        field=state,
        source=[SubscriptionState.INCOMPLETE, SubscriptionState.TRIALING],
        target=SubscriptionState.ACTIVE,
    )
    def activate(self):
        """
        First successful charge.

        Transition: INCOMPLETE/TRIALING -> ACTIVE
        """

    @transition(
        field=state,
        source=[SubscriptionState.ACTIVE, SubscriptionState.TRIALING],
        target=SubscriptionState.PAST_DUE,
    )
    def mark_past_due(self):
        """
        Charge failed; the retry scheduler takes over.

        Transition: ACTIVE/TRIALING -> PAST_DUE
        """

    @transition(
        field=state,
        source=SubscriptionState.PAST_DUE,
        target=SubscriptionState.ACTIVE,
    )
    def recover(self):
        """Transition: PAST_DUE -> ACTIVE"""

    @transition(
        field=state,
        source=[
            SubscriptionState.INCOMPLETE,
            SubscriptionState.TRIALING,
            SubscriptionState.ACTIVE,
            SubscriptionState.PAST_DUE,
        ],
        target=SubscriptionState.CANCELED,
    )
    def cancel(self, at=None):
        """
        Cancel the subscription.

        Transition: INCOMPLETE/TRIALING/ACTIVE/PAST_DUE -> CANCELED

        Triggered by an immediate cancel request, the gateway's
        subscription.deleted event, the period-end sweep or retry
        exhaustion.
        """
        self.canceled_at = at or timezone.now()
        self.cancel_at_period_end = False

    @transition(
        field=state,
        source=SubscriptionState.CANCELED,
        target=SubscriptionState.ACTIVE,
        conditions=[reactivation_window_open],
    )
    def reactivate(self):
        """
        Revive a canceled subscription.

        Transition: CANCELED -> ACTIVE

        Allowed while the reactivation window is open; the caller checks
        the gateway subscription still exists.
        """
        self.canceled_at = None
        self.cancel_at_period_end = False

    def advance_to(self, target: str) -> bool:
        """
        Walk the FSM to a state reported by the gateway.

        Returns:
            True if the state changed, False if already there

        Raises:
            InvalidTransitionError: No path leads from the current state
        """
        if self.state == target:
            return False
        path = GATEWAY_STATE_PATHS.get((str(self.state), str(target)))
        if path is None:
            raise InvalidTransitionError(
                f"Cannot move subscription from '{self.state}' to '{target}'",
                details={
                    "subscription_id": str(self.id),
                    "current_state": self.state,
                    "target_state": target,
                },
            )
        for name in path:
            getattr(self, name)()
        return True

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def is_live(self) -> bool:
        return self.state in SubscriptionState.live_states()

    @property
    def is_canceled(self) -> bool:
        return self.state == SubscriptionState.CANCELED

    @property
    def is_past_due(self) -> bool:
        return self.state == SubscriptionState.PAST_DUE

    @property
    def will_cancel_at_period_end(self) -> bool:
        return self.cancel_at_period_end and not self.is_canceled
