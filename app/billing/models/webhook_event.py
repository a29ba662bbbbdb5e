"""
WebhookEvent model - the Event Store.

Stores every authenticated webhook event received from Stripe. The unique
stripe_event_id makes redelivery detectable: an event whose status is
final (applied, stale, ignored) is never applied twice.

The raw payload is kept as opaque text exactly as received. Business
logic reads typed snapshots built by billing.webhooks.events, never
this column; it is only parsed again to replay an errored event.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks Stripe webhook events for idempotent processing.

    Processing Flow:
        1. Verify the Stripe signature (reject before any write)
        2. Lock or insert the row for stripe_event_id
        3. Final status -> duplicate, stop
        4. Apply the event in the same transaction as the ledger change
        5. Store the outcome (applied / stale / ignored)
        6. On an unexpected error: roll back, store ERROR in a new
           transaction, answer 500 so that Stripe redelivers

    ``created_at`` is the received-at time.

    Fields:
        stripe_event_id: Unique Stripe Event ID (evt_xxx)
        event_type: Type of webhook event
        event_created_at: Event creation time reported by Stripe
        raw_payload: Request body as received
        status: Processing outcome
        processed_at: When a final outcome was recorded
        error_message: Error details of the last failed attempt
        attempts: Number of processing attempts
    """

    stripe_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Stripe event type (e.g., 'invoice.payment_failed')",
    )

    event_created_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Event creation time reported by Stripe",
    )

    raw_payload = models.TextField(
        help_text="Webhook body as received (opaque)",
    )

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PROCESSING,
        db_index=True,
        help_text="Current processing status",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When a final outcome was recorded",
    )

    error_message = models.TextField(
        blank=True,
        default="",
        help_text="Error message of the last failed attempt",
    )

    attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="billing_web_status_1a6d38_idx"),
            models.Index(fields=["event_type", "created_at"], name="billing_web_event_t_c57e02_idx"),
            models.Index(fields=["status", "attempts"], name="billing_web_status_9b3f64_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.stripe_event_id}, {self.event_type}, {self.status})"

    @property
    def is_final(self) -> bool:
        return self.status in WebhookEventStatus.final_states()

    def mark_outcome(self, status: str) -> None:
        """
        Record a final outcome.

        Note: Does not save - caller must save after calling.
        """
        self.status = status
        self.processed_at = timezone.now()
        self.error_message = ""
