"""
PaymentFailure model - the Failure Tracker.

An unresolved PaymentFailure means "this invoice still needs money". The
retry scheduler owns retry_count and next_retry_at; the reconciler opens
failures and resolves them when the invoice is paid, voided or refunded.

Usage:
    from billing.models import PaymentFailure

    due = PaymentFailure.objects.due(now)
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin

from billing.state_machines import FailureResolution


class PaymentFailureQuerySet(models.QuerySet):
    def unresolved(self):
        return self.filter(resolved_at__isnull=True)

    def due(self, now, max_attempts: int | None = None):
        """Unresolved failures whose next retry time has come, oldest first."""
        qs = self.unresolved().filter(next_retry_at__lte=now)
        if max_attempts is not None:
            qs = qs.filter(retry_count__lt=max_attempts)
        return qs.order_by("next_retry_at", "created_at")


class PaymentFailure(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    Tracks collection of one failed invoice.

    Fields:
        invoice: The failed invoice
        subscription: Subscription the invoice bills
        failure_reason: Latest human-readable decline reason
        failure_code: Latest gateway decline code
        retry_count: Scheduler attempts so far (starts at 0)
        next_retry_at: When the scheduler should try again (None = not scheduled)
        last_attempt_at: When the scheduler last claimed this failure
        resolved_at: When the failure was closed
        resolution: Why it was closed
        version: Optimistic locking version, used by the scheduler claim
    """

    invoice = models.ForeignKey(
        "billing.Invoice",
        on_delete=models.PROTECT,
        related_name="payment_failures",
        help_text="Invoice whose charge failed",
    )

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="payment_failures",
        help_text="Subscription billed by the invoice",
    )

    failure_reason = models.TextField(
        blank=True,
        default="",
        help_text="Latest decline message",
    )

    failure_code = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Latest gateway decline code",
    )

    # ==========================================================================
    # Retry Scheduling
    # ==========================================================================

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of scheduler payment attempts made",
    )

    next_retry_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the next payment attempt is due",
    )

    last_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the scheduler last attempted payment",
    )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    resolved_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the failure was resolved",
    )

    resolution = models.CharField(
        max_length=20,
        choices=FailureResolution.choices,
        blank=True,
        default="",
        help_text="How the failure was resolved",
    )

    objects = PaymentFailureQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Failure"
        verbose_name_plural = "Payment Failures"
        indexes = [
            models.Index(fields=["resolved_at", "next_retry_at"], name="billing_pay_resolve_4f8e27_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["invoice"],
                condition=Q(resolved_at__isnull=True),
                name="billing_one_open_failure_per_invoice",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentFailure({self.id}, retries={self.retry_count}, {self.resolution or 'open'})"

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self, resolution: str, at=None) -> None:
        """
        Close the failure.

        Note: Does not save - caller must save after calling.
        """
        self.resolved_at = at or timezone.now()
        self.resolution = resolution
        self.next_retry_at = None
