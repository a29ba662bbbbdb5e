"""
Invoice model - the Invoice Ledger.

One row per gateway invoice (one billing-cycle charge attempt). Rows are
created and mutated only by the webhook reconciler through
billing.services.invoice_ledger.

Amount invariants, enforced by check constraints and by the ledger:
    amount_paid_cents <= amount_cents
    refunded_amount_cents <= amount_paid_cents
    status == paid  =>  paid_at is set and amount_paid_cents == amount_cents
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import InvoiceStatus


class Invoice(UUIDPrimaryKeyMixin, BaseModel):
    """
    A billing-cycle invoice of one subscription.

    Status Flow:
        DRAFT -> OPEN (finalized)
        DRAFT/OPEN/FAILED -> PAID
        DRAFT/OPEN -> FAILED (charge declined)
        DRAFT/OPEN/FAILED -> VOID
        PAID/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED / REFUNDED

    Fields:
        subscription: Owning subscription
        stripe_invoice_id: Stripe Invoice ID (in_xxx)
        stripe_charge_id: Charge that paid the invoice (ch_xxx)
        stripe_payment_intent_id: PaymentIntent of the invoice (pi_xxx)
        amount_cents: Amount due in smallest currency unit
        amount_paid_cents: Amount collected (only grows)
        refunded_amount_cents: Amount refunded (only grows)
        currency: ISO 4217 currency code
        status: Current FSM status
        billing_reason: Stripe billing reason (subscription_cycle, ...)
        period_start/end: Service period covered
        due_date: When payment is due
        paid_at/failed_at/voided_at/refunded_at: Status timestamps
        hosted_invoice_url: Customer-facing invoice page
        last_event_at: Timestamp of the newest gateway event applied
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="invoices",
        help_text="Subscription this invoice bills",
    )

    # ==========================================================================
    # Stripe Integration
    # ==========================================================================

    stripe_invoice_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Invoice ID (in_xxx)",
    )

    stripe_charge_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Stripe Charge ID (ch_xxx) that paid this invoice",
    )

    stripe_payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Stripe PaymentIntent ID (pi_xxx) of this invoice",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount due in smallest currency unit (e.g., cents)",
    )

    amount_paid_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount collected; never decreases",
    )

    refunded_amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount refunded; never decreases",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # Status
    # ==========================================================================

    status = FSMField(
        default=InvoiceStatus.DRAFT,
        choices=InvoiceStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current status of the invoice (managed by FSM)",
    )

    billing_reason = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Stripe billing reason (subscription_create, subscription_cycle, ...)",
    )

    # ==========================================================================
    # Dates
    # ==========================================================================

    period_start = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Start of the service period billed",
    )

    period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of the service period billed",
    )

    due_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When payment is due",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the invoice was paid",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the last charge attempt failed",
    )

    voided_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the invoice was voided",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the latest refund was recorded",
    )

    hosted_invoice_url = models.URLField(
        max_length=500,
        blank=True,
        default="",
        help_text="Stripe-hosted invoice page",
    )

    last_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Creation time of the newest gateway event applied to this row",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        indexes = [
            models.Index(fields=["subscription", "status"], name="billing_inv_subscri_7e4c10_idx"),
            models.Index(fields=["subscription", "created_at"], name="billing_inv_subscri_b29d53_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_paid_cents__lte=F("amount_cents")),
                name="invoice_paid_within_amount",
            ),
            models.CheckConstraint(
                condition=Q(refunded_amount_cents__lte=F("amount_paid_cents")),
                name="invoice_refund_within_paid",
            ),
            models.CheckConstraint(
                condition=~Q(status=InvoiceStatus.PAID)
                | Q(paid_at__isnull=False, amount_paid_cents=F("amount_cents")),
                name="invoice_paid_fully_collected",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Invoice({self.stripe_invoice_id}, {self.status}, {amount_display})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=InvoiceStatus.DRAFT,
        target=InvoiceStatus.OPEN,
    )
    def finalize(self):
        """Transition: DRAFT -> OPEN"""

    @transition(
        field=status,
        source=[InvoiceStatus.DRAFT, InvoiceStatus.OPEN, InvoiceStatus.FAILED],
        target=InvoiceStatus.PAID,
    )
    def mark_paid(self, at=None):
        """
        Record full collection.

        Transition: DRAFT/OPEN/FAILED -> PAID
        """
        self.paid_at = at or timezone.now()
        self.amount_paid_cents = self.amount_cents
        self.failed_at = None

    @transition(
        field=status,
        source=[InvoiceStatus.DRAFT, InvoiceStatus.OPEN],
        target=InvoiceStatus.FAILED,
    )
    def mark_failed(self, at=None):
        """Transition: DRAFT/OPEN -> FAILED"""
        self.failed_at = at or timezone.now()

    @transition(
        field=status,
        source=[InvoiceStatus.DRAFT, InvoiceStatus.OPEN, InvoiceStatus.FAILED],
        target=InvoiceStatus.VOID,
    )
    def void(self, at=None):
        """Transition: DRAFT/OPEN/FAILED -> VOID"""
        self.voided_at = at or timezone.now()

    @transition(
        field=status,
        source=[InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_REFUNDED],
        target=InvoiceStatus.PARTIALLY_REFUNDED,
    )
    def refund_partial(self, at=None):
        """Transition: PAID/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED"""
        self.refunded_at = at or timezone.now()

    @transition(
        field=status,
        source=[InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_REFUNDED],
        target=InvoiceStatus.REFUNDED,
    )
    def refund_full(self, at=None):
        """Transition: PAID/PARTIALLY_REFUNDED -> REFUNDED"""
        self.refunded_at = at or timezone.now()

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in InvoiceStatus.terminal_states()

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    @property
    def outstanding_cents(self) -> int:
        return self.amount_cents - self.amount_paid_cents
