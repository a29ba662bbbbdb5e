"""
Invoice Ledger and Failure Tracker operations.

These functions are the only writers of Invoice rows and of the opening
and resolution of PaymentFailure rows. Webhook handlers call them inside
the reconciler's transaction; request views never do.

Every function expects to run inside transaction.atomic(). Rows are
locked with select_for_update so that concurrent events for the same
invoice serialize.

Ordering rules:
- An invoice event older than invoice.last_event_at raises StaleEventError
- Amounts only grow: amount_paid_cents, refunded_amount_cents
- Refunds take the larger of the stored and reported refunded amount,
  capped at the paid amount

Usage:
    from billing.services import invoice_ledger

    invoice = invoice_ledger.upsert_invoice(subscription, event.invoice, event.created)
    invoice_ledger.record_invoice_paid(invoice, event.invoice, event.created)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.utils import timezone

from billing.exceptions import InvalidTransitionError, StaleEventError
from billing.models import Invoice, PaymentFailure
from billing.state_machines import FailureResolution, InvoiceStatus
from billing.workers import RetryScheduleConfig

if TYPE_CHECKING:
    from billing.models import Subscription
    from billing.webhooks.events import ChargeSnapshot, InvoiceSnapshot

logger = logging.getLogger(__name__)


# Statuses whose amount may still change
MUTABLE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.OPEN, InvoiceStatus.FAILED)

# Statuses an invoice can be refunded from
REFUNDABLE_STATUSES = (
    InvoiceStatus.PAID,
    InvoiceStatus.PARTIALLY_REFUNDED,
    InvoiceStatus.REFUNDED,
)


# =============================================================================
# Invoice Rows
# =============================================================================


def _advance_marker(invoice: Invoice, event_at: datetime) -> None:
    if invoice.last_event_at is None or event_at > invoice.last_event_at:
        invoice.last_event_at = event_at


def _merge_details(invoice: Invoice, snapshot: InvoiceSnapshot) -> None:
    """Copy descriptive fields; never shrink amounts or clear ids."""
    if invoice.status in MUTABLE_STATUSES and snapshot.amount_due >= invoice.amount_paid_cents:
        invoice.amount_cents = snapshot.amount_due
    invoice.currency = snapshot.currency or invoice.currency
    invoice.billing_reason = snapshot.billing_reason or invoice.billing_reason
    invoice.period_start = snapshot.period_start or invoice.period_start
    invoice.period_end = snapshot.period_end or invoice.period_end
    invoice.due_date = snapshot.due_date or invoice.due_date
    invoice.stripe_charge_id = snapshot.charge_id or invoice.stripe_charge_id
    invoice.stripe_payment_intent_id = (
        snapshot.payment_intent_id or invoice.stripe_payment_intent_id
    )
    invoice.hosted_invoice_url = snapshot.hosted_invoice_url or invoice.hosted_invoice_url


def upsert_invoice(
    subscription: Subscription,
    snapshot: InvoiceSnapshot,
    event_at: datetime,
) -> Invoice:
    """
    Lock or create the invoice for a snapshot and merge its details.

    Returns:
        The locked, saved invoice

    Raises:
        StaleEventError: event_at predates the last event applied to the row
    """
    invoice = (
        Invoice.objects.select_for_update()
        .filter(stripe_invoice_id=snapshot.id)
        .first()
    )

    if invoice is None:
        invoice = Invoice(subscription=subscription, stripe_invoice_id=snapshot.id)
        _merge_details(invoice, snapshot)
        invoice.last_event_at = event_at
        try:
            with transaction.atomic():
                invoice.save()
        except IntegrityError:
            # A concurrent event created it first; wait for its lock
            invoice = Invoice.objects.select_for_update().get(stripe_invoice_id=snapshot.id)
        else:
            logger.info(
                "Invoice recorded",
                extra={
                    "invoice_id": snapshot.id,
                    "subscription_id": str(subscription.id),
                    "amount_cents": invoice.amount_cents,
                },
            )
            return invoice

    if invoice.last_event_at is not None and event_at < invoice.last_event_at:
        raise StaleEventError(
            "Event predates invoice state",
            details={
                "invoice_id": snapshot.id,
                "event_at": event_at.isoformat(),
                "last_event_at": invoice.last_event_at.isoformat(),
            },
        )

    _merge_details(invoice, snapshot)
    _advance_marker(invoice, event_at)
    invoice.save()
    return invoice


def record_invoice_created(
    subscription: Subscription,
    snapshot: InvoiceSnapshot,
    event_at: datetime,
) -> Invoice:
    """
    Record invoice.created / invoice.finalized.

    A draft becomes open once the gateway reports it open.
    """
    invoice = upsert_invoice(subscription, snapshot, event_at)
    if invoice.status == InvoiceStatus.DRAFT and snapshot.status == "open":
        invoice.finalize()
        invoice.save()
    return invoice


def record_invoice_paid(
    invoice: Invoice,
    snapshot: InvoiceSnapshot,
    event_at: datetime,
) -> bool:
    """
    Record full collection of an invoice.

    Returns:
        True if the invoice changed to paid, False if it already was paid
        (or refunded) or cannot be paid any more (void)
    """
    if invoice.status in REFUNDABLE_STATUSES:
        return False
    if invoice.status == InvoiceStatus.VOID:
        logger.warning(
            "Ignoring payment for a void invoice",
            extra={"invoice_id": invoice.stripe_invoice_id},
        )
        return False

    if snapshot.amount_paid > invoice.amount_cents:
        invoice.amount_cents = snapshot.amount_paid
    invoice.mark_paid(at=event_at)
    invoice.save()

    resolve_failure(invoice, FailureResolution.PAID, at=event_at)
    logger.info(
        "Invoice paid",
        extra={"invoice_id": invoice.stripe_invoice_id, "amount_cents": invoice.amount_cents},
    )
    return True


def record_invoice_failed(
    invoice: Invoice,
    snapshot: InvoiceSnapshot,
    event_at: datetime,
) -> tuple[PaymentFailure | None, bool]:
    """
    Record a failed charge and open (or refresh) its PaymentFailure.

    A new failure starts with retry_count 0 and its first retry one
    initial delay from now. A redelivered failure for an invoice that is
    already tracked refreshes the decline reason; the retry schedule
    belongs to the scheduler, except that a failure whose accepted retry
    failed afterwards is put back on it.

    No failure is tracked for a terminal invoice, for a canceled
    subscription, or for an invoice whose retries already ran out.

    Returns:
        (failure, opened): the tracked failure (None when skipped) and
        whether it was opened by this call
    """
    if invoice.is_terminal:
        return None, False
    subscription = invoice.subscription
    if subscription.is_canceled:
        return None, False

    if invoice.status != InvoiceStatus.FAILED:
        invoice.mark_failed(at=event_at)
    else:
        invoice.failed_at = event_at
    invoice.save()

    failure = PaymentFailure.objects.select_for_update().unresolved().filter(invoice=invoice).first()
    if failure is not None:
        failure.failure_reason = snapshot.failure_message or failure.failure_reason
        failure.failure_code = snapshot.failure_code or failure.failure_code
        update_fields = ["failure_reason", "failure_code", "updated_at"]
        if failure.next_retry_at is None:
            # A retry the gateway accepted has failed after all
            config = RetryScheduleConfig.from_settings()
            failure.next_retry_at = timezone.now() + config.delay_for(failure.retry_count)
            update_fields.append("next_retry_at")
        failure.save(update_fields=update_fields)
        return failure, False

    if PaymentFailure.objects.filter(
        invoice=invoice, resolution=FailureResolution.EXHAUSTED
    ).exists():
        return None, False

    first_retry_delay = RetryScheduleConfig.from_settings().delay_for(0)
    failure = PaymentFailure.objects.create(
        invoice=invoice,
        subscription=subscription,
        failure_reason=snapshot.failure_message,
        failure_code=snapshot.failure_code,
        retry_count=0,
        next_retry_at=timezone.now() + first_retry_delay,
    )
    logger.info(
        "Payment failure opened",
        extra={
            "invoice_id": invoice.stripe_invoice_id,
            "payment_failure_id": str(failure.id),
            "next_retry_at": failure.next_retry_at.isoformat(),
        },
    )
    return failure, True


def record_invoice_voided(invoice: Invoice, event_at: datetime) -> bool:
    """Void an unpaid invoice and stop chasing it."""
    if invoice.status not in MUTABLE_STATUSES:
        return False
    invoice.void(at=event_at)
    invoice.save()
    resolve_failure(invoice, FailureResolution.CANCELED, at=event_at)
    return True


def record_refund(
    invoice: Invoice,
    charge: ChargeSnapshot,
    event_at: datetime,
) -> bool:
    """
    Merge the refunded amount reported for the invoice's charge.

    Returns:
        True if the refunded amount grew

    Raises:
        InvalidTransitionError: The invoice was never paid
    """
    if invoice.status not in REFUNDABLE_STATUSES:
        raise InvalidTransitionError(
            f"Cannot refund invoice in '{invoice.status}' status",
            details={"invoice_id": invoice.stripe_invoice_id, "status": invoice.status},
        )

    refunded = min(
        max(invoice.refunded_amount_cents, charge.amount_refunded),
        invoice.amount_paid_cents,
    )
    _advance_marker(invoice, event_at)
    if refunded <= invoice.refunded_amount_cents:
        invoice.save(update_fields=["last_event_at", "updated_at"])
        return False

    invoice.refunded_amount_cents = refunded
    if refunded == invoice.amount_paid_cents:
        invoice.refund_full(at=event_at)
    else:
        invoice.refund_partial(at=event_at)
    invoice.save()

    resolve_failure(invoice, FailureResolution.REFUNDED, at=event_at)
    logger.info(
        "Invoice refund recorded",
        extra={
            "invoice_id": invoice.stripe_invoice_id,
            "refunded_amount_cents": refunded,
            "status": invoice.status,
        },
    )
    return True


# =============================================================================
# Failure Tracker
# =============================================================================


def resolve_failure(
    invoice: Invoice,
    resolution: str,
    at: datetime | None = None,
) -> PaymentFailure | None:
    """
    Close the invoice's unresolved failure, if any.

    Idempotent: returns None when nothing was open.
    """
    failure = PaymentFailure.objects.select_for_update().unresolved().filter(invoice=invoice).first()
    if failure is None:
        return None
    failure.resolve(resolution, at=at)
    failure.save()
    logger.info(
        "Payment failure resolved",
        extra={
            "payment_failure_id": str(failure.id),
            "invoice_id": invoice.stripe_invoice_id,
            "resolution": resolution,
        },
    )
    return failure
