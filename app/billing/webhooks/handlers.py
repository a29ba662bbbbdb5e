"""
Webhook event handlers.

One handler per event class, registered in HANDLERS. The reconciler calls
dispatch() inside its transaction; handlers lock the rows they touch,
apply the event through the ledgers and queue notifications with
transaction.on_commit.

Outcomes are signalled the same way everywhere:
- return ServiceResult.success(...) - event applied (data["ignored"] marks
  an event that concerns nothing this service tracks)
- raise StaleEventError - event older than the row, recorded as stale
- raise UnknownEventTypeError - no dedicated handling, recorded as ignored
- raise anything else - transaction rolls back, event left in error

Usage:
    from billing.webhooks.handlers import dispatch

    result = dispatch(parse_event(envelope))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError, transaction

from accounts.models import User
from core.exceptions import NotFoundError
from core.services import ServiceResult

from billing.exceptions import (
    ConflictingActiveSubscriptionError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    StaleEventError,
    SubscriptionNotFoundError,
    UnknownEventTypeError,
)
from billing.models import Invoice, Subscription
from billing.models.subscription import GATEWAY_STATUS_MAP
from billing.notifications import NotificationKind, notify_on_commit
from billing.plans import tier_for_price
from billing.services import invoice_ledger
from billing.state_machines import SubscriptionState
from billing.webhooks.events import (
    KNOWN_EVENT_CLASSES,
    ChargeRefunded,
    GatewayEvent,
    InvoiceCreated,
    InvoiceFinalized,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceVoided,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
)

if TYPE_CHECKING:
    from billing.webhooks.events import InvoiceEvent, SubscriptionEvent, SubscriptionSnapshot


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


HANDLERS: dict[type[GatewayEvent], Callable[[GatewayEvent], ServiceResult]] = {}


def register_handler(*event_classes: type[GatewayEvent]) -> Callable:
    """
    Decorator to register a handler for one or more event classes.

    Usage:
        @register_handler(InvoicePaid)
        def handle_invoice_paid(event: InvoicePaid) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[GatewayEvent], ServiceResult]) -> Callable:
        for event_class in event_classes:
            HANDLERS[event_class] = func
        return func

    return decorator


def dispatch(event: GatewayEvent) -> ServiceResult:
    """Route an event to the handler registered for its class."""
    handler = HANDLERS[type(event)]
    logger.info(
        f"Dispatching {event.event_type} to {handler.__name__}",
        extra={"stripe_event_id": event.event_id},
    )
    return handler(event)


def check_handler_coverage() -> None:
    """
    Ensure every event class has a handler.

    Raises:
        ImproperlyConfigured: Listing the event classes without a handler
    """
    missing = [cls.__name__ for cls in KNOWN_EVENT_CLASSES if cls not in HANDLERS]
    if missing:
        raise ImproperlyConfigured(
            f"No webhook handler registered for: {', '.join(missing)}"
        )


# =============================================================================
# Helpers
# =============================================================================


def _ensure_fresh(subscription: Subscription, event: GatewayEvent) -> None:
    if subscription.last_event_at is not None and event.created < subscription.last_event_at:
        raise StaleEventError(
            "Event predates subscription state",
            details={
                "event_id": event.event_id,
                "subscription_id": str(subscription.id),
                "last_event_at": subscription.last_event_at.isoformat(),
            },
        )


def _is_fresh(subscription: Subscription, event: GatewayEvent) -> bool:
    return subscription.last_event_at is None or event.created >= subscription.last_event_at


def _resolve_customer(snapshot: SubscriptionSnapshot) -> User:
    user_id = snapshot.metadata.get("user_id")
    if user_id:
        try:
            user = User.objects.filter(pk=user_id).first()
        except (TypeError, ValueError):
            user = None
        if user is not None:
            return user

    user = User.objects.get_by_stripe_customer(snapshot.customer_id)
    if user is None:
        raise NotFoundError(
            f"No customer for Stripe customer {snapshot.customer_id}",
            error_code="CUSTOMER_NOT_FOUND",
            details={"stripe_customer_id": snapshot.customer_id},
        )
    return user


def _lock_subscription(stripe_subscription_id: str) -> Subscription | None:
    return (
        Subscription.objects.select_for_update()
        .filter(stripe_subscription_id=stripe_subscription_id)
        .first()
    )


def _lock_invoice_subscription(event: InvoiceEvent) -> Subscription | None:
    """
    Lock the subscription an invoice event bills.

    Returns None for invoices outside any subscription.

    Raises:
        SubscriptionNotFoundError: The invoice arrived before its subscription
    """
    stripe_subscription_id = event.invoice.subscription_id
    if not stripe_subscription_id:
        return None
    subscription = _lock_subscription(stripe_subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(
            f"Subscription {stripe_subscription_id} not found for invoice {event.invoice.id}",
            details={
                "stripe_subscription_id": stripe_subscription_id,
                "invoice_id": event.invoice.id,
            },
        )
    return subscription


def _move_to_gateway_state(subscription: Subscription, target: str) -> bool:
    try:
        return subscription.advance_to(target)
    except InvalidTransitionError as e:
        logger.warning(
            f"Unreachable gateway state: {e.message}",
            extra={"subscription_id": str(subscription.id), "target_state": target},
        )
        return False


# =============================================================================
# Subscription Handlers
# =============================================================================


def _create_subscription(event: SubscriptionEvent, target: str | None) -> ServiceResult:
    snapshot = event.subscription
    tier = tier_for_price(snapshot.price_id)
    if tier is None:
        logger.warning(
            "Subscription with unknown price ignored",
            extra={"stripe_subscription_id": snapshot.id, "price_id": snapshot.price_id},
        )
        return ServiceResult.success({"ignored": True})

    subscription = Subscription(
        customer=_resolve_customer(snapshot),
        stripe_subscription_id=snapshot.id,
        stripe_customer_id=snapshot.customer_id,
        stripe_price_id=snapshot.price_id,
        tier=tier,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        trial_end=snapshot.trial_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        last_event_at=event.created,
        metadata=snapshot.metadata,
    )
    if target is not None:
        _move_to_gateway_state(subscription, target)
    if subscription.is_canceled:
        subscription.canceled_at = snapshot.canceled_at or event.created

    try:
        with transaction.atomic():
            subscription.save()
    except IntegrityError as e:
        existing = _lock_subscription(snapshot.id)
        if existing is None:
            raise ConflictingActiveSubscriptionError(
                "Customer already has a live subscription",
                details={
                    "stripe_subscription_id": snapshot.id,
                    "customer_id": str(subscription.customer_id),
                },
            ) from e
        # Created concurrently (subscribe() or a parallel delivery)
        return _update_subscription(existing, event, target)

    logger.info(
        "Subscription recorded from gateway",
        extra={
            "subscription_id": str(subscription.id),
            "stripe_subscription_id": snapshot.id,
            "state": subscription.state,
        },
    )
    return ServiceResult.success({"subscription_id": str(subscription.id), "created": True})


def _update_subscription(
    subscription: Subscription,
    event: SubscriptionEvent,
    target: str | None,
) -> ServiceResult:
    _ensure_fresh(subscription, event)
    snapshot = event.subscription

    subscription.current_period_start = (
        snapshot.current_period_start or subscription.current_period_start
    )
    subscription.current_period_end = snapshot.current_period_end or subscription.current_period_end
    subscription.trial_end = snapshot.trial_end or subscription.trial_end
    subscription.cancel_at_period_end = snapshot.cancel_at_period_end
    tier = tier_for_price(snapshot.price_id)
    if tier is not None:
        subscription.tier = tier
        subscription.stripe_price_id = snapshot.price_id
    subscription.last_event_at = event.created

    previous_state = subscription.state
    changed = False
    if target is not None:
        changed = _move_to_gateway_state(subscription, target)
    if changed and subscription.is_canceled:
        subscription.canceled_at = snapshot.canceled_at or event.created
    subscription.save()

    if changed and subscription.is_canceled:
        notify_on_commit(
            NotificationKind.CANCELLATION,
            subscription.customer_id,
            {"subscription_id": snapshot.id, "tier": subscription.tier},
        )

    logger.info(
        "Subscription reconciled",
        extra={
            "subscription_id": str(subscription.id),
            "previous_state": previous_state,
            "state": subscription.state,
        },
    )
    return ServiceResult.success({"subscription_id": str(subscription.id), "state_changed": changed})


@register_handler(SubscriptionCreated, SubscriptionUpdated)
def handle_subscription_changed(event: SubscriptionEvent) -> ServiceResult:
    """
    customer.subscription.created / customer.subscription.updated.

    Merges the snapshot into the ledger row, creating the row when the
    subscription was started outside the management API.
    """
    target = GATEWAY_STATUS_MAP.get(event.subscription.status)
    subscription = _lock_subscription(event.subscription.id)
    if subscription is None:
        return _create_subscription(event, target)
    return _update_subscription(subscription, event, target)


@register_handler(SubscriptionDeleted)
def handle_subscription_deleted(event: SubscriptionDeleted) -> ServiceResult:
    """customer.subscription.deleted: the subscription ended at the gateway."""
    subscription = _lock_subscription(event.subscription.id)
    if subscription is None:
        logger.info(
            "Deleted subscription is not tracked",
            extra={"stripe_subscription_id": event.subscription.id},
        )
        return ServiceResult.success({"ignored": True})
    return _update_subscription(subscription, event, SubscriptionState.CANCELED.value)


# =============================================================================
# Invoice Handlers
# =============================================================================


@register_handler(InvoiceCreated, InvoiceFinalized)
def handle_invoice_created(event: InvoiceEvent) -> ServiceResult:
    subscription = _lock_invoice_subscription(event)
    if subscription is None:
        return ServiceResult.success({"ignored": True})
    invoice = invoice_ledger.record_invoice_created(subscription, event.invoice, event.created)
    return ServiceResult.success({"invoice_id": str(invoice.id)})


@register_handler(InvoicePaid)
def handle_invoice_paid(event: InvoicePaid) -> ServiceResult:
    """
    invoice.paid / invoice.payment_succeeded.

    Resolves the open payment failure and brings the subscription back to
    active (past_due -> active, or the first charge of a new subscription).
    """
    subscription = _lock_invoice_subscription(event)
    if subscription is None:
        return ServiceResult.success({"ignored": True})

    invoice = invoice_ledger.upsert_invoice(subscription, event.invoice, event.created)
    paid_now = invoice_ledger.record_invoice_paid(invoice, event.invoice, event.created)

    state_changed = False
    if paid_now and _is_fresh(subscription, event):
        if subscription.is_past_due:
            subscription.recover()
            state_changed = True
        elif (
            subscription.state in (SubscriptionState.INCOMPLETE, SubscriptionState.TRIALING)
            and invoice.amount_cents > 0
        ):
            subscription.activate()
            state_changed = True
        if state_changed:
            subscription.last_event_at = event.created
            subscription.save()

    if paid_now:
        notify_on_commit(
            NotificationKind.RECEIPT,
            subscription.customer_id,
            {
                "invoice_id": invoice.stripe_invoice_id,
                "amount_cents": invoice.amount_cents,
                "currency": invoice.currency,
                "paid_at": invoice.paid_at,
                "hosted_invoice_url": invoice.hosted_invoice_url,
            },
        )
    return ServiceResult.success(
        {"invoice_id": str(invoice.id), "paid": paid_now, "state_changed": state_changed}
    )


@register_handler(InvoicePaymentFailed)
def handle_invoice_payment_failed(event: InvoicePaymentFailed) -> ServiceResult:
    """
    invoice.payment_failed.

    Opens the payment failure the retry scheduler works on and moves the
    subscription to past_due.
    """
    subscription = _lock_invoice_subscription(event)
    if subscription is None:
        return ServiceResult.success({"ignored": True})

    invoice = invoice_ledger.upsert_invoice(subscription, event.invoice, event.created)
    failure, opened = invoice_ledger.record_invoice_failed(invoice, event.invoice, event.created)
    if failure is None:
        logger.info(
            "Payment failure not tracked",
            extra={"invoice_id": invoice.stripe_invoice_id, "status": invoice.status},
        )
        return ServiceResult.success({"invoice_id": str(invoice.id), "tracked": False})

    if _is_fresh(subscription, event) and subscription.state in (
        SubscriptionState.ACTIVE,
        SubscriptionState.TRIALING,
    ):
        subscription.mark_past_due()
        subscription.last_event_at = event.created
        subscription.save()

    if opened:
        notify_on_commit(
            NotificationKind.PAYMENT_FAILED,
            subscription.customer_id,
            {
                "invoice_id": invoice.stripe_invoice_id,
                "amount_cents": invoice.amount_cents,
                "currency": invoice.currency,
                "reason": failure.failure_reason,
                "next_retry_at": failure.next_retry_at,
                "final": False,
            },
        )
    return ServiceResult.success(
        {"invoice_id": str(invoice.id), "payment_failure_id": str(failure.id), "tracked": True}
    )


@register_handler(InvoiceVoided)
def handle_invoice_voided(event: InvoiceVoided) -> ServiceResult:
    subscription = _lock_invoice_subscription(event)
    if subscription is None:
        return ServiceResult.success({"ignored": True})
    invoice = invoice_ledger.upsert_invoice(subscription, event.invoice, event.created)
    voided = invoice_ledger.record_invoice_voided(invoice, event.created)
    return ServiceResult.success({"invoice_id": str(invoice.id), "voided": voided})


# =============================================================================
# Charge Handlers
# =============================================================================


def _lock_refunded_invoice(event: ChargeRefunded) -> Invoice | None:
    """Lock the refunded invoice, taking its subscription's lock first."""
    charge = event.charge
    queryset = Invoice.objects.all()
    invoice = None
    if charge.invoice_id:
        invoice = queryset.filter(stripe_invoice_id=charge.invoice_id).first()
    if invoice is None:
        invoice = queryset.filter(stripe_charge_id=charge.id).first()
    if invoice is None and charge.invoice_id:
        raise InvoiceNotFoundError(
            f"Invoice {charge.invoice_id} not found for refunded charge {charge.id}",
            details={"invoice_id": charge.invoice_id, "charge_id": charge.id},
        )
    if invoice is None:
        return None

    Subscription.objects.select_for_update().filter(pk=invoice.subscription_id).first()
    return Invoice.objects.select_for_update().select_related("subscription").get(pk=invoice.pk)


@register_handler(ChargeRefunded)
def handle_charge_refunded(event: ChargeRefunded) -> ServiceResult:
    """
    charge.refunded.

    Refunded amounts are cumulative at the gateway, so redelivered and
    reordered refund events merge to the same result.
    """
    invoice = _lock_refunded_invoice(event)
    if invoice is None:
        return ServiceResult.success({"ignored": True})

    refunded = invoice_ledger.record_refund(invoice, event.charge, event.created)
    if refunded:
        notify_on_commit(
            NotificationKind.REFUND,
            invoice.subscription.customer_id,
            {
                "invoice_id": invoice.stripe_invoice_id,
                "refunded_amount_cents": invoice.refunded_amount_cents,
                "currency": invoice.currency,
            },
        )
    return ServiceResult.success({"invoice_id": str(invoice.id), "refunded": refunded})


# =============================================================================
# Fallback
# =============================================================================


@register_handler(UnknownEvent)
def handle_unknown_event(event: UnknownEvent) -> ServiceResult:
    raise UnknownEventTypeError(
        f"No handling for event type {event.event_type}",
        details={"event_id": event.event_id, "event_type": event.event_type},
    )


__all__ = [
    "GATEWAY_STATUS_MAP",
    "HANDLERS",
    "check_handler_coverage",
    "dispatch",
    "register_handler",
]
