"""
Typed gateway events.

parse_event() turns a verified Stripe event envelope into one case of a
closed set of frozen dataclasses. Handlers only ever see these snapshots;
the raw payload stays in WebhookEvent.raw_payload.

Usage:
    from billing.webhooks.events import parse_event, InvoicePaid

    event = parse_event(envelope)
    if isinstance(event, InvoicePaid):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from django.utils import timezone

from billing.adapters import from_timestamp


# =============================================================================
# Snapshots
# =============================================================================


def _object_id(value: Any) -> str:
    """Stripe sends either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id") or ""
    return value or ""


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    customer_id: str
    status: str
    price_id: str = ""
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, data: dict[str, Any]) -> SubscriptionSnapshot:
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        return cls(
            id=data["id"],
            customer_id=_object_id(data.get("customer")),
            status=data.get("status") or "",
            price_id=_object_id(price),
            # Newer API versions report the period on the item only
            current_period_start=from_timestamp(
                data.get("current_period_start") or first_item.get("current_period_start")
            ),
            current_period_end=from_timestamp(
                data.get("current_period_end") or first_item.get("current_period_end")
            ),
            trial_end=from_timestamp(data.get("trial_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=from_timestamp(data.get("canceled_at")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    subscription_id: str
    customer_id: str
    status: str
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    billing_reason: str = ""
    period_start: datetime | None = None
    period_end: datetime | None = None
    due_date: datetime | None = None
    charge_id: str = ""
    payment_intent_id: str = ""
    hosted_invoice_url: str = ""
    failure_message: str = ""
    failure_code: str = ""

    @classmethod
    def from_stripe(cls, data: dict[str, Any]) -> InvoiceSnapshot:
        subscription_id = _object_id(data.get("subscription"))
        if not subscription_id:
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            subscription_id = _object_id(details.get("subscription"))

        # The subscription period is carried by the first line item
        lines = (data.get("lines") or {}).get("data") or []
        line_period = (lines[0].get("period") or {}) if lines else {}

        error = data.get("last_payment_error") or data.get("last_finalization_error") or {}

        return cls(
            id=data["id"],
            subscription_id=subscription_id,
            customer_id=_object_id(data.get("customer")),
            status=data.get("status") or "",
            amount_due=int(data.get("amount_due") or 0),
            amount_paid=int(data.get("amount_paid") or 0),
            currency=(data.get("currency") or "usd").lower(),
            billing_reason=data.get("billing_reason") or "",
            period_start=from_timestamp(line_period.get("start") or data.get("period_start")),
            period_end=from_timestamp(line_period.get("end") or data.get("period_end")),
            due_date=from_timestamp(data.get("due_date")),
            charge_id=_object_id(data.get("charge")),
            payment_intent_id=_object_id(data.get("payment_intent")),
            hosted_invoice_url=data.get("hosted_invoice_url") or "",
            failure_message=error.get("message") or "",
            failure_code=error.get("decline_code") or error.get("code") or "",
        )


@dataclass(frozen=True)
class ChargeSnapshot:
    id: str
    invoice_id: str
    amount: int
    amount_refunded: int
    currency: str = "usd"
    refunded: bool = False
    payment_intent_id: str = ""

    @classmethod
    def from_stripe(cls, data: dict[str, Any]) -> ChargeSnapshot:
        return cls(
            id=data["id"],
            invoice_id=_object_id(data.get("invoice")),
            amount=int(data.get("amount") or 0),
            amount_refunded=int(data.get("amount_refunded") or 0),
            currency=(data.get("currency") or "usd").lower(),
            refunded=bool(data.get("refunded")),
            payment_intent_id=_object_id(data.get("payment_intent")),
        )


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class GatewayEvent:
    """Common envelope fields of every gateway event."""

    event_id: str
    event_type: str
    created: datetime


@dataclass(frozen=True)
class SubscriptionEvent(GatewayEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionCreated(SubscriptionEvent):
    pass


@dataclass(frozen=True)
class SubscriptionUpdated(SubscriptionEvent):
    pass


@dataclass(frozen=True)
class SubscriptionDeleted(SubscriptionEvent):
    pass


@dataclass(frozen=True)
class InvoiceEvent(GatewayEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class InvoiceCreated(InvoiceEvent):
    pass


@dataclass(frozen=True)
class InvoiceFinalized(InvoiceEvent):
    pass


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    """invoice.paid and invoice.payment_succeeded."""


@dataclass(frozen=True)
class InvoicePaymentFailed(InvoiceEvent):
    pass


@dataclass(frozen=True)
class InvoiceVoided(InvoiceEvent):
    pass


@dataclass(frozen=True)
class ChargeRefunded(GatewayEvent):
    charge: ChargeSnapshot


@dataclass(frozen=True)
class UnknownEvent(GatewayEvent):
    """Any event type without a dedicated class; recorded as ignored."""


# =============================================================================
# Parsing
# =============================================================================

SUBSCRIPTION_EVENT_TYPES: dict[str, type[SubscriptionEvent]] = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
}

INVOICE_EVENT_TYPES: dict[str, type[InvoiceEvent]] = {
    "invoice.created": InvoiceCreated,
    "invoice.finalized": InvoiceFinalized,
    "invoice.paid": InvoicePaid,
    "invoice.payment_succeeded": InvoicePaid,
    "invoice.payment_failed": InvoicePaymentFailed,
    "invoice.voided": InvoiceVoided,
}

CHARGE_EVENT_TYPES: dict[str, type[ChargeRefunded]] = {
    "charge.refunded": ChargeRefunded,
}

# Every class a handler must exist for
KNOWN_EVENT_CLASSES: tuple[type[GatewayEvent], ...] = (
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoiceCreated,
    InvoiceFinalized,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceVoided,
    ChargeRefunded,
    UnknownEvent,
)


def parse_event(envelope: dict[str, Any]) -> GatewayEvent:
    """
    Build the typed event for a verified Stripe event envelope.

    Args:
        envelope: Event dict with id, type, created and data.object

    Returns:
        A GatewayEvent subclass instance; UnknownEvent for unmapped types

    Raises:
        KeyError: Envelope lacks id or type, or the object lacks its id
    """
    event_id = envelope["id"]
    event_type = envelope["type"]
    created = from_timestamp(envelope.get("created")) or timezone.now()
    data = (envelope.get("data") or {}).get("object") or {}

    base = {"event_id": event_id, "event_type": event_type, "created": created}

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return SUBSCRIPTION_EVENT_TYPES[event_type](
            subscription=SubscriptionSnapshot.from_stripe(data), **base
        )
    if event_type in INVOICE_EVENT_TYPES:
        return INVOICE_EVENT_TYPES[event_type](
            invoice=InvoiceSnapshot.from_stripe(data), **base
        )
    if event_type in CHARGE_EVENT_TYPES:
        return CHARGE_EVENT_TYPES[event_type](
            charge=ChargeSnapshot.from_stripe(data), **base
        )
    return UnknownEvent(**base)
