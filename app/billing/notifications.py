"""
Customer notifications for billing events.

notify() is the only way billing code reaches customers. Delivery is
asynchronous (the send_billing_notification Celery task) and best-effort:
a failure to queue is logged and never propagates into the caller's
transaction or response.

Usage:
    from billing.notifications import NotificationKind, notify_on_commit

    notify_on_commit(
        NotificationKind.PAYMENT_FAILED,
        subscription.customer_id,
        {"invoice_id": invoice.stripe_invoice_id, "next_retry_at": failure.next_retry_at},
    )
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models, transaction

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class NotificationKind(models.TextChoices):
    CONFIRMATION = "confirmation", "Subscription confirmed"
    RECEIPT = "receipt", "Payment receipt"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    RENEWAL_REMINDER = "renewal_reminder", "Renewal reminder"
    CANCELLATION = "cancellation", "Subscription canceled"
    UPGRADE = "upgrade", "Plan changed"
    REFUND = "refund", "Refund issued"


def _normalize(payload: dict[str, Any] | None) -> dict[str, Any]:
    # Celery's JSON serializer cannot encode datetimes, UUIDs or Decimals
    return json.loads(json.dumps(payload or {}, cls=DjangoJSONEncoder))


def notify(kind: str, customer_id: Any, payload: dict[str, Any] | None = None) -> bool:
    """
    Queue a customer notification.

    Args:
        kind: NotificationKind value
        customer_id: Primary key of the customer (User)
        payload: Template context (amounts, dates, ids)

    Returns:
        True if the notification was queued
    """
    from billing.tasks import send_billing_notification

    try:
        send_billing_notification.delay(str(kind), str(customer_id), _normalize(payload))
    except Exception as e:
        logger.error(
            f"Failed to queue billing notification: {e}",
            extra={"kind": str(kind), "customer_id": str(customer_id)},
            exc_info=True,
        )
        return False
    return True


def notify_on_commit(kind: str, customer_id: Any, payload: dict[str, Any] | None = None) -> None:
    """Queue the notification once the current transaction commits."""
    transaction.on_commit(lambda: notify(kind, customer_id, payload))


__all__ = [
    "NotificationKind",
    "notify",
    "notify_on_commit",
]
