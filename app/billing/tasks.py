"""
Celery tasks for billing.

This module provides async tasks for:
- Delivering customer notifications queued by billing.notifications
- Running the payment retry scheduler (celery-beat, hourly)
- Replaying webhook events left in ERROR (celery-beat, every 15 minutes)
- Canceling subscriptions whose pending cancellation has passed (hourly)
- Sending renewal reminders (daily)

Schedules are registered by billing/migrations/0002_add_billing_beat_schedules.py.

Usage:
    from billing.tasks import run_payment_retry_tick

    run_payment_retry_tick.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import send_mail
from django.db import transaction
from django.utils import timezone

from billing.exceptions import LockAcquisitionError, StaleRecordError
from billing.locks import DistributedLock, check_version
from billing.models import Subscription, WebhookEvent
from billing.notifications import NotificationKind, notify, notify_on_commit
from billing.state_machines import SubscriptionState, WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RETRY_TICK_LOCK_KEY = "billing:retry-tick"
ERRORED_WEBHOOK_MIN_AGE_MINUTES = 5
WEBHOOK_REPLAY_BATCH_SIZE = 100

NOTIFICATION_SUBJECTS = {
    NotificationKind.CONFIRMATION.value: "Your subscription is confirmed",
    NotificationKind.RECEIPT.value: "Payment receipt",
    NotificationKind.PAYMENT_FAILED.value: "We could not process your payment",
    NotificationKind.RENEWAL_REMINDER.value: "Your subscription renews soon",
    NotificationKind.CANCELLATION.value: "Your subscription has been canceled",
    NotificationKind.UPGRADE.value: "Your plan has changed",
    NotificationKind.REFUND.value: "Refund issued",
}


# =============================================================================
# Notifications
# =============================================================================


def _render_body(kind: str, payload: dict) -> str:
    lines = [NOTIFICATION_SUBJECTS.get(kind, "Billing update") + ".", ""]
    for key in sorted(payload):
        value = payload[key]
        if value is None or value == "":
            continue
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines)


@shared_task(
    bind=True,
    autoretry_for=(ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 5},
)
def send_billing_notification(self, kind: str, customer_id: str, payload: dict) -> dict:
    """
    Email a billing notification to a customer.

    Args:
        kind: NotificationKind value
        customer_id: Primary key of the customer
        payload: JSON-safe template context

    Returns:
        Dict with delivery status
    """
    User = get_user_model()

    try:
        customer = User.objects.get(pk=customer_id)
    except User.DoesNotExist:
        logger.warning(
            "Notification recipient not found",
            extra={"kind": kind, "customer_id": customer_id},
        )
        return {"status": "not_found", "customer_id": customer_id}

    subject = NOTIFICATION_SUBJECTS.get(kind, "Billing update")
    send_mail(
        subject=subject,
        message=_render_body(kind, payload or {}),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[customer.email],
        fail_silently=False,
    )

    logger.info(
        "Billing notification sent",
        extra={"kind": kind, "customer_id": customer_id},
    )
    return {"status": "sent", "kind": kind, "customer_id": customer_id}


# =============================================================================
# Payment Retries
# =============================================================================


@shared_task
def run_payment_retry_tick() -> dict:
    """
    Run one pass of the payment retry scheduler.

    Only one tick runs at a time; a tick that finds the lock held returns
    immediately.
    """
    from billing.workers import PaymentRetryScheduler, RetryScheduleConfig

    config = RetryScheduleConfig.from_settings()
    lock_ttl = int(config.time_budget.total_seconds()) + 60

    try:
        with DistributedLock(RETRY_TICK_LOCK_KEY, ttl=lock_ttl, blocking=False):
            summary = PaymentRetryScheduler(config).tick()
    except LockAcquisitionError:
        logger.info("Payment retry tick already running, skipping")
        return {"status": "skipped"}

    return {"status": "completed", **summary}


# =============================================================================
# Webhook Replay
# =============================================================================


@shared_task
def retry_errored_webhook_events() -> dict:
    """
    Replay webhook events left in ERROR.

    Events are retried until they reach BILLING_WEBHOOK_MAX_ATTEMPTS; older
    than a few minutes only, so that the gateway's own redelivery gets the
    first chance.

    Returns:
        Dict with counts of replayed and still failing events
    """
    from billing.services import WebhookReconciler

    threshold = timezone.now() - timedelta(minutes=ERRORED_WEBHOOK_MIN_AGE_MINUTES)
    errored = WebhookEvent.objects.filter(
        status=WebhookEventStatus.ERROR,
        attempts__lt=settings.BILLING_WEBHOOK_MAX_ATTEMPTS,
        updated_at__lt=threshold,
    ).order_by("created_at")[:WEBHOOK_REPLAY_BATCH_SIZE]

    stats = {"replayed": 0, "failed": 0}
    for webhook_event in errored:
        try:
            WebhookReconciler.replay(webhook_event)
            stats["replayed"] += 1
        except Exception as e:
            # The reconciler has already stored the error and attempt count
            stats["failed"] += 1
            logger.warning(
                f"Webhook replay failed: {type(e).__name__}",
                extra={
                    "stripe_event_id": webhook_event.stripe_event_id,
                    "attempts": webhook_event.attempts,
                },
            )

    if stats["replayed"] or stats["failed"]:
        logger.info("Errored webhook replay complete", extra=stats)
    return stats


# =============================================================================
# Subscription Sweeps
# =============================================================================


@shared_task
def expire_pending_cancellations() -> dict:
    """
    Cancel subscriptions whose pending cancellation is overdue.

    The gateway normally reports the end with customer.subscription.deleted;
    this sweep covers events that never arrived. A grace period leaves
    time for the webhook, and a row modified since it was read is skipped.
    """
    grace = timedelta(minutes=settings.BILLING_PERIOD_END_GRACE_MINUTES)
    now = timezone.now()

    candidates = list(
        Subscription.objects.filter(
            state__in=SubscriptionState.live_states(),
            cancel_at_period_end=True,
            current_period_end__lt=now - grace,
        ).values_list("pk", "version")
    )

    stats = {"canceled": 0, "skipped": 0}
    for pk, version in candidates:
        try:
            with transaction.atomic():
                subscription = check_version(Subscription, pk, version)
                subscription.cancel(at=subscription.current_period_end)
                subscription.save()
                notify_on_commit(
                    NotificationKind.CANCELLATION,
                    subscription.customer_id,
                    {"tier": subscription.tier, "canceled_at": subscription.canceled_at},
                )
        except StaleRecordError:
            stats["skipped"] += 1
            continue

        stats["canceled"] += 1
        logger.info(
            "Pending cancellation expired",
            extra={"subscription_id": str(pk)},
        )

    return stats


@shared_task
def send_renewal_reminders(days_ahead: int | None = None) -> dict:
    """
    Remind customers of upcoming renewals.

    Each period is reminded at most once; the reminded period end is kept
    in the subscription's metadata.
    """
    from billing.services import SubscriptionService

    days = days_ahead or settings.BILLING_RENEWAL_REMINDER_DAYS
    sent = 0

    for subscription in SubscriptionService.upcoming_renewals(days):
        period_end = subscription.current_period_end.isoformat()
        if subscription.metadata.get("renewal_reminder_sent_for") == period_end:
            continue

        queued = notify(
            NotificationKind.RENEWAL_REMINDER,
            subscription.customer_id,
            {
                "tier": subscription.tier,
                "renews_at": subscription.current_period_end,
            },
        )
        if not queued:
            continue

        subscription.metadata["renewal_reminder_sent_for"] = period_end
        subscription.save(update_fields=["metadata", "updated_at"])
        sent += 1

    logger.info("Renewal reminders sent", extra={"sent": sent, "days_ahead": days})
    return {"sent": sent}
