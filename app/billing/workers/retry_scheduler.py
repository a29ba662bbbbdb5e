"""
Payment retry scheduler.

Retries failed invoice payments on an exponential backoff schedule. Each
tick claims due PaymentFailures one at a time with a conditional update,
asks the gateway to pay the invoice and books the outcome:

- paid: the scheduler only clears its own schedule; the invoice.paid
  webhook resolves the failure and recovers the subscription
- declined, or accepted but left unpaid: retry_count + 1 and the next
  attempt is scheduled
  (1h, 2h, 4h with the default configuration)
- last failure: the failure is resolved as exhausted and the exhaustion
  policy is applied (cancel the subscription, or flag it for review)

Usage:
    from billing.workers import PaymentRetryScheduler, RetryScheduleConfig

    scheduler = PaymentRetryScheduler(RetryScheduleConfig.from_settings())
    summary = scheduler.tick()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from billing.adapters import IdempotencyKeyGenerator, StripeAdapter
from billing.exceptions import GatewayCallError
from billing.models import PaymentFailure, Subscription
from billing.notifications import NotificationKind, notify
from billing.state_machines import ExhaustionPolicy, FailureResolution

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class RetryScheduleConfig:
    """
    Retry schedule parameters.

    Attributes:
        max_attempts: Scheduler payment attempts before giving up
        initial_delay: Wait before the first attempt
        backoff_multiplier: Growth factor between attempts
        exhaustion_policy: "cancel" or "review"
        claim_ttl: How long a claimed failure is hidden from other ticks
        batch_size: Maximum failures examined per tick
        time_budget: Wall-clock limit of one tick
    """

    max_attempts: int = 3
    initial_delay: timedelta = timedelta(hours=1)
    backoff_multiplier: float = 2
    exhaustion_policy: str = ExhaustionPolicy.CANCEL.value
    claim_ttl: timedelta = timedelta(minutes=15)
    batch_size: int = 100
    time_budget: timedelta = timedelta(minutes=5)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        if self.exhaustion_policy not in ExhaustionPolicy.values:
            raise ValueError(f"Unknown exhaustion policy: {self.exhaustion_policy}")

    @classmethod
    def from_settings(cls) -> RetryScheduleConfig:
        return cls(
            max_attempts=settings.BILLING_RETRY_MAX_ATTEMPTS,
            initial_delay=timedelta(hours=settings.BILLING_RETRY_INITIAL_DELAY_HOURS),
            backoff_multiplier=settings.BILLING_RETRY_BACKOFF_MULTIPLIER,
            exhaustion_policy=str(settings.BILLING_EXHAUSTION_POLICY),
            claim_ttl=timedelta(minutes=settings.BILLING_RETRY_CLAIM_TTL_MINUTES),
            batch_size=settings.BILLING_RETRY_BATCH_SIZE,
            time_budget=timedelta(seconds=settings.BILLING_RETRY_TICK_BUDGET_SECONDS),
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before the attempt following ``attempt`` previous ones."""
        return self.initial_delay * (self.backoff_multiplier**attempt)


# =============================================================================
# Scheduler
# =============================================================================


class PaymentRetryScheduler:
    """
    Claims due payment failures and retries them through the gateway.

    Safe to run concurrently: a failure is only attempted by the tick whose
    conditional update claimed it.
    """

    def __init__(self, config: RetryScheduleConfig | None = None, gateway: Any = StripeAdapter):
        self.config = config or RetryScheduleConfig.from_settings()
        self.gateway = gateway

    def tick(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Run one scheduling pass.

        Returns:
            Summary dict with due, claimed, succeeded, rescheduled,
            exhausted, skipped, errors and budget_exhausted
        """
        now = now or timezone.now()
        deadline = time.monotonic() + self.config.time_budget.total_seconds()

        due = list(
            PaymentFailure.objects.due(now, self.config.max_attempts)
            .select_related("invoice", "subscription")[: self.config.batch_size]
        )
        summary: dict[str, Any] = {
            "due": len(due),
            "claimed": 0,
            "succeeded": 0,
            "rescheduled": 0,
            "exhausted": 0,
            "skipped": 0,
            "errors": 0,
            "budget_exhausted": False,
        }

        for failure in due:
            if time.monotonic() >= deadline:
                summary["budget_exhausted"] = True
                logger.warning(
                    "Retry tick ran out of time budget",
                    extra={"processed": summary["claimed"] + summary["skipped"], "due": len(due)},
                )
                break

            if not self._claim(failure, now):
                summary["skipped"] += 1
                continue
            summary["claimed"] += 1

            try:
                outcome = self._attempt(failure, now)
            except Exception:
                # The claim expires after claim_ttl and the next tick retries
                summary["errors"] += 1
                logger.exception(
                    "Unexpected error while retrying payment",
                    extra={"payment_failure_id": str(failure.id)},
                )
                continue
            summary[outcome] += 1

        logger.info("Payment retry tick complete", extra=summary)
        return summary

    # =========================================================================
    # Steps
    # =========================================================================

    def _claim(self, failure: PaymentFailure, now: datetime) -> bool:
        """Take ownership of a failure; False if another worker got it first."""
        updated = PaymentFailure.objects.filter(
            pk=failure.pk,
            version=failure.version,
            resolved_at__isnull=True,
            next_retry_at__lte=now,
        ).update(
            next_retry_at=now + self.config.claim_ttl,
            last_attempt_at=now,
            version=F("version") + 1,
            updated_at=now,
        )
        return updated == 1

    def _attempt(self, failure: PaymentFailure, now: datetime) -> str:
        attempt = failure.retry_count + 1
        invoice_id = failure.invoice.stripe_invoice_id
        log_context = {
            "payment_failure_id": str(failure.id),
            "invoice_id": invoice_id,
            "attempt": attempt,
        }
        logger.info("Retrying invoice payment", extra=log_context)

        try:
            result = self.gateway.pay_invoice(
                invoice_id,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "pay_invoice", failure.id, attempt
                ),
            )
        except GatewayCallError as e:
            logger.warning(
                f"Payment retry failed: {e.message}",
                extra={**log_context, "error_code": e.error_code},
            )
            return self._record_attempt_failure(
                failure.pk,
                failure.subscription_id,
                e.message,
                e.decline_code or e.stripe_code or "",
                now,
            )

        if not result.paid:
            # Accepted but not settled; the attempt counts and the next one is scheduled
            logger.warning(
                "Payment retry left invoice unpaid",
                extra={**log_context, "invoice_status": result.status},
            )
            return self._record_attempt_failure(
                failure.pk,
                failure.subscription_id,
                f"Invoice still {result.status} after payment attempt",
                "",
                now,
            )

        PaymentFailure.objects.filter(pk=failure.pk, resolved_at__isnull=True).update(
            next_retry_at=None,
            updated_at=now,
        )
        logger.info("Payment retry accepted by gateway", extra=log_context)
        return "succeeded"

    def _record_attempt_failure(
        self,
        failure_id: Any,
        subscription_id: Any,
        reason: str,
        code: str,
        now: datetime,
    ) -> str:
        with transaction.atomic():
            # Same lock order as the webhook path: subscription, then failure
            subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
            failure = (
                PaymentFailure.objects.select_for_update()
                .select_related("invoice")
                .get(pk=failure_id)
            )
            if failure.is_resolved:
                # Paid or canceled by a webhook while the call was in flight
                return "skipped"

            failure.retry_count += 1
            failure.failure_reason = reason
            failure.failure_code = code
            failure.last_attempt_at = now

            payload = {
                "invoice_id": failure.invoice.stripe_invoice_id,
                "amount_cents": failure.invoice.amount_cents,
                "currency": failure.invoice.currency,
                "attempt": failure.retry_count,
                "reason": failure.failure_reason,
            }

            if failure.retry_count >= self.config.max_attempts:
                failure.resolve(FailureResolution.EXHAUSTED, at=now)
                failure.save()
                self._apply_exhaustion_policy(subscription, now)
                transaction.on_commit(
                    lambda: notify(
                        NotificationKind.PAYMENT_FAILED,
                        subscription.customer_id,
                        {**payload, "final": True, "next_retry_at": None},
                    )
                )
                logger.warning(
                    "Payment retries exhausted",
                    extra={
                        "payment_failure_id": str(failure.id),
                        "subscription_id": str(subscription.pk),
                        "policy": self.config.exhaustion_policy,
                    },
                )
                return "exhausted"

            failure.next_retry_at = now + self.config.delay_for(failure.retry_count)
            failure.save()
            next_retry_at = failure.next_retry_at
            transaction.on_commit(
                lambda: notify(
                    NotificationKind.PAYMENT_FAILED,
                    subscription.customer_id,
                    {**payload, "final": False, "next_retry_at": next_retry_at},
                )
            )
            return "rescheduled"

    def _apply_exhaustion_policy(self, subscription: Subscription, now: datetime) -> None:
        """Caller holds the row lock on ``subscription``."""
        if self.config.exhaustion_policy == ExhaustionPolicy.REVIEW:
            subscription.needs_review = True
            subscription.save(update_fields=["needs_review", "updated_at", "version"])
            return

        if subscription.is_canceled:
            return
        subscription.cancel(at=now)
        subscription.save()

        stripe_subscription_id = subscription.stripe_subscription_id
        customer_id = subscription.customer_id
        transaction.on_commit(lambda: self._cancel_at_gateway(stripe_subscription_id))
        transaction.on_commit(
            lambda: notify(
                NotificationKind.CANCELLATION,
                customer_id,
                {"subscription_id": stripe_subscription_id, "reason": "payment_retries_exhausted"},
            )
        )

    def _cancel_at_gateway(self, stripe_subscription_id: str) -> None:
        try:
            self.gateway.cancel_subscription(
                stripe_subscription_id,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "cancel_subscription", stripe_subscription_id
                ),
            )
        except GatewayCallError as e:
            # The local row is canceled already; the gateway reconciles via webhook
            logger.error(
                f"Failed to cancel exhausted subscription at gateway: {e.message}",
                extra={"stripe_subscription_id": stripe_subscription_id},
            )


__all__ = [
    "PaymentRetryScheduler",
    "RetryScheduleConfig",
]
