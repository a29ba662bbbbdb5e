"""
Webhook reconciler.

Applies gateway events to the ledgers exactly once and in a way that does
not depend on delivery order:

1. Authenticate the payload (bad signature -> REJECTED, nothing written)
2. Lock or create the WebhookEvent row; a final row -> DUPLICATE
3. Parse the envelope into a typed event and dispatch it to its handler
4. Store the outcome (applied, stale or ignored) in the same transaction
   as the ledger change

Any other exception rolls the ledger back, leaves the event in ERROR with
attempts + 1 (written in its own transaction) and propagates so that the
webhook view answers 500 and the gateway redelivers.

Usage:
    from billing.services import WebhookReconciler

    outcome = WebhookReconciler.process_event(request.body, signature)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction

from core.services import BaseService

from billing.adapters import StripeAdapter, from_timestamp
from billing.exceptions import (
    BillingError,
    DuplicateEventError,
    StaleEventError,
    UnknownEventTypeError,
    WebhookAuthenticationError,
)
from billing.models import WebhookEvent
from billing.state_machines import ProcessOutcome, WebhookEventStatus
from billing.webhooks import handlers as webhook_handlers
from billing.webhooks.events import parse_event

if TYPE_CHECKING:
    from typing import Any

    from billing.webhooks.events import GatewayEvent


class WebhookReconciler(BaseService):
    """
    Idempotent, order-tolerant application of gateway events.

    All methods are classmethods; no instance state is kept.
    """

    @classmethod
    def process_event(cls, raw_payload: bytes, signature: str) -> ProcessOutcome:
        """
        Authenticate and apply one webhook delivery.

        Returns:
            ProcessOutcome.APPLIED, DUPLICATE or REJECTED

        Raises:
            Exception: Any unexpected handler error, after the event was
                recorded as ERROR
        """
        logger = cls.get_logger()

        try:
            envelope = StripeAdapter.verify_webhook_signature(raw_payload, signature)
        except WebhookAuthenticationError as e:
            logger.warning(
                "Webhook signature verification failed",
                extra={"error": e.message},
            )
            return ProcessOutcome.REJECTED

        if not envelope.get("id") or not envelope.get("type"):
            logger.warning("Webhook missing required fields")
            return ProcessOutcome.REJECTED

        if isinstance(raw_payload, bytes):
            raw_payload = raw_payload.decode("utf-8")
        return cls._apply(envelope, raw_payload)

    @classmethod
    def replay(cls, webhook_event: WebhookEvent) -> ProcessOutcome:
        """
        Re-apply a stored event from its raw payload.

        The payload was authenticated when it was received, so the
        signature is not checked again.
        """
        envelope = json.loads(webhook_event.raw_payload)
        return cls._apply(envelope, webhook_event.raw_payload)

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def _apply(cls, envelope: dict[str, Any], raw_payload: str) -> ProcessOutcome:
        logger = cls.get_logger()
        event_id = envelope["id"]
        log_context = {"stripe_event_id": event_id, "event_type": envelope["type"]}

        try:
            with transaction.atomic():
                record = cls._lock_record(envelope, raw_payload)
                event = parse_event(envelope)
                status = cls._dispatch(event)
                record.mark_outcome(status)
                record.save()
        except DuplicateEventError:
            logger.info("Duplicate webhook event skipped", extra=log_context)
            return ProcessOutcome.DUPLICATE
        except Exception as e:
            logger.exception(
                f"Webhook processing failed: {type(e).__name__}",
                extra=log_context,
            )
            cls._record_error(envelope, raw_payload, e)
            raise

        logger.info(
            "Webhook event processed",
            extra={**log_context, "status": status, "attempts": record.attempts},
        )
        return ProcessOutcome.APPLIED

    @classmethod
    def _lock_record(cls, envelope: dict[str, Any], raw_payload: str) -> WebhookEvent:
        """
        Lock the event row, creating it on first delivery.

        Raises:
            DuplicateEventError: The event already reached a final outcome
        """
        event_id = envelope["id"]
        record = WebhookEvent.objects.select_for_update().filter(stripe_event_id=event_id).first()

        if record is None:
            record = WebhookEvent(
                stripe_event_id=event_id,
                event_type=envelope["type"],
                event_created_at=from_timestamp(envelope.get("created")),
                raw_payload=raw_payload,
                status=WebhookEventStatus.PROCESSING,
                attempts=1,
            )
            try:
                with transaction.atomic():
                    record.save()
                return record
            except IntegrityError:
                # Concurrent delivery of the same event; wait for its outcome
                record = WebhookEvent.objects.select_for_update().get(stripe_event_id=event_id)

        if record.is_final:
            raise DuplicateEventError(
                "Event already processed",
                details={"stripe_event_id": event_id, "status": record.status},
            )

        record.status = WebhookEventStatus.PROCESSING
        record.attempts += 1
        return record

    @classmethod
    def _dispatch(cls, event: GatewayEvent) -> str:
        """Run the handler in a savepoint and map its result to a status."""
        try:
            with transaction.atomic():
                result = webhook_handlers.dispatch(event)
        except StaleEventError as e:
            cls.get_logger().info(
                "Stale webhook event discarded",
                extra={"stripe_event_id": event.event_id, **e.details},
            )
            return WebhookEventStatus.STALE
        except UnknownEventTypeError:
            return WebhookEventStatus.IGNORED

        if not result.success:
            raise BillingError(
                result.error or "Webhook handler failed",
                error_code=result.error_code,
            )
        if result.data and result.data.get("ignored"):
            return WebhookEventStatus.IGNORED
        return WebhookEventStatus.APPLIED

    @classmethod
    def _record_error(cls, envelope: dict[str, Any], raw_payload: str, error: Exception) -> None:
        """Store ERROR and the attempt in a transaction of its own."""
        try:
            with transaction.atomic():
                record, _ = WebhookEvent.objects.select_for_update().get_or_create(
                    stripe_event_id=envelope["id"],
                    defaults={
                        "event_type": envelope["type"],
                        "event_created_at": from_timestamp(envelope.get("created")),
                        "raw_payload": raw_payload,
                    },
                )
                if record.is_final:
                    return
                record.status = WebhookEventStatus.ERROR
                record.attempts += 1
                record.error_message = f"{type(error).__name__}: {error}"
                record.save()
        except Exception:
            cls.get_logger().exception(
                "Failed to record webhook error",
                extra={"stripe_event_id": envelope["id"]},
            )
