"""
Tests for WebhookReconciler.

Covers exactly-once application (duplicates), order tolerance, stale and
unknown events, error recording with redelivery, and replay of stored
events.
"""

import json
from datetime import timedelta

import pytest

from billing.exceptions import (
    BillingError,
    SubscriptionNotFoundError,
    WebhookAuthenticationError,
)
from billing.models import Invoice, PaymentFailure, Subscription, WebhookEvent
from billing.services import WebhookReconciler
from billing.state_machines import (
    InvoiceStatus,
    ProcessOutcome,
    SubscriptionState,
    SubscriptionTier,
    WebhookEventStatus,
)
from billing.tests.factories import WebhookEventFactory
from billing.tests.stripe_payloads import (
    envelope,
    invoice_object,
    subscription_object,
    ts,
)
from core.services import ServiceResult


# =============================================================================
# Authentication
# =============================================================================


class TestAuthentication:
    def test_bad_signature_rejected(self, db, mocker):
        mocker.patch(
            "billing.adapters.stripe_adapter.StripeAdapter.verify_webhook_signature",
            side_effect=WebhookAuthenticationError("Invalid webhook signature"),
        )

        outcome = WebhookReconciler.process_event(b'{"id": "evt_1"}', "t=1,v1=bad")

        assert outcome == ProcessOutcome.REJECTED
        assert not WebhookEvent.objects.exists()

    def test_missing_event_id_rejected(self, db, frozen_now, deliver):
        payload = envelope("invoice.paid", invoice_object(), created=ts(frozen_now))
        del payload["id"]

        assert deliver(payload) == ProcessOutcome.REJECTED
        assert not WebhookEvent.objects.exists()


# =============================================================================
# Applying Events
# =============================================================================


class TestApply:
    def test_event_recorded_as_applied(self, db, frozen_now, deliver, active_subscription):
        payload = envelope(
            "customer.subscription.updated",
            subscription_object(status="past_due"),
            created=ts(frozen_now),
            event_id="evt_applied",
        )

        outcome = deliver(payload)

        assert outcome == ProcessOutcome.APPLIED
        record = WebhookEvent.objects.get(stripe_event_id="evt_applied")
        assert record.status == WebhookEventStatus.APPLIED
        assert record.attempts == 1
        assert record.event_type == "customer.subscription.updated"
        assert record.event_created_at == frozen_now
        assert record.processed_at is not None
        assert json.loads(record.raw_payload) == payload
        assert Subscription.objects.get(pk=active_subscription.pk).is_past_due

    def test_unknown_event_type_ignored(self, db, frozen_now, deliver):
        outcome = deliver(
            envelope(
                "customer.tax_id.created",
                {"id": "txi_123"},
                created=ts(frozen_now),
                event_id="evt_unknown",
            )
        )

        assert outcome == ProcessOutcome.APPLIED
        assert WebhookEvent.objects.get(stripe_event_id="evt_unknown").status == (
            WebhookEventStatus.IGNORED
        )

    def test_untracked_object_ignored(self, db, frozen_now, deliver, user):
        deliver(
            envelope(
                "customer.subscription.created",
                subscription_object(id="sub_legacy", price="price_legacy"),
                created=ts(frozen_now),
                event_id="evt_legacy",
            )
        )

        assert WebhookEvent.objects.get(stripe_event_id="evt_legacy").status == (
            WebhookEventStatus.IGNORED
        )

    def test_stale_event_recorded_and_discarded(
        self, db, frozen_now, deliver, active_subscription
    ):
        active_subscription.last_event_at = frozen_now
        active_subscription.save()
        version = Subscription.objects.get(pk=active_subscription.pk).version

        outcome = deliver(
            envelope(
                "customer.subscription.updated",
                subscription_object(status="past_due"),
                created=ts(frozen_now - timedelta(minutes=10)),
                event_id="evt_stale",
            )
        )

        assert outcome == ProcessOutcome.APPLIED
        assert WebhookEvent.objects.get(stripe_event_id="evt_stale").status == (
            WebhookEventStatus.STALE
        )
        subscription = Subscription.objects.get(pk=active_subscription.pk)
        assert subscription.state == SubscriptionState.ACTIVE
        assert subscription.version == version


# =============================================================================
# Idempotency
# =============================================================================


class TestIdempotency:
    def test_duplicate_subscription_created(self, db, frozen_now, deliver, user):
        """Second delivery of the same event id changes nothing."""
        payload = envelope(
            "customer.subscription.created",
            subscription_object(
                id="sub_new",
                status="trialing",
                trial_end=ts(frozen_now + timedelta(days=14)),
                metadata={"user_id": str(user.pk)},
            ),
            created=ts(frozen_now),
            event_id="evt_created",
        )

        first = deliver(payload)
        snapshot = Subscription.objects.values().get(stripe_subscription_id="sub_new")
        second = deliver(payload)

        assert first == ProcessOutcome.APPLIED
        assert second == ProcessOutcome.DUPLICATE
        assert Subscription.objects.values().get(stripe_subscription_id="sub_new") == snapshot
        assert Subscription.objects.count() == 1
        assert WebhookEvent.objects.get(stripe_event_id="evt_created").attempts == 1

    def test_duplicate_payment_failed_opens_one_failure(
        self, db, frozen_now, deliver, active_subscription
    ):
        payload = envelope(
            "invoice.payment_failed",
            invoice_object(status="open"),
            created=ts(frozen_now),
        )

        deliver(payload)
        assert deliver(payload) == ProcessOutcome.DUPLICATE

        assert PaymentFailure.objects.count() == 1

    def test_stale_and_ignored_are_final(self, db, frozen_now, deliver):
        payload = envelope("customer.updated", {"id": "cus_1"}, created=ts(frozen_now))

        deliver(payload)

        assert deliver(payload) == ProcessOutcome.DUPLICATE


# =============================================================================
# Delivery Order
# =============================================================================


class TestOrderTolerance:
    @pytest.mark.parametrize("reverse", [False, True])
    def test_subscription_updates_in_any_order(
        self, db, frozen_now, deliver, active_subscription, reverse
    ):
        first = envelope(
            "customer.subscription.updated",
            subscription_object(status="past_due"),
            created=ts(frozen_now - timedelta(minutes=2)),
        )
        second = envelope(
            "customer.subscription.updated",
            subscription_object(status="active", price="price_premium"),
            created=ts(frozen_now - timedelta(minutes=1)),
        )
        events = [second, first] if reverse else [first, second]

        for payload in events:
            deliver(payload)

        subscription = Subscription.objects.get(pk=active_subscription.pk)
        assert subscription.state == SubscriptionState.ACTIVE
        assert subscription.tier == SubscriptionTier.PREMIUM
        assert subscription.last_event_at == frozen_now - timedelta(minutes=1)

    def test_invoice_paid_before_created(self, db, frozen_now, deliver, active_subscription):
        paid = envelope(
            "invoice.paid",
            invoice_object(status="paid", amount_paid=2999),
            created=ts(frozen_now),
        )
        created = envelope(
            "invoice.created",
            invoice_object(status="draft"),
            created=ts(frozen_now - timedelta(minutes=1)),
            event_id="evt_late_created",
        )

        deliver(paid)
        deliver(created)

        assert Invoice.objects.get(stripe_invoice_id="in_test123").status == InvoiceStatus.PAID
        assert WebhookEvent.objects.get(stripe_event_id="evt_late_created").status == (
            WebhookEventStatus.STALE
        )

    def test_recovery_then_late_failure(self, db, frozen_now, deliver, payment_failure):
        """A failure notice delivered after the payment does not reopen collection."""
        deliver(
            envelope(
                "invoice.paid",
                invoice_object(status="paid", amount_paid=2999),
                created=ts(frozen_now),
            )
        )
        deliver(
            envelope(
                "invoice.payment_failed",
                invoice_object(status="open"),
                created=ts(frozen_now - timedelta(minutes=5)),
            )
        )

        assert Subscription.objects.get(pk=payment_failure.subscription_id).state == (
            SubscriptionState.ACTIVE
        )
        assert PaymentFailure.objects.unresolved().count() == 0


# =============================================================================
# Errors and Redelivery
# =============================================================================


class TestErrors:
    def test_handler_error_recorded_and_raised(self, db, frozen_now, deliver):
        payload = envelope(
            "invoice.created",
            invoice_object(subscription="sub_later"),
            created=ts(frozen_now),
            event_id="evt_early",
        )

        with pytest.raises(SubscriptionNotFoundError):
            deliver(payload)

        record = WebhookEvent.objects.get(stripe_event_id="evt_early")
        assert record.status == WebhookEventStatus.ERROR
        assert record.attempts == 1
        assert "SubscriptionNotFoundError" in record.error_message
        assert not Invoice.objects.exists()

    def test_redelivery_after_error_applies(self, db, frozen_now, deliver, user):
        payload = envelope(
            "invoice.created",
            invoice_object(subscription="sub_test123", status="open"),
            created=ts(frozen_now),
            event_id="evt_early",
        )
        with pytest.raises(SubscriptionNotFoundError):
            deliver(payload)

        deliver(
            envelope(
                "customer.subscription.created",
                subscription_object(metadata={"user_id": str(user.pk)}),
                created=ts(frozen_now - timedelta(minutes=1)),
            )
        )
        outcome = deliver(payload)

        assert outcome == ProcessOutcome.APPLIED
        record = WebhookEvent.objects.get(stripe_event_id="evt_early")
        assert record.status == WebhookEventStatus.APPLIED
        assert record.attempts == 2
        assert record.error_message == ""
        assert Invoice.objects.get(stripe_invoice_id="in_test123").status == InvoiceStatus.OPEN

    def test_failed_handler_result_recorded(self, db, frozen_now, deliver, mocker):
        mocker.patch(
            "billing.webhooks.handlers.dispatch",
            return_value=ServiceResult.failure("Unsupported invoice shape", "INVOICE_UNSUPPORTED"),
        )

        with pytest.raises(BillingError):
            deliver(
                envelope(
                    "invoice.created",
                    invoice_object(),
                    created=ts(frozen_now),
                    event_id="evt_unsupported",
                )
            )

        record = WebhookEvent.objects.get(stripe_event_id="evt_unsupported")
        assert record.status == WebhookEventStatus.ERROR
        assert "[INVOICE_UNSUPPORTED] Unsupported invoice shape" in record.error_message

    def test_ledger_rolled_back_on_error(self, db, frozen_now, deliver, active_subscription, mocker):
        mocker.patch(
            "billing.services.invoice_ledger.record_invoice_failed",
            side_effect=RuntimeError("database went away"),
        )

        with pytest.raises(RuntimeError):
            deliver(
                envelope(
                    "invoice.payment_failed",
                    invoice_object(status="open"),
                    created=ts(frozen_now),
                )
            )

        # The invoice row written before the failure is rolled back too
        assert not Invoice.objects.exists()
        assert Subscription.objects.get(pk=active_subscription.pk).state == (
            SubscriptionState.ACTIVE
        )


# =============================================================================
# Replay
# =============================================================================


class TestReplay:
    def test_replay_errored_event(self, db, frozen_now, active_subscription):
        payload = envelope(
            "invoice.created",
            invoice_object(status="open"),
            created=ts(frozen_now),
            event_id="evt_replay",
        )
        record = WebhookEventFactory(
            stripe_event_id="evt_replay",
            event_type="invoice.created",
            raw_payload=json.dumps(payload),
            status=WebhookEventStatus.ERROR,
            attempts=2,
        )

        outcome = WebhookReconciler.replay(record)

        assert outcome == ProcessOutcome.APPLIED
        record = WebhookEvent.objects.get(pk=record.pk)
        assert record.status == WebhookEventStatus.APPLIED
        assert record.attempts == 3
        assert Invoice.objects.filter(stripe_invoice_id="in_test123").exists()

    def test_replay_final_event_is_duplicate(self, db, frozen_now):
        record = WebhookEventFactory(status=WebhookEventStatus.APPLIED)

        assert WebhookReconciler.replay(record) == ProcessOutcome.DUPLICATE
