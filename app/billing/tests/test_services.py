"""
Tests for SubscriptionService.

StripeAdapter is replaced by the mock_gateway fixture; webhooks that
would follow a gateway call are delivered explicitly where a test needs
them.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from core.exceptions import ValidationError

from billing.adapters import CouponResult, CustomerResult, InvoiceResult, SubscriptionResult
from billing.exceptions import (
    ConflictingActiveSubscriptionError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    RetryExhaustedError,
    StripeInvalidRequestError,
    SubscriptionNotFoundError,
)
from billing.models import Invoice, Subscription
from billing.services import SubscriptionService
from billing.state_machines import (
    FailureResolution,
    InvoiceStatus,
    SubscriptionState,
    SubscriptionTier,
)
from billing.tests.factories import InvoiceFactory, PaymentFailureFactory, SubscriptionFactory
from billing.tests.stripe_payloads import envelope, invoice_object, subscription_object, ts


def gateway_subscription(status="active", **kwargs):
    now = timezone.now()
    defaults = {
        "id": "sub_new",
        "status": status,
        "customer_id": "cus_test123",
        "price_id": "price_professional",
        "current_period_start": now,
        "current_period_end": now + timedelta(days=30),
    }
    defaults.update(kwargs)
    return SubscriptionResult(**defaults)


# =============================================================================
# Subscribe
# =============================================================================


class TestSubscribe:
    def test_first_subscription_starts_trial(
        self, db, frozen_now, new_user, mock_gateway, mock_notification_task
    ):
        mock_gateway.create_customer.return_value = CustomerResult(id="cus_new")
        mock_gateway.create_subscription.return_value = gateway_subscription(
            status="trialing",
            customer_id="cus_new",
            current_period_end=frozen_now + timedelta(days=14),
        )

        subscription = SubscriptionService.subscribe(
            new_user, tier="professional", payment_method_id="pm_card_visa"
        )

        assert subscription.state == SubscriptionState.TRIALING
        assert subscription.tier == SubscriptionTier.PROFESSIONAL
        assert subscription.trial_end == frozen_now + timedelta(days=14)
        assert subscription.stripe_subscription_id == "sub_new"
        assert subscription.stripe_customer_id == "cus_new"

        params = mock_gateway.create_subscription.call_args[0][0]
        assert params.trial_days == 14
        assert params.price_id == "price_professional"
        assert params.payment_method_id == "pm_card_visa"
        assert params.metadata["user_id"] == str(new_user.pk)

    def test_returning_customer_gets_no_trial(
        self, db, frozen_now, canceled_subscription, user, mock_gateway
    ):
        mock_gateway.create_subscription.return_value = gateway_subscription()

        subscription = SubscriptionService.subscribe(
            user, tier="starter", payment_method_id="pm_card_visa"
        )

        assert subscription.state == SubscriptionState.ACTIVE
        assert subscription.trial_end is None
        assert mock_gateway.create_subscription.call_args[0][0].trial_days == 0
        mock_gateway.create_customer.assert_not_called()

    def test_confirmation_sent_on_commit(
        self,
        db,
        user,
        mock_gateway,
        mock_notification_task,
        django_capture_on_commit_callbacks,
    ):
        mock_gateway.create_subscription.return_value = gateway_subscription()

        with django_capture_on_commit_callbacks(execute=True):
            SubscriptionService.subscribe(user, tier="premium", payment_method_id="pm_card_visa")

        mock_notification_task.assert_called_once()
        kind, customer_id, payload = mock_notification_task.call_args[0]
        assert kind == "confirmation"
        assert customer_id == str(user.pk)
        assert payload["plan"] == "Premium"

    def test_live_subscription_conflicts(self, db, active_subscription, user, mock_gateway):
        with pytest.raises(ConflictingActiveSubscriptionError):
            SubscriptionService.subscribe(user, tier="premium", payment_method_id="pm_card_visa")

        mock_gateway.create_subscription.assert_not_called()

    def test_unknown_tier(self, db, user, mock_gateway):
        with pytest.raises(ValidationError):
            SubscriptionService.subscribe(user, tier="enterprise", payment_method_id="pm_card_visa")

    def test_payment_method_required(self, db, user, mock_gateway):
        with pytest.raises(ValidationError):
            SubscriptionService.subscribe(user, tier="starter", payment_method_id="")

    def test_invalid_coupon(self, db, user, mock_gateway):
        mock_gateway.validate_coupon.side_effect = StripeInvalidRequestError("No such coupon")

        with pytest.raises(ValidationError) as exc_info:
            SubscriptionService.subscribe(
                user, tier="starter", payment_method_id="pm_card_visa", coupon_code="BOGUS"
            )

        assert exc_info.value.error_code == "COUPON_INVALID"
        mock_gateway.create_subscription.assert_not_called()

    def test_valid_coupon_passed_to_gateway(self, db, user, mock_gateway):
        mock_gateway.validate_coupon.return_value = CouponResult(id="LAUNCH", valid=True)
        mock_gateway.create_subscription.return_value = gateway_subscription()

        SubscriptionService.subscribe(
            user, tier="starter", payment_method_id="pm_card_visa", coupon_code="LAUNCH"
        )

        assert mock_gateway.create_subscription.call_args[0][0].coupon == "LAUNCH"

    def test_created_webhook_applied_later_merges(
        self, db, frozen_now, user, mock_gateway, deliver
    ):
        mock_gateway.create_subscription.return_value = gateway_subscription(
            id="sub_test123", status="trialing"
        )
        subscription = SubscriptionService.subscribe(
            user, tier="professional", payment_method_id="pm_card_visa"
        )

        deliver(
            envelope(
                "customer.subscription.created",
                subscription_object(status="trialing", metadata={"user_id": str(user.pk)}),
                created=ts(frozen_now),
            )
        )

        assert Subscription.objects.count() == 1
        assert Subscription.objects.get(pk=subscription.pk).last_event_at == frozen_now


class TestEnsureGatewayCustomer:
    def test_existing_customer_reused(self, db, user, mock_gateway):
        assert SubscriptionService._ensure_gateway_customer(user) == "cus_test123"
        mock_gateway.create_customer.assert_not_called()

    def test_customer_created_and_stored(self, db, new_user, mock_gateway):
        mock_gateway.create_customer.return_value = CustomerResult(id="cus_fresh")

        assert SubscriptionService._ensure_gateway_customer(new_user) == "cus_fresh"

        new_user.refresh_from_db()
        assert new_user.stripe_customer_id == "cus_fresh"


# =============================================================================
# Tier Changes
# =============================================================================


class TestChangeTier:
    def test_upgrade_then_period_end_cancel(
        self, db, frozen_now, user, mock_gateway, deliver
    ):
        """Upgrade is invoiced immediately; a later cancel keeps tier and state."""
        starter = SubscriptionFactory(
            customer=user,
            stripe_subscription_id="sub_test123",
            tier=SubscriptionTier.STARTER,
            stripe_price_id="price_starter",
        )

        subscription = SubscriptionService.change_tier(user, "premium", prorate=True)

        assert subscription.tier == SubscriptionTier.PREMIUM
        assert subscription.stripe_price_id == "price_premium"
        kwargs = mock_gateway.update_subscription.call_args[1]
        assert kwargs["proration_behavior"] == "always_invoice"
        assert kwargs["price_id"] == "price_premium"

        deliver(
            envelope(
                "invoice.created",
                invoice_object(
                    id="in_proration",
                    status="open",
                    amount_due=5000,
                    billing_reason="subscription_update",
                ),
                created=ts(frozen_now),
            )
        )
        invoice = Invoice.objects.get(stripe_invoice_id="in_proration")
        assert invoice.billing_reason == "subscription_update"
        assert invoice.amount_cents == 5000

        SubscriptionService.cancel(user, immediate=False)

        subscription = Subscription.objects.get(pk=starter.pk)
        assert subscription.cancel_at_period_end is True
        assert subscription.tier == SubscriptionTier.PREMIUM
        assert subscription.state == SubscriptionState.ACTIVE

    def test_downgrade_not_prorated(self, db, active_subscription, user, mock_gateway):
        SubscriptionService.change_tier(user, "starter", prorate=True)

        assert mock_gateway.update_subscription.call_args[1]["proration_behavior"] == "none"

    def test_upgrade_without_proration(self, db, active_subscription, user, mock_gateway):
        SubscriptionService.change_tier(user, "premium", prorate=False)

        assert mock_gateway.update_subscription.call_args[1]["proration_behavior"] == "none"

    def test_state_unchanged(self, db, past_due_subscription, user, mock_gateway):
        subscription = SubscriptionService.change_tier(user, "premium")

        assert subscription.state == SubscriptionState.PAST_DUE

    def test_same_tier_rejected(self, db, active_subscription, user, mock_gateway):
        with pytest.raises(ValidationError):
            SubscriptionService.change_tier(user, "professional")

        mock_gateway.update_subscription.assert_not_called()

    def test_no_live_subscription(self, db, canceled_subscription, user, mock_gateway):
        with pytest.raises(SubscriptionNotFoundError):
            SubscriptionService.change_tier(user, "premium")

    def test_canceled_by_id_rejected(self, db, canceled_subscription, user, mock_gateway):
        with pytest.raises(InvalidTransitionError):
            SubscriptionService.change_tier(
                user, "premium", subscription_id=canceled_subscription.id
            )


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:
    def test_immediate(self, db, frozen_now, active_subscription, user, mock_gateway):
        subscription = SubscriptionService.cancel(user, immediate=True)

        assert subscription.state == SubscriptionState.CANCELED
        assert subscription.canceled_at == frozen_now
        assert mock_gateway.cancel_subscription.call_args[0][0] == "sub_test123"

    def test_at_period_end(self, db, active_subscription, user, mock_gateway):
        subscription = SubscriptionService.cancel(user)

        assert subscription.state == SubscriptionState.ACTIVE
        assert subscription.cancel_at_period_end is True
        assert mock_gateway.update_subscription.call_args[1]["cancel_at_period_end"] is True
        mock_gateway.cancel_subscription.assert_not_called()

    def test_period_end_twice_is_noop(self, db, active_subscription, user, mock_gateway):
        SubscriptionService.cancel(user)
        SubscriptionService.cancel(user)

        assert mock_gateway.update_subscription.call_count == 1

    def test_nothing_to_cancel(self, db, user, mock_gateway):
        with pytest.raises(SubscriptionNotFoundError):
            SubscriptionService.cancel(user)

    def test_request_cancellation_of_other_customer(self, db, active_subscription, new_user, mock_gateway):
        with pytest.raises(SubscriptionNotFoundError):
            SubscriptionService.request_cancellation(
                new_user, active_subscription.id, immediate=True
            )

    def test_request_cancellation_of_canceled(self, db, canceled_subscription, user, mock_gateway):
        with pytest.raises(InvalidTransitionError):
            SubscriptionService.request_cancellation(
                user, canceled_subscription.id, immediate=True
            )


# =============================================================================
# Reactivation
# =============================================================================


class TestReactivate:
    def test_clears_pending_cancellation(self, db, user, mock_gateway):
        SubscriptionFactory(customer=user, cancel_at_period_end=True)

        subscription = SubscriptionService.reactivate(user)

        assert subscription.cancel_at_period_end is False
        assert mock_gateway.update_subscription.call_args[1]["cancel_at_period_end"] is False

    def test_live_without_pending_cancellation(self, db, active_subscription, user, mock_gateway):
        with pytest.raises(InvalidTransitionError):
            SubscriptionService.reactivate(user)

    def test_revives_canceled_subscription(
        self, db, canceled_subscription, user, mock_gateway
    ):
        mock_gateway.retrieve_subscription.return_value = gateway_subscription(
            id="sub_test123", cancel_at_period_end=True
        )

        subscription = SubscriptionService.reactivate(user)

        assert subscription.state == SubscriptionState.ACTIVE
        assert subscription.canceled_at is None
        assert mock_gateway.update_subscription.call_args[1]["cancel_at_period_end"] is False

    def test_window_closed(self, db, user, mock_gateway):
        SubscriptionFactory(
            customer=user,
            state=SubscriptionState.CANCELED,
            current_period_end=timezone.now() - timedelta(days=1),
        )
        mock_gateway.retrieve_subscription.return_value = gateway_subscription()

        with pytest.raises(InvalidTransitionError, match="window"):
            SubscriptionService.reactivate(user)

    @pytest.mark.parametrize("gateway_status", ["canceled", "incomplete_expired"])
    def test_ended_at_gateway(self, db, canceled_subscription, user, mock_gateway, gateway_status):
        mock_gateway.retrieve_subscription.return_value = gateway_subscription(
            status=gateway_status
        )

        with pytest.raises(InvalidTransitionError):
            SubscriptionService.reactivate(user)

        assert Subscription.objects.get(pk=canceled_subscription.pk).is_canceled

    def test_deleted_at_gateway(self, db, canceled_subscription, user, mock_gateway):
        mock_gateway.retrieve_subscription.side_effect = StripeInvalidRequestError(
            "No such subscription"
        )

        with pytest.raises(InvalidTransitionError):
            SubscriptionService.reactivate(user)

    def test_other_live_subscription_conflicts(self, db, canceled_subscription, user, mock_gateway):
        SubscriptionFactory(customer=user, state=SubscriptionState.ACTIVE)

        with pytest.raises(ConflictingActiveSubscriptionError):
            SubscriptionService.reactivate(user, subscription_id=canceled_subscription.id)

    def test_nothing_to_reactivate(self, db, user, mock_gateway):
        with pytest.raises(SubscriptionNotFoundError):
            SubscriptionService.reactivate(user)


# =============================================================================
# Read Models
# =============================================================================


class TestLookups:
    def test_get_subscription_prefers_live(self, db, user):
        SubscriptionFactory(customer=user, state=SubscriptionState.CANCELED)
        live = SubscriptionFactory(customer=user, state=SubscriptionState.TRIALING)

        assert SubscriptionService.get_subscription(user) == live

    def test_get_subscription_falls_back_to_latest(self, db, canceled_subscription, user):
        assert SubscriptionService.get_subscription(user) == canceled_subscription

    def test_get_subscription_none(self, db, new_user):
        with pytest.raises(SubscriptionNotFoundError):
            SubscriptionService.get_subscription(new_user)

    def test_history_newest_first(self, db, user):
        first = SubscriptionFactory(customer=user, state=SubscriptionState.CANCELED)
        second = SubscriptionFactory(customer=user, state=SubscriptionState.ACTIVE)

        assert SubscriptionService.subscription_history(user) == [second, first]


class TestInvoices:
    def test_list_newest_first(self, db, active_subscription, user):
        older = InvoiceFactory(subscription=active_subscription)
        newer = InvoiceFactory(subscription=active_subscription)
        InvoiceFactory()

        assert SubscriptionService.list_invoices(user) == [newer, older]

    def test_page_past_end_is_empty(self, db, open_invoice, user):
        assert SubscriptionService.list_invoices(user, page=2) == []

    def test_bad_page(self, db, user):
        with pytest.raises(ValidationError):
            SubscriptionService.list_invoices(user, page="first")

    def test_retry_status_with_failure(self, db, payment_failure, user):
        status = SubscriptionService.get_retry_status(user, payment_failure.invoice_id)

        assert status["stripe_invoice_id"] == "in_test123"
        assert status["invoice_status"] == InvoiceStatus.FAILED
        assert status["retry_count"] == 0
        assert status["max_attempts"] == 3
        assert status["resolved"] is False
        assert status["failure_reason"] == "Your card was declined."

    def test_retry_status_without_failure(self, db, paid_invoice, user):
        status = SubscriptionService.get_retry_status(user, paid_invoice.id)

        assert status["retry_count"] == 0
        assert status["resolved"] is True
        assert status["next_retry_at"] is None

    def test_retry_status_other_customer(self, db, paid_invoice, new_user):
        with pytest.raises(InvoiceNotFoundError):
            SubscriptionService.get_retry_status(new_user, paid_invoice.id)

    def test_retry_status_malformed_id(self, db, user):
        with pytest.raises(InvoiceNotFoundError):
            SubscriptionService.get_retry_status(user, "not-a-uuid")

    def test_retry_payment(self, db, payment_failure, user, mock_gateway):
        mock_gateway.pay_invoice.return_value = InvoiceResult(
            id="in_test123", status="paid", amount_due=2999, amount_paid=2999, currency="usd"
        )

        result = SubscriptionService.retry_invoice_payment(user, payment_failure.invoice_id)

        assert result["gateway_status"] == "paid"
        assert mock_gateway.pay_invoice.call_args[0][0] == "in_test123"
        # Ledger changes wait for the webhook
        assert Invoice.objects.get(pk=payment_failure.invoice_id).status == InvoiceStatus.FAILED

    def test_retry_paid_invoice_rejected(self, db, paid_invoice, user, mock_gateway):
        with pytest.raises(InvalidTransitionError):
            SubscriptionService.retry_invoice_payment(user, paid_invoice.id)

        mock_gateway.pay_invoice.assert_not_called()

    def test_retry_after_exhaustion_rejected(self, db, user, mock_gateway):
        failure = PaymentFailureFactory(
            invoice__subscription__customer=user,
            retry_count=3,
            resolved_at=timezone.now(),
            resolution=FailureResolution.EXHAUSTED,
        )

        with pytest.raises(RetryExhaustedError):
            SubscriptionService.retry_invoice_payment(user, failure.invoice_id)


# =============================================================================
# Coupons & Renewals
# =============================================================================


class TestValidateCoupon:
    def test_valid(self, db, mock_gateway):
        mock_gateway.validate_coupon.return_value = CouponResult(
            id="LAUNCH", valid=True, name="Launch", percent_off=20.0, duration="once"
        )

        result = SubscriptionService.validate_coupon("LAUNCH")

        assert result["valid"] is True
        assert result["percent_off"] == 20.0
        assert result["duration"] == "once"

    def test_unknown_code_is_invalid(self, db, mock_gateway):
        mock_gateway.validate_coupon.side_effect = StripeInvalidRequestError("No such coupon")

        assert SubscriptionService.validate_coupon("BOGUS") == {"code": "BOGUS", "valid": False}

    def test_empty_code(self, db, mock_gateway):
        with pytest.raises(ValidationError):
            SubscriptionService.validate_coupon("")


class TestUpcomingRenewals:
    def test_window(self, db, frozen_now):
        soon = SubscriptionFactory(current_period_end=frozen_now + timedelta(days=3))
        sooner = SubscriptionFactory(
            state=SubscriptionState.TRIALING,
            current_period_end=frozen_now + timedelta(days=1),
        )
        SubscriptionFactory(current_period_end=frozen_now + timedelta(days=10))
        SubscriptionFactory(
            current_period_end=frozen_now + timedelta(days=2),
            cancel_at_period_end=True,
        )
        SubscriptionFactory(
            state=SubscriptionState.CANCELED,
            current_period_end=frozen_now + timedelta(days=2),
        )

        assert SubscriptionService.upcoming_renewals() == [sooner, soon]

    def test_days_ahead(self, db, frozen_now):
        later = SubscriptionFactory(current_period_end=frozen_now + timedelta(days=10))

        assert SubscriptionService.upcoming_renewals(days_ahead=14) == [later]
