"""
Pytest fixtures for billing tests.

Fixtures provide a customer with subscriptions and invoices in various
states, a webhook delivery helper with signature verification stubbed
out, and mocks for the Stripe adapter, Redis and the notification task.

Usage:
    def test_payment_failed_moves_to_past_due(deliver, active_subscription):
        outcome = deliver(envelope("invoice.payment_failed", ...))
        assert outcome == ProcessOutcome.APPLIED
"""

import json
from datetime import datetime, timezone as dt_timezone

import pytest
from django.utils import timezone
from freezegun import freeze_time

from accounts.tests.factories import UserFactory
from billing.services import WebhookReconciler
from billing.state_machines import InvoiceStatus, SubscriptionState
from billing.tests.factories import (
    InvoiceFactory,
    PaymentFailureFactory,
    SubscriptionFactory,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture
def frozen_now():
    """Freeze the clock at NOW for the duration of the test."""
    with freeze_time(NOW):
        yield NOW


# =============================================================================
# Customer and Subscription Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Customer with a Stripe customer id."""
    return UserFactory(stripe_customer_id="cus_test123")


@pytest.fixture
def new_user(db):
    """Customer who never subscribed and has no Stripe customer yet."""
    return UserFactory()


@pytest.fixture
def incomplete_subscription(db, user):
    return SubscriptionFactory(
        customer=user,
        stripe_subscription_id="sub_test123",
        state=SubscriptionState.INCOMPLETE,
    )


@pytest.fixture
def trialing_subscription(db, user):
    return SubscriptionFactory(
        customer=user,
        stripe_subscription_id="sub_test123",
        state=SubscriptionState.TRIALING,
    )


@pytest.fixture
def active_subscription(db, user):
    return SubscriptionFactory(
        customer=user,
        stripe_subscription_id="sub_test123",
        state=SubscriptionState.ACTIVE,
    )


@pytest.fixture
def past_due_subscription(db, user):
    return SubscriptionFactory(
        customer=user,
        stripe_subscription_id="sub_test123",
        state=SubscriptionState.PAST_DUE,
    )


@pytest.fixture
def canceled_subscription(db, user):
    return SubscriptionFactory(
        customer=user,
        stripe_subscription_id="sub_test123",
        state=SubscriptionState.CANCELED,
        canceled_at=timezone.now(),
    )


# =============================================================================
# Invoice Fixtures
# =============================================================================


@pytest.fixture
def open_invoice(db, active_subscription):
    return InvoiceFactory(
        subscription=active_subscription,
        stripe_invoice_id="in_test123",
        stripe_charge_id="ch_test123",
        status=InvoiceStatus.OPEN,
    )


@pytest.fixture
def paid_invoice(db, active_subscription):
    return InvoiceFactory(
        subscription=active_subscription,
        stripe_invoice_id="in_test123",
        stripe_charge_id="ch_test123",
        status=InvoiceStatus.PAID,
        amount_paid_cents=2999,
        paid_at=timezone.now(),
    )


@pytest.fixture
def payment_failure(db, past_due_subscription):
    """Open failure (retry_count 0) on a failed invoice, due now."""
    invoice = InvoiceFactory(
        subscription=past_due_subscription,
        stripe_invoice_id="in_test123",
        status=InvoiceStatus.FAILED,
    )
    return PaymentFailureFactory(invoice=invoice, subscription=past_due_subscription)


# =============================================================================
# Webhook Delivery
# =============================================================================


@pytest.fixture
def verified_signature(mocker):
    """Accept any signature; the payload is parsed as Stripe would."""
    return mocker.patch(
        "billing.adapters.stripe_adapter.StripeAdapter.verify_webhook_signature",
        side_effect=lambda payload, signature: json.loads(payload),
    )


@pytest.fixture
def deliver(db, verified_signature):
    """
    Deliver an event envelope through WebhookReconciler.process_event.

    Returns the ProcessOutcome.
    """

    def _deliver(envelope):
        payload = json.dumps(envelope).encode("utf-8")
        return WebhookReconciler.process_event(payload, "t=1700000000,v1=test")

    return _deliver


# =============================================================================
# Collaborator Mocks
# =============================================================================


@pytest.fixture
def mock_gateway(mocker):
    """StripeAdapter as seen by SubscriptionService."""
    return mocker.patch("billing.services.subscription_service.StripeAdapter")


@pytest.fixture
def mock_notification_task(mocker):
    """Celery notification task; assert on .delay calls."""
    return mocker.patch("billing.tasks.send_billing_notification.delay")


@pytest.fixture
def mock_redis(mocker):
    """
    Mock Redis client for distributed lock tests.

    Returns a MagicMock configured for basic lock operations.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch("billing.locks.get_redis_connection", return_value=mock_client)
    return mock_client
