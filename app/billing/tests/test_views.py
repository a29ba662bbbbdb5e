"""
Tests for the billing API and the Stripe webhook endpoint.

This module tests:
- Webhook status codes (400 rejected, 500 processing error, 200 otherwise)
- Authentication and permissions of the customer and admin endpoints
- Domain errors mapped to their HTTP status with error_code
"""

import json
from datetime import timedelta

import pytest
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from accounts.tests.factories import UserFactory
from billing.adapters import CouponResult, InvoiceResult, SubscriptionResult
from billing.models import Subscription, WebhookEvent
from billing.state_machines import SubscriptionState, WebhookEventStatus
from billing.tests.factories import InvoiceFactory, SubscriptionFactory
from billing.tests.stripe_payloads import envelope, invoice_object, subscription_object, ts

BASE_URL = "/api/v1/payments"


# =============================================================================
# Test Fixtures
# =============================================================================


def client_for(user):
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {refresh.access_token}")
    return client


@pytest.fixture
def api_client():
    """Unauthenticated API client."""
    return APIClient()


@pytest.fixture
def authenticated_client(user):
    """API client authenticated as the customer with JWT."""
    return client_for(user)


@pytest.fixture
def staff_client(db):
    return client_for(UserFactory(is_staff=True))


def post_webhook(client, payload, signature="t=1700000000,v1=test"):
    headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
    return client.post(
        f"{BASE_URL}/webhook/",
        data=json.dumps(payload),
        content_type="application/json",
        **headers,
    )


# =============================================================================
# Webhook Endpoint
# =============================================================================


@pytest.mark.django_db
class TestWebhookEndpoint:
    def test_missing_signature(self, api_client):
        response = post_webhook(api_client, {"id": "evt_1"}, signature="")

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_invalid_signature(self, api_client, active_subscription):
        payload = envelope(
            "customer.subscription.deleted",
            subscription_object(status="canceled"),
            created=ts(timezone.now()),
        )

        response = post_webhook(api_client, payload, signature="t=1700000000,v1=forged")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert not WebhookEvent.objects.exists()
        assert Subscription.objects.get(pk=active_subscription.pk).is_live

    def test_applied(self, api_client, verified_signature, active_subscription):
        payload = envelope(
            "customer.subscription.updated",
            subscription_object(status="past_due"),
            created=ts(timezone.now()),
        )

        response = post_webhook(api_client, payload)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"received": True, "outcome": "applied"}

    def test_duplicate_acknowledged(self, api_client, verified_signature, active_subscription):
        payload = envelope(
            "customer.subscription.updated",
            subscription_object(status="past_due"),
            created=ts(timezone.now()),
        )
        post_webhook(api_client, payload)

        response = post_webhook(api_client, payload)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["outcome"] == "duplicate"

    def test_processing_error_requests_redelivery(self, api_client, verified_signature):
        payload = envelope(
            "invoice.created",
            invoice_object(subscription="sub_missing"),
            created=ts(timezone.now()),
            event_id="evt_orphan",
        )

        response = post_webhook(api_client, payload)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert WebhookEvent.objects.get(stripe_event_id="evt_orphan").status == (
            WebhookEventStatus.ERROR
        )

    def test_get_not_allowed(self, api_client):
        response = api_client.get(f"{BASE_URL}/webhook/")

        assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED


# =============================================================================
# Plans
# =============================================================================


@pytest.mark.django_db
class TestPlanList:
    def test_public_and_cheapest_first(self, api_client):
        response = api_client.get(f"{BASE_URL}/plans/")

        assert response.status_code == status.HTTP_200_OK
        assert [plan["tier"] for plan in response.json()] == [
            "starter",
            "professional",
            "premium",
        ]
        assert response.json()[1]["price_cents"] == 2999


# =============================================================================
# Subscription
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionEndpoints:
    def test_requires_authentication(self, api_client):
        response = api_client.get(f"{BASE_URL}/subscription/")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_get_current(self, authenticated_client, active_subscription):
        response = authenticated_client.get(f"{BASE_URL}/subscription/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["id"] == str(active_subscription.id)
        assert data["state"] == "active"
        assert data["is_live"] is True
        assert "version" not in data

    def test_get_none(self, authenticated_client):
        response = authenticated_client.get(f"{BASE_URL}/subscription/")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "SUBSCRIPTION_NOT_FOUND"

    def test_history(self, authenticated_client, canceled_subscription, user):
        SubscriptionFactory(customer=user)

        response = authenticated_client.get(f"{BASE_URL}/subscription/history/")

        assert response.status_code == status.HTTP_200_OK
        assert len(response.json()) == 2

    def test_subscribe(self, authenticated_client, user, mock_gateway):
        now = timezone.now()
        mock_gateway.create_subscription.return_value = SubscriptionResult(
            id="sub_new",
            status="trialing",
            customer_id="cus_test123",
            current_period_start=now,
            current_period_end=now + timedelta(days=14),
            trial_end=now + timedelta(days=14),
        )

        response = authenticated_client.post(
            f"{BASE_URL}/subscription/subscribe/",
            {"tier": "professional", "payment_method_id": "pm_card_visa"},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["state"] == "trialing"
        assert response.json()["tier"] == "professional"

    def test_subscribe_unknown_tier(self, authenticated_client, mock_gateway):
        response = authenticated_client.post(
            f"{BASE_URL}/subscription/subscribe/",
            {"tier": "enterprise", "payment_method_id": "pm_card_visa"},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        mock_gateway.create_subscription.assert_not_called()

    def test_subscribe_while_live_conflicts(
        self, authenticated_client, active_subscription, mock_gateway
    ):
        response = authenticated_client.post(
            f"{BASE_URL}/subscription/subscribe/",
            {"tier": "premium", "payment_method_id": "pm_card_visa"},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error_code"] == "ACTIVE_SUBSCRIPTION_EXISTS"

    def test_change_tier(self, authenticated_client, active_subscription, mock_gateway):
        response = authenticated_client.post(
            f"{BASE_URL}/subscription/change-tier/",
            {"tier": "premium"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["tier"] == "premium"
        assert mock_gateway.update_subscription.call_args[1]["proration_behavior"] == (
            "always_invoice"
        )

    def test_cancel_at_period_end(self, authenticated_client, active_subscription, mock_gateway):
        response = authenticated_client.post(f"{BASE_URL}/subscription/cancel/", {}, format="json")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["cancel_at_period_end"] is True
        assert response.json()["state"] == "active"

    def test_cancel_immediately(self, authenticated_client, active_subscription, mock_gateway):
        response = authenticated_client.post(
            f"{BASE_URL}/subscription/cancel/",
            {"immediate": True},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "canceled"

    def test_reactivate_without_pending_cancellation(
        self, authenticated_client, active_subscription, mock_gateway
    ):
        response = authenticated_client.post(f"{BASE_URL}/subscription/reactivate/")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_reactivate_canceled(self, authenticated_client, canceled_subscription, mock_gateway):
        mock_gateway.retrieve_subscription.return_value = SubscriptionResult(
            id="sub_test123", status="active", customer_id="cus_test123"
        )

        response = authenticated_client.post(f"{BASE_URL}/subscription/reactivate/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == SubscriptionState.ACTIVE


# =============================================================================
# Invoices
# =============================================================================


@pytest.mark.django_db
class TestInvoiceEndpoints:
    def test_list_only_own_invoices(self, authenticated_client, open_invoice):
        InvoiceFactory()

        response = authenticated_client.get(f"{BASE_URL}/invoices/")

        assert response.status_code == status.HTTP_200_OK
        assert [i["stripe_invoice_id"] for i in response.json()] == ["in_test123"]

    def test_retry_status(self, authenticated_client, payment_failure):
        response = authenticated_client.get(
            f"{BASE_URL}/invoices/{payment_failure.invoice_id}/retry-status/"
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["retry_count"] == 0
        assert data["max_attempts"] == 3
        assert data["resolved"] is False

    def test_retry_status_unknown_invoice(self, authenticated_client):
        response = authenticated_client.get(f"{BASE_URL}/invoices/in_nope/retry-status/")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "INVOICE_NOT_FOUND"

    def test_retry_now(self, authenticated_client, payment_failure, mock_gateway):
        mock_gateway.pay_invoice.return_value = InvoiceResult(
            id="in_test123", status="open", amount_due=2999, amount_paid=0, currency="usd"
        )

        response = authenticated_client.post(
            f"{BASE_URL}/invoices/{payment_failure.invoice_id}/retry/"
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json()["gateway_status"] == "open"


# =============================================================================
# Coupons & Admin
# =============================================================================


@pytest.mark.django_db
class TestCouponValidate:
    def test_valid_coupon(self, authenticated_client, mock_gateway):
        mock_gateway.validate_coupon.return_value = CouponResult(
            id="LAUNCH", valid=True, percent_off=20.0
        )

        response = authenticated_client.post(
            f"{BASE_URL}/coupons/validate/", {"code": "LAUNCH"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["valid"] is True
        assert response.json()["percent_off"] == 20.0

    def test_code_required(self, authenticated_client, mock_gateway):
        response = authenticated_client.post(f"{BASE_URL}/coupons/validate/", {}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
class TestUpcomingRenewals:
    def test_staff_only(self, authenticated_client):
        response = authenticated_client.get(f"{BASE_URL}/admin/upcoming-renewals/")

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_lists_renewals(self, staff_client):
        subscription = SubscriptionFactory(current_period_end=timezone.now() + timedelta(days=2))

        response = staff_client.get(f"{BASE_URL}/admin/upcoming-renewals/")

        assert response.status_code == status.HTTP_200_OK
        assert [row["id"] for row in response.json()] == [str(subscription.id)]
        assert response.json()[0]["customer_email"] == subscription.customer.email

    @pytest.mark.parametrize("days", ["soon", "0"])
    def test_bad_days(self, staff_client, days):
        response = staff_client.get(f"{BASE_URL}/admin/upcoming-renewals/", {"days": days})

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, api_client):
        response = api_client.get("/health/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["database"] == "connected"
