"""
Pytest fixtures for Stripe adapter tests.

Sections:
    - Mock Stripe Objects
    - Mock Stripe Errors
    - Mock Stripe API Resources
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe


# =============================================================================
# Mock Stripe Objects
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@dataclass
class MockStripeList:
    items: list[MockStripeObject]
    has_more: bool = False

    @property
    def data(self) -> list[MockStripeObject]:
        return self.items


@pytest.fixture
def mock_subscription():
    """Create a mock Subscription response; the period sits on the item."""

    def _create(
        id: str = "sub_test123",
        status: str = "active",
        customer: str | dict = "cus_test123",
        price: str = "price_professional",
        current_period_start: int = 1772323200,
        current_period_end: int = 1775001600,
        trial_end: int | None = None,
        cancel_at_period_end: bool = False,
        latest_invoice: str | dict | None = "in_test123",
        metadata: dict | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "subscription",
                "status": status,
                "customer": customer,
                "items": {
                    "object": "list",
                    "data": [
                        {
                            "id": "si_test123",
                            "price": {"id": price},
                            "current_period_start": current_period_start,
                            "current_period_end": current_period_end,
                        }
                    ],
                },
                "trial_end": trial_end,
                "cancel_at_period_end": cancel_at_period_end,
                "canceled_at": None,
                "latest_invoice": latest_invoice,
                "metadata": metadata or {},
            }
        )

    return _create


@pytest.fixture
def mock_invoice():
    def _create(
        id: str = "in_test123",
        status: str = "paid",
        amount_due: int = 2999,
        amount_paid: int = 2999,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "invoice",
                "status": status,
                "amount_due": amount_due,
                "amount_paid": amount_paid,
                "currency": "usd",
                "subscription": "sub_test123",
                "hosted_invoice_url": f"https://invoice.stripe.com/i/{id}",
            }
        )

    return _create


@pytest.fixture
def mock_coupon():
    def _create(id: str = "LAUNCH20", valid: bool = True) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "coupon",
                "valid": valid,
                "name": "Launch discount",
                "percent_off": 20.0,
                "amount_off": None,
                "currency": None,
                "duration": "repeating",
                "duration_in_months": 3,
            }
        )

    return _create


# =============================================================================
# Mock Stripe Errors
# =============================================================================


@pytest.fixture
def card_error():
    """Create a Stripe CardError."""

    def _create(
        message: str = "Your card was declined.",
        code: str = "card_declined",
        decline_code: str | None = "generic_decline",
    ) -> stripe.CardError:
        error = stripe.CardError(message=message, param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    def _create(
        message: str = "No such subscription: 'sub_missing'",
        param: str | None = "id",
        code: str = "resource_missing",
    ) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message=message, param=param, code=code)

    return _create


# =============================================================================
# Mock Stripe API Resources
# =============================================================================


@pytest.fixture
def mock_stripe_subscription(mock_subscription):
    """Mock stripe.Subscription API."""
    with patch("stripe.Subscription") as mock:
        mock.create.return_value = mock_subscription()
        mock.modify.return_value = mock_subscription()
        mock.cancel.return_value = mock_subscription(status="canceled")
        mock.retrieve.return_value = mock_subscription()
        yield mock


@pytest.fixture
def mock_stripe_invoice(mock_invoice):
    with patch("stripe.Invoice") as mock:
        mock.pay.return_value = mock_invoice()
        mock.list.return_value = MockStripeList(items=[mock_invoice(), mock_invoice(id="in_old")])
        yield mock


@pytest.fixture
def mock_stripe_customer():
    with patch("stripe.Customer") as mock:
        mock.create.return_value = MockStripeObject(
            {"id": "cus_new", "object": "customer", "email": "a@example.com", "metadata": {}}
        )
        yield mock


@pytest.fixture
def mock_stripe_coupon(mock_coupon):
    with patch("stripe.Coupon") as mock:
        mock.retrieve.return_value = mock_coupon()
        yield mock


@pytest.fixture
def mock_stripe_webhook():
    """Mock stripe.Webhook API."""
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = MockStripeObject(
            {
                "id": "evt_test123",
                "type": "invoice.paid",
                "created": 1773144000,
                "data": {"object": {"id": "in_test123", "object": "invoice"}},
            }
        )
        yield mock
