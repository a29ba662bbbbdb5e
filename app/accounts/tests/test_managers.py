"""
Tests for UserManager.

Covers e-mail based creation, superuser flags and the lookup of a customer
by its Stripe customer id used by the webhook handlers.
"""

import pytest

from accounts.models import User
from accounts.tests.factories import UserFactory


class TestUserManagerCreateUser:
    """Tests for UserManager.create_user()."""

    def test_creates_user_with_email_and_password(self, db):
        user = User.objects.create_user(
            email="new_customer@example.com", password="SecurePass123!"
        )

        assert user.pk is not None
        assert user.check_password("SecurePass123!") is True
        assert user.stripe_customer_id == ""

    def test_normalizes_email_domain_to_lowercase(self, db):
        user = User.objects.create_user(email="Jo.Doe@EXAMPLE.COM", password="x")

        assert user.email == "Jo.Doe@example.com"

    def test_raises_valueerror_when_email_is_empty(self, db):
        with pytest.raises(ValueError) as exc_info:
            User.objects.create_user(email="", password="TestPass123!")

        assert "Email field must be set" in str(exc_info.value)

    def test_user_without_password_has_unusable_password(self, db):
        user = User.objects.create_user(email="nopass@example.com")

        assert user.has_usable_password() is False


class TestUserManagerCreateSuperuser:
    """Tests for UserManager.create_superuser()."""

    def test_sets_staff_and_superuser_flags(self, db):
        admin = User.objects.create_superuser(
            email="ops@example.com", password="AdminPass123!"
        )

        assert admin.is_staff is True
        assert admin.is_superuser is True

    def test_rejects_superuser_without_staff_flag(self, db):
        with pytest.raises(ValueError, match="is_staff=True"):
            User.objects.create_superuser(
                email="ops2@example.com", password="x", is_staff=False
            )


class TestGetByStripeCustomer:
    """Tests for UserManager.get_by_stripe_customer()."""

    def test_returns_matching_user(self, db):
        user = UserFactory(stripe_customer_id="cus_match")
        UserFactory(stripe_customer_id="cus_other")

        assert User.objects.get_by_stripe_customer("cus_match") == user

    def test_returns_none_for_unknown_customer(self, db):
        UserFactory(stripe_customer_id="cus_known")

        assert User.objects.get_by_stripe_customer("cus_unknown") is None

    def test_blank_customer_id_never_matches(self, db):
        UserFactory()

        assert User.objects.get_by_stripe_customer("") is None
