"""
Stripe API adapter for subscription billing.

All Stripe calls go through StripeAdapter; no other module imports the
stripe SDK. The adapter configures the API key and timeout, attaches
idempotency keys, logs every call with its duration and translates SDK
errors into the GatewayCallError tree.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)

Usage:
    from billing.adapters import StripeAdapter, IdempotencyKeyGenerator

    result = StripeAdapter.pay_invoice(
        "in_xxx",
        idempotency_key=IdempotencyKeyGenerator.generate("pay_invoice", failure.id, 2),
    )
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any

import stripe
from django.conf import settings

from billing.exceptions import (
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInsufficientFundsError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
    WebhookAuthenticationError,
)


# =============================================================================
# Data Types
# =============================================================================


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert a Stripe epoch timestamp to an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


@dataclass
class CreateSubscriptionParams:
    """
    Parameters for creating a Stripe Subscription.

    Attributes:
        customer_id: Stripe Customer ID (cus_xxx)
        price_id: Stripe Price ID of the plan
        idempotency_key: Unique key for idempotent creation
        payment_method_id: Default payment method to attach
        trial_days: Trial length in days (0 = no trial)
        coupon: Coupon code applied to the subscription
        metadata: Key-value pairs attached to the subscription
    """

    customer_id: str
    price_id: str
    idempotency_key: str
    payment_method_id: str | None = None
    trial_days: int = 0
    coupon: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.customer_id:
            raise ValueError("customer_id is required")
        if not self.price_id:
            raise ValueError("price_id is required")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if self.trial_days < 0:
            raise ValueError("trial_days must not be negative")


@dataclass
class CustomerResult:
    id: str
    email: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionResult:
    """
    Result from Stripe Subscription operations.

    Period fields fall back to the first subscription item, where newer
    Stripe API versions report them.
    """

    id: str
    status: str
    customer_id: str
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    latest_invoice_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvoiceResult:
    id: str
    status: str
    amount_due: int
    amount_paid: int
    currency: str
    subscription_id: str | None = None
    hosted_invoice_url: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def paid(self) -> bool:
        return self.status == "paid"


@dataclass
class CouponResult:
    id: str
    valid: bool
    name: str | None = None
    percent_off: float | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always yields the same key, so a
    retried call after a timeout is deduplicated by Stripe.

    Example:
        key = IdempotencyKeyGenerator.generate("pay_invoice", failure.id, attempt=2)
        # "pay_invoice:550e8400-e29b-41d4-a716-446655440000:2:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str | int,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    All methods are classmethods - no instance state is maintained.
    Thread-safe for use from Celery workers.

    Usage:
        customer = StripeAdapter.create_customer(user.email, user.id, key)
        subscription = StripeAdapter.create_subscription(params)
        StripeAdapter.cancel_subscription("sub_xxx")
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _call(cls, operation: str, log_context: dict[str, Any], func, *args, **kwargs):
        """
        Run one SDK call with configuration, timing and error translation.

        Raises:
            GatewayCallError: Any SDK failure, translated
        """
        cls._configure_stripe()
        logger = cls.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return result

    # =========================================================================
    # Customers
    # =========================================================================

    @classmethod
    def create_customer(
        cls,
        email: str,
        user_id: Any,
        idempotency_key: str,
    ) -> CustomerResult:
        """
        Create a Stripe Customer for a user.

        The user id is stored in the customer metadata so that webhook
        events can be traced back to the account.
        """
        customer = cls._call(
            "create_customer",
            {"user_id": str(user_id), "idempotency_key": idempotency_key},
            stripe.Customer.create,
            email=email,
            metadata={"user_id": str(user_id)},
            idempotency_key=idempotency_key,
        )
        data = customer.to_dict()
        return CustomerResult(
            id=data["id"],
            email=data.get("email"),
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @classmethod
    def create_subscription(cls, params: CreateSubscriptionParams) -> SubscriptionResult:
        """
        Create a Stripe Subscription.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInvalidRequestError: Invalid price, customer or coupon
            StripeAPIUnavailableError: Stripe service unavailable
        """
        request: dict[str, Any] = {
            "customer": params.customer_id,
            "items": [{"price": params.price_id}],
            "metadata": params.metadata,
            "expand": ["latest_invoice"],
            "idempotency_key": params.idempotency_key,
        }
        if params.payment_method_id:
            request["default_payment_method"] = params.payment_method_id
        if params.trial_days:
            request["trial_period_days"] = params.trial_days
        if params.coupon:
            request["discounts"] = [{"coupon": params.coupon}]

        subscription = cls._call(
            "create_subscription",
            {
                "customer_id": params.customer_id,
                "price_id": params.price_id,
                "idempotency_key": params.idempotency_key,
            },
            stripe.Subscription.create,
            **request,
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def update_subscription(
        cls,
        subscription_id: str,
        price_id: str | None = None,
        proration_behavior: str | None = None,
        cancel_at_period_end: bool | None = None,
        idempotency_key: str | None = None,
    ) -> SubscriptionResult:
        """
        Change the price or the pending-cancellation flag of a subscription.

        A price change swaps the price on the existing subscription item.
        proration_behavior is passed through ("always_invoice" bills the
        difference immediately, "none" defers to the next cycle).
        """
        request: dict[str, Any] = {}
        if price_id is not None:
            current = cls.retrieve_subscription(subscription_id)
            items = (current.raw_response.get("items") or {}).get("data") or []
            if items:
                request["items"] = [{"id": items[0]["id"], "price": price_id}]
            else:
                request["items"] = [{"price": price_id}]
        if proration_behavior is not None:
            request["proration_behavior"] = proration_behavior
        if cancel_at_period_end is not None:
            request["cancel_at_period_end"] = cancel_at_period_end
        if idempotency_key:
            request["idempotency_key"] = idempotency_key

        subscription = cls._call(
            "update_subscription",
            {
                "subscription_id": subscription_id,
                "price_id": price_id,
                "proration_behavior": proration_behavior,
                "cancel_at_period_end": cancel_at_period_end,
            },
            stripe.Subscription.modify,
            subscription_id,
            **request,
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def cancel_subscription(
        cls,
        subscription_id: str,
        idempotency_key: str | None = None,
    ) -> SubscriptionResult:
        """Cancel a subscription at the gateway immediately."""
        request: dict[str, Any] = {}
        if idempotency_key:
            request["idempotency_key"] = idempotency_key
        subscription = cls._call(
            "cancel_subscription",
            {"subscription_id": subscription_id},
            stripe.Subscription.cancel,
            subscription_id,
            **request,
        )
        return cls._to_subscription_result(subscription)

    @classmethod
    def retrieve_subscription(cls, subscription_id: str) -> SubscriptionResult:
        subscription = cls._call(
            "retrieve_subscription",
            {"subscription_id": subscription_id},
            stripe.Subscription.retrieve,
            subscription_id,
        )
        return cls._to_subscription_result(subscription)

    # =========================================================================
    # Invoices
    # =========================================================================

    @classmethod
    def pay_invoice(cls, invoice_id: str, idempotency_key: str) -> InvoiceResult:
        """
        Attempt to collect an open invoice now.

        The outcome is also delivered as invoice.paid or
        invoice.payment_failed webhook events.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            GatewayCallError: Any other gateway failure
        """
        invoice = cls._call(
            "pay_invoice",
            {"invoice_id": invoice_id, "idempotency_key": idempotency_key},
            stripe.Invoice.pay,
            invoice_id,
            idempotency_key=idempotency_key,
        )
        return cls._to_invoice_result(invoice)

    @classmethod
    def list_invoices(cls, customer_id: str, limit: int = 20) -> list[InvoiceResult]:
        invoices = cls._call(
            "list_invoices",
            {"customer_id": customer_id, "limit": limit},
            stripe.Invoice.list,
            customer=customer_id,
            limit=limit,
        )
        return [cls._to_invoice_result(invoice) for invoice in invoices.data]

    # =========================================================================
    # Coupons
    # =========================================================================

    @classmethod
    def validate_coupon(cls, code: str) -> CouponResult:
        """
        Look up a coupon.

        Raises:
            StripeInvalidRequestError: Coupon does not exist
        """
        coupon = cls._call(
            "validate_coupon",
            {"coupon": code},
            stripe.Coupon.retrieve,
            code,
        )
        data = coupon.to_dict()
        return CouponResult(
            id=data["id"],
            valid=bool(data.get("valid")),
            name=data.get("name"),
            percent_off=data.get("percent_off"),
            amount_off=data.get("amount_off"),
            currency=data.get("currency"),
            duration=data.get("duration"),
            duration_in_months=data.get("duration_in_months"),
            raw_response=data,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(
        cls,
        payload: bytes,
        signature: str,
    ) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Returns:
            Parsed event envelope dict

        Raises:
            WebhookAuthenticationError: Missing, malformed or invalid signature
        """
        if not signature:
            raise WebhookAuthenticationError("Missing webhook signature")
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookAuthenticationError(
                "Invalid webhook signature",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise WebhookAuthenticationError(
                "Malformed webhook payload",
                details={"error": str(e)},
            ) from e
        return event.to_dict()

    # =========================================================================
    # Result Mapping
    # =========================================================================

    @staticmethod
    def _to_subscription_result(subscription: Any) -> SubscriptionResult:
        data = subscription.to_dict()
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        latest_invoice = data.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get("id")
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return SubscriptionResult(
            id=data["id"],
            status=data.get("status", ""),
            customer_id=customer or "",
            price_id=price.get("id") if isinstance(price, dict) else price,
            current_period_start=from_timestamp(
                data.get("current_period_start") or first_item.get("current_period_start")
            ),
            current_period_end=from_timestamp(
                data.get("current_period_end") or first_item.get("current_period_end")
            ),
            trial_end=from_timestamp(data.get("trial_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=from_timestamp(data.get("canceled_at")),
            latest_invoice_id=latest_invoice,
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )

    @staticmethod
    def _to_invoice_result(invoice: Any) -> InvoiceResult:
        data = invoice.to_dict()
        return InvoiceResult(
            id=data["id"],
            status=data.get("status", ""),
            amount_due=data.get("amount_due") or 0,
            amount_paid=data.get("amount_paid") or 0,
            currency=data.get("currency") or "usd",
            subscription_id=data.get("subscription"),
            hosted_invoice_url=data.get("hosted_invoice_url"),
            raw_response=data,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to GatewayCallError subclasses.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeInvalidRequestError: Invalid request or bad credentials
            StripeRateLimitError: Rate limited
            StripeTimeoutError: Request timed out
            StripeAPIUnavailableError: Network failure, 5xx or anything else
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )

            if decline_code == "insufficient_funds":
                raise StripeInsufficientFundsError(
                    str(error.user_message or error),
                    stripe_code=error.code,
                    decline_code=decline_code,
                ) from error

            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            ) from error

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(
                str(error.user_message or error),
                stripe_code=error.code,
            ) from error

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        elif isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                ) from error
            logger.error(
                "Connection error to Stripe",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            ) from error

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            ) from error

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                f"Unexpected Stripe error: {error}",
                stripe_code="unknown_error",
            ) from error
