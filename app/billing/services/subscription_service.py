"""
Subscription management service.

Customer-facing operations: subscribe, change tier, cancel, reactivate,
and the read models behind the billing API. Gateway calls go through
StripeAdapter with idempotency keys; the resulting webhooks are applied
by WebhookReconciler and merge into the rows written here.

Usage:
    from billing.services import SubscriptionService

    subscription = SubscriptionService.subscribe(
        customer=request.user,
        tier="professional",
        payment_method_id="pm_xxx",
    )
    SubscriptionService.cancel(request.user, immediate=False)
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.paginator import EmptyPage, PageNotAnInteger, Paginator
from django.db import IntegrityError, transaction
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from accounts.models import User
from core.exceptions import ValidationError
from core.services import BaseService

from billing.adapters import (
    CreateSubscriptionParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
)
from billing.exceptions import (
    ConflictingActiveSubscriptionError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    RetryExhaustedError,
    StripeInvalidRequestError,
    SubscriptionNotFoundError,
)
from billing.models import Invoice, Subscription
from billing.models.subscription import GATEWAY_STATUS_MAP
from billing.notifications import NotificationKind, notify_on_commit
from billing.plans import get_plan, is_upgrade, price_id_for_tier
from billing.state_machines import (
    FailureResolution,
    InvoiceStatus,
    SubscriptionState,
    SubscriptionTier,
)

if TYPE_CHECKING:
    from typing import Any


INVOICE_PAGE_SIZE = 20

# Gateway statuses of a subscription that can no longer be revived
GATEWAY_ENDED_STATUSES = ("canceled", "incomplete_expired")


def _parse_uuid(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class SubscriptionService(BaseService):
    """
    Subscription lifecycle operations for one customer.

    Every write runs in a transaction with the affected subscription row
    locked. Methods raise SubscriptionNotFoundError,
    InvalidTransitionError, ConflictingActiveSubscriptionError,
    ValidationError or GatewayCallError; views map them to HTTP statuses.
    """

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def _live_queryset(cls, customer: User):
        return Subscription.objects.filter(
            customer=customer,
            state__in=SubscriptionState.live_states(),
        )

    @classmethod
    def _lock_subscription(
        cls,
        customer: User,
        subscription_id: Any = None,
        live_only: bool = True,
    ) -> Subscription:
        """
        Lock the customer's live subscription, or a specific one by id.

        Raises:
            SubscriptionNotFoundError: Nothing matches
        """
        queryset = Subscription.objects.select_for_update().filter(customer=customer)
        if subscription_id is not None:
            pk = _parse_uuid(subscription_id)
            subscription = queryset.filter(pk=pk).first() if pk else None
        elif live_only:
            subscription = queryset.filter(state__in=SubscriptionState.live_states()).first()
        else:
            subscription = queryset.order_by("-created_at").first()

        if subscription is None:
            raise SubscriptionNotFoundError(
                "Subscription not found",
                details={
                    "customer_id": customer.pk,
                    "subscription_id": str(subscription_id) if subscription_id else None,
                },
            )
        return subscription

    @classmethod
    def _validate_tier(cls, tier: str) -> str:
        if tier not in SubscriptionTier.values:
            raise ValidationError(
                f"Unknown plan tier '{tier}'",
                details={"tier": tier, "allowed": list(SubscriptionTier.values)},
            )
        return str(tier)

    @classmethod
    def get_subscription(cls, customer: User) -> Subscription:
        """
        Current subscription: the live one, else the most recent.

        Raises:
            SubscriptionNotFoundError: Customer never subscribed
        """
        subscription = cls._live_queryset(customer).first()
        if subscription is None:
            subscription = customer.subscriptions.order_by("-created_at").first()
        if subscription is None:
            raise SubscriptionNotFoundError(
                "Customer has no subscription",
                details={"customer_id": customer.pk},
            )
        return subscription

    @classmethod
    def subscription_history(cls, customer: User) -> list[Subscription]:
        return list(customer.subscriptions.order_by("-created_at"))

    # =========================================================================
    # Subscribe
    # =========================================================================

    @classmethod
    def subscribe(
        cls,
        customer: User,
        tier: str,
        payment_method_id: str,
        coupon_code: str | None = None,
        trial_days: int | None = None,
    ) -> Subscription:
        """
        Start a subscription for a customer.

        First-time subscribers get BILLING_TRIAL_DAYS of trial unless
        trial_days says otherwise.

        Raises:
            ValidationError: Unknown tier or invalid coupon
            ConflictingActiveSubscriptionError: Customer already has a live subscription
            GatewayCallError: Stripe rejected the request
        """
        logger = cls.get_logger()
        tier = cls._validate_tier(tier)
        if not payment_method_id:
            raise ValidationError("payment_method_id is required")

        with cls.atomic():
            # Serializes concurrent subscribe calls of one customer
            customer = User.objects.select_for_update().get(pk=customer.pk)

            if cls._live_queryset(customer).exists():
                raise ConflictingActiveSubscriptionError(
                    "Customer already has an active subscription",
                    details={"customer_id": customer.pk},
                )

            if coupon_code:
                coupon = cls.validate_coupon(coupon_code)
                if not coupon["valid"]:
                    raise ValidationError(
                        f"Coupon '{coupon_code}' is not valid",
                        error_code="COUPON_INVALID",
                        details={"coupon": coupon_code},
                    )

            previous_count = customer.subscriptions.count()
            if trial_days is None:
                trial_days = settings.BILLING_TRIAL_DAYS if previous_count == 0 else 0

            cls._ensure_gateway_customer(customer)
            price_id = price_id_for_tier(tier)
            result = StripeAdapter.create_subscription(
                CreateSubscriptionParams(
                    customer_id=customer.stripe_customer_id,
                    price_id=price_id,
                    payment_method_id=payment_method_id,
                    trial_days=trial_days,
                    coupon=coupon_code,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "create_subscription", customer.pk, previous_count + 1
                    ),
                    metadata={"user_id": str(customer.pk), "tier": tier},
                )
            )

            now = timezone.now()
            subscription = Subscription(
                customer=customer,
                stripe_subscription_id=result.id,
                stripe_customer_id=customer.stripe_customer_id,
                stripe_price_id=price_id,
                tier=tier,
                current_period_start=result.current_period_start or now,
                current_period_end=result.current_period_end,
                trial_end=result.trial_end
                or (now + timedelta(days=trial_days) if trial_days else None),
                cancel_at_period_end=result.cancel_at_period_end,
            )
            target = GATEWAY_STATUS_MAP.get(result.status)
            if target is not None:
                subscription.advance_to(target)

            try:
                with transaction.atomic():
                    subscription.save()
            except IntegrityError as e:
                # The subscription.created webhook may have recorded it first
                existing = Subscription.objects.filter(
                    stripe_subscription_id=result.id
                ).first()
                if existing is None:
                    raise ConflictingActiveSubscriptionError(
                        "Customer already has an active subscription",
                        details={"customer_id": customer.pk},
                    ) from e
                subscription = existing

            notify_on_commit(
                NotificationKind.CONFIRMATION,
                customer.pk,
                {
                    "tier": tier,
                    "plan": get_plan(tier).name,
                    "state": subscription.state,
                    "trial_end": subscription.trial_end,
                    "current_period_end": subscription.current_period_end,
                },
            )

        logger.info(
            "Subscription started",
            extra={
                "customer_id": customer.pk,
                "subscription_id": str(subscription.id),
                "tier": tier,
                "state": subscription.state,
            },
        )
        return subscription

    @classmethod
    def _ensure_gateway_customer(cls, customer: User) -> str:
        if customer.stripe_customer_id:
            return customer.stripe_customer_id
        result = StripeAdapter.create_customer(
            email=customer.email,
            user_id=customer.pk,
            idempotency_key=IdempotencyKeyGenerator.generate("create_customer", customer.pk),
        )
        customer.stripe_customer_id = result.id
        customer.save(update_fields=["stripe_customer_id", "updated_at"])
        return result.id

    # =========================================================================
    # Tier Changes
    # =========================================================================

    @classmethod
    def change_tier(
        cls,
        customer: User,
        new_tier: str,
        prorate: bool = True,
        subscription_id: Any = None,
    ) -> Subscription:
        """
        Move a live subscription to another tier.

        An upgrade with prorate=True is invoiced immediately for the rest of
        the period; a downgrade, or prorate=False, takes effect without
        proration. Lifecycle state is not touched.

        Raises:
            ValidationError: Unknown tier, or the tier is unchanged
            InvalidTransitionError: Subscription is not live
        """
        new_tier = cls._validate_tier(new_tier)

        with cls.atomic():
            subscription = cls._lock_subscription(customer, subscription_id)
            if not subscription.is_live:
                raise InvalidTransitionError(
                    f"Cannot change tier of subscription in '{subscription.state}' state",
                    details={"subscription_id": str(subscription.id), "state": subscription.state},
                )
            if subscription.tier == new_tier:
                raise ValidationError(
                    f"Subscription is already on the '{new_tier}' tier",
                    details={"tier": new_tier},
                )

            previous_tier = subscription.tier
            upgrade = is_upgrade(previous_tier, new_tier)
            proration_behavior = "always_invoice" if upgrade and prorate else "none"
            price_id = price_id_for_tier(new_tier)

            StripeAdapter.update_subscription(
                subscription.stripe_subscription_id,
                price_id=price_id,
                proration_behavior=proration_behavior,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "change_tier", subscription.id, f"{new_tier}-{subscription.version}"
                ),
            )

            subscription.tier = new_tier
            subscription.stripe_price_id = price_id
            subscription.save()

            notify_on_commit(
                NotificationKind.UPGRADE,
                customer.pk,
                {
                    "previous_tier": previous_tier,
                    "tier": new_tier,
                    "upgrade": upgrade,
                    "prorated": proration_behavior == "always_invoice",
                },
            )

        cls.get_logger().info(
            "Subscription tier changed",
            extra={
                "subscription_id": str(subscription.id),
                "previous_tier": previous_tier,
                "tier": new_tier,
                "proration_behavior": proration_behavior,
            },
        )
        return subscription

    # =========================================================================
    # Cancellation
    # =========================================================================

    @classmethod
    def cancel(cls, customer: User, immediate: bool = False) -> Subscription:
        """
        Cancel the customer's live subscription.

        immediate=True ends it now at the gateway and locally; otherwise it
        is flagged to end with the current period. Flagging twice is a
        no-op.
        """
        with cls.atomic():
            subscription = cls._lock_subscription(customer)
            return cls._cancel(subscription, immediate)

    @classmethod
    def request_cancellation(cls, customer: User, subscription_id: Any, immediate: bool) -> Subscription:
        with cls.atomic():
            subscription = cls._lock_subscription(customer, subscription_id)
            if not subscription.is_live:
                raise InvalidTransitionError(
                    f"Cannot cancel subscription in '{subscription.state}' state",
                    details={"subscription_id": str(subscription.id), "state": subscription.state},
                )
            return cls._cancel(subscription, immediate)

    @classmethod
    def _cancel(cls, subscription: Subscription, immediate: bool) -> Subscription:
        logger = cls.get_logger()

        if immediate:
            StripeAdapter.cancel_subscription(
                subscription.stripe_subscription_id,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "cancel_subscription", subscription.stripe_subscription_id
                ),
            )
            subscription.cancel()
            subscription.save()
            notify_on_commit(
                NotificationKind.CANCELLATION,
                subscription.customer_id,
                {"tier": subscription.tier, "immediate": True, "canceled_at": subscription.canceled_at},
            )
            logger.info(
                "Subscription canceled immediately",
                extra={"subscription_id": str(subscription.id)},
            )
            return subscription

        if subscription.cancel_at_period_end:
            return subscription

        StripeAdapter.update_subscription(
            subscription.stripe_subscription_id,
            cancel_at_period_end=True,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "cancel_at_period_end", subscription.id, subscription.version
            ),
        )
        subscription.cancel_at_period_end = True
        subscription.save()
        notify_on_commit(
            NotificationKind.CANCELLATION,
            subscription.customer_id,
            {
                "tier": subscription.tier,
                "immediate": False,
                "effective_at": subscription.current_period_end,
            },
        )
        logger.info(
            "Subscription set to cancel at period end",
            extra={
                "subscription_id": str(subscription.id),
                "current_period_end": str(subscription.current_period_end),
            },
        )
        return subscription

    # =========================================================================
    # Reactivation
    # =========================================================================

    @classmethod
    def reactivate(cls, customer: User, subscription_id: Any = None) -> Subscription:
        """
        Undo a cancellation.

        A live subscription flagged to cancel at period end is simply
        unflagged. A canceled subscription returns to active if the
        reactivation policy allows it and the gateway subscription still
        exists.

        Raises:
            SubscriptionNotFoundError: Nothing to reactivate
            InvalidTransitionError: Not pending cancellation, window closed,
                or ended at the gateway
            ConflictingActiveSubscriptionError: Another subscription is live
        """
        with cls.atomic():
            if subscription_id is None:
                live = cls._live_queryset(customer).select_for_update().first()
                if live is not None:
                    subscription = live
                else:
                    subscription = (
                        Subscription.objects.select_for_update()
                        .filter(customer=customer, state=SubscriptionState.CANCELED)
                        .order_by("-canceled_at", "-created_at")
                        .first()
                    )
                    if subscription is None:
                        raise SubscriptionNotFoundError(
                            "No subscription to reactivate",
                            details={"customer_id": customer.pk},
                        )
            else:
                subscription = cls._lock_subscription(customer, subscription_id)

            if subscription.is_live:
                return cls._clear_pending_cancellation(subscription)
            return cls._revive(subscription)

    @classmethod
    def _clear_pending_cancellation(cls, subscription: Subscription) -> Subscription:
        if not subscription.cancel_at_period_end:
            raise InvalidTransitionError(
                "Subscription is not scheduled for cancellation",
                details={"subscription_id": str(subscription.id), "state": subscription.state},
            )
        StripeAdapter.update_subscription(
            subscription.stripe_subscription_id,
            cancel_at_period_end=False,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "resume_subscription", subscription.id, subscription.version
            ),
        )
        subscription.cancel_at_period_end = False
        subscription.save()
        cls.get_logger().info(
            "Pending cancellation withdrawn",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription

    @classmethod
    def _revive(cls, subscription: Subscription) -> Subscription:
        if (
            cls._live_queryset(subscription.customer_id)
            .exclude(pk=subscription.pk)
            .exists()
        ):
            raise ConflictingActiveSubscriptionError(
                "Customer already has an active subscription",
                details={"customer_id": subscription.customer_id},
            )

        try:
            remote = StripeAdapter.retrieve_subscription(subscription.stripe_subscription_id)
        except StripeInvalidRequestError as e:
            raise InvalidTransitionError(
                "Subscription no longer exists at the payment provider",
                details={"subscription_id": str(subscription.id)},
            ) from e
        if remote.status in GATEWAY_ENDED_STATUSES:
            raise InvalidTransitionError(
                "Subscription has ended at the payment provider",
                details={"subscription_id": str(subscription.id), "gateway_status": remote.status},
            )

        try:
            subscription.reactivate()
        except TransitionNotAllowed as e:
            raise InvalidTransitionError(
                "Reactivation window has closed",
                details={
                    "subscription_id": str(subscription.id),
                    "current_period_end": str(subscription.current_period_end),
                },
            ) from e

        if remote.cancel_at_period_end:
            StripeAdapter.update_subscription(
                subscription.stripe_subscription_id,
                cancel_at_period_end=False,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "reactivate_subscription", subscription.id, subscription.version
                ),
            )

        try:
            with transaction.atomic():
                subscription.save()
        except IntegrityError as e:
            raise ConflictingActiveSubscriptionError(
                "Customer already has an active subscription",
                details={"customer_id": subscription.customer_id},
            ) from e

        notify_on_commit(
            NotificationKind.CONFIRMATION,
            subscription.customer_id,
            {"tier": subscription.tier, "state": subscription.state, "reactivated": True},
        )
        cls.get_logger().info(
            "Subscription reactivated",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription

    # =========================================================================
    # Invoices & Retries
    # =========================================================================

    @classmethod
    def list_invoices(cls, customer: User, page: Any = 1, page_size: int = INVOICE_PAGE_SIZE) -> list[Invoice]:
        """Newest first; a page past the end is empty."""
        queryset = (
            Invoice.objects.filter(subscription__customer=customer)
            .select_related("subscription")
            .order_by("-created_at")
        )
        paginator = Paginator(queryset, page_size)
        try:
            return list(paginator.page(page).object_list)
        except PageNotAnInteger as e:
            raise ValidationError("page must be a positive integer", details={"page": page}) from e
        except EmptyPage:
            return []

    @classmethod
    def _get_invoice(cls, customer: User, invoice_id: Any) -> Invoice:
        pk = _parse_uuid(invoice_id)
        invoice = None
        if pk is not None:
            invoice = (
                Invoice.objects.filter(subscription__customer=customer, pk=pk)
                .select_related("subscription")
                .first()
            )
        if invoice is None:
            raise InvoiceNotFoundError(
                "Invoice not found",
                details={"invoice_id": str(invoice_id)},
            )
        return invoice

    @classmethod
    def get_retry_status(cls, customer: User, invoice_id: Any) -> dict[str, Any]:
        """Collection state of an invoice as the customer sees it."""
        invoice = cls._get_invoice(customer, invoice_id)
        failure = invoice.payment_failures.order_by("-created_at").first()
        max_attempts = settings.BILLING_RETRY_MAX_ATTEMPTS

        return {
            "invoice_id": str(invoice.id),
            "stripe_invoice_id": invoice.stripe_invoice_id,
            "invoice_status": invoice.status,
            "amount_cents": invoice.amount_cents,
            "currency": invoice.currency,
            "retry_count": failure.retry_count if failure else 0,
            "max_attempts": max_attempts,
            "next_retry_at": failure.next_retry_at if failure else None,
            "last_attempt_at": failure.last_attempt_at if failure else None,
            "failure_reason": failure.failure_reason if failure else "",
            "resolved": failure.is_resolved if failure else True,
            "resolution": failure.resolution if failure else "",
        }

    @classmethod
    def retry_invoice_payment(cls, customer: User, invoice_id: Any) -> dict[str, Any]:
        """
        Attempt to pay a failed invoice now, at the customer's request.

        Only the gateway call happens here; the invoice and its failure
        change when the resulting webhook arrives.

        Raises:
            InvoiceNotFoundError: Not the customer's invoice
            InvalidTransitionError: Invoice is not awaiting payment
            RetryExhaustedError: Automatic retries ran out
            GatewayCallError: Payment declined or gateway unavailable
        """
        invoice = cls._get_invoice(customer, invoice_id)
        if invoice.status not in (InvoiceStatus.OPEN, InvoiceStatus.FAILED):
            raise InvalidTransitionError(
                f"Invoice in '{invoice.status}' status cannot be paid",
                details={"invoice_id": str(invoice.id), "status": invoice.status},
            )

        failure = invoice.payment_failures.order_by("-created_at").first()
        if failure is not None and failure.resolution == FailureResolution.EXHAUSTED:
            raise RetryExhaustedError(
                "Payment retries for this invoice are exhausted",
                details={"invoice_id": str(invoice.id), "retry_count": failure.retry_count},
            )

        entity = failure.id if failure else invoice.id
        attempt = failure.retry_count if failure else 0
        result = StripeAdapter.pay_invoice(
            invoice.stripe_invoice_id,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "customer_pay_invoice", entity, attempt
            ),
        )
        cls.get_logger().info(
            "Customer-initiated invoice payment",
            extra={"invoice_id": invoice.stripe_invoice_id, "gateway_status": result.status},
        )
        return {
            "invoice_id": str(invoice.id),
            "stripe_invoice_id": invoice.stripe_invoice_id,
            "gateway_status": result.status,
        }

    # =========================================================================
    # Coupons & Renewals
    # =========================================================================

    @classmethod
    def validate_coupon(cls, code: str) -> dict[str, Any]:
        """Look up a coupon; an unknown code is reported as invalid."""
        if not code:
            raise ValidationError("Coupon code is required")
        try:
            coupon = StripeAdapter.validate_coupon(code)
        except StripeInvalidRequestError:
            return {"code": code, "valid": False}
        return {
            "code": code,
            "valid": coupon.valid,
            "name": coupon.name,
            "percent_off": coupon.percent_off,
            "amount_off": coupon.amount_off,
            "currency": coupon.currency,
            "duration": coupon.duration,
            "duration_in_months": coupon.duration_in_months,
        }

    @classmethod
    def upcoming_renewals(cls, days_ahead: int | None = None) -> list[Subscription]:
        """Live subscriptions that renew within the next days_ahead days."""
        if days_ahead is None:
            days_ahead = settings.BILLING_RENEWAL_REMINDER_DAYS
        now = timezone.now()
        return list(
            Subscription.objects.filter(
                state__in=SubscriptionState.live_states(),
                cancel_at_period_end=False,
                current_period_end__gt=now,
                current_period_end__lte=now + timedelta(days=days_ahead),
            )
            .select_related("customer")
            .order_by("current_period_end")
        )
