"""
DRF views for the billing API.

Endpoints (under /api/v1/payments/):
    GET  plans/                          - Plan catalogue (public)
    GET  subscription/                   - Current subscription
    GET  subscription/history/           - All subscriptions, newest first
    POST subscription/subscribe/         - Start a subscription
    POST subscription/change-tier/       - Upgrade or downgrade
    POST subscription/cancel/            - Cancel now or at period end
    POST subscription/reactivate/        - Undo a cancellation
    GET  invoices/?page=N                - Invoice history (20 per page)
    GET  invoices/<id>/retry-status/     - Payment retry state of an invoice
    POST invoices/<id>/retry/            - Pay a failed invoice now
    POST coupons/validate/               - Check a coupon code
    GET  admin/upcoming-renewals/        - Staff: renewals in the next N days

The Stripe webhook lives in billing.webhooks.views.

Related files:
    - services/subscription_service.py: SubscriptionService
    - serializers.py: Request/response serializers
    - urls.py: URL routing
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError, ValidationError

from billing.plans import list_plans
from billing.serializers import (
    CancelSubscriptionSerializer,
    ChangeTierSerializer,
    CouponResultSerializer,
    CouponSerializer,
    InvoiceSerializer,
    PlanSerializer,
    RetryStatusSerializer,
    SubscribeSerializer,
    SubscriptionSerializer,
    UpcomingRenewalSerializer,
)
from billing.services import SubscriptionService

logger = logging.getLogger(__name__)


def error_response(exc: BaseApplicationError) -> Response:
    """Translate a domain error to its HTTP response."""
    if exc.http_status >= 500:
        logger.error(f"Billing request failed: {exc}", extra={"error_code": exc.error_code})
    return Response(exc.to_dict(), status=exc.http_status)


class BillingAPIView(APIView):
    """APIView that answers domain errors with their mapped status."""

    permission_classes = [IsAuthenticated]

    def handle_exception(self, exc):
        if isinstance(exc, BaseApplicationError):
            return error_response(exc)
        return super().handle_exception(exc)


# =============================================================================
# Plans
# =============================================================================


class PlanListView(APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        summary="List plans",
        tags=["Billing - Plans"],
        responses={200: PlanSerializer(many=True)},
    )
    def get(self, request):
        plans = [asdict(plan) for plan in list_plans()]
        return Response(PlanSerializer(plans, many=True).data)


# =============================================================================
# Subscription
# =============================================================================


class SubscriptionView(BillingAPIView):
    """
    GET /api/v1/payments/subscription/

    Returns:
        The live subscription, else the most recent one; 404 if none
    """

    @extend_schema(
        summary="Get current subscription",
        tags=["Billing - Subscription"],
        responses={200: SubscriptionSerializer},
    )
    def get(self, request):
        subscription = SubscriptionService.get_subscription(request.user)
        return Response(SubscriptionSerializer(subscription).data)


class SubscriptionHistoryView(BillingAPIView):
    @extend_schema(
        summary="List all subscriptions",
        tags=["Billing - Subscription"],
        responses={200: SubscriptionSerializer(many=True)},
    )
    def get(self, request):
        subscriptions = SubscriptionService.subscription_history(request.user)
        return Response(SubscriptionSerializer(subscriptions, many=True).data)


class SubscribeView(BillingAPIView):
    """
    POST /api/v1/payments/subscription/subscribe/

    Request body:
        {
            "tier": "professional",
            "payment_method_id": "pm_xxx",
            "coupon_code": "WELCOME10"     (optional)
        }
    """

    @extend_schema(
        summary="Start a subscription",
        tags=["Billing - Subscription"],
        request=SubscribeSerializer,
        responses={201: SubscriptionSerializer},
    )
    def post(self, request):
        serializer = SubscribeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionService.subscribe(
            customer=request.user,
            tier=serializer.validated_data["tier"],
            payment_method_id=serializer.validated_data["payment_method_id"],
            coupon_code=serializer.validated_data.get("coupon_code") or None,
        )
        return Response(SubscriptionSerializer(subscription).data, status=status.HTTP_201_CREATED)


class ChangeTierView(BillingAPIView):
    @extend_schema(
        summary="Change subscription tier",
        description=(
            "Upgrades with prorate=true are invoiced immediately for the rest of "
            "the period. Downgrades take effect without proration."
        ),
        tags=["Billing - Subscription"],
        request=ChangeTierSerializer,
        responses={200: SubscriptionSerializer},
    )
    def post(self, request):
        serializer = ChangeTierSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionService.change_tier(
            request.user,
            new_tier=serializer.validated_data["tier"],
            prorate=serializer.validated_data["prorate"],
        )
        return Response(SubscriptionSerializer(subscription).data)


class CancelSubscriptionView(BillingAPIView):
    @extend_schema(
        summary="Cancel subscription",
        description="Cancel immediately, or at the end of the current period (default).",
        tags=["Billing - Subscription"],
        request=CancelSubscriptionSerializer,
        responses={200: SubscriptionSerializer},
    )
    def post(self, request):
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionService.cancel(
            request.user,
            immediate=serializer.validated_data["immediate"],
        )
        return Response(SubscriptionSerializer(subscription).data)


class ReactivateSubscriptionView(BillingAPIView):
    @extend_schema(
        summary="Reactivate subscription",
        tags=["Billing - Subscription"],
        request=None,
        responses={200: SubscriptionSerializer},
    )
    def post(self, request):
        subscription = SubscriptionService.reactivate(request.user)
        return Response(SubscriptionSerializer(subscription).data)


# =============================================================================
# Invoices
# =============================================================================


class InvoiceListView(BillingAPIView):
    @extend_schema(
        summary="List invoices",
        tags=["Billing - Invoices"],
        parameters=[OpenApiParameter("page", int, description="Page number (20 per page)")],
        responses={200: InvoiceSerializer(many=True)},
    )
    def get(self, request):
        page = request.query_params.get("page", 1)
        invoices = SubscriptionService.list_invoices(request.user, page=page)
        return Response(InvoiceSerializer(invoices, many=True).data)


class InvoiceRetryStatusView(BillingAPIView):
    @extend_schema(
        summary="Get payment retry status of an invoice",
        tags=["Billing - Invoices"],
        responses={200: RetryStatusSerializer},
    )
    def get(self, request, invoice_id):
        retry_status = SubscriptionService.get_retry_status(request.user, invoice_id)
        return Response(RetryStatusSerializer(retry_status).data)


class InvoiceRetryView(BillingAPIView):
    @extend_schema(
        summary="Retry payment of a failed invoice now",
        description="The outcome is applied when the payment provider's webhook arrives.",
        tags=["Billing - Invoices"],
        request=None,
    )
    def post(self, request, invoice_id):
        result = SubscriptionService.retry_invoice_payment(request.user, invoice_id)
        return Response(result, status=status.HTTP_202_ACCEPTED)


# =============================================================================
# Coupons & Admin
# =============================================================================


class CouponValidateView(BillingAPIView):
    @extend_schema(
        summary="Validate a coupon code",
        tags=["Billing - Coupons"],
        request=CouponSerializer,
        responses={200: CouponResultSerializer},
    )
    def post(self, request):
        serializer = CouponSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        coupon = SubscriptionService.validate_coupon(serializer.validated_data["code"])
        return Response(CouponResultSerializer(coupon).data)


class UpcomingRenewalsView(BillingAPIView):
    permission_classes = [IsAdminUser]

    @extend_schema(
        summary="List subscriptions renewing soon",
        tags=["Billing - Admin"],
        parameters=[OpenApiParameter("days", int, description="Window in days (default 7)")],
        responses={200: UpcomingRenewalSerializer(many=True)},
    )
    def get(self, request):
        days = request.query_params.get("days")
        if days is not None:
            try:
                days = int(days)
            except (TypeError, ValueError):
                return error_response(ValidationError("days must be an integer"))
            if days < 1:
                return error_response(ValidationError("days must be positive"))

        subscriptions = SubscriptionService.upcoming_renewals(days)
        return Response(UpcomingRenewalSerializer(subscriptions, many=True).data)
