"""
DRF serializers for the billing API.

Request serializers validate input only; business rules live in
SubscriptionService. Response serializers are read-only views of the
ledger rows.

Usage:
    serializer = SubscribeSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
"""

from __future__ import annotations

from rest_framework import serializers

from billing.models import Invoice, Subscription
from billing.state_machines import SubscriptionTier


# =============================================================================
# Requests
# =============================================================================


class SubscribeSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=SubscriptionTier.choices)
    payment_method_id = serializers.CharField(max_length=255)
    coupon_code = serializers.CharField(max_length=255, required=False, allow_blank=True)


class ChangeTierSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=SubscriptionTier.choices)
    prorate = serializers.BooleanField(default=True)


class CancelSubscriptionSerializer(serializers.Serializer):
    """
    Fields:
        immediate: End now instead of at the end of the current period
    """

    immediate = serializers.BooleanField(default=False)


class CouponSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=255)


# =============================================================================
# Responses
# =============================================================================


class SubscriptionSerializer(serializers.ModelSerializer):
    """
    Subscription as shown to its customer.

    Gateway ids and internal bookkeeping (version, last_event_at) are not
    exposed.
    """

    is_live = serializers.BooleanField(read_only=True)

    class Meta:
        model = Subscription
        fields = [
            "id",
            "tier",
            "state",
            "is_live",
            "current_period_start",
            "current_period_end",
            "trial_end",
            "cancel_at_period_end",
            "canceled_at",
            "created_at",
        ]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Invoice
        fields = [
            "id",
            "stripe_invoice_id",
            "status",
            "amount_cents",
            "amount_paid_cents",
            "refunded_amount_cents",
            "currency",
            "billing_reason",
            "period_start",
            "period_end",
            "due_date",
            "paid_at",
            "hosted_invoice_url",
            "created_at",
        ]
        read_only_fields = fields


class RetryStatusSerializer(serializers.Serializer):
    invoice_id = serializers.UUIDField()
    stripe_invoice_id = serializers.CharField()
    invoice_status = serializers.CharField()
    amount_cents = serializers.IntegerField()
    currency = serializers.CharField()
    retry_count = serializers.IntegerField()
    max_attempts = serializers.IntegerField()
    next_retry_at = serializers.DateTimeField(allow_null=True)
    last_attempt_at = serializers.DateTimeField(allow_null=True)
    failure_reason = serializers.CharField(allow_blank=True)
    resolved = serializers.BooleanField()
    resolution = serializers.CharField(allow_blank=True)


class CouponResultSerializer(serializers.Serializer):
    code = serializers.CharField()
    valid = serializers.BooleanField()
    name = serializers.CharField(allow_null=True, required=False)
    percent_off = serializers.FloatField(allow_null=True, required=False)
    amount_off = serializers.IntegerField(allow_null=True, required=False)
    currency = serializers.CharField(allow_null=True, required=False)
    duration = serializers.CharField(allow_null=True, required=False)
    duration_in_months = serializers.IntegerField(allow_null=True, required=False)


class PlanSerializer(serializers.Serializer):
    tier = serializers.CharField()
    name = serializers.CharField()
    price_cents = serializers.IntegerField()
    currency = serializers.CharField()
    interval = serializers.CharField()
    features = serializers.ListField(child=serializers.CharField())


class UpcomingRenewalSerializer(serializers.ModelSerializer):
    customer_email = serializers.EmailField(source="customer.email", read_only=True)

    class Meta:
        model = Subscription
        fields = ["id", "customer_email", "tier", "state", "current_period_end"]
        read_only_fields = fields
