"""
Billing admin configuration.

Ledger rows are read-only here: subscriptions, invoices and failures
change only through the reconciler, the retry scheduler and the
management API. Errored webhook events can be replayed from the admin.
"""

from django.contrib import admin, messages

from billing.models import Invoice, PaymentFailure, Subscription, WebhookEvent
from billing.state_machines import WebhookEventStatus


class InvoiceInline(admin.TabularInline):
    model = Invoice
    extra = 0
    can_delete = False
    fields = ["stripe_invoice_id", "status", "amount_cents", "amount_paid_cents", "currency", "paid_at"]
    readonly_fields = fields
    show_change_link = True


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """
    Admin configuration for Subscription.

    needs_review marks subscriptions whose payment retries ran out under
    the review exhaustion policy.
    """

    list_display = [
        "id",
        "customer",
        "tier",
        "state",
        "current_period_end",
        "cancel_at_period_end",
        "needs_review",
        "created_at",
    ]
    list_filter = ["state", "tier", "cancel_at_period_end", "needs_review"]
    search_fields = ["id", "stripe_subscription_id", "stripe_customer_id", "customer__email"]
    readonly_fields = [
        "id",
        "customer",
        "stripe_subscription_id",
        "stripe_customer_id",
        "stripe_price_id",
        "state",
        "last_event_at",
        "created_at",
        "updated_at",
        "version",
    ]
    ordering = ["-created_at"]
    inlines = [InvoiceInline]

    fieldsets = (
        (None, {"fields": ("id", "customer", "tier", "state")}),
        (
            "Stripe",
            {"fields": ("stripe_subscription_id", "stripe_customer_id", "stripe_price_id")},
        ),
        (
            "Period",
            {"fields": ("current_period_start", "current_period_end", "trial_end")},
        ),
        (
            "Cancellation & Review",
            {"fields": ("cancel_at_period_end", "canceled_at", "needs_review")},
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "last_event_at", "version", "created_at", "updated_at"),
                "classes": ("collapse",),
            },
        ),
    )


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = [
        "stripe_invoice_id",
        "subscription",
        "status",
        "amount_cents",
        "amount_paid_cents",
        "refunded_amount_cents",
        "currency",
        "created_at",
    ]
    list_filter = ["status", "currency", "billing_reason"]
    search_fields = ["id", "stripe_invoice_id", "stripe_charge_id", "subscription__customer__email"]
    readonly_fields = [field.name for field in Invoice._meta.fields]
    ordering = ["-created_at"]

    def has_add_permission(self, request):
        return False


@admin.register(PaymentFailure)
class PaymentFailureAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "invoice",
        "retry_count",
        "next_retry_at",
        "last_attempt_at",
        "resolution",
        "resolved_at",
    ]
    list_filter = ["resolution", "failure_code"]
    search_fields = ["id", "invoice__stripe_invoice_id", "subscription__customer__email"]
    readonly_fields = [field.name for field in PaymentFailure._meta.fields]
    ordering = ["-created_at"]

    def has_add_permission(self, request):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    The replay action re-applies errored events from their stored payload.
    """

    list_display = [
        "stripe_event_id",
        "event_type",
        "status",
        "attempts",
        "event_created_at",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type"]
    search_fields = ["stripe_event_id", "event_type"]
    readonly_fields = [field.name for field in WebhookEvent._meta.fields]
    ordering = ["-created_at"]
    actions = ["replay_events"]

    def has_add_permission(self, request):
        return False

    @admin.action(description="Replay selected errored events")
    def replay_events(self, request, queryset):
        from billing.services import WebhookReconciler

        replayed = failed = 0
        for webhook_event in queryset.exclude(status__in=WebhookEventStatus.final_states()):
            try:
                WebhookReconciler.replay(webhook_event)
                replayed += 1
            except Exception as e:
                failed += 1
                self.message_user(
                    request,
                    f"{webhook_event.stripe_event_id}: {type(e).__name__}: {e}",
                    level=messages.ERROR,
                )

        self.message_user(request, f"Replayed {replayed} event(s), {failed} failed.")
