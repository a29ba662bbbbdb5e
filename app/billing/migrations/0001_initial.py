import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Optimistic locking version, incremented on every save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "stripe_subscription_id",
                    models.CharField(
                        help_text="Stripe Subscription ID (sub_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe Customer ID (cus_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Stripe Price ID (price_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=[
                            ("starter", "Starter"),
                            ("professional", "Professional"),
                            ("premium", "Premium"),
                        ],
                        help_text="Plan tier",
                        max_length=20,
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("incomplete", "Incomplete"),
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                        ],
                        db_index=True,
                        default="incomplete",
                        help_text="Current state of the subscription (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "current_period_start",
                    models.DateTimeField(
                        blank=True, help_text="Start of current billing period", null=True
                    ),
                ),
                (
                    "current_period_end",
                    models.DateTimeField(
                        blank=True, help_text="End of current billing period", null=True
                    ),
                ),
                (
                    "trial_end",
                    models.DateTimeField(
                        blank=True, help_text="End of the trial period, if any", null=True
                    ),
                ),
                (
                    "cancel_at_period_end",
                    models.BooleanField(
                        default=False,
                        help_text="Whether subscription will cancel at period end",
                    ),
                ),
                (
                    "canceled_at",
                    models.DateTimeField(
                        blank=True, help_text="When subscription was canceled", null=True
                    ),
                ),
                (
                    "needs_review",
                    models.BooleanField(
                        default=False,
                        help_text="Payment retries ran out and an administrator must decide",
                    ),
                ),
                (
                    "last_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Creation time of the newest gateway event applied to this row",
                        null=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        help_text="Customer owning the subscription",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["customer", "state"], name="billing_sub_custome_3c1f0a_idx"
                    ),
                    models.Index(
                        fields=["state", "current_period_end"],
                        name="billing_sub_state_8d2e41_idx",
                    ),
                    models.Index(
                        fields=["cancel_at_period_end", "current_period_end"],
                        name="billing_sub_cancel__5a7b92_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(state__in=["trialing", "active", "past_due"]),
                        fields=("customer",),
                        name="billing_one_live_subscription_per_customer",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "stripe_invoice_id",
                    models.CharField(
                        help_text="Stripe Invoice ID (in_xxx)", max_length=255, unique=True
                    ),
                ),
                (
                    "stripe_charge_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Stripe Charge ID (ch_xxx) that paid this invoice",
                        max_length=255,
                    ),
                ),
                (
                    "stripe_payment_intent_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Stripe PaymentIntent ID (pi_xxx) of this invoice",
                        max_length=255,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Amount due in smallest currency unit (e.g., cents)",
                    ),
                ),
                (
                    "amount_paid_cents",
                    models.PositiveBigIntegerField(
                        default=0, help_text="Amount collected; never decreases"
                    ),
                ),
                (
                    "refunded_amount_cents",
                    models.PositiveBigIntegerField(
                        default=0, help_text="Amount refunded; never decreases"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("draft", "Draft"),
                            ("open", "Open"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                            ("void", "Void"),
                            ("refunded", "Refunded"),
                            ("partially_refunded", "Partially Refunded"),
                        ],
                        db_index=True,
                        default="draft",
                        help_text="Current status of the invoice (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "billing_reason",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Stripe billing reason (subscription_create, subscription_cycle, ...)",
                        max_length=50,
                    ),
                ),
                (
                    "period_start",
                    models.DateTimeField(
                        blank=True, help_text="Start of the service period billed", null=True
                    ),
                ),
                (
                    "period_end",
                    models.DateTimeField(
                        blank=True, help_text="End of the service period billed", null=True
                    ),
                ),
                (
                    "due_date",
                    models.DateTimeField(blank=True, help_text="When payment is due", null=True),
                ),
                (
                    "paid_at",
                    models.DateTimeField(
                        blank=True, help_text="When the invoice was paid", null=True
                    ),
                ),
                (
                    "failed_at",
                    models.DateTimeField(
                        blank=True, help_text="When the last charge attempt failed", null=True
                    ),
                ),
                (
                    "voided_at",
                    models.DateTimeField(
                        blank=True, help_text="When the invoice was voided", null=True
                    ),
                ),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True, help_text="When the latest refund was recorded", null=True
                    ),
                ),
                (
                    "hosted_invoice_url",
                    models.URLField(
                        blank=True,
                        default="",
                        help_text="Stripe-hosted invoice page",
                        max_length=500,
                    ),
                ),
                (
                    "last_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Creation time of the newest gateway event applied to this row",
                        null=True,
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        help_text="Subscription this invoice bills",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["subscription", "status"], name="billing_inv_subscri_7e4c10_idx"
                    ),
                    models.Index(
                        fields=["subscription", "created_at"],
                        name="billing_inv_subscri_b29d53_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_paid_cents__lte=models.F("amount_cents")),
                        name="invoice_paid_within_amount",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            refunded_amount_cents__lte=models.F("amount_paid_cents")
                        ),
                        name="invoice_refund_within_paid",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "paid"), _negated=True),
                            models.Q(
                                ("paid_at__isnull", False),
                                ("amount_paid_cents", models.F("amount_cents")),
                            ),
                            _connector="OR",
                        ),
                        name="invoice_paid_fully_collected",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentFailure",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Optimistic locking version, incremented on every save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "failure_reason",
                    models.TextField(blank=True, default="", help_text="Latest decline message"),
                ),
                (
                    "failure_code",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Latest gateway decline code",
                        max_length=100,
                    ),
                ),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of scheduler payment attempts made"
                    ),
                ),
                (
                    "next_retry_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When the next payment attempt is due",
                        null=True,
                    ),
                ),
                (
                    "last_attempt_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the scheduler last attempted payment",
                        null=True,
                    ),
                ),
                (
                    "resolved_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When the failure was resolved",
                        null=True,
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("paid", "Paid"),
                            ("canceled", "Canceled"),
                            ("refunded", "Refunded"),
                            ("exhausted", "Retries Exhausted"),
                        ],
                        default="",
                        help_text="How the failure was resolved",
                        max_length=20,
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        help_text="Invoice whose charge failed",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_failures",
                        to="billing.invoice",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        help_text="Subscription billed by the invoice",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_failures",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Failure",
                "verbose_name_plural": "Payment Failures",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["resolved_at", "next_retry_at"],
                        name="billing_pay_resolve_4f8e27_idx",
                    )
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(resolved_at__isnull=True),
                        fields=("invoice",),
                        name="billing_one_open_failure_per_invoice",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "stripe_event_id",
                    models.CharField(
                        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe event type (e.g., 'invoice.payment_failed')",
                        max_length=100,
                    ),
                ),
                (
                    "event_created_at",
                    models.DateTimeField(
                        blank=True, help_text="Event creation time reported by Stripe", null=True
                    ),
                ),
                ("raw_payload", models.TextField(help_text="Webhook body as received (opaque)")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("processing", "Processing"),
                            ("applied", "Applied"),
                            ("stale", "Stale"),
                            ("ignored", "Ignored"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        default="processing",
                        help_text="Current processing status",
                        max_length=20,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True, help_text="When a final outcome was recorded", null=True
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Error message of the last failed attempt",
                    ),
                ),
                (
                    "attempts",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"], name="billing_web_status_1a6d38_idx"
                    ),
                    models.Index(
                        fields=["event_type", "created_at"],
                        name="billing_web_event_t_c57e02_idx",
                    ),
                    models.Index(
                        fields=["status", "attempts"], name="billing_web_status_9b3f64_idx"
                    ),
                ],
            },
        ),
    ]
