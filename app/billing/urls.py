"""
URL routing for the billing app.

Mounted at /api/v1/payments/ by config.urls.
"""

from django.urls import path

from billing import views
from billing.webhooks.views import payment_webhook

app_name = "billing"

urlpatterns = [
    path("webhook/", payment_webhook, name="webhook"),
    path("plans/", views.PlanListView.as_view(), name="plans"),
    # Subscription
    path("subscription/", views.SubscriptionView.as_view(), name="subscription"),
    path(
        "subscription/history/",
        views.SubscriptionHistoryView.as_view(),
        name="subscription-history",
    ),
    path("subscription/subscribe/", views.SubscribeView.as_view(), name="subscribe"),
    path("subscription/change-tier/", views.ChangeTierView.as_view(), name="change-tier"),
    path("subscription/cancel/", views.CancelSubscriptionView.as_view(), name="cancel"),
    path(
        "subscription/reactivate/",
        views.ReactivateSubscriptionView.as_view(),
        name="reactivate",
    ),
    # Invoices
    path("invoices/", views.InvoiceListView.as_view(), name="invoices"),
    path(
        "invoices/<str:invoice_id>/retry-status/",
        views.InvoiceRetryStatusView.as_view(),
        name="invoice-retry-status",
    ),
    path(
        "invoices/<str:invoice_id>/retry/",
        views.InvoiceRetryView.as_view(),
        name="invoice-retry",
    ),
    # Coupons & admin
    path("coupons/validate/", views.CouponValidateView.as_view(), name="validate-coupon"),
    path(
        "admin/upcoming-renewals/",
        views.UpcomingRenewalsView.as_view(),
        name="upcoming-renewals",
    ),
]
