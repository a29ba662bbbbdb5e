"""
Billing app configuration.
"""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Configuration for the billing application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"

    def ready(self):
        # Fail at start-up rather than on the first unhandled event type
        from billing.webhooks.handlers import check_handler_coverage

        check_handler_coverage()
