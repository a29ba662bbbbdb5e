"""
Billing services.

- invoice_ledger: Invoice Ledger and Failure Tracker writes (webhook path only)
- WebhookReconciler: idempotent application of gateway events
- SubscriptionService: customer-facing subscription management

Usage:
    from billing.services import SubscriptionService, WebhookReconciler
"""

from billing.services import invoice_ledger
from billing.services.reconciler import WebhookReconciler
from billing.services.subscription_service import SubscriptionService

__all__ = [
    "SubscriptionService",
    "WebhookReconciler",
    "invoice_ledger",
]
