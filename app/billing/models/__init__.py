"""
Billing domain models.

- Subscription: Subscription Ledger, one row per gateway subscription
- Invoice: Invoice Ledger, one row per billing-cycle charge
- PaymentFailure: Failure Tracker, at most one unresolved row per invoice
- WebhookEvent: Event Store, one row per inbound gateway event id
"""

from billing.models.invoice import Invoice
from billing.models.payment_failure import PaymentFailure
from billing.models.subscription import Subscription
from billing.models.webhook_event import WebhookEvent

__all__ = [
    "Invoice",
    "PaymentFailure",
    "Subscription",
    "WebhookEvent",
]
