"""
Gateway adapters.

StripeAdapter is the only module that talks to the Stripe SDK. Callers get
plain dataclass results and GatewayCallError subclasses.

Usage:
    from billing.adapters import StripeAdapter, IdempotencyKeyGenerator

    StripeAdapter.cancel_subscription("sub_xxx")
"""

from billing.adapters.stripe_adapter import (
    CouponResult,
    CreateSubscriptionParams,
    CustomerResult,
    IdempotencyKeyGenerator,
    InvoiceResult,
    StripeAdapter,
    SubscriptionResult,
    from_timestamp,
)

__all__ = [
    "CouponResult",
    "CreateSubscriptionParams",
    "CustomerResult",
    "IdempotencyKeyGenerator",
    "InvoiceResult",
    "StripeAdapter",
    "SubscriptionResult",
    "from_timestamp",
]
