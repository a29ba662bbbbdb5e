"""
State enums for billing models.

Usage:
    from billing.state_machines import SubscriptionState, InvoiceStatus
"""

from billing.state_machines.states import (
    ExhaustionPolicy,
    FailureResolution,
    InvoiceStatus,
    ProcessOutcome,
    ReactivationPolicy,
    SubscriptionState,
    SubscriptionTier,
    WebhookEventStatus,
)

__all__ = [
    "ExhaustionPolicy",
    "FailureResolution",
    "InvoiceStatus",
    "ProcessOutcome",
    "ReactivationPolicy",
    "SubscriptionState",
    "SubscriptionTier",
    "WebhookEventStatus",
]
