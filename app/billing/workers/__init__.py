"""
Background workers for billing.

Usage:
    from billing.workers import PaymentRetryScheduler, RetryScheduleConfig
"""

from billing.workers.retry_scheduler import PaymentRetryScheduler, RetryScheduleConfig

__all__ = [
    "PaymentRetryScheduler",
    "RetryScheduleConfig",
]
