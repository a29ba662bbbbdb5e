"""
Subscription billing.

Subscriptions, invoices and payment failures kept in step with Stripe by
an idempotent webhook reconciler and a payment retry scheduler.
"""
