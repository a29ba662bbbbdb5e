"""
Stripe webhook intake.

- events: typed event classes and parse_event()
- handlers: one handler per event class, dispatch()
- views: the HTTP endpoint

Usage:
    # In urls.py
    from billing.webhooks.views import payment_webhook
"""
