"""
Webhook endpoint for Stripe.

Events are applied synchronously inside the request: the response tells
Stripe whether to redeliver.

Usage:
    # In billing/urls.py
    from billing.webhooks.views import payment_webhook

    urlpatterns = [
        path("webhook/", payment_webhook, name="webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from billing.services import WebhookReconciler
from billing.state_machines import ProcessOutcome

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and apply a Stripe webhook event.

    Security:
    - Signature verification prevents spoofed webhooks
    - CSRF exemption required for external webhooks
    - Only POST requests accepted

    Returns:
        HttpResponse with status:
        - 200: Event applied, or a duplicate of an applied event
        - 400: Missing or invalid signature (Stripe stops retrying)
        - 500: Processing error (Stripe redelivers)

    Example Stripe-Signature header:
        t=1614556800,v1=xxx,v0=yyy
    """
    signature = request.headers.get("Stripe-Signature", "")

    if not signature:
        logger.warning("Webhook received without Stripe-Signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        outcome = WebhookReconciler.process_event(request.body, signature)
    except Exception:
        # Already logged and recorded as ERROR by the reconciler
        return HttpResponse("Processing error", status=500)

    if outcome == ProcessOutcome.REJECTED:
        return HttpResponse("Invalid signature", status=400)

    return JsonResponse({"received": True, "outcome": str(outcome)})
