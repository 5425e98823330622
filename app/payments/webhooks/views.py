"""
Stripe webhook endpoint.

Verifies the signature, stores the event once under its Stripe event id,
queues it for processing and answers immediately. Stripe retries anything
that does not get a 2xx within 20 seconds, so no ledger work happens here.
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.adapters import StripeAdapter
from payments.exceptions import StripeInvalidRequestError
from payments.models import WebhookEvent
from payments.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive a Stripe event.

    Returns:
        200: Event accepted, or already processed
        400: Missing or invalid signature, or malformed event
    """
    signature = request.headers.get("Stripe-Signature", "")
    if not signature:
        logger.warning("Webhook received without Stripe-Signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        event_data = StripeAdapter.verify_webhook_signature(request.body, signature)
    except StripeInvalidRequestError as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        return HttpResponse("Invalid signature", status=400)
    except Exception as e:
        logger.error(
            f"Unexpected error verifying webhook: {type(e).__name__}",
            exc_info=True,
        )
        return HttpResponse("Verification error", status=400)

    stripe_event_id = event_data.get("id")
    event_type = event_data.get("type")
    if not stripe_event_id or not event_type:
        logger.warning("Webhook missing required fields")
        return HttpResponse("Invalid event", status=400)

    webhook_event, created = WebhookEvent.objects.get_or_create(
        stripe_event_id=stripe_event_id,
        defaults={
            "event_type": event_type,
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )

    if not created and webhook_event.is_processed:
        logger.info(
            "Webhook already processed, returning success",
            extra={"stripe_event_id": stripe_event_id},
        )
        return HttpResponse("Already processed", status=200)

    from payments.tasks import process_webhook_event

    try:
        process_webhook_event.delay(str(webhook_event.id))
    except Exception:
        # Stored as PENDING; retry_failed_webhooks or Stripe's redelivery picks it up
        logger.error(
            "Failed to queue webhook",
            extra={"stripe_event_id": stripe_event_id},
            exc_info=True,
        )

    logger.info(
        f"Received Stripe webhook: {event_type}",
        extra={
            "stripe_event_id": stripe_event_id,
            "webhook_event_id": str(webhook_event.id),
            "created": created,
        },
    )
    return HttpResponse("Accepted", status=200)
