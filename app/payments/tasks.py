"""
Celery tasks for the escrow payment engine.

Tasks:
- process_webhook_event: Dispatch one stored Stripe event
- retry_failed_webhooks / cleanup_stuck_webhooks / cleanup_old_webhooks: Webhook upkeep
- release_due_escrows: Automatic escrow release (celery-beat, hourly)
- reconcile_inconsistent_payments: Repair records flagged inconsistent
- run_premium_scheduler: Premium placement sweep (celery-beat, daily)

Periodic schedules are created in payments/migrations/0003_beat_schedule.py.

Usage:
    from payments.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from payments.models import PaymentRecord, WebhookEvent
from payments.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_WEBHOOK_RETRIES = WebhookEvent.MAX_RETRIES
STUCK_PROCESSING_THRESHOLD_MINUTES = 30
BATCH_SIZE = 100


# =============================================================================
# Webhook Processing
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Process a stored Stripe webhook event.

    Already-processed events are skipped. Handlers manage their own
    transactions: a ledger flag written while a handler fails must survive
    the failure.

    Raises:
        Exception: Re-raised so Celery retries with backoff
    """
    from payments.webhooks.handlers import dispatch_webhook

    if isinstance(webhook_event_id, str):
        webhook_event_id = UUID(webhook_event_id)

    try:
        webhook_event = WebhookEvent.objects.get(id=webhook_event_id)
    except WebhookEvent.DoesNotExist:
        logger.error(
            "WebhookEvent not found",
            extra={"webhook_event_id": str(webhook_event_id)},
        )
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.is_processed:
        logger.info(
            "WebhookEvent already processed, skipping",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return {"status": "already_processed", "webhook_event_id": str(webhook_event_id)}

    webhook_event.mark_processing()
    webhook_event.save()

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save()
        logger.exception(
            "Webhook processing failed with exception",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "event_type": webhook_event.event_type,
            },
        )
        raise

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.warning(
            "Webhook handler failed",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "event_type": webhook_event.event_type,
                "error": error_msg,
                "error_code": result.error_code,
            },
        )
        return {
            "status": "handler_failed",
            "webhook_event_id": str(webhook_event_id),
            "error": error_msg,
        }

    webhook_event.mark_processed()
    webhook_event.save()
    logger.info(
        "Webhook processed",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "event_type": webhook_event.event_type,
        },
    )
    return {
        "status": "processed",
        "webhook_event_id": str(webhook_event_id),
        "stripe_event_id": webhook_event.stripe_event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Re-queue failed webhook events that still have retries left."""
    failed = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:BATCH_SIZE]

    queued_count = 0
    for webhook in failed:
        try:
            process_webhook_event.delay(str(webhook.id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue webhook for retry: {e}",
                extra={"webhook_event_id": str(webhook.id)},
            )

    logger.info("Queued failed webhooks for retry", extra={"queued_count": queued_count})
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Reset webhooks stuck in PROCESSING (worker crashed mid-handler) to
    FAILED so retry_failed_webhooks picks them up.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    stuck = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck:
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save()
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={"stripe_event_id": webhook.stripe_event_id},
        )
    return {"reset_count": reset_count}


@shared_task
def cleanup_old_webhooks(days: int = 90) -> dict:
    """Delete processed webhook events older than ``days``; failed ones are kept."""
    cutoff = timezone.now() - timedelta(days=days)
    deleted_count, _ = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSED,
        processed_at__lt=cutoff,
    ).delete()

    if deleted_count > 0:
        logger.info(
            f"Deleted {deleted_count} old webhook events",
            extra={"deleted_count": deleted_count, "cutoff_date": cutoff.isoformat()},
        )
    return {"deleted_count": deleted_count}


# =============================================================================
# Escrow
# =============================================================================


@shared_task(bind=True, acks_late=True)
def release_due_escrows(self) -> dict:
    """
    Release held payments whose ceremony is complete and release time has
    passed. Per-booking failures are logged and counted by the orchestrator.
    """
    from payments.services import PaymentOrchestrator

    return PaymentOrchestrator().release_due_escrows()


@shared_task(bind=True)
def reconcile_inconsistent_payments(self) -> dict:
    """Reconcile every record flagged ``inconsistent_external_state``."""
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    stats = {"checked": 0, "reconciled": 0, "errors": 0}

    booking_ids = PaymentRecord.objects.filter(inconsistent_external_state=True).values_list(
        "booking_id", flat=True
    )[:BATCH_SIZE]

    for booking_id in booking_ids:
        stats["checked"] += 1
        try:
            orchestrator.reconcile(booking_id, actor="system:reconcile_task")
            stats["reconciled"] += 1
        except Exception as e:
            stats["errors"] += 1
            logger.error(
                f"Reconciliation failed: {e}",
                extra={"booking_id": str(booking_id)},
                exc_info=True,
            )

    logger.info("Reconciliation pass completed", extra=stats)
    return stats


# =============================================================================
# Premium Placements
# =============================================================================


@shared_task(bind=True)
def run_premium_scheduler(self) -> dict:
    """Expire premium placements and send expiry reminders."""
    from payments.services import PremiumPlacementScheduler

    return PremiumPlacementScheduler().run()
