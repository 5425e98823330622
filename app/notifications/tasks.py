"""
Celery tasks for notification delivery.

Tasks:
    send_push_notification: Deliver a stored notification by push

Tasks are idempotent: re-running on a notification that is no longer
PENDING is a no-op.
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.utils import timezone

from notifications.models import DeliveryStatus, Notification

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def send_push_notification(self, notification_id: str) -> bool:
    """
    Send a notification via push.

    Returns:
        True if sent or already handled, False if the notification is gone
    """
    try:
        notification = Notification.objects.get(id=notification_id)
    except Notification.DoesNotExist:
        logger.warning("Notification not found", extra={"notification_id": notification_id})
        return False

    if notification.delivery_status != DeliveryStatus.PENDING:
        logger.info(
            "Notification already delivered, skipping",
            extra={"notification_id": notification_id, "status": notification.delivery_status},
        )
        return True

    # TODO: Replace the stub with FCM/APNS once device tokens are stored
    provider_message_id = f"stub-push-{notification_id}"

    notification.delivery_status = DeliveryStatus.SENT
    notification.provider_message_id = provider_message_id
    notification.sent_at = timezone.now()
    notification.attempt_count += 1
    notification.save(
        update_fields=[
            "delivery_status",
            "provider_message_id",
            "sent_at",
            "attempt_count",
            "updated_at",
        ]
    )

    logger.info(
        "Push notification sent",
        extra={
            "notification_id": notification_id,
            "recipient_id": notification.recipient_id,
            "provider_message_id": provider_message_id,
        },
    )
    return True
