"""
Notification service layer.

Services:
    NotificationService: Create notifications and hand them to push delivery

Design Principles:
    - Services are stateless (use class methods)
    - Expected failures return ServiceResult.failure()
    - ``send`` never raises; the payment engine must not fail on a push

Usage:
    from notifications.services import NotificationService

    result = NotificationService.create_notification(
        recipient=user,
        title="Payment Released",
        body="$190.00 USD is on its way to your account.",
        notification_type="escrow_released",
        data={"booking_id": str(booking.id)},
    )

    # Fire-and-forget form used by the payment engine
    NotificationService.send(user, "Refund Processed", explanation)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.db import IntegrityError

from core.services import BaseService, ServiceResult

from notifications.models import Notification, NotificationType

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class NotificationService(BaseService):
    """
    Service for notification operations.

    Methods:
        create_notification: Store a notification and enqueue its delivery
        send: NotificationSender entry point, returns a bool
        mark_as_read: Mark a single notification as read
    """

    @classmethod
    def create_notification(
        cls,
        recipient,
        title: str,
        body: str = "",
        notification_type: str = NotificationType.GENERAL,
        data: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ServiceResult[Notification]:
        """
        Create a notification for a user and enqueue push delivery.

        Error codes:
            DUPLICATE: Notification with this idempotency_key already exists
        """
        from notifications import tasks

        if notification_type not in NotificationType.values:
            notification_type = NotificationType.GENERAL

        if idempotency_key and Notification.objects.filter(
            idempotency_key=idempotency_key
        ).exists():
            cls.get_logger().info(
                "Duplicate notification prevented",
                extra={"idempotency_key": idempotency_key},
            )
            return ServiceResult.failure(
                f"Notification with idempotency_key already exists: {idempotency_key}",
                error_code="DUPLICATE",
            )

        try:
            with cls.atomic():
                notification = Notification.objects.create(
                    recipient=recipient,
                    notification_type=notification_type,
                    title=title,
                    body=body,
                    data=data or {},
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            # Lost a race against the same idempotency key
            return ServiceResult.failure(
                f"Notification with idempotency_key already exists: {idempotency_key}",
                error_code="DUPLICATE",
            )

        tasks.send_push_notification.delay(str(notification.id))

        cls.get_logger().info(
            "Created notification",
            extra={
                "notification_id": str(notification.id),
                "recipient_id": recipient.pk,
                "notification_type": notification_type,
            },
        )
        return ServiceResult.success(notification)

    @classmethod
    def send(
        cls,
        target: Any,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """
        Send a notification, reporting failure as False.

        ``target`` is a User or a user id. ``data["type"]`` selects the
        notification type when present.
        """
        data = dict(data or {})
        idempotency_key = data.pop("idempotency_key", None)
        try:
            recipient = cls._resolve_recipient(target)
            if recipient is None:
                cls.get_logger().warning(
                    "Notification target not found",
                    extra={"target": str(target), "title": title},
                )
                return False

            result = cls.create_notification(
                recipient=recipient,
                title=title,
                body=body,
                notification_type=data.get("type", NotificationType.GENERAL),
                data=data,
                idempotency_key=idempotency_key,
            )
        except Exception:
            cls.get_logger().exception(
                "Notification send failed",
                extra={"target": str(target), "title": title},
            )
            return False

        return result.success or result.error_code == "DUPLICATE"

    @classmethod
    def mark_as_read(cls, notification: Notification) -> ServiceResult[Notification]:
        if not notification.is_read:
            notification.is_read = True
            notification.save(update_fields=["is_read", "updated_at"])
        return ServiceResult.success(notification)

    @staticmethod
    def _resolve_recipient(target):
        User = get_user_model()
        if isinstance(target, User):
            return target
        if target is None:
            return None
        return User.objects.filter(pk=target).first()
