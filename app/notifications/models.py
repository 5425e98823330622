"""
Notification model.

One row per notification sent to a user, carrying both the rendered message
and its push delivery status.

Usage:
    from notifications.models import Notification

    unread = Notification.objects.filter(recipient=user, is_read=False)
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class NotificationType(models.TextChoices):
    """Notification kinds sent by the payment engine."""

    PAYMENT_RECEIVED = "payment_received", "Payment Received"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    ESCROW_RELEASED = "escrow_released", "Escrow Released"
    ESCROW_ON_HOLD = "escrow_on_hold", "Escrow On Hold"
    REFUND_PROCESSED = "refund_processed", "Refund Processed"
    REMAINING_BALANCE_DUE = "remaining_balance_due", "Remaining Balance Due"
    PREMIUM_EXPIRED = "premium_expired", "Premium Placement Expired"
    PREMIUM_EXPIRING = "premium_expiring", "Premium Expiring Soon"
    GENERAL = "general", "General"


class DeliveryStatus(models.TextChoices):
    """
    Status of the push delivery.

    State Flow:
        PENDING -> SENT
        PENDING -> FAILED (retries exhausted)
    """

    PENDING = "pending", "Pending"
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"


class Notification(UUIDPrimaryKeyMixin, BaseModel):
    """
    A notification sent to a user.

    Fields:
        recipient: User receiving the notification
        notification_type: What the notification is about
        title / body: Fully rendered text
        data: Deep-link payload (booking id, amounts)
        idempotency_key: Prevents sending the same notice twice
        delivery_status / provider_message_id / attempt_count: Push delivery
    """

    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
    )

    notification_type = models.CharField(
        max_length=50,
        choices=NotificationType.choices,
        default=NotificationType.GENERAL,
    )

    title = models.CharField(max_length=500)

    body = models.TextField(blank=True, default="")

    data = models.JSONField(default=dict, blank=True)

    is_read = models.BooleanField(default=False, db_index=True)

    idempotency_key = models.CharField(max_length=255, null=True, blank=True)

    delivery_status = models.CharField(
        max_length=20,
        choices=DeliveryStatus.choices,
        default=DeliveryStatus.PENDING,
        db_index=True,
    )

    provider_message_id = models.CharField(max_length=255, null=True, blank=True)

    sent_at = models.DateTimeField(null=True, blank=True)

    failure_reason = models.TextField(null=True, blank=True)

    attempt_count = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["recipient", "is_read", "-created_at"],
                name="notif_recipient_unread_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["idempotency_key"],
                name="notif_idempotency_key_unique",
                condition=models.Q(idempotency_key__isnull=False),
            ),
        ]

    def __str__(self) -> str:
        return f"Notification({self.notification_type}) -> {self.recipient_id}"
