"""
WebhookEvent model for Stripe webhook deduplication and retry.

Stripe delivers events at least once. Every delivery is stored under its
unique ``stripe_event_id`` before processing, so a redelivered event that
was already handled is acknowledged without touching the ledger again.

Usage:
    event, created = WebhookEvent.objects.get_or_create(
        stripe_event_id="evt_123",
        defaults={"event_type": "payment_intent.succeeded", "payload": payload},
    )
    if not created and event.is_processed:
        return HttpResponse(status=200)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A received Stripe event and its processing status.

    Processing Flow:
        1. View verifies the Stripe signature
        2. get_or_create on stripe_event_id
        3. Already PROCESSED -> acknowledge, do nothing
        4. Otherwise queue payments.tasks.process_webhook_event
        5. Task marks PROCESSING, dispatches, then PROCESSED or FAILED
    """

    MAX_RETRIES = 5

    stripe_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Event ID (evt_xxx)",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Stripe event type (e.g., 'payment_intent.succeeded')",
    )

    payload = models.JSONField(help_text="Full event payload from Stripe")

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="webhook_status_created_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.stripe_event_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def can_retry(self) -> bool:
        return (
            self.status == WebhookEventStatus.FAILED
            and self.retry_count < self.MAX_RETRIES
        )

    def mark_processing(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message

    def get_object(self) -> dict:
        """The event's ``data.object`` dict, or an empty dict."""
        data = self.payload.get("data") if isinstance(self.payload, dict) else None
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}

    def get_object_id(self) -> str | None:
        return self.get_object().get("id")
