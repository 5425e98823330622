"""
PremiumPlacement and PremiumEvent models.

A premium placement is a paid, time-boxed boost to a priest's search
ranking. ``boost_applied`` records whether ``ranking_delta`` is currently
added to PriestProfile.search_ranking, which is what makes both applying and
reversing the boost single, idempotent operations.
"""

from __future__ import annotations

from django.db import models
from django.db.models import F

from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import PremiumEventType, PremiumPlacementStatus


class PremiumPlacement(UUIDPrimaryKeyMixin, BaseModel):
    """
    A priest's premium search placement.

    Lifecycle:
        extend_placement -> ACTIVE (boost applied)
        scheduler at expires_at -> EXPIRED (boost reversed)
        extend_placement on an EXPIRED placement -> ACTIVE again
    """

    priest = models.OneToOneField(
        "marketplace.PriestProfile",
        on_delete=models.CASCADE,
        related_name="premium_placement",
    )

    status = models.CharField(
        max_length=10,
        choices=PremiumPlacementStatus.choices,
        default=PremiumPlacementStatus.ACTIVE,
        db_index=True,
    )

    expires_at = models.DateTimeField(db_index=True)

    ranking_delta = models.IntegerField(default=100)

    boost_applied = models.BooleanField(
        default=False,
        help_text="Whether ranking_delta is currently added to the priest's ranking",
    )

    reminder_sent_at = models.DateTimeField(null=True, blank=True)

    extended_at = models.DateTimeField(null=True, blank=True)

    expired_at = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        ordering = ["expires_at"]
        verbose_name = "Premium Placement"
        verbose_name_plural = "Premium Placements"
        indexes = [
            models.Index(fields=["status", "expires_at"], name="premium_status_expires_idx"),
        ]

    def __str__(self) -> str:
        return f"PremiumPlacement({self.priest_id}, {self.status}, {self.expires_at:%Y-%m-%d})"

    def save(self, *args, **kwargs):
        is_update = not self._state.adding
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    @property
    def is_active(self) -> bool:
        return self.status == PremiumPlacementStatus.ACTIVE


class PremiumEvent(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    """Append-only log of placement extensions, expiries and reminders."""

    placement = models.ForeignKey(
        PremiumPlacement,
        on_delete=models.CASCADE,
        related_name="events",
    )

    event_type = models.CharField(max_length=20, choices=PremiumEventType.choices)

    previous_expires_at = models.DateTimeField(null=True, blank=True)

    new_expires_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at"]

    def __str__(self) -> str:
        return f"PremiumEvent({self.event_type}, {self.placement_id})"
