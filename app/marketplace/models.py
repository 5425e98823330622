"""
Marketplace models read by the escrow engine.

- Temple: Venue that employs priests and receives a share of their bookings
- PriestProfile: Priest listing with payout account and ranking data
- CancellationPolicy: Tiered refund schedule attached to a priest's services
- Booking: A devotee's ceremony booking with a locked price

The engine only reads these records, with two exceptions: the premium
scheduler adjusts PriestProfile.search_ranking, and the booking lifecycle is
advanced by the booking flow, not by payments.

Usage:
    from marketplace.models import Booking, BookingStatus

    booking = Booking.objects.create(
        devotee=user,
        priest=priest,
        total_price_cents=20000,
        advance_percentage=50,
        scheduled_at=timezone.now() + timedelta(days=7),
    )
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.exceptions import ValidationError
from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class PriestType(models.TextChoices):
    INDEPENDENT = "independent", "Independent"
    TEMPLE_EMPLOYEE = "temple_employee", "Temple Employee"


class BookingStatus(models.TextChoices):
    """
    Booking lifecycle.

    State Flow:
        QUOTE_REQUESTED -> CONFIRMED -> IN_PROGRESS -> COMPLETED
        any non-completed state -> CANCELLED
    """

    QUOTE_REQUESTED = "quote_requested", "Quote Requested"
    CONFIRMED = "confirmed", "Confirmed"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class Temple(UUIDPrimaryKeyMixin, BaseModel):
    """A temple that employs priests and takes a share of their bookings."""

    name = models.CharField(max_length=200)

    connected_account = models.ForeignKey(
        "payments.ConnectedAccount",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="temples",
        help_text="Stripe Connect account receiving the temple share",
    )

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class PriestProfile(UUIDPrimaryKeyMixin, BaseModel):
    """
    A priest's marketplace listing.

    Fields used by the escrow engine:
        priest_type / temple / temple_share_percentage: pricing split input
        connected_account: destination for the priest's share
        average_rating / review_count / is_verified: early release eligibility
        search_ranking: boosted while a premium placement is active
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="priest_profile",
    )

    display_name = models.CharField(max_length=200, blank=True)

    priest_type = models.CharField(
        max_length=20,
        choices=PriestType.choices,
        default=PriestType.INDEPENDENT,
    )

    temple = models.ForeignKey(
        Temple,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="priests",
    )

    temple_share_percentage = models.PositiveSmallIntegerField(
        default=30,
        help_text="Percent of each booking total paid to the temple (temple employees only)",
    )

    connected_account = models.ForeignKey(
        "payments.ConnectedAccount",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="priests",
        help_text="Stripe Connect account receiving the priest share",
    )

    search_ranking = models.IntegerField(
        default=0,
        db_index=True,
        help_text="Search ordering score; premium placements add to it",
    )

    average_rating = models.DecimalField(
        max_digits=3,
        decimal_places=2,
        default=0,
    )

    review_count = models.PositiveIntegerField(default=0)

    is_verified = models.BooleanField(default=False)

    class Meta:
        ordering = ["-search_ranking", "-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(temple_share_percentage__lte=100),
                name="priest_temple_share_max_100",
            ),
        ]

    def __str__(self) -> str:
        return self.display_name or str(self.user)

    @property
    def is_temple_employee(self) -> bool:
        return self.priest_type == PriestType.TEMPLE_EMPLOYEE


class CancellationPolicy(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tiered cancellation schedule for a priest's services.

    ``tiers`` is a list of ``{"hours_before_service": int,
    "fee_percentage": int}`` dicts. The evaluator picks the tier with the
    largest threshold not above the notice given, so list order does not
    matter.
    """

    priest = models.ForeignKey(
        PriestProfile,
        on_delete=models.CASCADE,
        related_name="cancellation_policies",
    )

    name = models.CharField(max_length=100, default="Standard")

    free_cancellation_hours = models.PositiveIntegerField(default=48)

    tiers = models.JSONField(default=list, blank=True)

    no_refund_hours = models.PositiveIntegerField(default=0)

    emergency_exceptions = models.JSONField(
        default=list,
        blank=True,
        help_text="Reason codes that always earn a full refund",
    )

    class Meta:
        verbose_name_plural = "Cancellation policies"

    def __str__(self) -> str:
        return f"{self.name} ({self.priest})"

    @staticmethod
    def default_tiers() -> list[dict[str, int]]:
        return [
            {"hours_before_service": 48, "fee_percentage": 0},
            {"hours_before_service": 24, "fee_percentage": 25},
            {"hours_before_service": 12, "fee_percentage": 50},
            {"hours_before_service": 0, "fee_percentage": 100},
        ]

    @staticmethod
    def default_emergency_exceptions() -> list[str]:
        return [
            "weather_emergency",
            "medical_emergency",
            "family_emergency",
            "natural_disaster",
        ]


class Booking(UUIDPrimaryKeyMixin, BaseModel):
    """
    A devotee's ceremony booking.

    The total price is fixed once the quote is accepted: any save that
    changes ``total_price_cents`` after the booking left QUOTE_REQUESTED
    raises ValidationError.
    """

    devotee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="bookings",
    )

    priest = models.ForeignKey(
        PriestProfile,
        on_delete=models.PROTECT,
        related_name="bookings",
    )

    temple = models.ForeignKey(
        Temple,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bookings",
    )

    cancellation_policy = models.ForeignKey(
        CancellationPolicy,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bookings",
    )

    total_price_cents = models.PositiveBigIntegerField()

    advance_percentage = models.PositiveSmallIntegerField(default=50)

    currency = models.CharField(max_length=3, default="usd")

    scheduled_at = models.DateTimeField(db_index=True)

    status = models.CharField(
        max_length=20,
        choices=BookingStatus.choices,
        default=BookingStatus.QUOTE_REQUESTED,
        db_index=True,
    )

    class Meta:
        ordering = ["-scheduled_at"]
        indexes = [
            models.Index(fields=["priest", "scheduled_at"], name="booking_priest_scheduled_idx"),
            models.Index(fields=["status", "scheduled_at"], name="booking_status_scheduled_idx"),
        ]

    def __str__(self) -> str:
        return f"Booking({self.id}, {self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        loaded = dict(zip(field_names, values))
        instance._loaded_price_cents = loaded.get("total_price_cents")
        instance._loaded_status = loaded.get("status")
        return instance

    def save(self, *args, **kwargs):
        loaded_status = getattr(self, "_loaded_status", None)
        loaded_price = getattr(self, "_loaded_price_cents", None)
        if (
            not self._state.adding
            and loaded_status not in (None, BookingStatus.QUOTE_REQUESTED)
            and loaded_price is not None
            and self.total_price_cents != loaded_price
        ):
            raise ValidationError(
                "Booking price cannot change after the quote is accepted",
                error_code="BOOKING_PRICE_LOCKED",
                details={
                    "booking_id": str(self.pk),
                    "locked_price_cents": loaded_price,
                },
            )
        super().save(*args, **kwargs)
        self._loaded_price_cents = self.total_price_cents
        self._loaded_status = self.status
