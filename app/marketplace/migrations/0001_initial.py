import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


def timestamp_fields():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
        (
            "id",
            models.UUIDField(
                default=uuid.uuid4,
                editable=False,
                help_text="Unique identifier for this record",
                primary_key=True,
                serialize=False,
            ),
        ),
    ]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("payments", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Temple",
            fields=[
                *timestamp_fields(),
                ("name", models.CharField(max_length=200)),
                (
                    "connected_account",
                    models.ForeignKey(
                        blank=True,
                        help_text="Stripe Connect account receiving the temple share",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="temples",
                        to="payments.connectedaccount",
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="PriestProfile",
            fields=[
                *timestamp_fields(),
                ("display_name", models.CharField(blank=True, max_length=200)),
                (
                    "priest_type",
                    models.CharField(
                        choices=[
                            ("independent", "Independent"),
                            ("temple_employee", "Temple Employee"),
                        ],
                        default="independent",
                        max_length=20,
                    ),
                ),
                (
                    "temple_share_percentage",
                    models.PositiveSmallIntegerField(
                        default=30,
                        help_text="Percent of each booking total paid to the temple (temple employees only)",
                    ),
                ),
                (
                    "search_ranking",
                    models.IntegerField(
                        db_index=True,
                        default=0,
                        help_text="Search ordering score; premium placements add to it",
                    ),
                ),
                (
                    "average_rating",
                    models.DecimalField(decimal_places=2, default=0, max_digits=3),
                ),
                ("review_count", models.PositiveIntegerField(default=0)),
                ("is_verified", models.BooleanField(default=False)),
                (
                    "connected_account",
                    models.ForeignKey(
                        blank=True,
                        help_text="Stripe Connect account receiving the priest share",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="priests",
                        to="payments.connectedaccount",
                    ),
                ),
                (
                    "temple",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="priests",
                        to="marketplace.temple",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="priest_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-search_ranking", "-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("temple_share_percentage__lte", 100)),
                        name="priest_temple_share_max_100",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="CancellationPolicy",
            fields=[
                *timestamp_fields(),
                ("name", models.CharField(default="Standard", max_length=100)),
                ("free_cancellation_hours", models.PositiveIntegerField(default=48)),
                ("tiers", models.JSONField(blank=True, default=list)),
                ("no_refund_hours", models.PositiveIntegerField(default=0)),
                (
                    "emergency_exceptions",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Reason codes that always earn a full refund",
                    ),
                ),
                (
                    "priest",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="cancellation_policies",
                        to="marketplace.priestprofile",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Cancellation policies",
            },
        ),
        migrations.CreateModel(
            name="Booking",
            fields=[
                *timestamp_fields(),
                ("total_price_cents", models.PositiveBigIntegerField()),
                ("advance_percentage", models.PositiveSmallIntegerField(default=50)),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("scheduled_at", models.DateTimeField(db_index=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("quote_requested", "Quote Requested"),
                            ("confirmed", "Confirmed"),
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="quote_requested",
                        max_length=20,
                    ),
                ),
                (
                    "cancellation_policy",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="bookings",
                        to="marketplace.cancellationpolicy",
                    ),
                ),
                (
                    "devotee",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bookings",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "priest",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bookings",
                        to="marketplace.priestprofile",
                    ),
                ),
                (
                    "temple",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="bookings",
                        to="marketplace.temple",
                    ),
                ),
            ],
            options={
                "ordering": ["-scheduled_at"],
                "indexes": [
                    models.Index(
                        fields=["priest", "scheduled_at"], name="booking_priest_scheduled_idx"
                    ),
                    models.Index(
                        fields=["status", "scheduled_at"], name="booking_status_scheduled_idx"
                    ),
                ],
            },
        ),
    ]
