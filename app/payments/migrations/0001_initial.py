import uuid

import django.core.serializers.json
import django.db.models.deletion
import django_fsm
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

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="ConnectedAccount",
            fields=[
                *timestamp_fields(),
                (
                    "stripe_account_id",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe Account ID (acct_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "onboarding_status",
                    models.CharField(
                        choices=[
                            ("not_started", "Not Started"),
                            ("in_progress", "In Progress"),
                            ("complete", "Complete"),
                            ("rejected", "Rejected"),
                        ],
                        db_index=True,
                        default="not_started",
                        help_text="Current Stripe Connect onboarding status",
                        max_length=20,
                    ),
                ),
                (
                    "payouts_enabled",
                    models.BooleanField(
                        default=False,
                        help_text="Whether Stripe has enabled payouts for this account",
                    ),
                ),
                (
                    "charges_enabled",
                    models.BooleanField(
                        default=False,
                        help_text="Whether Stripe has enabled charges for this account",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata (e.g., business type, country)",
                    ),
                ),
            ],
            options={
                "verbose_name": "Connected Account",
                "verbose_name_plural": "Connected Accounts",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                *timestamp_fields(),
                (
                    "booking_id",
                    models.UUIDField(help_text="Booking this payment belongs to", unique=True),
                ),
                (
                    "devotee_id",
                    models.BigIntegerField(
                        blank=True, help_text="User id of the paying devotee", null=True
                    ),
                ),
                (
                    "priest_id",
                    models.UUIDField(
                        blank=True, help_text="PriestProfile id at payment time", null=True
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                ("total_cents", models.PositiveBigIntegerField()),
                ("advance_cents", models.PositiveBigIntegerField()),
                ("remaining_cents", models.PositiveBigIntegerField()),
                ("priest_share_cents", models.PositiveBigIntegerField()),
                ("temple_share_cents", models.PositiveBigIntegerField(default=0)),
                ("platform_fee_cents", models.PositiveBigIntegerField()),
                ("retention_cents", models.PositiveBigIntegerField(default=0)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("requires_payment", "Requires Payment"),
                            ("processing", "Processing"),
                            ("held_in_escrow", "Held in Escrow"),
                            ("partially_released", "Partially Released"),
                            ("released", "Released"),
                            ("completed", "Completed"),
                            ("refunded", "Refunded"),
                            ("partially_refunded", "Partially Refunded"),
                        ],
                        db_index=True,
                        default="requires_payment",
                        help_text="Current escrow state (managed by EscrowLedger)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "stripe_payment_intent_id",
                    models.CharField(
                        blank=True,
                        help_text="Advance PaymentIntent ID (pi_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "remaining_payment_intent_id",
                    models.CharField(
                        blank=True,
                        help_text="PaymentIntent ID for the remaining balance",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "transfer_group",
                    models.CharField(
                        help_text="Stripe transfer group (booking_<id>)", max_length=255
                    ),
                ),
                (
                    "priest_account_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Priest's Stripe account at payment time",
                        max_length=255,
                    ),
                ),
                (
                    "temple_account_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Temple's Stripe account at payment time",
                        max_length=255,
                    ),
                ),
                (
                    "escrow_release_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When funds become eligible for automatic release",
                        null=True,
                    ),
                ),
                (
                    "is_on_hold",
                    models.BooleanField(
                        default=False,
                        help_text="Dispute hold; blocks automatic and manual release",
                    ),
                ),
                ("hold_reason", models.TextField(blank=True, default="")),
                (
                    "inconsistent_external_state",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Ledger and processor may disagree; reconcile before moving money",
                    ),
                ),
                ("inconsistency_reason", models.TextField(blank=True, default="")),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("processing_at", models.DateTimeField(blank=True, null=True)),
                ("held_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("remaining_collected_at", models.DateTimeField(blank=True, null=True)),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Record",
                "verbose_name_plural": "Payment Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "escrow_release_at"],
                        name="payment_status_release_idx",
                    )
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("advance_cents__gt", 0)),
                        name="payment_record_advance_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowTransfer",
            fields=[
                *timestamp_fields(),
                (
                    "party",
                    models.CharField(
                        choices=[("priest", "Priest"), ("temple", "Temple")], max_length=10
                    ),
                ),
                (
                    "destination_account_id",
                    models.CharField(
                        help_text="Stripe Connect account receiving the funds (acct_xxx)",
                        max_length=255,
                    ),
                ),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "stripe_transfer_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Transfer ID (tr_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("attempt_count", models.PositiveSmallIntegerField(default=0)),
                (
                    "idempotency_attempt",
                    models.PositiveSmallIntegerField(
                        default=1,
                        help_text="Attempt number in the idempotency key; bumped only after a permanent failure",
                    ),
                ),
                (
                    "confirmed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When Stripe acknowledged the transfer via webhook",
                        null=True,
                    ),
                ),
                (
                    "payment_record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transfers",
                        to="payments.paymentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Transfer",
                "verbose_name_plural": "Escrow Transfers",
                "ordering": ["party"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("payment_record", "party"),
                        name="escrow_transfer_one_leg_per_party",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="escrow_transfer_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentAuditEntry",
            fields=[
                *timestamp_fields(),
                ("booking_id", models.UUIDField(db_index=True)),
                ("payment_record_id", models.UUIDField(db_index=True)),
                ("event", models.CharField(max_length=50)),
                ("from_status", models.CharField(max_length=30)),
                ("to_status", models.CharField(max_length=30)),
                (
                    "actor",
                    models.CharField(
                        help_text="Who triggered the change (user:<id>, system:<job>, webhook:<evt>)",
                        max_length=255,
                    ),
                ),
                ("record_version", models.PositiveIntegerField()),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Audit Entry",
                "verbose_name_plural": "Payment Audit Entries",
                "ordering": ["created_at", "record_version"],
            },
        ),
        migrations.CreateModel(
            name="RefundTransaction",
            fields=[
                *timestamp_fields(),
                ("booking_id", models.UUIDField(help_text="Booking that was cancelled", unique=True)),
                (
                    "payment_intent_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Originating PaymentIntent ID (pi_xxx)",
                        max_length=255,
                    ),
                ),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("refund_amount_cents", models.PositiveBigIntegerField()),
                ("cancellation_fee_cents", models.PositiveBigIntegerField()),
                ("refund_percentage", models.PositiveSmallIntegerField()),
                ("reason_code", models.CharField(blank=True, default="", max_length=100)),
                ("applied_tier", models.JSONField(blank=True, null=True)),
                (
                    "policy_rule",
                    models.CharField(
                        help_text="Which rule decided the percentage (emergency, free_window, tier, ...)",
                        max_length=30,
                    ),
                ),
                ("policy_explanation", models.TextField()),
                (
                    "stripe_refund_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Refund ID (re_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("actor", models.CharField(max_length=255)),
                ("approved_by", models.CharField(blank=True, default="", max_length=255)),
                (
                    "payment_record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refund_transactions",
                        to="payments.paymentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund Transaction",
                "verbose_name_plural": "Refund Transactions",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                *timestamp_fields(),
                (
                    "stripe_event_id",
                    models.CharField(
                        help_text="Stripe Event ID (evt_xxx)", max_length=255, unique=True
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe event type (e.g., 'payment_intent.succeeded')",
                        max_length=100,
                    ),
                ),
                ("payload", models.JSONField(help_text="Full event payload from Stripe")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="webhook_status_created_idx",
                    )
                ],
            },
        ),
    ]
