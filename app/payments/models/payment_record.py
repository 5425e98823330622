"""
PaymentRecord, EscrowTransfer and PaymentAuditEntry models.

PaymentRecord is the escrow ledger's row: one per booking, created when the
advance payment intent is requested and moved through its lifecycle only by
payments.services.escrow_ledger.EscrowLedger. EscrowTransfer rows are the
per-party legs of a release. PaymentAuditEntry is the append-only history
used for dispute resolution.

Usage:
    from payments.models import PaymentRecord
    from payments.services.escrow_ledger import EscrowLedger

    record = PaymentRecord.objects.get(booking_id=booking.id)
    record = EscrowLedger().transition(record, "hold_in_escrow", actor="webhook")
"""

from __future__ import annotations

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import (
    PaymentRecordStatus,
    TransferParty,
    TransferStatus,
)

S = PaymentRecordStatus

REFUNDABLE_STATES = [S.PROCESSING, S.HELD_IN_ESCROW, S.PARTIALLY_RELEASED]


class PaymentRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Escrow ledger entry for one booking's payment.

    State Flow:
        REQUIRES_PAYMENT -> PROCESSING -> HELD_IN_ESCROW -> RELEASED -> COMPLETED
        HELD_IN_ESCROW -> PARTIALLY_RELEASED -> RELEASED

    Refund Flow:
        PROCESSING/HELD_IN_ESCROW/PARTIALLY_RELEASED -> REFUNDED/PARTIALLY_REFUNDED

    There is no edge back into HELD_IN_ESCROW, so a record can be released
    at most once.

    Fields:
        booking_id: Booking this payment belongs to (plain UUID, so the
            record outlives the booking)
        *_cents: Pricing split snapshot taken at advance-payment time
        status: Current FSM state (protected; change through EscrowLedger)
        stripe_payment_intent_id: Advance PaymentIntent (pi_xxx)
        remaining_payment_intent_id: PaymentIntent for the balance
        transfer_group: Stripe transfer group linking charge and transfers
        priest_account_id / temple_account_id: Destination snapshots (acct_xxx)
        escrow_release_at: When automatic release becomes possible
        is_on_hold: Dispute hold blocking any release
        inconsistent_external_state: Ledger may disagree with Stripe
        version: Optimistic locking version
    """

    # ==========================================================================
    # Booking Reference
    # ==========================================================================

    booking_id = models.UUIDField(
        unique=True,
        help_text="Booking this payment belongs to",
    )

    devotee_id = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="User id of the paying devotee",
    )

    priest_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="PriestProfile id at payment time",
    )

    # ==========================================================================
    # Split Snapshot (integer cents)
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    total_cents = models.PositiveBigIntegerField()
    advance_cents = models.PositiveBigIntegerField()
    remaining_cents = models.PositiveBigIntegerField()
    priest_share_cents = models.PositiveBigIntegerField()
    temple_share_cents = models.PositiveBigIntegerField(default=0)
    platform_fee_cents = models.PositiveBigIntegerField()
    retention_cents = models.PositiveBigIntegerField(default=0)

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=S.REQUIRES_PAYMENT,
        choices=S.choices,
        db_index=True,
        protected=True,
        help_text="Current escrow state (managed by EscrowLedger)",
    )

    # ==========================================================================
    # Stripe Integration
    # ==========================================================================

    stripe_payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Advance PaymentIntent ID (pi_xxx)",
    )

    remaining_payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="PaymentIntent ID for the remaining balance",
    )

    transfer_group = models.CharField(
        max_length=255,
        help_text="Stripe transfer group (booking_<id>)",
    )

    priest_account_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Priest's Stripe account at payment time",
    )

    temple_account_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Temple's Stripe account at payment time",
    )

    # ==========================================================================
    # Escrow Controls
    # ==========================================================================

    escrow_release_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When funds become eligible for automatic release",
    )

    is_on_hold = models.BooleanField(
        default=False,
        help_text="Dispute hold; blocks automatic and manual release",
    )

    hold_reason = models.TextField(blank=True, default="")

    inconsistent_external_state = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Ledger and processor may disagree; reconcile before moving money",
    )

    inconsistency_reason = models.TextField(blank=True, default="")

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    processing_at = models.DateTimeField(null=True, blank=True)
    held_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    remaining_collected_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Record"
        verbose_name_plural = "Payment Records"
        indexes = [
            models.Index(fields=["status", "escrow_release_at"], name="payment_status_release_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(advance_cents__gt=0),
                name="payment_record_advance_positive",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.advance_cents / 100:.2f} {self.currency.upper()}"
        return f"PaymentRecord({self.booking_id}, {self.status}, {amount_display})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        On update, atomically increments the version field to detect
        concurrent modifications.
        """
        is_update = not self._state.adding
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    @property
    def split(self):
        """The stored split as a PaymentSplit of Money values."""
        from payments.pricing import PaymentSplit

        return PaymentSplit.from_cents(
            currency=self.currency,
            total=self.total_cents,
            advance=self.advance_cents,
            remaining=self.remaining_cents,
            priest_share=self.priest_share_cents,
            temple_share=self.temple_share_cents,
            platform_fee=self.platform_fee_cents,
            retention=self.retention_cents,
        )

    @property
    def is_refundable(self) -> bool:
        return self.status in REFUNDABLE_STATES

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=S.REQUIRES_PAYMENT, target=S.PROCESSING)
    def begin_processing(self):
        """The processor confirmed the advance PaymentIntent."""
        self.processing_at = timezone.now()

    @transition(field=status, source=S.PROCESSING, target=S.HELD_IN_ESCROW)
    def hold_in_escrow(self):
        """Charge settled; funds are captured but not yet transferred."""
        self.held_at = timezone.now()

    @transition(
        field=status,
        source=[S.HELD_IN_ESCROW, S.PARTIALLY_RELEASED],
        target=S.RELEASED,
    )
    def release(self):
        """Every required transfer leg succeeded."""
        self.released_at = timezone.now()

    @transition(field=status, source=S.HELD_IN_ESCROW, target=S.PARTIALLY_RELEASED)
    def release_partially(self):
        """Some legs succeeded; the failed ones are retried later."""
        self.released_at = timezone.now()

    @transition(field=status, source=S.RELEASED, target=S.COMPLETED)
    def complete(self):
        """Stripe acknowledged every transfer."""
        self.completed_at = timezone.now()

    @transition(field=status, source=REFUNDABLE_STATES, target=S.REFUNDED)
    def refund(self):
        self.refunded_at = timezone.now()

    @transition(field=status, source=REFUNDABLE_STATES, target=S.PARTIALLY_REFUNDED)
    def refund_partially(self):
        self.refunded_at = timezone.now()


class EscrowTransfer(UUIDPrimaryKeyMixin, BaseModel):
    """
    One leg of an escrow release (priest or temple).

    Unique per (payment_record, party). A SUCCEEDED leg is never sent again;
    a FAILED leg is retried with the same idempotency key after a transient
    failure, so a transfer that actually went through on a timed-out attempt
    is returned by Stripe rather than duplicated. A permanent rejection bumps
    ``idempotency_attempt`` so the retry is a fresh request.
    """

    payment_record = models.ForeignKey(
        PaymentRecord,
        on_delete=models.PROTECT,
        related_name="transfers",
    )

    party = models.CharField(max_length=10, choices=TransferParty.choices)

    destination_account_id = models.CharField(
        max_length=255,
        help_text="Stripe Connect account receiving the funds (acct_xxx)",
    )

    amount_cents = models.PositiveBigIntegerField()

    currency = models.CharField(max_length=3, default="usd")

    status = models.CharField(
        max_length=20,
        choices=TransferStatus.choices,
        default=TransferStatus.PENDING,
        db_index=True,
    )

    stripe_transfer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Transfer ID (tr_xxx)",
    )

    failure_reason = models.TextField(blank=True, default="")

    attempt_count = models.PositiveSmallIntegerField(default=0)

    idempotency_attempt = models.PositiveSmallIntegerField(
        default=1,
        help_text="Attempt number in the idempotency key; bumped only after a permanent failure",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When Stripe acknowledged the transfer via webhook",
    )

    class Meta:
        ordering = ["party"]
        verbose_name = "Escrow Transfer"
        verbose_name_plural = "Escrow Transfers"
        constraints = [
            models.UniqueConstraint(
                fields=["payment_record", "party"],
                name="escrow_transfer_one_leg_per_party",
            ),
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="escrow_transfer_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowTransfer({self.party}, {self.amount_cents}, {self.status})"

    def mark_succeeded(self, stripe_transfer_id: str) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = TransferStatus.SUCCEEDED
        self.stripe_transfer_id = stripe_transfer_id
        self.failure_reason = ""

    def mark_failed(self, reason: str) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = TransferStatus.FAILED
        self.failure_reason = reason


class PaymentAuditEntry(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    """
    Append-only history of every ledger change.

    Ids are stored as plain UUIDs rather than foreign keys so the history
    survives deletion of the booking. Entries cannot be updated or deleted.

    ``record_version`` is the PaymentRecord version after the change and
    orders entries for the same record.
    """

    booking_id = models.UUIDField(db_index=True)

    payment_record_id = models.UUIDField(db_index=True)

    event = models.CharField(max_length=50)

    from_status = models.CharField(max_length=30)

    to_status = models.CharField(max_length=30)

    actor = models.CharField(
        max_length=255,
        help_text="Who triggered the change (user:<id>, system:<job>, webhook:<evt>)",
    )

    record_version = models.PositiveIntegerField()

    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    class Meta:
        ordering = ["created_at", "record_version"]
        verbose_name = "Payment Audit Entry"
        verbose_name_plural = "Payment Audit Entries"

    def __str__(self) -> str:
        return f"{self.event}: {self.from_status} -> {self.to_status} by {self.actor}"
