"""
RefundTransaction model - the immutable record of a cancellation refund.

One row per booking. The row stores what was computed (refund, fee, the tier
or rule applied and its explanation) alongside what the processor did, so a
disputed refund can be explained from this row alone.

Usage:
    from payments.models import RefundTransaction

    refund = RefundTransaction.objects.get(booking_id=booking.id)
    print(refund.policy_explanation)
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import RefundTransactionStatus


class RefundTransaction(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    """
    A cancellation refund, written once and never modified.

    Fields:
        booking_id: Booking that was cancelled (unique; one cancellation per booking)
        payment_record: Ledger record the refund was taken from
        payment_intent_id: PaymentIntent the refund was issued against
        refund_amount_cents / cancellation_fee_cents: Sum to the advance
        refund_percentage: Percent of the advance returned
        reason_code: Cancellation reason supplied by the caller
        applied_tier: Tier dict, when a tier decided the percentage
        policy_explanation: Human-readable reason for the amount
        stripe_refund_id: Stripe Refund ID (re_xxx); empty for zero refunds
        approved_by: Staff approver for emergency refunds
    """

    booking_id = models.UUIDField(
        unique=True,
        help_text="Booking that was cancelled",
    )

    payment_record = models.ForeignKey(
        "payments.PaymentRecord",
        on_delete=models.PROTECT,
        related_name="refund_transactions",
    )

    payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Originating PaymentIntent ID (pi_xxx)",
    )

    currency = models.CharField(max_length=3, default="usd")

    refund_amount_cents = models.PositiveBigIntegerField()

    cancellation_fee_cents = models.PositiveBigIntegerField()

    refund_percentage = models.PositiveSmallIntegerField()

    reason_code = models.CharField(max_length=100, blank=True, default="")

    applied_tier = models.JSONField(null=True, blank=True)

    policy_rule = models.CharField(
        max_length=30,
        help_text="Which rule decided the percentage (emergency, free_window, tier, ...)",
    )

    policy_explanation = models.TextField()

    stripe_refund_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Refund ID (re_xxx)",
    )

    status = models.CharField(
        max_length=20,
        choices=RefundTransactionStatus.choices,
        default=RefundTransactionStatus.PENDING,
    )

    actor = models.CharField(max_length=255)

    approved_by = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund Transaction"
        verbose_name_plural = "Refund Transactions"

    def __str__(self) -> str:
        amount_display = f"{self.refund_amount_cents / 100:.2f} {self.currency.upper()}"
        return f"RefundTransaction({self.booking_id}, {amount_display}, {self.status})"
