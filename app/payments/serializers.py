"""
DRF serializers for the escrow endpoints.

Related files:
    - models/: PaymentRecord, EscrowTransfer, RefundTransaction
    - views.py: Escrow API views

Usage:
    serializer = PaymentRecordSerializer(record)
    data = serializer.data
"""

from __future__ import annotations

from rest_framework import serializers

from payments.models import EscrowTransfer, PaymentRecord, RefundTransaction


class EscrowTransferSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscrowTransfer
        fields = [
            "party",
            "amount_cents",
            "currency",
            "status",
            "stripe_transfer_id",
            "failure_reason",
            "confirmed_at",
        ]
        read_only_fields = fields


class PaymentRecordSerializer(serializers.ModelSerializer):
    """
    Escrow status for a booking.

    Includes the split in cents and the transfer legs of any release.
    """

    transfers = EscrowTransferSerializer(many=True, read_only=True)

    class Meta:
        model = PaymentRecord
        fields = [
            "id",
            "booking_id",
            "status",
            "currency",
            "total_cents",
            "advance_cents",
            "remaining_cents",
            "priest_share_cents",
            "temple_share_cents",
            "platform_fee_cents",
            "retention_cents",
            "escrow_release_at",
            "is_on_hold",
            "hold_reason",
            "inconsistent_external_state",
            "held_at",
            "released_at",
            "refunded_at",
            "transfers",
            "version",
            "updated_at",
        ]
        read_only_fields = fields


class RefundTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = RefundTransaction
        fields = [
            "id",
            "booking_id",
            "refund_amount_cents",
            "cancellation_fee_cents",
            "refund_percentage",
            "reason_code",
            "applied_tier",
            "policy_rule",
            "policy_explanation",
            "stripe_refund_id",
            "status",
            "approved_by",
            "created_at",
        ]
        read_only_fields = fields


class ReleaseEscrowSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class HoldEscrowSerializer(serializers.Serializer):
    """Place (``on_hold=true``) or lift (``on_hold=false``) a dispute hold."""

    on_hold = serializers.BooleanField(default=True)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["on_hold"] and not attrs["reason"]:
            raise serializers.ValidationError({"reason": "A reason is required to place a hold."})
        return attrs


class CancellationRefundSerializer(serializers.Serializer):
    """
    Request a cancellation refund.

    ``emergency_type`` switches to an emergency refund, which staff must
    approve; the approving user is recorded.
    """

    reason_code = serializers.CharField(max_length=100, required=False, allow_blank=True)
    emergency_type = serializers.CharField(max_length=100, required=False, allow_blank=True)
