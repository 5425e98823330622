"""
State enums for payment models.

Django TextChoices used by the FSM fields and plain status columns of the
escrow engine. Stored values are the lowercase strings shown below.

State Machines Overview:

PaymentRecord States:
    requires_payment -> processing -> held_in_escrow -> released -> completed
    held_in_escrow -> partially_released -> released (retry of failed legs)
    processing/held_in_escrow/partially_released -> refunded/partially_refunded

EscrowTransfer States:
    pending -> succeeded
    pending -> failed -> succeeded (retry)

RefundTransaction States:
    pending | succeeded | failed (fixed at creation)

PremiumPlacement States:
    active -> expired -> active (extension after expiry)
"""

from django.db import models


class PaymentRecordStatus(models.TextChoices):
    """
    States for the PaymentRecord lifecycle.

    Terminal states: COMPLETED, REFUNDED, PARTIALLY_REFUNDED

    RELEASED is terminal for refunds: once funds have left escrow, they can
    only move forward to COMPLETED.
    """

    REQUIRES_PAYMENT = "requires_payment", "Requires Payment"
    PROCESSING = "processing", "Processing"
    HELD_IN_ESCROW = "held_in_escrow", "Held in Escrow"
    PARTIALLY_RELEASED = "partially_released", "Partially Released"
    RELEASED = "released", "Released"
    COMPLETED = "completed", "Completed"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"


class TransferParty(models.TextChoices):
    """Recipient of one leg of an escrow release."""

    PRIEST = "priest", "Priest"
    TEMPLE = "temple", "Temple"


class TransferStatus(models.TextChoices):
    """
    Status of one escrow release leg.

    A SUCCEEDED leg is never sent again; FAILED legs are retried by the next
    release attempt under the same idempotency key.
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class RefundTransactionStatus(models.TextChoices):
    """Outcome of a cancellation refund, fixed when the row is written."""

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class RefundReason(models.TextChoices):
    """
    Why a booking was cancelled.

    Policy emergency exceptions are free-form codes on the policy itself
    (e.g. "medical_emergency"); any code that is not one of these is stored
    verbatim on the refund transaction.
    """

    CUSTOMER_REQUEST = "customer_request", "Requested by Devotee"
    PRIEST_CANCELLATION = "priest_cancellation", "Cancelled by Priest"
    DISPUTE = "dispute", "Dispute"
    EMERGENCY = "emergency", "Emergency"
    SERVICE_NOT_COMPLETED = "service_not_completed", "Service Not Completed"


class PremiumPlacementStatus(models.TextChoices):
    """Premium search placement status."""

    ACTIVE = "active", "Active"
    EXPIRED = "expired", "Expired"


class PremiumEventType(models.TextChoices):
    EXTENDED = "extended", "Extended"
    EXPIRED = "expired", "Expired"
    REMINDED = "reminded", "Reminder Sent"


class OnboardingStatus(models.TextChoices):
    """
    Stripe Connect onboarding status for ConnectedAccount.

    Only COMPLETE status allows receiving transfers.
    """

    NOT_STARTED = "not_started", "Not Started"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETE = "complete", "Complete"
    REJECTED = "rejected", "Rejected"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING -> PROCESSING -> PROCESSED
        PENDING -> PROCESSING -> FAILED (can retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


__all__ = [
    "OnboardingStatus",
    "PaymentRecordStatus",
    "PremiumEventType",
    "PremiumPlacementStatus",
    "RefundReason",
    "RefundTransactionStatus",
    "TransferParty",
    "TransferStatus",
    "WebhookEventStatus",
]
