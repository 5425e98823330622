"""
Exceptions raised by the escrow payment engine.

Exception Hierarchy:
    PaymentError (base for the payment domain)
    ├── PaymentNotFoundError - No payment record for a booking/intent
    ├── PaymentValidationError - Rejected before any money moves
    │   └── InvalidSplitError - Pricing split cannot be computed
    ├── PaymentProcessingError
    │   └── ExternalProcessorError - Payment processor rejected/failed a call
    │       └── StripeError
    │           ├── StripeCardDeclinedError (permanent)
    │           ├── StripeInsufficientFundsError (permanent)
    │           ├── StripeInvalidAccountError (permanent)
    │           ├── StripeInvalidRequestError (permanent)
    │           ├── StripeRateLimitError (transient)
    │           ├── StripeAPIUnavailableError (transient)
    │           └── StripeTimeoutError (unknown outcome)
    └── InconsistentStateError - Ledger and processor may disagree

    ConflictError subclasses (HTTP 409):
    ├── ConcurrentModificationError - Version changed since read
    ├── LockAcquisitionError - Distributed lock not obtained
    ├── InvalidStateTransitionError - Illegal ledger event
    └── EscrowOnHoldError - Release blocked by a dispute hold

Usage:
    from payments.exceptions import InvalidSplitError

    raise InvalidSplitError(
        "Advance percentage must be one of 25, 50, 75, 100",
        details={"advance_percentage": 30},
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Errors
# =============================================================================


class PaymentError(BaseApplicationError):
    """Base exception for payment domain errors."""

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError, NotFoundError):
    """
    Raised when no PaymentRecord matches a booking or payment intent.

    Example:
        raise PaymentNotFoundError(
            f"No payment record for booking {booking_id}",
            details={"booking_id": str(booking_id)},
        )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class PaymentValidationError(PaymentError, ValidationError):
    """Raised when payment input fails validation before any processor call."""

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


class InvalidSplitError(PaymentValidationError):
    """
    Raised when a pricing split cannot be computed.

    Configuration or programmer error: an advance percentage outside the
    allowed terms, percentages that sum past 100, or a share that would go
    negative. Always raised before money moves.
    """

    default_error_code: str = "INVALID_SPLIT"


class PaymentProcessingError(PaymentError):
    """Base for failures while money is being moved."""

    default_error_code: str = "PAYMENT_PROCESSING_ERROR"


class InconsistentStateError(PaymentError):
    """
    Raised when the ledger and the processor may be out of sync.

    Produced by processor timeouts (unknown outcome) and by ledger writes
    that fail after the processor already acted. The record carries the
    ``inconsistent_external_state`` flag until a reconciliation pass reads
    the processor's ground truth.
    """

    default_error_code: str = "INCONSISTENT_EXTERNAL_STATE"


# =============================================================================
# External Processor Errors
# =============================================================================


class ExternalProcessorError(PaymentProcessingError, ExternalServiceError):
    """
    The payment processor rejected or failed a call.

    Carries the processor's own code so the reason can be surfaced to the
    user. Callers must not retry with the same idempotency key unless
    ``is_retryable`` is True.
    """

    default_error_code: str = "EXTERNAL_PROCESSOR_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if processor_code:
            details["processor_code"] = processor_code
        super().__init__(message, error_code=error_code, details=details)
        self.processor_code = processor_code


class StripeError(ExternalProcessorError):
    """
    Base exception for Stripe failures.

    Attributes:
        stripe_code: Stripe's error code (``processor_code`` alias)
        decline_code: Card decline code, when Stripe supplies one
    """

    default_error_code: str = "STRIPE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(
            message,
            error_code=error_code,
            processor_code=stripe_code,
            details=details,
        )
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(StripeError):
    """The devotee's card was declined."""

    default_error_code: str = "CARD_DECLINED"


class StripeInsufficientFundsError(StripeError):
    """Card declined for insufficient funds, or platform balance too low for a transfer."""

    default_error_code: str = "INSUFFICIENT_FUNDS"


class StripeInvalidAccountError(StripeError):
    """The destination connected account is missing or cannot receive transfers."""

    default_error_code: str = "INVALID_STRIPE_ACCOUNT"


class StripeInvalidRequestError(StripeError):
    """Invalid parameters, unknown object, or a bad webhook signature."""

    default_error_code: str = "INVALID_STRIPE_REQUEST"


# -----------------------------------------------------------------------------
# Transient Errors (retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Stripe rate limited the request."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """Stripe could not be reached or returned a server error before acting."""

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    The request timed out.

    The outcome is unknown: Stripe may have completed the operation. The
    orchestrator turns this into an InconsistentStateError instead of
    treating it as a failure.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency and Lifecycle Conflicts
# =============================================================================


class ConcurrentModificationError(ConflictError):
    """
    Optimistic concurrency conflict on a versioned row.

    The caller should re-read the record and retry.
    """

    default_error_code: str = "CONCURRENT_MODIFICATION"


class LockAcquisitionError(ConflictError):
    """A distributed lock could not be acquired."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a ledger event is not legal from the record's current status.

    The record is left exactly as it was.

    Example:
        raise InvalidStateTransitionError(
            "Cannot release from 'released'",
            details={"current_status": "released", "event": "release"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class EscrowOnHoldError(ConflictError):
    """Release was requested while a dispute hold is active."""

    default_error_code: str = "ESCROW_ON_HOLD"
