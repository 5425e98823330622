"""
Payment processor adapters.

All payment processor calls go through these adapters so that error
handling, timeouts, idempotency and logging are applied consistently.

Usage:
    from payments.adapters import StripeAdapter, CreatePaymentIntentParams

    result = StripeAdapter.create_payment_intent(
        CreatePaymentIntentParams(
            amount_cents=10000,
            currency="usd",
            idempotency_key="advance_payment:<booking_id>:1:ab12cd34",
            transfer_group="booking_<booking_id>",
        )
    )
"""

from payments.adapters.stripe_adapter import (
    CreatePaymentIntentParams,
    IdempotencyKeyGenerator,
    PaymentIntentResult,
    RefundResult,
    StripeAdapter,
    TransferResult,
    backoff_delay,
    is_retryable_processor_error,
)

__all__ = [
    "CreatePaymentIntentParams",
    "IdempotencyKeyGenerator",
    "PaymentIntentResult",
    "RefundResult",
    "StripeAdapter",
    "TransferResult",
    "backoff_delay",
    "is_retryable_processor_error",
]
