"""
Stripe API adapter for escrow payment operations.

Every Stripe call the engine makes goes through StripeAdapter so that
timeouts, idempotency keys, error translation and timing logs are applied
the same way everywhere.

Operations:
- PaymentIntents for the advance and the remaining balance
- Transfers to priest/temple Connect accounts (one per release leg)
- Refunds against the advance PaymentIntent
- Reads used by confirmation and reconciliation
- Webhook signature verification

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: Per-request timeout (default: 10)
- STRIPE_MAX_RETRIES: Network retries performed by the Stripe client

Usage:
    from payments.adapters import StripeAdapter, CreatePaymentIntentParams

    result = StripeAdapter.create_payment_intent(
        CreatePaymentIntentParams(
            amount_cents=10000,
            currency="usd",
            idempotency_key=IdempotencyKeyGenerator.generate("advance_payment", booking.id),
            transfer_group=f"booking_{booking.id}",
        )
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import requests
import stripe
from django.conf import settings

from payments.exceptions import (
    ExternalProcessorError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInsufficientFundsError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CreatePaymentIntentParams:
    """
    Parameters for creating a Stripe PaymentIntent.

    Attributes:
        amount_cents: Amount in smallest currency unit
        currency: ISO 4217 currency code
        idempotency_key: Deterministic key for the (booking, operation) pair
        transfer_group: Links the charge to the later escrow transfers
        metadata: Key-value pairs attached to the PaymentIntent
        customer_id: Optional Stripe Customer ID
        payment_method_types: Allowed payment methods (default: ['card'])
    """

    amount_cents: int
    currency: str
    idempotency_key: str
    transfer_group: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    customer_id: str | None = None
    payment_method_types: list[str] = field(default_factory=lambda: ["card"])

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.currency:
            raise ValueError("currency is required")


@dataclass
class PaymentIntentResult:
    """
    Result from PaymentIntent operations.

    Attributes:
        id: PaymentIntent ID (pi_xxx)
        status: Stripe status (requires_payment_method, processing, succeeded, ...)
        amount_cents: Amount in cents
        currency: Currency code
        client_secret: Secret for client-side confirmation
        amount_received_cents: Amount actually captured
        metadata: Attached metadata
        raw_response: Full Stripe response dict
    """

    id: str
    status: str
    amount_cents: int
    currency: str
    client_secret: str | None = None
    amount_received_cents: int = 0
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class TransferResult:
    """Result from Transfer operations."""

    id: str
    amount_cents: int
    currency: str
    destination_account: str
    transfer_group: str | None = None
    reversed: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """
    Result from Refund operations.

    Attributes:
        id: Refund ID (re_xxx)
        amount_cents: Refunded amount in cents
        status: Refund status (pending, succeeded, failed, canceled)
        payment_intent_id: Original PaymentIntent ID
    """

    id: str
    amount_cents: int
    currency: str
    status: str
    payment_intent_id: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Derive Stripe idempotency keys from (booking id, operation).

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same inputs always give the same key, so a retried network call
    replays Stripe's stored result instead of charging, transferring or
    refunding twice. ``attempt`` only changes after a permanent failure,
    when Stripe must be asked again with fresh parameters.

    Example:
        key = IdempotencyKeyGenerator.generate("transfer_priest", booking.id)
        # "transfer_priest:550e8400-e29b-41d4-a716-446655440000:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Helpers
# =============================================================================


def is_retryable_processor_error(error: Exception) -> bool:
    """
    True for transient processor errors a Celery task may retry.

    Timeouts are excluded: their outcome is unknown and they go through
    reconciliation instead.
    """
    if isinstance(error, StripeTimeoutError):
        return False
    return isinstance(error, ExternalProcessorError) and error.is_retryable


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff with 0-25% jitter.

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    All methods are classmethods - no instance state is maintained, so the
    class itself is passed wherever a PaymentProcessor is expected.
    Thread-safe for use from Celery workers.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure the Stripe client with API key, timeout and retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_RETRIES
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.STRIPE_API_TIMEOUT_SECONDS
        )

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _call(cls, operation: str, log_context: dict[str, Any], fn, *, level=logging.INFO):
        """
        Run one Stripe call with timing logs and error translation.

        Returns whatever ``fn`` returns; Stripe errors are re-raised as
        payments.exceptions.StripeError subclasses.
        """
        cls._configure_stripe()
        logger = cls.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.time()
        logger.log(level, "Starting Stripe operation", extra=log_context)
        try:
            result = fn()
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise  # Never reached, but satisfies type checker

        duration_ms = (time.time() - start_time) * 1000
        logger.log(
            level,
            "Stripe operation completed",
            extra={**log_context, "stripe_id": getattr(result, "id", None), "duration_ms": duration_ms},
        )
        return result

    # =========================================================================
    # Result Builders
    # =========================================================================

    @staticmethod
    def _intent_result(intent) -> PaymentIntentResult:
        return PaymentIntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            client_secret=getattr(intent, "client_secret", None),
            amount_received_cents=getattr(intent, "amount_received", 0) or 0,
            metadata=dict(intent.metadata or {}),
            raw_response=intent.to_dict(),
        )

    @staticmethod
    def _transfer_result(transfer) -> TransferResult:
        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
            transfer_group=getattr(transfer, "transfer_group", None),
            reversed=bool(getattr(transfer, "reversed", False)),
            metadata=dict(transfer.metadata or {}),
            raw_response=transfer.to_dict(),
        )

    @staticmethod
    def _refund_result(refund) -> RefundResult:
        return RefundResult(
            id=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency,
            status=refund.status,
            payment_intent_id=refund.payment_intent,
            metadata=dict(refund.metadata or {}),
            raw_response=refund.to_dict(),
        )

    # =========================================================================
    # PaymentIntents
    # =========================================================================

    @classmethod
    def create_payment_intent(cls, params: CreatePaymentIntentParams) -> PaymentIntentResult:
        """
        Create a PaymentIntent.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInvalidRequestError: Invalid parameters
            StripeAPIUnavailableError: Stripe service unavailable
            StripeTimeoutError: Request timed out (outcome unknown)
        """
        create_params: dict[str, Any] = {
            "amount": params.amount_cents,
            "currency": params.currency,
            "metadata": params.metadata,
            "payment_method_types": params.payment_method_types,
        }
        if params.customer_id:
            create_params["customer"] = params.customer_id
        if params.transfer_group:
            create_params["transfer_group"] = params.transfer_group

        intent = cls._call(
            "create_payment_intent",
            {
                "amount_cents": params.amount_cents,
                "currency": params.currency,
                "transfer_group": params.transfer_group,
                "idempotency_key": params.idempotency_key,
            },
            lambda: stripe.PaymentIntent.create(
                idempotency_key=params.idempotency_key,
                **create_params,
            ),
        )
        return cls._intent_result(intent)

    @classmethod
    def confirm_payment_intent(cls, payment_intent_id: str) -> PaymentIntentResult:
        """
        Verify a PaymentIntent with Stripe, confirming it when Stripe is
        waiting on a server-side confirmation.

        The devotee's app confirms the card client-side; this reads the
        authoritative status before the ledger moves.
        """
        intent = cls._call(
            "retrieve_payment_intent",
            {"payment_intent_id": payment_intent_id},
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
            level=logging.DEBUG,
        )
        if intent.status == "requires_confirmation":
            intent = cls._call(
                "confirm_payment_intent",
                {"payment_intent_id": payment_intent_id},
                lambda: stripe.PaymentIntent.confirm(payment_intent_id),
            )
        return cls._intent_result(intent)

    @classmethod
    def retrieve_payment_intent(cls, payment_intent_id: str) -> PaymentIntentResult:
        intent = cls._call(
            "retrieve_payment_intent",
            {"payment_intent_id": payment_intent_id},
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
            level=logging.DEBUG,
        )
        return cls._intent_result(intent)

    # =========================================================================
    # Transfers
    # =========================================================================

    @classmethod
    def create_transfer(
        cls,
        amount_cents: int,
        destination_account: str,
        idempotency_key: str,
        currency: str = "usd",
        transfer_group: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        """
        Transfer funds from the platform balance to a Connect account.

        Raises:
            StripeInvalidAccountError: Invalid destination account
            StripeInsufficientFundsError: Platform balance too low
        """
        transfer_params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination_account,
            "metadata": metadata or {},
        }
        if transfer_group:
            transfer_params["transfer_group"] = transfer_group

        transfer = cls._call(
            "create_transfer",
            {
                "amount_cents": amount_cents,
                "destination_account": destination_account,
                "transfer_group": transfer_group,
                "idempotency_key": idempotency_key,
            },
            lambda: stripe.Transfer.create(
                idempotency_key=idempotency_key,
                **transfer_params,
            ),
        )
        return cls._transfer_result(transfer)

    @classmethod
    def retrieve_transfer(cls, transfer_id: str) -> TransferResult:
        transfer = cls._call(
            "retrieve_transfer",
            {"transfer_id": transfer_id},
            lambda: stripe.Transfer.retrieve(transfer_id),
            level=logging.DEBUG,
        )
        return cls._transfer_result(transfer)

    @classmethod
    def list_transfers(cls, transfer_group: str) -> list[TransferResult]:
        """List the transfers Stripe holds for a transfer group (reconciliation)."""
        transfers = cls._call(
            "list_transfers",
            {"transfer_group": transfer_group},
            lambda: stripe.Transfer.list(transfer_group=transfer_group, limit=100),
        )
        return [cls._transfer_result(t) for t in transfers.data]

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def create_refund(
        cls,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        reason: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund part or all of a PaymentIntent.

        Args:
            reason: Stripe refund reason (duplicate, fraudulent,
                requested_by_customer)

        Raises:
            StripeInvalidRequestError: Refund not possible
        """
        refund_params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "metadata": metadata or {},
        }
        if amount_cents is not None:
            refund_params["amount"] = amount_cents
        if reason:
            refund_params["reason"] = reason

        refund = cls._call(
            "create_refund",
            {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
            },
            lambda: stripe.Refund.create(
                idempotency_key=idempotency_key,
                **refund_params,
            ),
        )
        return cls._refund_result(refund)

    @classmethod
    def list_refunds(cls, payment_intent_id: str) -> list[RefundResult]:
        refunds = cls._call(
            "list_refunds",
            {"payment_intent_id": payment_intent_id},
            lambda: stripe.Refund.list(payment_intent=payment_intent_id, limit=100),
        )
        return [cls._refund_result(r) for r in refunds.data]

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                stripe_code="signature_verification_failed",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook payload",
                stripe_code="invalid_payload",
            ) from e
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    @staticmethod
    def _is_timeout(error: Exception) -> bool:
        """
        Whether the request may have reached Stripe without an answer.

        The SDK raises APIConnectionError while handling the transport
        exception, so that exception is chained on the error. A connect
        timeout never sent the request and is not an unknown outcome.
        """
        wrapped = error.__cause__ or error.__context__
        if wrapped is not None:
            if isinstance(wrapped, requests.exceptions.ConnectTimeout):
                return False
            return isinstance(wrapped, (requests.exceptions.Timeout, TimeoutError))
        message = str(error).lower()
        return "timeout" in message or "timed out" in message

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK exceptions to domain exceptions.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeInvalidAccountError: Invalid Connect account
            StripeInvalidRequestError: Invalid request parameters
            StripeRateLimitError: Rate limited
            StripeTimeoutError: Request timed out, outcome unknown
            StripeAPIUnavailableError: API unavailable
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            if decline_code == "insufficient_funds":
                raise StripeInsufficientFundsError(
                    str(error.user_message or error),
                    stripe_code=error.code,
                    decline_code=decline_code,
                ) from error
            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if error.code == "balance_insufficient":
                raise StripeInsufficientFundsError(
                    str(error.user_message or error),
                    stripe_code=error.code,
                ) from error
            if "account" in str(error).lower():
                raise StripeInvalidAccountError(str(error), stripe_code=error.code) from error
            raise StripeInvalidRequestError(str(error), stripe_code=error.code) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            if cls._is_timeout(error):
                logger.error("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe did not answer in time; the outcome is unknown.",
                    stripe_code="timeout",
                ) from error
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise StripeAPIUnavailableError(
            f"Unexpected Stripe error: {error}",
            stripe_code="unknown_error",
        ) from error
