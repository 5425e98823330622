"""
Protocol definitions for the escrow engine's external collaborators.

The orchestrator depends on these contracts, not on Stripe directly, so
tests can inject fakes through the constructor:

    orchestrator = PaymentOrchestrator(processor=FakeProcessor())

StripeAdapter satisfies PaymentProcessor with classmethods; the class itself
is the default processor.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from payments.adapters.stripe_adapter import (
        CreatePaymentIntentParams,
        PaymentIntentResult,
        RefundResult,
        TransferResult,
    )


@runtime_checkable
class PaymentProcessor(Protocol):
    """
    Payment processor operations used by the escrow engine.

    Every method returns a result dataclass whose ``id`` is stored verbatim
    on the ledger. Failures raise payments.exceptions.ExternalProcessorError
    subclasses; a timeout raises StripeTimeoutError (outcome unknown).
    """

    def create_payment_intent(self, params: CreatePaymentIntentParams) -> PaymentIntentResult:
        ...

    def confirm_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        ...

    def create_transfer(
        self,
        amount_cents: int,
        destination_account: str,
        idempotency_key: str,
        currency: str = "usd",
        transfer_group: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        ...

    def retrieve_transfer(self, transfer_id: str) -> TransferResult:
        ...

    def list_transfers(self, transfer_group: str) -> list[TransferResult]:
        ...

    def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        reason: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        ...

    def list_refunds(self, payment_intent_id: str) -> list[RefundResult]:
        ...
