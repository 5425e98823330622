"""
In-memory collaborators for escrow engine tests.

FakeProcessor implements payments.protocols.PaymentProcessor and behaves
like Stripe where the engine depends on it: results are replayed for a
repeated idempotency key, and failures can be queued per operation (or per
transfer destination). ``lose_response`` queues an error raised AFTER the
operation took effect, which is how a timeout with an unknown outcome looks
from the caller's side.

RecordingSender implements notifications.protocols.NotificationSender.

Usage:
    processor = FakeProcessor()
    processor.fail("create_refund", StripeAPIUnavailableError("down"))
    processor.fail_transfer_to(temple_account_id, StripeInvalidAccountError("gone"))
    processor.lose_response("create_transfer", StripeTimeoutError("timed out"))

    orchestrator = PaymentOrchestrator(processor=processor, notifier=RecordingSender())
"""

from __future__ import annotations

import itertools
from collections import defaultdict

from payments.adapters import PaymentIntentResult, RefundResult, TransferResult
from payments.exceptions import StripeInvalidRequestError


class FakeProcessor:
    def __init__(self, confirm_status: str = "succeeded"):
        self.confirm_status = confirm_status
        self.intents: dict[str, PaymentIntentResult] = {}
        self.transfers: list[TransferResult] = []
        self.refunds: list[RefundResult] = []
        self.calls: list[tuple[str, dict]] = []
        self._by_key: dict[str, object] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._lost: dict[str, list[Exception]] = defaultdict(list)
        self._transfer_failures: dict[str, list[Exception]] = defaultdict(list)
        self._ids = itertools.count(1)

    # =========================================================================
    # Failure injection
    # =========================================================================

    def fail(self, operation: str, *errors: Exception) -> None:
        """Raise ``errors`` (one per call) before ``operation`` takes effect."""
        self._failures[operation].extend(errors)

    def lose_response(self, operation: str, *errors: Exception) -> None:
        """Let ``operation`` take effect, then raise ``errors`` (one per call)."""
        self._lost[operation].extend(errors)

    def fail_transfer_to(self, destination: str, *errors: Exception) -> None:
        self._transfer_failures[destination].extend(errors)

    def calls_to(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _before(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _after(self, operation: str, result):
        if self._lost[operation]:
            raise self._lost[operation].pop(0)
        return result

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    # =========================================================================
    # PaymentIntents
    # =========================================================================

    def create_payment_intent(self, params):
        self._before("create_payment_intent", params=params)
        if params.idempotency_key in self._by_key:
            return self._after("create_payment_intent", self._by_key[params.idempotency_key])

        intent_id = self._next_id("pi")
        intent = PaymentIntentResult(
            id=intent_id,
            status="requires_payment_method",
            amount_cents=params.amount_cents,
            currency=params.currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(params.metadata),
        )
        self.intents[intent_id] = intent
        self._by_key[params.idempotency_key] = intent
        return self._after("create_payment_intent", intent)

    def confirm_payment_intent(self, payment_intent_id):
        self._before("confirm_payment_intent", payment_intent_id=payment_intent_id)
        intent = self._intent(payment_intent_id)
        intent.status = self.confirm_status
        if intent.succeeded:
            intent.amount_received_cents = intent.amount_cents
        return self._after("confirm_payment_intent", intent)

    def retrieve_payment_intent(self, payment_intent_id):
        self._before("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        return self._intent(payment_intent_id)

    def add_intent(self, payment_intent_id: str, amount_cents: int, status: str = "succeeded"):
        """Register an intent created outside the fake (e.g. by a factory)."""
        intent = PaymentIntentResult(
            id=payment_intent_id,
            status=status,
            amount_cents=amount_cents,
            currency="usd",
            client_secret=f"{payment_intent_id}_secret",
            amount_received_cents=amount_cents if status == "succeeded" else 0,
        )
        self.intents[payment_intent_id] = intent
        return intent

    def _intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise StripeInvalidRequestError(
                f"No such payment_intent: '{payment_intent_id}'",
                stripe_code="resource_missing",
            )
        return self.intents[payment_intent_id]

    # =========================================================================
    # Transfers
    # =========================================================================

    def create_transfer(
        self,
        amount_cents,
        destination_account,
        idempotency_key,
        currency="usd",
        transfer_group=None,
        metadata=None,
    ):
        self._before(
            "create_transfer",
            amount_cents=amount_cents,
            destination_account=destination_account,
            idempotency_key=idempotency_key,
            transfer_group=transfer_group,
            metadata=metadata,
        )
        if idempotency_key in self._by_key:
            return self._after("create_transfer", self._by_key[idempotency_key])
        if self._transfer_failures[destination_account]:
            raise self._transfer_failures[destination_account].pop(0)

        transfer = TransferResult(
            id=self._next_id("tr"),
            amount_cents=amount_cents,
            currency=currency,
            destination_account=destination_account,
            transfer_group=transfer_group,
            metadata=dict(metadata or {}),
        )
        self.transfers.append(transfer)
        self._by_key[idempotency_key] = transfer
        return self._after("create_transfer", transfer)

    def retrieve_transfer(self, transfer_id):
        self._before("retrieve_transfer", transfer_id=transfer_id)
        for transfer in self.transfers:
            if transfer.id == transfer_id:
                return transfer
        raise StripeInvalidRequestError(
            f"No such transfer: '{transfer_id}'", stripe_code="resource_missing"
        )

    def list_transfers(self, transfer_group):
        self._before("list_transfers", transfer_group=transfer_group)
        return [t for t in self.transfers if t.transfer_group == transfer_group]

    # =========================================================================
    # Refunds
    # =========================================================================

    def create_refund(
        self,
        payment_intent_id,
        idempotency_key,
        amount_cents=None,
        reason=None,
        metadata=None,
    ):
        self._before(
            "create_refund",
            payment_intent_id=payment_intent_id,
            idempotency_key=idempotency_key,
            amount_cents=amount_cents,
            reason=reason,
        )
        if idempotency_key in self._by_key:
            return self._after("create_refund", self._by_key[idempotency_key])

        intent = self.intents.get(payment_intent_id)
        refund = RefundResult(
            id=self._next_id("re"),
            amount_cents=amount_cents if amount_cents is not None else intent.amount_cents,
            currency=intent.currency if intent else "usd",
            status="succeeded",
            payment_intent_id=payment_intent_id,
            metadata=dict(metadata or {}),
        )
        self.refunds.append(refund)
        self._by_key[idempotency_key] = refund
        return self._after("create_refund", refund)

    def list_refunds(self, payment_intent_id):
        self._before("list_refunds", payment_intent_id=payment_intent_id)
        return [r for r in self.refunds if r.payment_intent_id == payment_intent_id]


class RecordingSender:
    """NotificationSender that keeps what it was asked to send."""

    def __init__(self, result: bool = True, error: Exception | None = None):
        self.sent: list[dict] = []
        self.result = result
        self.error = error

    def send(self, target, title, body, data=None) -> bool:
        self.sent.append({"target": target, "title": title, "body": body, "data": data or {}})
        if self.error is not None:
            raise self.error
        return self.result

    def titles(self) -> list[str]:
        return [n["title"] for n in self.sent]
