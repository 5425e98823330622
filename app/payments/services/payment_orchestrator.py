"""
Payment orchestrator for escrow bookings.

Coordinates the payment processor, the escrow ledger and notifications for
the life of a booking's payment:

    create_advance_payment  -> PaymentIntent for the advance, record opened
    confirm_payment         -> processing -> held_in_escrow
    collect_remaining_payment
    release_escrow_funds    -> priest/temple transfers, released
    confirm_transfer        -> completed once Stripe acknowledges every leg
    process_cancellation_refund / process_emergency_refund
    hold_escrow / lift_hold -> dispute holds
    reconcile               -> repair a record flagged inconsistent

Failure contract:
    - Processor rejection: ExternalProcessorError subclass, ledger untouched
    - Processor timeout: the record keeps its status, gains the
      ``inconsistent_external_state`` flag, InconsistentStateError raised
    - Ledger write fails after the processor acted: record forced back to
      PROCESSING with the flag, InconsistentStateError raised
    - A flagged record refuses further money movement until reconciled

Every processor call carries a deterministic idempotency key derived from
(booking id, operation), so retries replay instead of repeating.

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    record = orchestrator.create_advance_payment(booking)
    client_secret = record.client_secret

    # Tests
    orchestrator = PaymentOrchestrator(processor=fake_processor, notifier=sender)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from core.exceptions import BaseApplicationError

from marketplace.models import Booking, BookingStatus, CancellationPolicy, PriestProfile
from notifications.models import NotificationType
from notifications.services import NotificationService
from payments.adapters import (
    CreatePaymentIntentParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
)
from payments.cancellation import (
    CancellationEvaluation,
    RefundRule,
    evaluate,
    hours_until_service,
    refund_amount,
)
from payments.exceptions import (
    ConcurrentModificationError,
    EscrowOnHoldError,
    ExternalProcessorError,
    InconsistentStateError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    StripeTimeoutError,
)
from payments.locks import DistributedLock
from payments.models import EscrowTransfer, PaymentAuditEntry, PaymentRecord, RefundTransaction
from payments.money import Money
from payments.pricing import split_for_booking
from payments.services.escrow_ledger import EscrowLedger
from payments.state_machines import (
    PaymentRecordStatus,
    RefundReason,
    RefundTransactionStatus,
    TransferParty,
    TransferStatus,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime
    from typing import Any

    from notifications.protocols import NotificationSender
    from payments.protocols import PaymentProcessor

logger = logging.getLogger(__name__)

S = PaymentRecordStatus

# Intent statuses meaning the devotee's payment went through
ACCEPTED_INTENT_STATUSES = ("processing", "requires_capture", "succeeded")

CONFIRMED_STATES = (
    S.HELD_IN_ESCROW,
    S.PARTIALLY_RELEASED,
    S.RELEASED,
    S.COMPLETED,
    S.REFUNDED,
    S.PARTIALLY_REFUNDED,
)

RELEASABLE_STATES = (S.HELD_IN_ESCROW, S.PARTIALLY_RELEASED)

REMAINING_COLLECTABLE_STATES = (
    S.HELD_IN_ESCROW,
    S.PARTIALLY_RELEASED,
    S.RELEASED,
    S.COMPLETED,
)

MAX_CONFIRM_ATTEMPTS = 3

# Audit event holding the refund amounts sent to the processor
REFUND_REQUESTED_EVENT = "refund_requested"


def escrow_release_time(service_at: datetime) -> datetime:
    """
    When held funds become eligible for automatic release.

    ESCROW_HOLD_DAYS after the ceremony, moved past the weekend when
    ESCROW_RELEASE_SKIP_WEEKENDS is set.
    """
    release_at = service_at + timedelta(days=settings.ESCROW_HOLD_DAYS)
    if settings.ESCROW_RELEASE_SKIP_WEEKENDS:
        while release_at.weekday() >= 5:
            release_at += timedelta(days=1)
    return release_at


def stripe_refund_reason(reason_code: str | None) -> str:
    """Map a cancellation reason to one of Stripe's refund reasons."""
    if reason_code and reason_code.strip().lower() == "duplicate":
        return "duplicate"
    return "requested_by_customer"


class PaymentOrchestrator:
    """
    Coordinates processor calls with ledger transitions.

    Dependency Injection:
        processor: PaymentProcessor (default: StripeAdapter)
        notifier: NotificationSender (default: NotificationService)
        ledger: EscrowLedger (default: a new EscrowLedger)
    """

    def __init__(
        self,
        processor: PaymentProcessor | None = None,
        notifier: NotificationSender | None = None,
        ledger: EscrowLedger | None = None,
    ) -> None:
        self.processor = processor or StripeAdapter
        self.notifier = notifier or NotificationService
        self.ledger = ledger or EscrowLedger()

    # =========================================================================
    # Advance Payment
    # =========================================================================

    def create_advance_payment(
        self,
        booking: Booking,
        priest: PriestProfile | None = None,
        actor: str | None = None,
    ) -> PaymentRecord:
        """
        Request the advance payment for a confirmed booking.

        Idempotent per booking: a second call returns the existing record.
        The returned record carries ``client_secret`` for client-side
        confirmation while the payment is still outstanding. It is None
        when the processor did not answer the lookup for an existing record;
        the record is untouched and the call can be repeated.

        Raises:
            PaymentValidationError: Booking not confirmed or below the minimum
            InvalidSplitError: Split cannot be computed
            ExternalProcessorError: Processor rejected the intent
            InconsistentStateError: Processor timed out
        """
        priest = priest or booking.priest
        actor = actor or f"user:{booking.devotee_id}"

        existing = PaymentRecord.objects.filter(booking_id=booking.id).first()
        if existing is not None and existing.stripe_payment_intent_id:
            existing.client_secret = self._outstanding_client_secret(existing)
            return existing

        if booking.status != BookingStatus.CONFIRMED:
            raise PaymentValidationError(
                "Advance payment can only be taken for a confirmed booking",
                error_code="BOOKING_NOT_CONFIRMED",
                details={"booking_id": str(booking.id), "booking_status": booking.status},
            )
        if booking.total_price_cents < settings.MINIMUM_BOOKING_CENTS:
            raise PaymentValidationError(
                f"Booking total is below the minimum of "
                f"{Money(settings.MINIMUM_BOOKING_CENTS, booking.currency)}",
                error_code="BOOKING_BELOW_MINIMUM",
                details={
                    "booking_id": str(booking.id),
                    "total_price_cents": booking.total_price_cents,
                },
            )
        if existing is not None:
            self._ensure_consistent(existing)

        split = split_for_booking(booking, priest)
        temple = booking.temple or priest.temple
        priest_account = priest.connected_account
        temple_account = temple.connected_account if temple is not None else None
        if priest_account is None or not priest_account.is_ready_for_payouts:
            logger.warning(
                "Priest not ready for payouts (onboarding must finish before release)",
                extra={"booking_id": str(booking.id), "priest_id": str(priest.id)},
            )

        record = existing or self.ledger.open_record(
            booking.id,
            split,
            actor=actor,
            devotee_id=booking.devotee_id,
            priest_id=priest.id,
            priest_account_id=priest_account.stripe_account_id if priest_account else "",
            temple_account_id=temple_account.stripe_account_id if temple_account else "",
        )

        record, intent = self._request_advance_intent(record, actor)
        record.client_secret = intent.client_secret

        logger.info(
            "Advance payment requested",
            extra={
                "booking_id": str(booking.id),
                "payment_intent_id": intent.id,
                "advance_cents": record.advance_cents,
                "transfer_group": record.transfer_group,
            },
        )
        return record

    def _request_advance_intent(self, record: PaymentRecord, actor: str):
        params = CreatePaymentIntentParams(
            amount_cents=record.advance_cents,
            currency=record.currency,
            idempotency_key=IdempotencyKeyGenerator.generate("advance_payment", record.booking_id),
            transfer_group=record.transfer_group,
            metadata={
                "booking_id": str(record.booking_id),
                "payment_record_id": str(record.id),
                "payment_type": "advance",
            },
        )
        intent = self._call_processor(
            record,
            "create_payment_intent",
            actor,
            lambda: self.processor.create_payment_intent(params),
        )

        record = self._write_ledger(
            record,
            "create_payment_intent",
            actor,
            lambda: self.ledger.record_change(
                record,
                event="payment_intent_created",
                actor=actor,
                stripe_payment_intent_id=intent.id,
            ),
            money_moved=False,
        )
        return record, intent

    def _outstanding_client_secret(self, record: PaymentRecord) -> str | None:
        """A read only: a timeout leaves nothing unknown, so the caller may simply ask again."""
        if record.status != S.REQUIRES_PAYMENT:
            return None
        try:
            intent = self.processor.retrieve_payment_intent(record.stripe_payment_intent_id)
        except StripeTimeoutError:
            logger.warning(
                "Timed out reading the outstanding PaymentIntent",
                extra={
                    "booking_id": str(record.booking_id),
                    "payment_intent_id": record.stripe_payment_intent_id,
                },
            )
            return None
        return intent.client_secret

    # =========================================================================
    # Confirmation
    # =========================================================================

    def confirm_payment(self, payment_intent_id: str, actor: str = "system:confirm_payment") -> PaymentRecord:
        """
        Verify a PaymentIntent with the processor and move the ledger.

        ``requires_payment -> processing`` once the processor accepted the
        payment, then ``processing -> held_in_escrow`` when the charge has
        settled. Confirming an already-held record returns it unchanged.

        The remaining-balance intent is confirmed here too; it only stamps
        ``remaining_collected_at``.

        Raises:
            PaymentNotFoundError: No record for the intent
            InconsistentStateError: Processor timed out, or the ledger failed
                after the processor confirmed
        """
        record = self._record_for_intent(payment_intent_id)

        if record.remaining_payment_intent_id == payment_intent_id:
            return self._confirm_remaining(record, payment_intent_id, actor)

        if record.status in CONFIRMED_STATES:
            logger.info(
                "Payment already confirmed",
                extra={"booking_id": str(record.booking_id), "status": record.status},
            )
            return record

        intent = self._call_processor(
            record,
            "confirm_payment_intent",
            actor,
            lambda: self.processor.confirm_payment_intent(payment_intent_id),
        )
        if intent.status not in ACCEPTED_INTENT_STATUSES:
            logger.info(
                "Payment intent not yet paid",
                extra={
                    "booking_id": str(record.booking_id),
                    "payment_intent_id": payment_intent_id,
                    "intent_status": intent.status,
                },
            )
            return record

        record = self._advance_to_escrow(record, intent, actor)

        if record.status == S.HELD_IN_ESCROW:
            self._notify(
                record.devotee_id,
                "Payment Received",
                f"Your advance of {Money(record.advance_cents, record.currency)} is held "
                "securely until your ceremony is complete.",
                {"type": NotificationType.PAYMENT_RECEIVED, "booking_id": str(record.booking_id)},
            )
        return record

    def _advance_to_escrow(self, record: PaymentRecord, intent, actor: str) -> PaymentRecord:
        metadata = {"payment_intent_id": intent.id, "intent_status": intent.status}
        for _ in range(MAX_CONFIRM_ATTEMPTS):
            try:
                if record.status == S.REQUIRES_PAYMENT:
                    record = self.ledger.transition(
                        record, "begin_processing", actor=actor, metadata=metadata
                    )
                if intent.succeeded and record.status == S.PROCESSING:
                    record = self.ledger.transition(
                        record,
                        "hold_in_escrow",
                        actor=actor,
                        metadata=metadata,
                        escrow_release_at=escrow_release_time(self._service_time(record)),
                    )
                return record
            except ConcurrentModificationError:
                # Another worker moved the record; re-read and continue from there
                record = PaymentRecord.objects.get(pk=record.pk)
                if record.status in CONFIRMED_STATES:
                    return record
            except (BaseApplicationError, DatabaseError) as e:
                self._ledger_failed(record, "confirm_payment_intent", actor, e)

        self._ledger_failed(
            record,
            "confirm_payment_intent",
            actor,
            ConcurrentModificationError("Record kept changing during confirmation"),
        )

    def _confirm_remaining(self, record: PaymentRecord, payment_intent_id: str, actor: str) -> PaymentRecord:
        if record.remaining_collected_at is not None:
            return record

        intent = self._call_processor(
            record,
            "confirm_payment_intent",
            actor,
            lambda: self.processor.confirm_payment_intent(payment_intent_id),
        )
        if not intent.succeeded:
            return record

        return self._write_ledger(
            record,
            "confirm_remaining_payment",
            actor,
            lambda: self.ledger.record_change(
                record,
                event="remaining_payment_collected",
                actor=actor,
                remaining_collected_at=timezone.now(),
            ),
            money_moved=False,
        )

    # =========================================================================
    # Remaining Balance
    # =========================================================================

    def collect_remaining_payment(
        self,
        booking_id: uuid.UUID,
        actor: str = "system:collect_remaining",
    ) -> PaymentRecord:
        """
        Request the balance once the ceremony has started.

        Uses the same transfer group as the advance. No-op when nothing
        remains or the intent was already requested.
        """
        record = self._get_record(booking_id)
        if record.remaining_cents == 0 or record.remaining_payment_intent_id:
            return record

        booking = Booking.objects.filter(id=booking_id).first()
        if booking is None or booking.status not in (
            BookingStatus.IN_PROGRESS,
            BookingStatus.COMPLETED,
        ):
            raise PaymentValidationError(
                "The remaining balance is due once the ceremony is under way",
                error_code="BOOKING_NOT_STARTED",
                details={
                    "booking_id": str(booking_id),
                    "booking_status": booking.status if booking else None,
                },
            )
        if record.status not in REMAINING_COLLECTABLE_STATES:
            raise InvalidStateTransitionError(
                f"Cannot collect the remaining balance of a payment in '{record.status}'",
                details={"booking_id": str(booking_id), "current_status": record.status},
            )
        self._ensure_consistent(record)

        params = CreatePaymentIntentParams(
            amount_cents=record.remaining_cents,
            currency=record.currency,
            idempotency_key=IdempotencyKeyGenerator.generate("remaining_payment", booking_id),
            transfer_group=record.transfer_group,
            metadata={
                "booking_id": str(booking_id),
                "payment_record_id": str(record.id),
                "payment_type": "remaining",
            },
        )
        intent = self._call_processor(
            record,
            "create_payment_intent",
            actor,
            lambda: self.processor.create_payment_intent(params),
        )
        record = self._write_ledger(
            record,
            "create_payment_intent",
            actor,
            lambda: self.ledger.record_change(
                record,
                event="remaining_payment_requested",
                actor=actor,
                remaining_payment_intent_id=intent.id,
            ),
            money_moved=False,
        )
        record.client_secret = intent.client_secret

        self._notify(
            record.devotee_id,
            "Remaining Balance Due",
            f"The remaining {Money(record.remaining_cents, record.currency)} for your "
            "ceremony is now due.",
            {"type": NotificationType.REMAINING_BALANCE_DUE, "booking_id": str(booking_id)},
        )
        return record

    # =========================================================================
    # Escrow Release
    # =========================================================================

    def release_escrow_funds(
        self,
        booking_id: uuid.UUID,
        actor: str = "system:release",
        reason: str = "",
    ) -> list[EscrowTransfer]:
        """
        Transfer the priest and temple shares out of escrow.

        Only from HELD_IN_ESCROW, or PARTIALLY_RELEASED to retry the legs
        still outstanding. The platform fee stays on the platform balance.
        Legs that already succeeded are never sent again.

        Returns:
            Every transfer leg of the record after this attempt

        Raises:
            EscrowOnHoldError: A dispute hold is active
            InvalidStateTransitionError: Record not releasable
            LockAcquisitionError: Another release for the booking is running
            ExternalProcessorError: Every outstanding leg failed
            InconsistentStateError: A transfer timed out
        """
        with DistributedLock(f"escrow:release:{booking_id}", ttl=60, blocking=False):
            record = self._get_record(booking_id)

            if record.is_on_hold:
                raise EscrowOnHoldError(
                    "Escrow is on hold and cannot be released",
                    details={"booking_id": str(booking_id), "hold_reason": record.hold_reason},
                )
            self._ensure_consistent(record)
            if record.status not in RELEASABLE_STATES:
                raise InvalidStateTransitionError(
                    f"Cannot release a payment in '{record.status}'",
                    details={"booking_id": str(booking_id), "current_status": record.status},
                )

            legs = self._ensure_legs(record)
            failures: list[ExternalProcessorError] = []
            sent_now: list[EscrowTransfer] = []
            for leg in legs:
                if leg.status == TransferStatus.SUCCEEDED:
                    continue
                try:
                    self._send_leg(record, leg, actor)
                    sent_now.append(leg)
                except StripeTimeoutError as e:
                    self.ledger.mark_inconsistent(
                        record,
                        reason=f"Transfer to {leg.party} timed out; outcome unknown",
                        actor=actor,
                    )
                    raise InconsistentStateError(
                        "Transfer outcome unknown; the payment needs reconciliation",
                        details={"booking_id": str(booking_id), "party": leg.party},
                    ) from e
                except ExternalProcessorError as e:
                    failures.append(e)

            legs = list(record.transfers.all())
            succeeded = [leg for leg in legs if leg.status == TransferStatus.SUCCEEDED]

            if len(succeeded) == len(legs):
                event = "release"
            elif succeeded and record.status == S.HELD_IN_ESCROW:
                event = "release_partially"
            else:
                logger.error(
                    "Escrow release failed for every outstanding leg",
                    extra={"booking_id": str(booking_id), "failures": len(failures)},
                )
                raise failures[0]

            metadata = {
                "reason": reason,
                "transfers": {leg.party: leg.stripe_transfer_id for leg in succeeded},
                "outstanding": [leg.party for leg in legs if leg not in succeeded],
            }
            record = self._write_ledger(
                record,
                "create_transfer",
                actor,
                lambda: self.ledger.transition(record, event, actor=actor, metadata=metadata),
            )
            if not legs:
                # No share to pay out, so no transfer will ever be acknowledged
                record = self.ledger.transition(
                    record, "complete", actor=actor, metadata={"reason": "nothing_to_transfer"}
                )

        priest_net = sum(leg.amount_cents for leg in sent_now if leg.party == TransferParty.PRIEST)
        if priest_net:
            self._notify(
                self._priest_user_id(record),
                "Payment Released",
                f"{Money(priest_net, record.currency)} has been released to your payout account.",
                {"type": NotificationType.ESCROW_RELEASED, "booking_id": str(booking_id)},
            )

        logger.info(
            "Escrow released",
            extra={
                "booking_id": str(booking_id),
                "status": record.status,
                "legs_succeeded": len(succeeded),
                "legs_total": len(legs),
                "actor": actor,
            },
        )
        return legs

    def _ensure_legs(self, record: PaymentRecord) -> list[EscrowTransfer]:
        shares = [
            (party, amount_cents)
            for party, amount_cents in (
                (TransferParty.PRIEST, record.priest_share_cents),
                (TransferParty.TEMPLE, record.temple_share_cents),
            )
            if amount_cents > 0
        ]

        destinations = {party: self._destination(record, party) for party, _ in shares}
        missing = [party for party, account in destinations.items() if not account]
        if missing:
            raise PaymentValidationError(
                "Payout account missing for release",
                error_code="MISSING_PAYOUT_ACCOUNT",
                details={"booking_id": str(record.booking_id), "parties": missing},
            )

        legs = []
        for party, amount_cents in shares:
            leg, _ = EscrowTransfer.objects.get_or_create(
                payment_record=record,
                party=party,
                defaults={
                    "destination_account_id": destinations[party],
                    "amount_cents": amount_cents,
                    "currency": record.currency,
                },
            )
            legs.append(leg)
        return legs

    def _destination(self, record: PaymentRecord, party: str) -> str:
        if party == TransferParty.PRIEST:
            if record.priest_account_id:
                return record.priest_account_id
            priest = (
                PriestProfile.objects.select_related("connected_account")
                .filter(id=record.priest_id)
                .first()
            )
            account = priest.connected_account if priest else None
            return account.stripe_account_id if account else ""
        return record.temple_account_id

    def _send_leg(self, record: PaymentRecord, leg: EscrowTransfer, actor: str) -> None:
        key = IdempotencyKeyGenerator.generate(
            f"transfer_{leg.party}", record.booking_id, leg.idempotency_attempt
        )
        leg.attempt_count += 1
        leg.save(update_fields=["attempt_count", "updated_at"])

        try:
            result = self.processor.create_transfer(
                amount_cents=leg.amount_cents,
                destination_account=leg.destination_account_id,
                idempotency_key=key,
                currency=leg.currency,
                transfer_group=record.transfer_group,
                metadata={
                    "booking_id": str(record.booking_id),
                    "escrow_transfer_id": str(leg.id),
                    "party": leg.party,
                },
            )
        except StripeTimeoutError:
            raise
        except ExternalProcessorError as e:
            leg.mark_failed(e.message)
            update_fields = ["status", "failure_reason", "updated_at"]
            if not e.is_retryable:
                leg.idempotency_attempt += 1
                update_fields.append("idempotency_attempt")
            leg.save(update_fields=update_fields)
            logger.warning(
                "Escrow transfer leg failed",
                extra={
                    "booking_id": str(record.booking_id),
                    "party": leg.party,
                    "error_code": e.error_code,
                    "is_retryable": e.is_retryable,
                },
            )
            raise

        leg.mark_succeeded(result.id)
        leg.save(update_fields=["status", "stripe_transfer_id", "failure_reason", "updated_at"])

    # =========================================================================
    # Automatic Release
    # =========================================================================

    def can_release_early(self, priest: PriestProfile) -> bool:
        """
        Trusted priests are paid as soon as the ceremony is complete.

        Requires verification, a high enough rating over enough reviews,
        and a low cancellation rate across recent bookings.
        """
        if not priest.is_verified:
            return False
        if priest.review_count < settings.EARLY_RELEASE_MIN_REVIEWS:
            return False
        if Decimal(priest.average_rating) < Decimal(str(settings.EARLY_RELEASE_MIN_RATING)):
            return False

        recent = list(
            Booking.objects.filter(priest=priest)
            .order_by("-scheduled_at")
            .values_list("status", flat=True)[: settings.EARLY_RELEASE_RECENT_BOOKINGS]
        )
        if not recent:
            return True
        cancelled = sum(1 for status in recent if status == BookingStatus.CANCELLED)
        return Decimal(cancelled) / Decimal(len(recent)) <= Decimal(
            str(settings.EARLY_RELEASE_MAX_CANCELLATION_RATE)
        )

    def release_due_escrows(self, now: datetime | None = None) -> dict[str, int]:
        """
        Release every held payment whose ceremony is complete and whose
        release time has passed (or whose priest qualifies for early release).

        Partially released records are retried. Errors are logged per
        booking and counted, never raised.
        """
        now = now or timezone.now()
        results = {"checked": 0, "released": 0, "partially_released": 0, "skipped": 0, "failed": 0}

        candidates = PaymentRecord.objects.filter(
            status__in=RELEASABLE_STATES,
            is_on_hold=False,
            inconsistent_external_state=False,
        ).order_by("escrow_release_at")

        for record in candidates:
            results["checked"] += 1
            booking = (
                Booking.objects.select_related("priest")
                .filter(id=record.booking_id, status=BookingStatus.COMPLETED)
                .first()
            )
            if booking is None:
                results["skipped"] += 1
                continue

            due = record.escrow_release_at is not None and record.escrow_release_at <= now
            if not due and not self.can_release_early(booking.priest):
                results["skipped"] += 1
                continue

            try:
                self.release_escrow_funds(
                    record.booking_id,
                    actor="system:auto_release",
                    reason="early_release" if not due else "release_window_elapsed",
                )
            except Exception:
                logger.exception(
                    "Automatic escrow release failed",
                    extra={"booking_id": str(record.booking_id)},
                )
                results["failed"] += 1
                continue

            status = PaymentRecord.objects.values_list("status", flat=True).get(pk=record.pk)
            if status == S.RELEASED:
                results["released"] += 1
            else:
                results["partially_released"] += 1

        logger.info("Automatic escrow release finished", extra=results)
        return results

    def confirm_transfer(
        self,
        stripe_transfer_id: str,
        actor: str = "system:confirm_transfer",
    ) -> PaymentRecord | None:
        """
        Record that Stripe acknowledged a transfer.

        Once every leg of a RELEASED record is acknowledged the record moves
        to COMPLETED. Unknown transfer ids are ignored.
        """
        leg = EscrowTransfer.objects.filter(stripe_transfer_id=stripe_transfer_id).first()
        if leg is None:
            logger.info(
                "Transfer not linked to an escrow leg",
                extra={"stripe_transfer_id": stripe_transfer_id},
            )
            return None

        if leg.confirmed_at is None:
            leg.confirmed_at = timezone.now()
            leg.save(update_fields=["confirmed_at", "updated_at"])

        record = PaymentRecord.objects.get(pk=leg.payment_record_id)
        legs = list(record.transfers.all())
        all_confirmed = all(
            other.status == TransferStatus.SUCCEEDED and other.confirmed_at is not None
            for other in legs
        )
        if record.status == S.RELEASED and all_confirmed:
            record = self.ledger.transition(
                record,
                "complete",
                actor=actor,
                metadata={"stripe_transfer_id": stripe_transfer_id},
            )
        return record

    # =========================================================================
    # Refunds
    # =========================================================================

    def process_cancellation_refund(
        self,
        booking: Booking,
        policy: CancellationPolicy | None = None,
        reason_code: str | None = None,
        actor: str | None = None,
        approved_by: str = "",
        now: datetime | None = None,
    ) -> RefundTransaction:
        """
        Refund the advance according to the cancellation policy.

        The policy defaults to the booking's own, then to the standard
        tiers. Idempotent per booking: a second call returns the first
        RefundTransaction.

        Raises:
            InvalidStateTransitionError: Payment already released or refunded
            ExternalProcessorError: Processor rejected the refund
            InconsistentStateError: Refund timed out, or the ledger failed
                after the processor refunded
        """
        existing = RefundTransaction.objects.filter(booking_id=booking.id).first()
        if existing is not None:
            return existing

        policy = policy or booking.cancellation_policy or self._default_policy()
        hours = hours_until_service(booking.scheduled_at, now or timezone.now())
        evaluation = evaluate(policy, hours, reason_code)

        logger.info(
            "Cancellation evaluated",
            extra={
                "booking_id": str(booking.id),
                "hours_until_service": hours,
                "refund_percentage": evaluation.refund_percentage,
                "rule": evaluation.rule,
            },
        )
        return self._execute_refund(
            booking,
            evaluation,
            reason_code=reason_code or RefundReason.CUSTOMER_REQUEST,
            actor=actor or f"user:{booking.devotee_id}",
            approved_by=approved_by,
        )

    def process_emergency_refund(
        self,
        booking: Booking,
        emergency_type: str,
        approved_by: str,
        actor: str | None = None,
    ) -> RefundTransaction:
        """Full advance refund regardless of policy, with the approver recorded."""
        if not approved_by:
            raise PaymentValidationError(
                "Emergency refunds need an approver",
                error_code="APPROVER_REQUIRED",
                details={"booking_id": str(booking.id)},
            )

        existing = RefundTransaction.objects.filter(booking_id=booking.id).first()
        if existing is not None:
            return existing

        evaluation = CancellationEvaluation(
            refund_percentage=100,
            applied_tier=None,
            rule=RefundRule.EMERGENCY,
            explanation=(
                f"Full refund: emergency ({emergency_type}) approved by {approved_by}."
            ),
        )
        return self._execute_refund(
            booking,
            evaluation,
            reason_code=emergency_type,
            actor=actor or f"staff:{approved_by}",
            approved_by=approved_by,
        )

    def _execute_refund(
        self,
        booking: Booking,
        evaluation: CancellationEvaluation,
        reason_code: str,
        actor: str,
        approved_by: str,
    ) -> RefundTransaction:
        record = self._get_record(booking.id)
        self._ensure_consistent(record)

        if record.status == S.REQUIRES_PAYMENT:
            # Nothing was captured, so there is nothing to return
            refund = RefundTransaction.objects.create(
                booking_id=booking.id,
                payment_record=record,
                payment_intent_id=record.stripe_payment_intent_id or "",
                currency=record.currency,
                refund_amount_cents=0,
                cancellation_fee_cents=0,
                refund_percentage=evaluation.refund_percentage,
                reason_code=reason_code,
                applied_tier=evaluation.applied_tier,
                policy_rule=evaluation.rule,
                policy_explanation=(
                    f"{evaluation.explanation} No payment had been captured, "
                    "so nothing was charged."
                ),
                status=RefundTransactionStatus.SUCCEEDED,
                actor=actor,
                approved_by=approved_by,
            )
            logger.info(
                "Cancellation recorded before payment",
                extra={"booking_id": str(booking.id)},
            )
            return refund

        if not record.is_refundable:
            raise InvalidStateTransitionError(
                f"Cannot refund a payment in '{record.status}'",
                details={"booking_id": str(booking.id), "current_status": record.status},
            )

        pending = self._pending_refund(booking.id)
        if pending is not None:
            # A refund was already requested at the processor under this
            # booking's key; a retry must ask for exactly the same amount
            evaluation = CancellationEvaluation(
                refund_percentage=pending["refund_percentage"],
                applied_tier=pending["applied_tier"],
                rule=pending["rule"],
                explanation=pending["explanation"],
            )
            reason_code = pending["reason_code"]
            refund_money = Money(pending["refund_cents"], record.currency)
            fee = Money(pending["cancellation_fee_cents"], record.currency)
        else:
            advance = Money(record.advance_cents, record.currency)
            refund_money, fee = refund_amount(advance, evaluation)
            if not refund_money.is_zero:
                record = self.ledger.record_change(
                    record,
                    event=REFUND_REQUESTED_EVENT,
                    actor=actor,
                    metadata={
                        "refund_cents": refund_money.cents,
                        "cancellation_fee_cents": fee.cents,
                        "refund_percentage": evaluation.refund_percentage,
                        "applied_tier": evaluation.applied_tier,
                        "rule": evaluation.rule,
                        "explanation": evaluation.explanation,
                        "reason_code": reason_code,
                    },
                )

        stripe_refund_id = None
        status = RefundTransactionStatus.SUCCEEDED
        if not refund_money.is_zero:
            result = self._call_processor(
                record,
                "create_refund",
                actor,
                lambda: self.processor.create_refund(
                    payment_intent_id=record.stripe_payment_intent_id,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "cancellation_refund", booking.id
                    ),
                    amount_cents=refund_money.cents,
                    reason=stripe_refund_reason(reason_code),
                    metadata={
                        "booking_id": str(booking.id),
                        "refund_percentage": str(evaluation.refund_percentage),
                    },
                ),
            )
            stripe_refund_id = result.id
            status = {
                "succeeded": RefundTransactionStatus.SUCCEEDED,
                "failed": RefundTransactionStatus.FAILED,
                "canceled": RefundTransactionStatus.FAILED,
            }.get(result.status, RefundTransactionStatus.PENDING)

        event = "refund" if evaluation.is_full_refund else "refund_partially"

        def write() -> RefundTransaction:
            with transaction.atomic():
                self.ledger.transition(
                    record,
                    event,
                    actor=actor,
                    metadata={
                        "refund_cents": refund_money.cents,
                        "cancellation_fee_cents": fee.cents,
                        "rule": evaluation.rule,
                        "stripe_refund_id": stripe_refund_id,
                    },
                )
                return RefundTransaction.objects.create(
                    booking_id=booking.id,
                    payment_record=record,
                    payment_intent_id=record.stripe_payment_intent_id or "",
                    currency=record.currency,
                    refund_amount_cents=refund_money.cents,
                    cancellation_fee_cents=fee.cents,
                    refund_percentage=evaluation.refund_percentage,
                    reason_code=reason_code,
                    applied_tier=evaluation.applied_tier,
                    policy_rule=evaluation.rule,
                    policy_explanation=evaluation.explanation,
                    stripe_refund_id=stripe_refund_id,
                    status=status,
                    actor=actor,
                    approved_by=approved_by,
                )

        try:
            refund = write()
        except (BaseApplicationError, DatabaseError) as e:
            concurrent = RefundTransaction.objects.filter(booking_id=booking.id).first()
            if concurrent is not None:
                # A concurrent cancellation recorded the same processor refund
                return concurrent
            self._ledger_failed(record, "create_refund", actor, e)

        self._notify(
            record.devotee_id,
            "Refund Processed",
            f"{refund_money} will be returned to you. {evaluation.explanation}",
            {
                "type": NotificationType.REFUND_PROCESSED,
                "booking_id": str(booking.id),
                "refund_cents": refund_money.cents,
            },
        )
        logger.info(
            "Cancellation refund processed",
            extra={
                "booking_id": str(booking.id),
                "refund_cents": refund_money.cents,
                "cancellation_fee_cents": fee.cents,
                "stripe_refund_id": stripe_refund_id,
            },
        )
        return refund

    @staticmethod
    def _pending_refund(booking_id) -> dict[str, Any] | None:
        entry = (
            PaymentAuditEntry.objects.filter(booking_id=booking_id, event=REFUND_REQUESTED_EVENT)
            .order_by("-created_at", "-record_version")
            .first()
        )
        return entry.metadata if entry is not None else None

    @staticmethod
    def _default_policy() -> CancellationPolicy:
        return CancellationPolicy(
            name="Standard",
            free_cancellation_hours=48,
            tiers=CancellationPolicy.default_tiers(),
            no_refund_hours=0,
            emergency_exceptions=CancellationPolicy.default_emergency_exceptions(),
        )

    # =========================================================================
    # Dispute Holds
    # =========================================================================

    def hold_escrow(self, booking_id: uuid.UUID, reason: str, actor: str) -> PaymentRecord:
        """Block every release of the booking's escrow until the hold is lifted."""
        record = self.ledger.set_hold(self._get_record(booking_id), True, reason, actor)
        self._notify(
            self._priest_user_id(record),
            "Payment On Hold",
            "The payment for one of your bookings is on hold while a dispute is reviewed.",
            {"type": NotificationType.ESCROW_ON_HOLD, "booking_id": str(booking_id)},
        )
        logger.warning(
            "Escrow placed on hold",
            extra={"booking_id": str(booking_id), "reason": reason, "actor": actor},
        )
        return record

    def lift_hold(self, booking_id: uuid.UUID, actor: str, reason: str = "") -> PaymentRecord:
        return self.ledger.set_hold(self._get_record(booking_id), False, reason, actor)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, booking_id: uuid.UUID, actor: str = "system:reconcile") -> PaymentRecord:
        """
        Bring a record in line with what the processor actually holds.

        Reads the advance PaymentIntent, its refunds, and the transfers in
        the booking's transfer group; marks transfer legs that went through;
        applies the status that ground truth implies; and clears the
        inconsistency flag. A processor refund with no RefundTransaction is
        recorded here, so the escrow can no longer be released. A record
        whose intent was never stored replays the creation call with its
        original idempotency key.
        """
        record = self._get_record(booking_id)

        if not record.stripe_payment_intent_id:
            if record.status == S.REQUIRES_PAYMENT:
                record, _ = self._request_advance_intent(record, actor)
            return self.ledger.clear_inconsistency(
                record, actor=actor, metadata={"replayed": "create_payment_intent"}
            )

        intent = self.processor.retrieve_payment_intent(record.stripe_payment_intent_id)
        refunds = self.processor.list_refunds(record.stripe_payment_intent_id)
        transfers = self.processor.list_transfers(record.transfer_group)

        legs = {leg.party: leg for leg in record.transfers.all()}
        for transfer in transfers:
            leg = legs.get(transfer.metadata.get("party"))
            if leg is not None and leg.status != TransferStatus.SUCCEEDED and not transfer.reversed:
                leg.mark_succeeded(transfer.id)
                leg.save(update_fields=["status", "stripe_transfer_id", "failure_reason", "updated_at"])

        refunded_cents = sum(
            r.amount_cents for r in refunds if r.status in ("succeeded", "pending")
        )
        refund_row = RefundTransaction.objects.filter(booking_id=booking_id).first()
        succeeded_legs = [leg for leg in legs.values() if leg.status == TransferStatus.SUCCEEDED]

        recovered = None
        if refund_row is not None and record.status != S.REQUIRES_PAYMENT:
            full = refund_row.refund_amount_cents >= record.advance_cents
            target = S.REFUNDED if full else S.PARTIALLY_REFUNDED
        elif refunded_cents > 0:
            # The processor returned money the ledger never recorded
            recovered = self._recovered_refund(record, refunds, refunded_cents, actor)
            full = recovered.refund_amount_cents >= record.advance_cents
            target = S.REFUNDED if full else S.PARTIALLY_REFUNDED
            logger.warning(
                "Processor refund without a refund transaction",
                extra={"booking_id": str(booking_id), "refunded_cents": refunded_cents},
            )
        elif legs and len(succeeded_legs) == len(legs):
            target = S.COMPLETED if record.status == S.COMPLETED else S.RELEASED
        elif succeeded_legs:
            target = S.PARTIALLY_RELEASED
        elif intent.succeeded:
            target = S.HELD_IN_ESCROW
        elif intent.status in ACCEPTED_INTENT_STATUSES:
            target = S.PROCESSING
        else:
            target = S.REQUIRES_PAYMENT

        metadata = {
            "intent_status": intent.status,
            "refunded_cents": refunded_cents,
            "transfers": [t.id for t in transfers],
        }
        with transaction.atomic():
            if recovered is not None:
                recovered.save()
                metadata["stripe_refund_id"] = recovered.stripe_refund_id
            if target != record.status:
                record = self.ledger.force_status(
                    record,
                    target,
                    actor=actor,
                    event="reconciled",
                    reason=f"Processor state implies {target}",
                    inconsistent=False,
                    metadata=metadata,
                )
                if target == S.HELD_IN_ESCROW and record.escrow_release_at is None:
                    record = self.ledger.record_change(
                        record,
                        event="release_scheduled",
                        actor=actor,
                        escrow_release_at=escrow_release_time(self._service_time(record)),
                    )
            else:
                record = self.ledger.clear_inconsistency(record, actor=actor, metadata=metadata)

        logger.info(
            "Payment reconciled",
            extra={"booking_id": str(booking_id), "status": record.status, "actor": actor},
        )
        return record

    def _recovered_refund(
        self,
        record: PaymentRecord,
        refunds: list,
        refunded_cents: int,
        actor: str,
    ) -> RefundTransaction:
        """
        Build (unsaved) the RefundTransaction for a refund found only at the processor.

        Amounts come from the processor. The policy outcome comes from the
        refund request logged before the call when it matches what was
        refunded.
        """
        refunded_cents = min(refunded_cents, record.advance_cents)
        processor_refund = next(r for r in refunds if r.status in ("succeeded", "pending"))
        pending = self._pending_refund(record.booking_id)

        if pending is not None and pending["refund_cents"] == refunded_cents:
            percentage = pending["refund_percentage"]
            applied_tier = pending["applied_tier"]
            rule = pending["rule"]
            explanation = pending["explanation"]
            reason_code = pending["reason_code"]
        else:
            percentage = 0
            if record.advance_cents:
                ratio = Decimal(refunded_cents) * 100 / record.advance_cents
                percentage = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            applied_tier = None
            rule = RefundRule.RECONCILED
            explanation = (
                f"{Money(refunded_cents, record.currency)} was refunded, as recorded "
                "by the payment processor."
            )
            reason_code = (pending or {}).get("reason_code", RefundReason.CUSTOMER_REQUEST)

        return RefundTransaction(
            booking_id=record.booking_id,
            payment_record=record,
            payment_intent_id=record.stripe_payment_intent_id or "",
            currency=record.currency,
            refund_amount_cents=refunded_cents,
            cancellation_fee_cents=record.advance_cents - refunded_cents,
            refund_percentage=percentage,
            reason_code=reason_code,
            applied_tier=applied_tier,
            policy_rule=rule,
            policy_explanation=explanation,
            stripe_refund_id=processor_refund.id,
            status=(
                RefundTransactionStatus.SUCCEEDED
                if processor_refund.status == "succeeded"
                else RefundTransactionStatus.PENDING
            ),
            actor=actor,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _get_record(booking_id) -> PaymentRecord:
        record = PaymentRecord.objects.filter(booking_id=booking_id).first()
        if record is None:
            raise PaymentNotFoundError(
                f"No payment record for booking {booking_id}",
                details={"booking_id": str(booking_id)},
            )
        return record

    @staticmethod
    def _record_for_intent(payment_intent_id: str) -> PaymentRecord:
        record = (
            PaymentRecord.objects.filter(stripe_payment_intent_id=payment_intent_id).first()
            or PaymentRecord.objects.filter(remaining_payment_intent_id=payment_intent_id).first()
        )
        if record is None:
            raise PaymentNotFoundError(
                f"No payment record for payment intent {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )
        return record

    @staticmethod
    def _ensure_consistent(record: PaymentRecord) -> None:
        if record.inconsistent_external_state:
            raise InconsistentStateError(
                "Payment needs reconciliation before money can move",
                details={
                    "booking_id": str(record.booking_id),
                    "reason": record.inconsistency_reason,
                },
            )

    @staticmethod
    def _service_time(record: PaymentRecord) -> datetime:
        scheduled_at = (
            Booking.objects.filter(id=record.booking_id)
            .values_list("scheduled_at", flat=True)
            .first()
        )
        return scheduled_at or timezone.now()

    @staticmethod
    def _priest_user_id(record: PaymentRecord):
        return (
            PriestProfile.objects.filter(id=record.priest_id)
            .values_list("user_id", flat=True)
            .first()
        )

    def _call_processor(self, record: PaymentRecord, operation: str, actor: str, fn: Callable[[], Any]):
        """Run a processor call; a timeout flags the record and raises."""
        try:
            return fn()
        except StripeTimeoutError as e:
            self.ledger.mark_inconsistent(
                record,
                reason=f"{operation} timed out; outcome unknown",
                actor=actor,
            )
            raise InconsistentStateError(
                "Payment processor did not answer in time; the payment needs reconciliation",
                details={"booking_id": str(record.booking_id), "operation": operation},
            ) from e

    def _write_ledger(
        self,
        record: PaymentRecord,
        operation: str,
        actor: str,
        fn: Callable[[], Any],
        money_moved: bool = True,
    ):
        """Run a ledger write that follows a successful processor call."""
        try:
            return fn()
        except (BaseApplicationError, DatabaseError) as e:
            if money_moved:
                self._ledger_failed(record, operation, actor, e)
            self._flag(record, f"Ledger update failed after {operation}: {e}", actor)
            raise InconsistentStateError(
                f"Ledger update failed after {operation}",
                details={"booking_id": str(record.booking_id), "operation": operation},
            ) from e

    def _ledger_failed(self, record: PaymentRecord, operation: str, actor: str, error: Exception):
        reason = f"Ledger update failed after {operation} succeeded: {error}"
        try:
            self.ledger.force_status(
                record,
                S.PROCESSING,
                actor=actor,
                event="ledger_write_failed",
                reason=reason,
                inconsistent=True,
                metadata={"operation": operation},
            )
        except (BaseApplicationError, DatabaseError):
            logger.critical(
                "Could not flag payment record after ledger failure",
                extra={"booking_id": str(record.booking_id), "operation": operation},
                exc_info=True,
            )
        raise InconsistentStateError(
            f"Ledger update failed after {operation}",
            details={"booking_id": str(record.booking_id), "operation": operation},
        ) from error

    def _flag(self, record: PaymentRecord, reason: str, actor: str) -> None:
        try:
            self.ledger.mark_inconsistent(record, reason=reason, actor=actor)
        except (BaseApplicationError, DatabaseError):
            logger.critical(
                "Could not flag payment record as inconsistent",
                extra={"booking_id": str(record.booking_id), "reason": reason},
                exc_info=True,
            )

    def _notify(self, user_id, title: str, body: str, data: dict[str, Any]) -> None:
        if user_id is None:
            return
        try:
            sent = self.notifier.send(user_id, title, body, data)
        except Exception:
            logger.exception("Notifier raised", extra={"title": title})
            return
        if not sent:
            logger.warning("Notification not sent", extra={"title": title, "user_id": user_id})


__all__ = [
    "PaymentOrchestrator",
    "escrow_release_time",
    "stripe_refund_reason",
]
