"""
Tests for PaymentOrchestrator.

Tests cover:
- Advance payment intents (advance amount only, idempotent per booking)
- Confirmation into escrow
- Escrow release: single and multi-leg, partial failure and retry
- Cancellation and emergency refunds
- Dispute holds, early and automatic release
- Timeouts, ledger failures and reconciliation

The processor and notification sender are in-memory fakes injected through
the constructor (see payments/tests/fakes.py).
"""

import uuid
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone

import pytest
from django.db import DatabaseError
from django.utils import timezone
from freezegun import freeze_time

from marketplace.models import BookingStatus
from marketplace.tests.factories import (
    BookingFactory,
    CancellationPolicyFactory,
    PriestProfileFactory,
)
from payments.exceptions import (
    EscrowOnHoldError,
    InconsistentStateError,
    InvalidStateTransitionError,
    LockAcquisitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
    StripeTimeoutError,
)
from payments.locks import DistributedLock
from payments.models import PaymentRecord, RefundTransaction
from payments.services import (
    EscrowLedger,
    PaymentOrchestrator,
    escrow_release_time,
    stripe_refund_reason,
)
from payments.state_machines import (
    PaymentRecordStatus,
    RefundTransactionStatus,
    TransferParty,
    TransferStatus,
)
from payments.tests.factories import PaymentRecordFactory
from payments.tests.fakes import RecordingSender

S = PaymentRecordStatus

pytestmark = pytest.mark.django_db


def reload(record):
    return PaymentRecord.objects.get(pk=record.pk)


class FailingLedger(EscrowLedger):
    """Ledger whose transitions for the given events fail like a lost database."""

    def __init__(self, *events):
        self.events = set(events)

    def transition(self, record, event, *args, **kwargs):
        if event in self.events:
            raise DatabaseError("connection to server was lost")
        return super().transition(record, event, *args, **kwargs)


# =============================================================================
# Advance Payment
# =============================================================================


class TestCreateAdvancePayment:
    def test_requests_advance_only(self, orchestrator, processor, booking):
        """The intent is for the advance, tagged with the booking's transfer group."""
        record = orchestrator.create_advance_payment(booking)

        params = processor.calls_to("create_payment_intent")[0]["params"]
        assert params.amount_cents == 10000
        assert params.transfer_group == f"booking_{booking.id}"
        assert params.metadata["booking_id"] == str(booking.id)
        assert record.status == S.REQUIRES_PAYMENT
        assert record.stripe_payment_intent_id in processor.intents
        assert record.client_secret.endswith("_secret")

    def test_stores_split_and_accounts(self, orchestrator, booking):
        record = orchestrator.create_advance_payment(booking)

        assert record.total_cents == 20000
        assert record.priest_share_cents == 19000
        assert record.platform_fee_cents == 1000
        assert record.priest_account_id == booking.priest.connected_account.stripe_account_id
        assert record.devotee_id == booking.devotee_id

    def test_idempotent_per_booking(self, orchestrator, processor, booking):
        """A second call returns the same record without a new intent."""
        first = orchestrator.create_advance_payment(booking)
        second = orchestrator.create_advance_payment(booking)

        assert first.pk == second.pk
        assert len(processor.calls_to("create_payment_intent")) == 1
        assert second.client_secret == first.client_secret

    def test_repeat_call_survives_lookup_timeout(self, orchestrator, processor, booking):
        first = orchestrator.create_advance_payment(booking)
        processor.fail("retrieve_payment_intent", StripeTimeoutError("timed out"))

        second = orchestrator.create_advance_payment(booking)

        assert second.pk == first.pk
        assert second.client_secret is None
        assert reload(second).inconsistent_external_state is False
        assert orchestrator.create_advance_payment(booking).client_secret == first.client_secret

    def test_booking_must_be_confirmed(self, orchestrator, processor, devotee, priest):
        booking = BookingFactory(devotee=devotee, priest=priest, status=BookingStatus.QUOTE_REQUESTED)

        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.create_advance_payment(booking)

        assert exc_info.value.error_code == "BOOKING_NOT_CONFIRMED"
        assert processor.calls == []
        assert not PaymentRecord.objects.filter(booking_id=booking.id).exists()

    def test_below_minimum(self, orchestrator, devotee, priest, settings):
        settings.MINIMUM_BOOKING_CENTS = 2500
        booking = BookingFactory(devotee=devotee, priest=priest, total_price_cents=2000)

        with pytest.raises(PaymentValidationError, match="below the minimum"):
            orchestrator.create_advance_payment(booking)

    def test_declined_leaves_record_retryable(self, orchestrator, processor, booking):
        """A rejection surfaces the processor's error and keeps the record usable."""
        processor.fail(
            "create_payment_intent",
            StripeCardDeclinedError("Your card was declined.", stripe_code="card_declined"),
        )

        with pytest.raises(StripeCardDeclinedError) as exc_info:
            orchestrator.create_advance_payment(booking)

        assert exc_info.value.details["processor_code"] == "card_declined"
        record = PaymentRecord.objects.get(booking_id=booking.id)
        assert record.status == S.REQUIRES_PAYMENT
        assert record.stripe_payment_intent_id is None
        assert record.inconsistent_external_state is False

        retried = orchestrator.create_advance_payment(booking)
        assert retried.stripe_payment_intent_id in processor.intents

    def test_timeout_flags_record(self, orchestrator, processor, booking):
        processor.lose_response("create_payment_intent", StripeTimeoutError("timed out"))

        with pytest.raises(InconsistentStateError):
            orchestrator.create_advance_payment(booking)

        record = PaymentRecord.objects.get(booking_id=booking.id)
        assert record.inconsistent_external_state is True
        assert record.status == S.REQUIRES_PAYMENT

    def test_flagged_record_refuses_new_attempt(self, orchestrator, processor, booking):
        processor.lose_response("create_payment_intent", StripeTimeoutError("timed out"))
        with pytest.raises(InconsistentStateError):
            orchestrator.create_advance_payment(booking)

        with pytest.raises(InconsistentStateError, match="reconciliation"):
            orchestrator.create_advance_payment(booking)


# =============================================================================
# Confirmation
# =============================================================================


class TestConfirmPayment:
    def test_moves_record_into_escrow(self, orchestrator, sender, booking):
        """Processor confirmation takes the record through processing to held."""
        record = orchestrator.create_advance_payment(booking)

        record = orchestrator.confirm_payment(record.stripe_payment_intent_id)

        assert record.status == S.HELD_IN_ESCROW
        assert record.processing_at is not None
        assert record.held_at is not None
        assert record.escrow_release_at == escrow_release_time(booking.scheduled_at)
        assert sender.titles() == ["Payment Received"]
        assert sender.sent[0]["target"] == booking.devotee_id

    def test_already_held_is_noop(self, orchestrator, processor, booking):
        record = orchestrator.create_advance_payment(booking)
        orchestrator.confirm_payment(record.stripe_payment_intent_id)

        again = orchestrator.confirm_payment(record.stripe_payment_intent_id)

        assert again.status == S.HELD_IN_ESCROW
        assert len(processor.calls_to("confirm_payment_intent")) == 1

    def test_unpaid_intent_leaves_record(self, orchestrator, processor, booking):
        processor.confirm_status = "requires_payment_method"
        record = orchestrator.create_advance_payment(booking)

        record = orchestrator.confirm_payment(record.stripe_payment_intent_id)

        assert record.status == S.REQUIRES_PAYMENT

    def test_processing_intent_stops_at_processing(self, orchestrator, processor, booking):
        """A charge still settling moves the record to processing only."""
        processor.confirm_status = "processing"
        record = orchestrator.create_advance_payment(booking)

        record = orchestrator.confirm_payment(record.stripe_payment_intent_id)

        assert record.status == S.PROCESSING

    def test_unknown_intent(self, orchestrator):
        with pytest.raises(PaymentNotFoundError):
            orchestrator.confirm_payment("pi_unknown")

    def test_ledger_failure_after_confirm(self, processor, sender, booking):
        """The record is rolled back to processing and flagged for reconciliation."""
        orchestrator = PaymentOrchestrator(
            processor=processor, notifier=sender, ledger=FailingLedger("hold_in_escrow")
        )
        record = orchestrator.create_advance_payment(booking)

        with pytest.raises(InconsistentStateError):
            orchestrator.confirm_payment(record.stripe_payment_intent_id)

        record = reload(record)
        assert record.status == S.PROCESSING
        assert record.inconsistent_external_state is True
        assert "confirm_payment_intent" in record.inconsistency_reason

    def test_notifier_failure_does_not_block(self, processor, booking):
        orchestrator = PaymentOrchestrator(
            processor=processor, notifier=RecordingSender(error=RuntimeError("push down"))
        )
        record = orchestrator.create_advance_payment(booking)

        record = orchestrator.confirm_payment(record.stripe_payment_intent_id)

        assert record.status == S.HELD_IN_ESCROW


# =============================================================================
# Remaining Balance
# =============================================================================


class TestCollectRemainingPayment:
    def test_requests_remaining_in_same_group(self, orchestrator, processor, sender, booking, held_record):
        booking.status = BookingStatus.IN_PROGRESS
        booking.save()

        record = orchestrator.collect_remaining_payment(booking.id)

        params = processor.calls_to("create_payment_intent")[-1]["params"]
        assert params.amount_cents == 10000
        assert params.transfer_group == held_record.transfer_group
        assert record.remaining_payment_intent_id in processor.intents
        assert "Remaining Balance Due" in sender.titles()

    def test_confirming_remaining_stamps_collection(self, orchestrator, booking, held_record):
        booking.status = BookingStatus.IN_PROGRESS
        booking.save()
        record = orchestrator.collect_remaining_payment(booking.id)

        record = orchestrator.confirm_payment(record.remaining_payment_intent_id)

        assert record.remaining_collected_at is not None
        assert record.status == S.HELD_IN_ESCROW

    def test_not_before_ceremony(self, orchestrator, booking, held_record):
        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.collect_remaining_payment(booking.id)

        assert exc_info.value.error_code == "BOOKING_NOT_STARTED"

    def test_nothing_remaining(self, orchestrator, processor, devotee, priest):
        booking = BookingFactory(devotee=devotee, priest=priest, advance_percentage=100)
        PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        record = orchestrator.collect_remaining_payment(booking.id)

        assert record.remaining_payment_intent_id is None
        assert processor.calls == []


# =============================================================================
# Escrow Release
# =============================================================================


class TestReleaseEscrowFunds:
    def test_independent_priest_single_transfer(self, orchestrator, processor, sender, booking, held_record):
        """Only the priest share moves; the platform fee stays on the platform."""
        legs = orchestrator.release_escrow_funds(booking.id, actor="staff:1")

        assert len(legs) == 1
        assert legs[0].party == TransferParty.PRIEST
        assert legs[0].amount_cents == 19000
        assert legs[0].status == TransferStatus.SUCCEEDED
        transfer = processor.transfers[0]
        assert transfer.destination_account == held_record.priest_account_id
        assert transfer.transfer_group == held_record.transfer_group
        assert reload(held_record).status == S.RELEASED
        assert "Payment Released" in sender.titles()

    def test_temple_employee_two_transfers(self, orchestrator, processor, temple_booking, temple_held_record):
        legs = orchestrator.release_escrow_funds(temple_booking.id)

        amounts = {leg.party: leg.amount_cents for leg in legs}
        assert amounts == {TransferParty.PRIEST: 13000, TransferParty.TEMPLE: 6000}
        assert sum(t.amount_cents for t in processor.transfers) == 19000
        assert reload(temple_held_record).status == S.RELEASED

    def test_zero_priest_share_sends_temple_leg_only(self, orchestrator, processor, devotee):
        priest = PriestProfileFactory(
            temple_employee=True, temple_share_percentage=95, connected_account=None
        )
        booking = BookingFactory(devotee=devotee, priest=priest)
        record = PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)
        assert record.priest_share_cents == 0

        legs = orchestrator.release_escrow_funds(booking.id)

        assert [(leg.party, leg.amount_cents) for leg in legs] == [(TransferParty.TEMPLE, 19000)]
        assert [t.amount_cents for t in processor.transfers] == [19000]
        assert reload(record).status == S.RELEASED

    def test_nothing_to_transfer_completes(self, orchestrator, processor, devotee, priest, settings):
        settings.PLATFORM_FEE_PERCENT = 100
        booking = BookingFactory(devotee=devotee, priest=priest)
        record = PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        legs = orchestrator.release_escrow_funds(booking.id)

        assert legs == []
        assert processor.transfers == []
        assert reload(record).status == S.COMPLETED

    def test_release_twice_refused(self, orchestrator, processor, booking, held_record):
        """At most one payout: the second release is an illegal transition."""
        orchestrator.release_escrow_funds(booking.id)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.release_escrow_funds(booking.id)

        assert len(processor.transfers) == 1

    def test_partial_release_then_retry(self, orchestrator, processor, temple_booking, temple_held_record):
        """A failed leg is retried later; the succeeded leg is never sent again."""
        processor.fail_transfer_to(
            temple_held_record.temple_account_id,
            StripeInvalidAccountError("No such destination account"),
        )

        legs = orchestrator.release_escrow_funds(temple_booking.id)

        statuses = {leg.party: leg.status for leg in legs}
        assert statuses == {
            TransferParty.PRIEST: TransferStatus.SUCCEEDED,
            TransferParty.TEMPLE: TransferStatus.FAILED,
        }
        record = reload(temple_held_record)
        assert record.status == S.PARTIALLY_RELEASED
        outstanding = orchestrator.ledger.history(temple_booking.id)[-1].metadata["outstanding"]
        assert outstanding == [TransferParty.TEMPLE]

        legs = orchestrator.release_escrow_funds(temple_booking.id)

        assert all(leg.status == TransferStatus.SUCCEEDED for leg in legs)
        assert reload(temple_held_record).status == S.RELEASED
        priest_calls = [
            c for c in processor.calls_to("create_transfer")
            if c["destination_account"] == temple_held_record.priest_account_id
        ]
        assert len(priest_calls) == 1

    def test_permanent_failure_gets_fresh_key(self, orchestrator, processor, temple_booking, temple_held_record):
        processor.fail_transfer_to(
            temple_held_record.temple_account_id, StripeInvalidAccountError("No such account")
        )
        orchestrator.release_escrow_funds(temple_booking.id)
        orchestrator.release_escrow_funds(temple_booking.id)

        keys = [
            c["idempotency_key"] for c in processor.calls_to("create_transfer")
            if c["destination_account"] == temple_held_record.temple_account_id
        ]
        assert keys[0].startswith(f"transfer_temple:{temple_booking.id}:1:")
        assert keys[1].startswith(f"transfer_temple:{temple_booking.id}:2:")

    def test_every_leg_failing_keeps_record_held(self, orchestrator, processor, booking, held_record):
        processor.fail_transfer_to(held_record.priest_account_id, StripeAPIUnavailableError("down"))

        with pytest.raises(StripeAPIUnavailableError):
            orchestrator.release_escrow_funds(booking.id)

        record = reload(held_record)
        assert record.status == S.HELD_IN_ESCROW
        leg = record.transfers.get()
        assert leg.status == TransferStatus.FAILED
        assert leg.idempotency_attempt == 1

    def test_not_held(self, orchestrator, booking):
        PaymentRecordFactory.for_booking(booking, status=S.PROCESSING)

        with pytest.raises(InvalidStateTransitionError, match="Cannot release"):
            orchestrator.release_escrow_funds(booking.id)

    def test_on_hold(self, orchestrator, processor, booking, held_record):
        orchestrator.hold_escrow(booking.id, reason="Charge disputed", actor="staff:1")

        with pytest.raises(EscrowOnHoldError):
            orchestrator.release_escrow_funds(booking.id)

        assert processor.transfers == []

    def test_concurrent_release_locked_out(self, orchestrator, booking, held_record):
        with DistributedLock(f"escrow:release:{booking.id}", blocking=False):
            with pytest.raises(LockAcquisitionError):
                orchestrator.release_escrow_funds(booking.id)

    def test_missing_payout_account(self, orchestrator, booking, held_record):
        PaymentRecord.objects.filter(pk=held_record.pk).update(priest_account_id="")
        booking.priest.connected_account = None
        booking.priest.save()

        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.release_escrow_funds(booking.id)

        assert exc_info.value.error_code == "MISSING_PAYOUT_ACCOUNT"

    def test_timeout_flags_and_blocks(self, orchestrator, processor, booking, held_record):
        processor.lose_response("create_transfer", StripeTimeoutError("timed out"))

        with pytest.raises(InconsistentStateError):
            orchestrator.release_escrow_funds(booking.id)

        record = reload(held_record)
        assert record.status == S.HELD_IN_ESCROW
        assert record.inconsistent_external_state is True
        with pytest.raises(InconsistentStateError):
            orchestrator.release_escrow_funds(booking.id)


class TestConfirmTransfer:
    def test_completes_after_every_leg_acknowledged(self, orchestrator, temple_booking, temple_held_record):
        legs = orchestrator.release_escrow_funds(temple_booking.id)

        record = orchestrator.confirm_transfer(legs[0].stripe_transfer_id)
        assert record.status == S.RELEASED

        record = orchestrator.confirm_transfer(legs[1].stripe_transfer_id)
        assert record.status == S.COMPLETED

    def test_unknown_transfer(self, orchestrator):
        assert orchestrator.confirm_transfer("tr_unknown") is None


# =============================================================================
# Refunds
# =============================================================================


class TestCancellationRefund:
    def test_tier_refund(self, orchestrator, processor, sender, booking, held_record):
        """25% fee tier at 30 hours: 7500 back, 2500 kept, partially refunded."""
        refund = orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=30)
        )

        assert refund.refund_amount_cents == 7500
        assert refund.cancellation_fee_cents == 2500
        assert refund.refund_percentage == 75
        assert refund.applied_tier == {"hours_before_service": 24, "fee_percentage": 25}
        assert refund.status == RefundTransactionStatus.SUCCEEDED
        assert processor.refunds[0].amount_cents == 7500
        assert processor.refunds[0].payment_intent_id == held_record.stripe_payment_intent_id
        assert reload(held_record).status == S.PARTIALLY_REFUNDED
        assert "Refund Processed" in sender.titles()

    def test_free_window_full_refund(self, orchestrator, processor, booking, held_record):
        refund = orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=72)
        )

        assert refund.refund_amount_cents == 10000
        assert reload(held_record).status == S.REFUNDED

    def test_refund_is_on_advance_not_total(self, orchestrator, processor, booking, held_record):
        orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=72)
        )

        assert processor.refunds[0].amount_cents == held_record.advance_cents

    def test_zero_refund_skips_processor(self, orchestrator, processor, booking, held_record):
        """Inside the last tier nothing comes back, and nothing is sent to Stripe."""
        refund = orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=2)
        )

        assert refund.refund_amount_cents == 0
        assert refund.cancellation_fee_cents == 10000
        assert refund.stripe_refund_id is None
        assert processor.calls_to("create_refund") == []
        assert reload(held_record).status == S.PARTIALLY_REFUNDED

    def test_idempotent(self, orchestrator, processor, booking, held_record):
        first = orchestrator.process_cancellation_refund(booking)
        second = orchestrator.process_cancellation_refund(booking)

        assert first.pk == second.pk
        assert len(processor.refunds) == 1

    def test_released_record_not_refundable(self, orchestrator, processor, booking, held_record):
        orchestrator.release_escrow_funds(booking.id)

        with pytest.raises(InvalidStateTransitionError, match="Cannot refund"):
            orchestrator.process_cancellation_refund(booking)

        assert processor.refunds == []
        assert not RefundTransaction.objects.filter(booking_id=booking.id).exists()

    def test_before_capture_nothing_to_refund(self, orchestrator, processor, booking):
        orchestrator.create_advance_payment(booking)

        refund = orchestrator.process_cancellation_refund(booking)

        assert refund.refund_amount_cents == 0
        assert "nothing was charged" in refund.policy_explanation
        assert processor.calls_to("create_refund") == []
        assert PaymentRecord.objects.get(booking_id=booking.id).status == S.REQUIRES_PAYMENT

    def test_processor_rejection_leaves_record(self, orchestrator, processor, booking, held_record):
        processor.fail("create_refund", StripeAPIUnavailableError("down"))

        with pytest.raises(StripeAPIUnavailableError):
            orchestrator.process_cancellation_refund(booking)

        assert reload(held_record).status == S.HELD_IN_ESCROW
        assert not RefundTransaction.objects.filter(booking_id=booking.id).exists()

    def test_timeout_flags_record(self, orchestrator, processor, booking, held_record):
        processor.lose_response("create_refund", StripeTimeoutError("timed out"))

        with pytest.raises(InconsistentStateError):
            orchestrator.process_cancellation_refund(booking)

        record = reload(held_record)
        assert record.status == S.HELD_IN_ESCROW
        assert record.inconsistent_external_state is True

    def test_ledger_failure_after_refund(self, processor, sender, booking, held_record):
        orchestrator = PaymentOrchestrator(
            processor=processor, notifier=sender, ledger=FailingLedger("refund", "refund_partially")
        )

        with pytest.raises(InconsistentStateError):
            orchestrator.process_cancellation_refund(booking)

        record = reload(held_record)
        assert record.status == S.PROCESSING
        assert record.inconsistent_external_state is True
        assert len(processor.refunds) == 1
        assert not RefundTransaction.objects.filter(booking_id=booking.id).exists()

    def test_retry_requests_the_original_amount(self, orchestrator, processor, booking, held_record):
        """A retry later in time reuses the amount already sent under the booking's key."""
        processor.fail("create_refund", StripeAPIUnavailableError("down"))
        with pytest.raises(StripeAPIUnavailableError):
            orchestrator.process_cancellation_refund(
                booking, now=booking.scheduled_at - timedelta(hours=30)
            )

        refund = orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=2)
        )

        amounts = [call["amount_cents"] for call in processor.calls_to("create_refund")]
        assert amounts == [7500, 7500]
        assert refund.refund_amount_cents == 7500
        assert refund.refund_percentage == 75

    def test_duplicate_reason_maps_to_stripe_reason(self, orchestrator, processor, booking, held_record):
        orchestrator.process_cancellation_refund(booking, reason_code="duplicate")

        assert processor.calls_to("create_refund")[0]["reason"] == "duplicate"

    def test_policy_emergency_exception(self, orchestrator, booking, held_record):
        refund = orchestrator.process_cancellation_refund(
            booking,
            reason_code="medical_emergency",
            now=booking.scheduled_at - timedelta(hours=1),
        )

        assert refund.refund_percentage == 100
        assert refund.reason_code == "medical_emergency"
        assert refund.policy_rule == "emergency_exception"

    def test_default_policy_when_booking_has_none(self, orchestrator, devotee, priest):
        booking = BookingFactory(devotee=devotee, priest=priest, cancellation_policy=None)
        PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        refund = orchestrator.process_cancellation_refund(
            booking, now=booking.scheduled_at - timedelta(hours=13)
        )

        assert refund.refund_percentage == 50


class TestEmergencyRefund:
    def test_full_refund_with_approver(self, orchestrator, processor, booking, held_record):
        refund = orchestrator.process_emergency_refund(
            booking, emergency_type="natural_disaster", approved_by="42"
        )

        assert refund.refund_amount_cents == 10000
        assert refund.approved_by == "42"
        assert refund.actor == "staff:42"
        assert reload(held_record).status == S.REFUNDED

    def test_approver_required(self, orchestrator, booking, held_record):
        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.process_emergency_refund(booking, emergency_type="flood", approved_by="")

        assert exc_info.value.error_code == "APPROVER_REQUIRED"

    def test_stripe_refund_reason(self):
        assert stripe_refund_reason("duplicate") == "duplicate"
        assert stripe_refund_reason("medical_emergency") == "requested_by_customer"
        assert stripe_refund_reason(None) == "requested_by_customer"


# =============================================================================
# Holds
# =============================================================================


class TestHolds:
    def test_hold_notifies_priest(self, orchestrator, sender, booking, held_record):
        record = orchestrator.hold_escrow(booking.id, reason="Charge disputed", actor="staff:1")

        assert record.is_on_hold is True
        assert sender.sent[-1]["title"] == "Payment On Hold"
        assert sender.sent[-1]["target"] == booking.priest.user_id

    def test_lift_allows_release(self, orchestrator, booking, held_record):
        orchestrator.hold_escrow(booking.id, reason="r", actor="staff:1")
        orchestrator.lift_hold(booking.id, actor="staff:1")

        orchestrator.release_escrow_funds(booking.id)

        assert reload(held_record).status == S.RELEASED

    def test_unknown_booking(self, orchestrator):
        with pytest.raises(PaymentNotFoundError):
            orchestrator.hold_escrow(uuid.uuid4(), reason="r", actor="t")


# =============================================================================
# Early and Automatic Release
# =============================================================================


class TestCanReleaseEarly:
    def test_trusted_priest(self, orchestrator):
        assert orchestrator.can_release_early(PriestProfileFactory(trusted=True)) is True

    def test_unverified(self, orchestrator):
        priest = PriestProfileFactory(trusted=True, is_verified=False)

        assert orchestrator.can_release_early(priest) is False

    def test_low_rating(self, orchestrator):
        priest = PriestProfileFactory(trusted=True, average_rating="4.20")

        assert orchestrator.can_release_early(priest) is False

    def test_too_few_reviews(self, orchestrator):
        priest = PriestProfileFactory(trusted=True, review_count=3)

        assert orchestrator.can_release_early(priest) is False

    def test_high_cancellation_rate(self, orchestrator):
        priest = PriestProfileFactory(trusted=True)
        BookingFactory.create_batch(8, priest=priest, status=BookingStatus.COMPLETED)
        BookingFactory.create_batch(2, priest=priest, status=BookingStatus.CANCELLED)

        assert orchestrator.can_release_early(priest) is False


class TestEscrowReleaseTime:
    def test_one_day_after_weekday_ceremony(self):
        service_at = datetime(2024, 1, 15, 10, 0, tzinfo=dt_timezone.utc)  # Monday

        assert escrow_release_time(service_at) == service_at + timedelta(days=1)

    def test_saturday_release_moves_to_monday(self):
        service_at = datetime(2024, 1, 19, 10, 0, tzinfo=dt_timezone.utc)  # Friday

        assert escrow_release_time(service_at) == datetime(2024, 1, 22, 10, 0, tzinfo=dt_timezone.utc)

    def test_weekend_release_allowed_when_configured(self, settings):
        settings.ESCROW_RELEASE_SKIP_WEEKENDS = False
        service_at = datetime(2024, 1, 19, 10, 0, tzinfo=dt_timezone.utc)

        assert escrow_release_time(service_at).weekday() == 5


class TestReleaseDueEscrows:
    def test_releases_completed_and_due(self, orchestrator, devotee, priest):
        booking = BookingFactory(
            devotee=devotee,
            priest=priest,
            status=BookingStatus.COMPLETED,
            scheduled_at=timezone.now() - timedelta(days=5),
        )
        record = PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        results = orchestrator.release_due_escrows()

        assert results["released"] == 1
        assert reload(record).status == S.RELEASED

    def test_release_time_read_from_clock(self, orchestrator, devotee, priest):
        with freeze_time("2024-01-15 10:00:00"):
            booking = BookingFactory(
                devotee=devotee,
                priest=priest,
                status=BookingStatus.COMPLETED,
                scheduled_at=timezone.now() - timedelta(hours=2),
            )
            record = PaymentRecordFactory.for_booking(
                booking,
                status=S.HELD_IN_ESCROW,
                escrow_release_at=escrow_release_time(booking.scheduled_at),
            )

            assert orchestrator.release_due_escrows()["skipped"] == 1

        with freeze_time("2024-01-16 08:00:01"):
            assert orchestrator.release_due_escrows()["released"] == 1

        assert reload(record).status == S.RELEASED

    def test_skips_uncompleted_booking(self, orchestrator, booking, held_record):
        results = orchestrator.release_due_escrows(now=timezone.now() + timedelta(days=30))

        assert results == {
            "checked": 1,
            "released": 0,
            "partially_released": 0,
            "skipped": 1,
            "failed": 0,
        }

    def test_skips_not_yet_due(self, orchestrator, devotee, priest):
        booking = BookingFactory(devotee=devotee, priest=priest, status=BookingStatus.COMPLETED)
        PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        results = orchestrator.release_due_escrows()

        assert results["skipped"] == 1

    def test_trusted_priest_released_early(self, orchestrator, devotee):
        priest = PriestProfileFactory(trusted=True)
        booking = BookingFactory(devotee=devotee, priest=priest, status=BookingStatus.COMPLETED)
        record = PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)

        results = orchestrator.release_due_escrows()

        assert results["released"] == 1
        assert orchestrator.ledger.history(booking.id)[-1].metadata["reason"] == "early_release"
        assert reload(record).status == S.RELEASED

    def test_held_and_flagged_records_excluded(self, orchestrator, devotee, priest):
        for flags in ({"is_on_hold": True}, {"inconsistent_external_state": True}):
            booking = BookingFactory(
                devotee=devotee,
                priest=priest,
                status=BookingStatus.COMPLETED,
                scheduled_at=timezone.now() - timedelta(days=5),
            )
            PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW, **flags)

        results = orchestrator.release_due_escrows()

        assert results["checked"] == 0

    def test_failure_counted_not_raised(self, orchestrator, processor, devotee, priest):
        booking = BookingFactory(
            devotee=devotee,
            priest=priest,
            status=BookingStatus.COMPLETED,
            scheduled_at=timezone.now() - timedelta(days=5),
        )
        record = PaymentRecordFactory.for_booking(booking, status=S.HELD_IN_ESCROW)
        processor.fail_transfer_to(record.priest_account_id, StripeAPIUnavailableError("down"))

        results = orchestrator.release_due_escrows()

        assert results["failed"] == 1
        assert reload(record).status == S.HELD_IN_ESCROW


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconcile:
    def test_replays_lost_intent_creation(self, orchestrator, processor, booking):
        """The replay reuses the idempotency key, so no second intent is created."""
        processor.lose_response("create_payment_intent", StripeTimeoutError("timed out"))
        with pytest.raises(InconsistentStateError):
            orchestrator.create_advance_payment(booking)

        record = orchestrator.reconcile(booking.id)

        assert len(processor.intents) == 1
        assert record.stripe_payment_intent_id in processor.intents
        assert record.inconsistent_external_state is False

    def test_transfer_that_went_through(self, orchestrator, processor, booking, held_record):
        processor.lose_response("create_transfer", StripeTimeoutError("timed out"))
        with pytest.raises(InconsistentStateError):
            orchestrator.release_escrow_funds(booking.id)

        record = orchestrator.reconcile(booking.id)

        assert record.status == S.RELEASED
        assert record.inconsistent_external_state is False
        leg = record.transfers.get()
        assert leg.status == TransferStatus.SUCCEEDED
        assert leg.stripe_transfer_id == processor.transfers[0].id

    def test_confirmation_ledger_failure(self, processor, sender, booking):
        """A confirmed intent behind a failed ledger write reconciles to held."""
        orchestrator = PaymentOrchestrator(
            processor=processor, notifier=sender, ledger=FailingLedger("hold_in_escrow")
        )
        record = orchestrator.create_advance_payment(booking)
        with pytest.raises(InconsistentStateError):
            orchestrator.confirm_payment(record.stripe_payment_intent_id)

        record = PaymentOrchestrator(processor=processor, notifier=sender).reconcile(booking.id)

        assert record.status == S.HELD_IN_ESCROW
        assert record.escrow_release_at is not None
        assert record.inconsistent_external_state is False

    def test_refund_recorded_after_ledger_failure(self, processor, sender, booking, held_record):
        """Reconcile writes the lost refund row itself; a retry returns it without refunding again."""
        failing = PaymentOrchestrator(
            processor=processor, notifier=sender, ledger=FailingLedger("refund", "refund_partially")
        )
        with pytest.raises(InconsistentStateError):
            failing.process_cancellation_refund(
                booking, now=booking.scheduled_at - timedelta(hours=30)
            )

        orchestrator = PaymentOrchestrator(processor=processor, notifier=sender)
        record = orchestrator.reconcile(booking.id)
        refund = orchestrator.process_cancellation_refund(booking)

        assert record.status == S.PARTIALLY_REFUNDED
        assert record.inconsistent_external_state is False
        assert len(processor.refunds) == 1
        assert refund.stripe_refund_id == processor.refunds[0].id
        assert refund.refund_amount_cents == 7500
        assert refund.refund_percentage == 75
        assert refund.applied_tier == {"hours_before_service": 24, "fee_percentage": 25}

    def test_timed_out_refund_blocks_release(self, orchestrator, processor, booking, held_record):
        """A refund that went through during a timeout is recorded, and the escrow stays unpaid."""
        processor.lose_response("create_refund", StripeTimeoutError("timed out"))
        with pytest.raises(InconsistentStateError):
            orchestrator.process_cancellation_refund(booking)

        record = orchestrator.reconcile(booking.id)

        assert record.status == S.REFUNDED
        assert record.inconsistent_external_state is False
        refund = RefundTransaction.objects.get(booking_id=booking.id)
        assert refund.refund_amount_cents == 10000
        assert refund.cancellation_fee_cents == 0
        assert refund.stripe_refund_id == processor.refunds[0].id
        assert refund.status == RefundTransactionStatus.SUCCEEDED

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.release_escrow_funds(booking.id)
        assert processor.transfers == []

    def test_unlogged_refund_amount_taken_from_processor(self, orchestrator, processor, booking, held_record):
        processor.create_refund(
            payment_intent_id=held_record.stripe_payment_intent_id,
            idempotency_key="manual_dashboard_refund",
            amount_cents=2500,
        )
        orchestrator.ledger.mark_inconsistent(held_record, reason="manual refund", actor="staff:1")

        record = orchestrator.reconcile(booking.id)

        refund = RefundTransaction.objects.get(booking_id=booking.id)
        assert record.status == S.PARTIALLY_REFUNDED
        assert refund.refund_amount_cents == 2500
        assert refund.cancellation_fee_cents == 7500
        assert refund.refund_percentage == 25
        assert refund.policy_rule == "reconciled"

    def test_consistent_record_unchanged(self, orchestrator, booking, held_record):
        record = orchestrator.reconcile(booking.id)

        assert record.status == S.HELD_IN_ESCROW
        assert record.version == held_record.version
