"""
Shared fixtures for payment tests.

This module provides fixtures used across the escrow engine test modules:
bookings and priests, payment records in the common states, and an
orchestrator wired to in-memory collaborators.
"""

import pytest

from marketplace.tests.factories import (
    BookingFactory,
    CancellationPolicyFactory,
    PriestProfileFactory,
    UserFactory,
)
from payments.services import EscrowLedger, PaymentOrchestrator
from payments.state_machines import PaymentRecordStatus
from payments.tests.factories import PaymentRecordFactory
from payments.tests.fakes import FakeProcessor, RecordingSender

# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def processor():
    """In-memory payment processor."""
    return FakeProcessor()


@pytest.fixture
def sender():
    """Notification sender that records every message."""
    return RecordingSender()


@pytest.fixture
def ledger():
    return EscrowLedger()


@pytest.fixture
def orchestrator(processor, sender, ledger):
    """PaymentOrchestrator wired to the fake processor and sender."""
    return PaymentOrchestrator(processor=processor, notifier=sender, ledger=ledger)


# =============================================================================
# Marketplace Fixtures
# =============================================================================


@pytest.fixture
def devotee(db):
    return UserFactory(username="devotee")


@pytest.fixture
def staff_user(db):
    return UserFactory(username="staff", is_staff=True)


@pytest.fixture
def priest(db):
    """Independent priest with a payout-ready account."""
    return PriestProfileFactory()


@pytest.fixture
def temple_priest(db):
    """Temple employee (30% temple share) with both accounts payout-ready."""
    return PriestProfileFactory(temple_employee=True)


@pytest.fixture
def policy(priest):
    return CancellationPolicyFactory(priest=priest)


@pytest.fixture
def booking(devotee, priest, policy):
    """Confirmed $200 booking, 50% advance, one week out."""
    return BookingFactory(devotee=devotee, priest=priest, cancellation_policy=policy)


@pytest.fixture
def temple_booking(devotee, temple_priest):
    return BookingFactory(devotee=devotee, priest=temple_priest)


# =============================================================================
# Payment Record Fixtures
# =============================================================================


@pytest.fixture
def held_record(booking, processor):
    """Booking's record held in escrow, with its intent known to the processor."""
    record = PaymentRecordFactory.for_booking(booking, status=PaymentRecordStatus.HELD_IN_ESCROW)
    processor.add_intent(record.stripe_payment_intent_id, record.advance_cents)
    return record


@pytest.fixture
def temple_held_record(temple_booking, processor):
    record = PaymentRecordFactory.for_booking(
        temple_booking, status=PaymentRecordStatus.HELD_IN_ESCROW
    )
    processor.add_intent(record.stripe_payment_intent_id, record.advance_cents)
    return record
