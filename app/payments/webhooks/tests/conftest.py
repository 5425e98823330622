"""
Pytest fixtures for webhook tests.

Provides stored WebhookEvents in each processing status and an orchestrator
on the fake processor that the handlers use in place of the Stripe-backed
default.
"""

import pytest
from django.utils import timezone

from marketplace.tests.factories import BookingFactory, UserFactory
from payments.services import PaymentOrchestrator
from payments.state_machines import PaymentRecordStatus, WebhookEventStatus
from payments.tests.factories import PaymentRecordFactory, WebhookEventFactory, stripe_event
from payments.tests.fakes import FakeProcessor, RecordingSender

# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def orchestrator(mocker, processor, sender):
    """Orchestrator used by every handler in the test."""
    orchestrator = PaymentOrchestrator(processor=processor, notifier=sender)
    mocker.patch("payments.webhooks.handlers.get_orchestrator", return_value=orchestrator)
    return orchestrator


@pytest.fixture
def booking(db):
    return BookingFactory(devotee=UserFactory(username="webhook_devotee"))


@pytest.fixture
def requires_payment_record(booking, processor):
    """Record whose advance intent exists at the processor but is not yet paid."""
    record = PaymentRecordFactory.for_booking(
        booking,
        status=PaymentRecordStatus.REQUIRES_PAYMENT,
        stripe_payment_intent_id="pi_webhook_advance",
    )
    processor.add_intent(
        "pi_webhook_advance", record.advance_cents, status="requires_payment_method"
    )
    return record


@pytest.fixture
def held_record(booking, processor):
    record = PaymentRecordFactory.for_booking(
        booking,
        status=PaymentRecordStatus.HELD_IN_ESCROW,
        stripe_payment_intent_id="pi_webhook_held",
    )
    processor.add_intent("pi_webhook_held", record.advance_cents)
    return record


# =============================================================================
# Webhook Event Fixtures
# =============================================================================


@pytest.fixture
def pending_webhook_event(db):
    """WebhookEvent in PENDING status."""
    return WebhookEventFactory(stripe_event_id="evt_test_pending_123")


@pytest.fixture
def processing_webhook_event(db):
    return WebhookEventFactory(
        stripe_event_id="evt_test_processing_456",
        status=WebhookEventStatus.PROCESSING,
    )


@pytest.fixture
def processed_webhook_event(db):
    return WebhookEventFactory(
        stripe_event_id="evt_test_processed_789",
        status=WebhookEventStatus.PROCESSED,
        processed_at=timezone.now(),
    )


@pytest.fixture
def failed_webhook_event(db):
    return WebhookEventFactory(
        stripe_event_id="evt_test_failed_101",
        status=WebhookEventStatus.FAILED,
        error_message="Previous processing failed",
        retry_count=1,
    )


@pytest.fixture
def make_event(db):
    """Store a WebhookEvent for ``event_type`` around ``data_object``."""

    def _make(event_type: str, data_object: dict, event_id: str = "evt_handler_1"):
        return WebhookEventFactory(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=stripe_event(event_id, event_type, data_object),
        )

    return _make
