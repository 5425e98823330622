"""
Tests for NotificationService and push delivery.

Tests cover:
- create_notification storage, type fallback and idempotency
- send() as the payment engine's NotificationSender (bool, never raises)
- send_push_notification delivery state
"""

from unittest.mock import patch

import pytest

from marketplace.tests.factories import UserFactory
from notifications.models import DeliveryStatus, Notification, NotificationType
from notifications.protocols import NotificationSender
from notifications.services import NotificationService
from notifications.tasks import send_push_notification

pytestmark = pytest.mark.django_db


@pytest.fixture
def user():
    return UserFactory(username="notified")


class TestCreateNotification:
    def test_creates_and_delivers(self, user):
        """Celery runs eagerly in tests, so delivery happens inline."""
        result = NotificationService.create_notification(
            recipient=user,
            title="Payment Released",
            body="$190.00 USD is on its way.",
            notification_type=NotificationType.ESCROW_RELEASED,
            data={"booking_id": "b1"},
        )

        assert result.success
        notification = Notification.objects.get(pk=result.data.pk)
        assert notification.recipient == user
        assert notification.notification_type == NotificationType.ESCROW_RELEASED
        assert notification.delivery_status == DeliveryStatus.SENT
        assert notification.attempt_count == 1

    def test_unknown_type_falls_back_to_general(self, user):
        result = NotificationService.create_notification(
            recipient=user, title="Hello", notification_type="not_a_type"
        )

        assert result.data.notification_type == NotificationType.GENERAL

    def test_duplicate_idempotency_key(self, user):
        NotificationService.create_notification(recipient=user, title="Once", idempotency_key="k1")

        result = NotificationService.create_notification(
            recipient=user, title="Once", idempotency_key="k1"
        )

        assert not result.success
        assert result.error_code == "DUPLICATE"
        assert Notification.objects.filter(idempotency_key="k1").count() == 1

    def test_queues_push_delivery(self, user):
        with patch("notifications.tasks.send_push_notification.delay") as mock_delay:
            result = NotificationService.create_notification(recipient=user, title="Queued")

        mock_delay.assert_called_once_with(str(result.data.id))
        assert Notification.objects.get(pk=result.data.pk).delivery_status == DeliveryStatus.PENDING


class TestSend:
    def test_satisfies_sender_protocol(self):
        assert isinstance(NotificationService, NotificationSender)

    def test_send_to_user_id(self, user):
        sent = NotificationService.send(
            user.pk,
            "Refund Processed",
            "7500 cents refunded.",
            {"type": NotificationType.REFUND_PROCESSED, "booking_id": "b1"},
        )

        assert sent is True
        notification = Notification.objects.get(recipient=user)
        assert notification.notification_type == NotificationType.REFUND_PROCESSED
        assert notification.data == {"type": "refund_processed", "booking_id": "b1"}

    def test_idempotency_key_taken_from_data(self, user):
        data = {"idempotency_key": "payment_failed:evt_1"}

        first = NotificationService.send(user, "Payment Failed", "Try again.", data)
        second = NotificationService.send(user, "Payment Failed", "Try again.", data)

        assert first is True
        assert second is True
        notification = Notification.objects.get(recipient=user)
        assert notification.idempotency_key == "payment_failed:evt_1"
        assert "idempotency_key" not in notification.data
        assert data == {"idempotency_key": "payment_failed:evt_1"}

    @pytest.mark.parametrize("target", [None, 999999])
    def test_unknown_target(self, target):
        assert NotificationService.send(target, "Title", "Body") is False

    def test_never_raises(self, user, mocker):
        mocker.patch.object(
            NotificationService, "create_notification", side_effect=RuntimeError("db gone")
        )

        assert NotificationService.send(user, "Title", "Body") is False


class TestSendPushNotification:
    def test_already_sent_is_noop(self, user):
        with patch("notifications.tasks.send_push_notification.delay"):
            notification = NotificationService.create_notification(recipient=user, title="t").data
        send_push_notification(str(notification.id))

        assert send_push_notification(str(notification.id)) is True
        notification.refresh_from_db()
        assert notification.attempt_count == 1

    def test_missing_notification(self):
        assert send_push_notification("00000000-0000-0000-0000-000000000000") is False
