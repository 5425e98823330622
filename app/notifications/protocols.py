"""
Notification sender contract.

The payment engine notifies devotees and priests through this interface.
Delivery is fire-and-forget: ``send`` reports success as a bool and never
raises, so a failed push can never block a financial transition.

Usage:
    from notifications.protocols import NotificationSender

    def notify_priest(sender: NotificationSender, user) -> None:
        sender.send(user, "Payment Released", "Your payout is on its way")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from typing import Any


@runtime_checkable
class NotificationSender(Protocol):
    """
    Protocol for notification sending services.

    Example:
        class RecordingSender:
            def __init__(self):
                self.sent = []

            def send(self, target, title, body, data=None) -> bool:
                self.sent.append((target, title, body, data))
                return True
    """

    def send(
        self,
        target: Any,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """
        Send a notification to a user.

        Args:
            target: User instance or user id
            title: Notification title
            body: Notification body text
            data: Optional payload for deep linking

        Returns:
            True if the notification was accepted for delivery
        """
        ...
