"""
Premium placement scheduler.

Premium placements add ``ranking_delta`` to a priest's search ranking for a
paid period. The scheduler runs periodically (celery-beat, every
PREMIUM_SCHEDULER_INTERVAL_HOURS) and:

1. Expires placements whose ``expires_at`` has passed, reversing the boost
2. Sends one "expiring soon" reminder per placement period

Only one sweep runs at a time: ``run`` takes a non-blocking distributed lock
and reports ``{"status": "skipped"}`` when another worker holds it. Each
placement is also changed under select_for_update, and the boost is tracked
by ``boost_applied``, so a second sweep never reverses the same boost twice.

Usage:
    from payments.services import PremiumPlacementScheduler

    PremiumPlacementScheduler().run()

    new_expiry = PremiumPlacementScheduler().extend_placement(priest.id, months=3)
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import NotFoundError, ValidationError
from core.services import BaseService

from marketplace.models import PriestProfile
from notifications.models import NotificationType
from notifications.services import NotificationService
from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock
from payments.models import PremiumEvent, PremiumPlacement
from payments.state_machines import PremiumEventType, PremiumPlacementStatus

if TYPE_CHECKING:
    import uuid
    from datetime import datetime
    from typing import Any

    from notifications.protocols import NotificationSender

logger = logging.getLogger(__name__)

ACTIVE = PremiumPlacementStatus.ACTIVE

# Longer than any expected sweep; Redis drops the lock if a worker dies
SCHEDULER_LOCK_TTL = 600


class PremiumPlacementScheduler(BaseService):
    """
    Expiry sweep, reminders and extensions for premium placements.

    Dependency Injection:
        notifier: NotificationSender (default: NotificationService)
        lock_class: Lock factory taking (key, ttl=, blocking=) (default: DistributedLock)
    """

    LOCK_KEY = "premium_placement_scheduler"

    def __init__(
        self,
        notifier: NotificationSender | None = None,
        lock_class: type = DistributedLock,
    ) -> None:
        self.notifier = notifier or NotificationService
        self.lock_class = lock_class

    def run(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Run one sweep, or skip if another sweep holds the lock.

        Returns:
            {"status": "skipped"} or
            {"status": "completed", "expired": int, "reminded": int}
        """
        now = now or timezone.now()
        lock = self.lock_class(self.LOCK_KEY, ttl=SCHEDULER_LOCK_TTL, blocking=False)
        try:
            lock.acquire()
        except LockAcquisitionError:
            logger.info("Premium scheduler already running, skipping")
            return {"status": "skipped"}

        try:
            expired = self.expire_placements(now)
            reminded = self.send_expiry_reminders(now)
        finally:
            lock.release()

        logger.info(
            "Premium scheduler finished",
            extra={"expired": expired, "reminded": reminded},
        )
        return {"status": "completed", "expired": expired, "reminded": reminded}

    # =========================================================================
    # Expiry
    # =========================================================================

    def expire_placements(self, now: datetime) -> int:
        """Expire every active placement past ``expires_at``. Returns the count."""
        due = list(
            PremiumPlacement.objects.filter(status=ACTIVE, expires_at__lte=now).values_list(
                "id", flat=True
            )
        )

        expired = 0
        for placement_id in due:
            try:
                priest_user_id = self._expire_one(placement_id, now)
            except Exception:
                logger.exception(
                    "Failed to expire premium placement",
                    extra={"placement_id": str(placement_id)},
                )
                continue
            if priest_user_id is None:
                continue

            expired += 1
            self._notify(
                priest_user_id,
                "Premium Placement Expired",
                "Your premium placement has ended. Extend it to stay at the top of search.",
                {"type": NotificationType.PREMIUM_EXPIRED, "placement_id": str(placement_id)},
            )
        return expired

    def _expire_one(self, placement_id: uuid.UUID, now: datetime):
        """Expire one placement; returns the priest's user id, or None if nothing changed."""
        with transaction.atomic():
            placement = (
                PremiumPlacement.objects.select_for_update()
                .select_related("priest")
                .get(pk=placement_id)
            )
            if placement.status != ACTIVE or placement.expires_at > now:
                return None

            reversed_delta = 0
            if placement.boost_applied:
                PriestProfile.objects.filter(pk=placement.priest_id).update(
                    search_ranking=F("search_ranking") - placement.ranking_delta
                )
                placement.boost_applied = False
                reversed_delta = placement.ranking_delta

            placement.status = PremiumPlacementStatus.EXPIRED
            placement.expired_at = now
            placement.save()

            PremiumEvent.objects.create(
                placement=placement,
                event_type=PremiumEventType.EXPIRED,
                previous_expires_at=placement.expires_at,
                metadata={"ranking_delta_reversed": reversed_delta},
            )

        logger.info(
            "Premium placement expired",
            extra={
                "placement_id": str(placement_id),
                "priest_id": str(placement.priest_id),
                "ranking_delta_reversed": reversed_delta,
            },
        )
        return placement.priest.user_id

    # =========================================================================
    # Reminders
    # =========================================================================

    def send_expiry_reminders(self, now: datetime) -> int:
        """
        Remind priests whose placement ends within PREMIUM_REMINDER_DAYS.

        One reminder per placement period; extending resets it.
        """
        window_end = now + timedelta(days=settings.PREMIUM_REMINDER_DAYS)
        due = list(
            PremiumPlacement.objects.filter(
                status=ACTIVE,
                expires_at__gt=now,
                expires_at__lte=window_end,
                reminder_sent_at__isnull=True,
            ).values_list("id", flat=True)
        )

        reminded = 0
        for placement_id in due:
            with transaction.atomic():
                placement = (
                    PremiumPlacement.objects.select_for_update()
                    .select_related("priest")
                    .get(pk=placement_id)
                )
                if placement.reminder_sent_at is not None or placement.status != ACTIVE:
                    continue
                placement.reminder_sent_at = now
                placement.save()
                PremiumEvent.objects.create(
                    placement=placement,
                    event_type=PremiumEventType.REMINDED,
                    previous_expires_at=placement.expires_at,
                    new_expires_at=placement.expires_at,
                )

            days_left = math.ceil((placement.expires_at - now).total_seconds() / 86400)
            unit = "day" if days_left == 1 else "days"
            self._notify(
                placement.priest.user_id,
                "Premium Expiring Soon",
                f"Your premium placement expires in {days_left} {unit}.",
                {
                    "type": NotificationType.PREMIUM_EXPIRING,
                    "placement_id": str(placement_id),
                    "days_left": days_left,
                },
            )
            reminded += 1
        return reminded

    # =========================================================================
    # Extension
    # =========================================================================

    def extend_placement(
        self,
        priest_id: uuid.UUID,
        months: int,
        now: datetime | None = None,
    ) -> datetime:
        """
        Buy ``months`` more of premium placement (30 days each).

        An active placement extends from its current expiry (or now, if that
        has already passed); an expired or missing one starts from now. The
        ranking boost is applied only if it is not already on.

        Returns:
            The new expiry

        Raises:
            ValidationError: months is not a positive whole number
            NotFoundError: Unknown priest
        """
        if isinstance(months, bool) or not isinstance(months, int) or months < 1:
            raise ValidationError(
                "Premium placement extends by at least one month",
                error_code="INVALID_EXTENSION",
                details={"months": repr(months)},
            )

        now = now or timezone.now()
        duration = timedelta(days=months * settings.PREMIUM_DAYS_PER_MONTH)

        with transaction.atomic():
            priest = PriestProfile.objects.select_for_update().filter(pk=priest_id).first()
            if priest is None:
                raise NotFoundError(
                    f"Priest {priest_id} not found",
                    error_code="PRIEST_NOT_FOUND",
                    details={"priest_id": str(priest_id)},
                )

            placement = PremiumPlacement.objects.select_for_update().filter(priest=priest).first()
            if placement is None:
                previous_expiry = None
                placement = PremiumPlacement(
                    priest=priest,
                    ranking_delta=settings.PREMIUM_RANKING_DELTA,
                    expires_at=now + duration,
                )
            else:
                previous_expiry = placement.expires_at
                base = max(placement.expires_at, now) if placement.is_active else now
                placement.expires_at = base + duration
                placement.status = ACTIVE
                placement.expired_at = None

            placement.extended_at = now
            placement.reminder_sent_at = None

            boost_added = not placement.boost_applied
            if boost_added:
                PriestProfile.objects.filter(pk=priest.pk).update(
                    search_ranking=F("search_ranking") + placement.ranking_delta
                )
                placement.boost_applied = True
            placement.save()

            PremiumEvent.objects.create(
                placement=placement,
                event_type=PremiumEventType.EXTENDED,
                previous_expires_at=previous_expiry,
                new_expires_at=placement.expires_at,
                metadata={"months": months, "boost_added": boost_added},
            )

        logger.info(
            "Premium placement extended",
            extra={
                "priest_id": str(priest_id),
                "months": months,
                "expires_at": placement.expires_at.isoformat(),
                "boost_added": boost_added,
            },
        )
        return placement.expires_at

    def _notify(self, user_id, title: str, body: str, data: dict[str, Any]) -> None:
        try:
            sent = self.notifier.send(user_id, title, body, data)
        except Exception:
            logger.exception("Notifier raised", extra={"title": title})
            return
        if not sent:
            logger.warning("Notification not sent", extra={"title": title, "user_id": user_id})
