"""
Tests for PremiumPlacementScheduler.

Tests cover:
- Expiry sweep reversing the ranking boost exactly once
- Overlapping sweeps (scheduler lock)
- One reminder per placement period
- Extension from the current expiry or from now
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone

from core.exceptions import NotFoundError, ValidationError
from marketplace.models import PriestProfile
from marketplace.tests.factories import PriestProfileFactory
from payments.locks import DistributedLock
from payments.models import PremiumEvent, PremiumPlacement
from payments.services import PremiumPlacementScheduler
from payments.state_machines import PremiumEventType, PremiumPlacementStatus
from payments.tests.factories import PremiumPlacementFactory
from payments.tests.fakes import RecordingSender

pytestmark = pytest.mark.django_db


@pytest.fixture
def scheduler(sender):
    return PremiumPlacementScheduler(notifier=sender)


@pytest.fixture
def boosted_priest():
    """Priest at base ranking 50 plus an applied boost of 100."""
    return PriestProfileFactory(search_ranking=150)


def ranking(priest):
    return PriestProfile.objects.values_list("search_ranking", flat=True).get(pk=priest.pk)


# =============================================================================
# Expiry
# =============================================================================


class TestExpirePlacements:
    def test_expired_exactly_once_across_two_runs(self, scheduler, sender, boosted_priest):
        """A placement that ended yesterday is expired and its boost reversed once."""
        placement = PremiumPlacementFactory(
            priest=boosted_priest,
            expires_at=timezone.now() - timedelta(days=1),
            boost_applied=True,
        )

        first = scheduler.run()
        second = scheduler.run()

        assert first == {"status": "completed", "expired": 1, "reminded": 0}
        assert second == {"status": "completed", "expired": 0, "reminded": 0}
        placement.refresh_from_db()
        assert placement.status == PremiumPlacementStatus.EXPIRED
        assert placement.boost_applied is False
        assert ranking(boosted_priest) == 50
        assert PremiumEvent.objects.filter(
            placement=placement, event_type=PremiumEventType.EXPIRED
        ).count() == 1
        assert sender.titles() == ["Premium Placement Expired"]
        assert sender.sent[0]["target"] == boosted_priest.user_id

    def test_boost_not_applied_leaves_ranking(self, scheduler):
        priest = PriestProfileFactory(search_ranking=50)
        placement = PremiumPlacementFactory(
            priest=priest, expires_at=timezone.now() - timedelta(hours=1)
        )

        scheduler.expire_placements(timezone.now())

        placement.refresh_from_db()
        assert placement.status == PremiumPlacementStatus.EXPIRED
        assert ranking(priest) == 50
        event = PremiumEvent.objects.get(placement=placement)
        assert event.metadata == {"ranking_delta_reversed": 0}

    def test_active_placements_untouched(self, scheduler):
        placement = PremiumPlacementFactory()

        assert scheduler.expire_placements(timezone.now()) == 0

        placement.refresh_from_db()
        assert placement.status == PremiumPlacementStatus.ACTIVE

    def test_expiry_boundary_is_inclusive(self, scheduler):
        now = timezone.now()
        PremiumPlacementFactory(expires_at=now)

        assert scheduler.expire_placements(now) == 1

    def test_notification_failure_does_not_stop_sweep(self):
        scheduler = PremiumPlacementScheduler(notifier=RecordingSender(error=RuntimeError("down")))
        PremiumPlacementFactory.create_batch(2, expires_at=timezone.now() - timedelta(days=1))

        assert scheduler.expire_placements(timezone.now()) == 2


class TestSchedulerLock:
    def test_skips_while_another_sweep_runs(self, scheduler):
        placement = PremiumPlacementFactory(expires_at=timezone.now() - timedelta(days=1))

        with DistributedLock(PremiumPlacementScheduler.LOCK_KEY, blocking=False):
            result = scheduler.run()

        assert result == {"status": "skipped"}
        placement.refresh_from_db()
        assert placement.status == PremiumPlacementStatus.ACTIVE

    def test_lock_released_after_run(self, scheduler):
        scheduler.run()

        assert scheduler.run()["status"] == "completed"


# =============================================================================
# Reminders
# =============================================================================


class TestExpiryReminders:
    def test_reminds_once_per_period(self, scheduler, sender):
        now = timezone.now()
        placement = PremiumPlacementFactory(expires_at=now + timedelta(days=2, hours=1))

        assert scheduler.send_expiry_reminders(now) == 1
        assert scheduler.send_expiry_reminders(now) == 0

        assert sender.titles() == ["Premium Expiring Soon"]
        assert sender.sent[0]["data"]["days_left"] == 3
        placement.refresh_from_db()
        assert placement.reminder_sent_at == now

    def test_outside_window_not_reminded(self, scheduler, settings):
        settings.PREMIUM_REMINDER_DAYS = 3
        PremiumPlacementFactory(expires_at=timezone.now() + timedelta(days=5))

        assert scheduler.send_expiry_reminders(timezone.now()) == 0

    def test_singular_day(self, scheduler, sender):
        now = timezone.now()
        PremiumPlacementFactory(expires_at=now + timedelta(hours=20))

        scheduler.send_expiry_reminders(now)

        assert sender.sent[0]["body"] == "Your premium placement expires in 1 day."

    def test_extension_resets_reminder(self, scheduler):
        now = timezone.now()
        placement = PremiumPlacementFactory(expires_at=now + timedelta(days=1))
        scheduler.send_expiry_reminders(now)

        scheduler.extend_placement(placement.priest_id, months=1, now=now)

        placement.refresh_from_db()
        assert placement.reminder_sent_at is None


# =============================================================================
# Extension
# =============================================================================


class TestExtendPlacement:
    def test_new_placement_starts_now_and_boosts(self, scheduler, settings):
        settings.PREMIUM_RANKING_DELTA = 100
        priest = PriestProfileFactory(search_ranking=50)
        now = timezone.now()

        expires_at = scheduler.extend_placement(priest.id, months=1, now=now)

        assert expires_at == now + timedelta(days=30)
        assert ranking(priest) == 150
        placement = PremiumPlacement.objects.get(priest=priest)
        assert placement.boost_applied is True
        assert placement.events.get().event_type == PremiumEventType.EXTENDED

    def test_active_extends_from_current_expiry(self, scheduler, boosted_priest):
        now = timezone.now()
        current = now + timedelta(days=10)
        PremiumPlacementFactory(priest=boosted_priest, expires_at=current, boost_applied=True)

        expires_at = scheduler.extend_placement(boosted_priest.id, months=2, now=now)

        assert expires_at == current + timedelta(days=60)
        assert ranking(boosted_priest) == 150

    def test_expired_restarts_from_now(self, scheduler):
        now = timezone.now()
        priest = PriestProfileFactory(search_ranking=50)
        placement = PremiumPlacementFactory(
            priest=priest,
            status=PremiumPlacementStatus.EXPIRED,
            expires_at=now - timedelta(days=20),
        )

        expires_at = scheduler.extend_placement(priest.id, months=1, now=now)

        assert expires_at == now + timedelta(days=30)
        placement.refresh_from_db()
        assert placement.status == PremiumPlacementStatus.ACTIVE
        assert placement.expired_at is None
        assert ranking(priest) == 150

    def test_active_but_lapsed_extends_from_now(self, scheduler):
        """An active placement the sweep has not reached yet never extends into the past."""
        now = timezone.now()
        placement = PremiumPlacementFactory(expires_at=now - timedelta(hours=3))

        expires_at = scheduler.extend_placement(placement.priest_id, months=1, now=now)

        assert expires_at == now + timedelta(days=30)

    @pytest.mark.parametrize("months", [0, -1, 1.5, True, "2"])
    def test_invalid_months(self, scheduler, months):
        priest = PriestProfileFactory()

        with pytest.raises(ValidationError) as exc_info:
            scheduler.extend_placement(priest.id, months=months)

        assert exc_info.value.error_code == "INVALID_EXTENSION"

    def test_unknown_priest(self, scheduler):
        with pytest.raises(NotFoundError) as exc_info:
            scheduler.extend_placement(uuid.uuid4(), months=1)

        assert exc_info.value.error_code == "PRIEST_NOT_FOUND"

    def test_expire_after_extension_reverses_boost(self, scheduler):
        priest = PriestProfileFactory(search_ranking=50)
        now = timezone.now()
        expires_at = scheduler.extend_placement(priest.id, months=1, now=now)

        scheduler.run(now=expires_at + timedelta(minutes=1))

        assert ranking(priest) == 50
