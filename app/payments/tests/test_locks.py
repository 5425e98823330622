"""
Tests for concurrency control utilities.

DistributedLock is tested against a mocked client for the exact Redis calls
and against the in-memory FakeRedis (autouse ``fake_redis`` fixture) for
mutual exclusion. check_version is tested against the database.
"""

from unittest.mock import MagicMock, patch

import pytest

from core.exceptions import NotFoundError
from payments.exceptions import ConcurrentModificationError, LockAcquisitionError
from payments.locks import DistributedLock, check_version
from payments.models import PaymentRecord
from payments.tests.factories import PaymentRecordFactory


@pytest.fixture
def mock_redis():
    """Mock Redis connection for call-level assertions."""
    with patch("payments.locks.get_redis_connection") as mock_get_conn:
        redis_instance = MagicMock()
        mock_get_conn.return_value = redis_instance
        yield redis_instance


class TestDistributedLock:
    """Tests for DistributedLock against a mocked client."""

    def test_acquire_success(self, mock_redis):
        """Should SET NX with the TTL on the prefixed key."""
        mock_redis.set.return_value = True

        lock = DistributedLock("escrow:release:abc", ttl=60, blocking=False)
        result = lock.acquire()

        assert result is True
        assert lock.is_held is True
        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "lock:escrow:release:abc"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 60

    def test_acquire_generates_unique_token(self, mock_redis):
        mock_redis.set.return_value = True

        lock1 = DistributedLock("test:key1", blocking=False)
        lock2 = DistributedLock("test:key2", blocking=False)
        lock1.acquire()
        lock2.acquire()

        assert lock1._token != lock2._token

    def test_acquire_non_blocking_raises_when_held(self, mock_redis):
        """Non-blocking mode fails immediately and does not claim ownership."""
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details["key"] == "lock:test:key"
        assert lock.is_held is False

    def test_acquire_blocking_waits_and_acquires(self, mock_redis):
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("test:key", blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_acquire_blocking_timeout_raises_error(self, mock_redis):
        mock_redis.set.return_value = False

        lock = DistributedLock("test:key", blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "within 0.1s" in str(exc_info.value)
        assert exc_info.value.details["timeout"] == 0.1

    def test_release_without_acquire_returns_false(self, mock_redis):
        lock = DistributedLock("test:key", blocking=False)

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_release_only_if_owned(self, mock_redis):
        """The compare-and-delete script returns 0 when the token changed."""
        mock_redis.set.return_value = True
        mock_redis.eval.return_value = 0

        lock = DistributedLock("test:key", blocking=False)
        lock.acquire()

        assert lock.release() is False
        assert lock.is_held is False

    def test_extend_with_custom_ttl(self, mock_redis):
        mock_redis.set.return_value = True
        mock_redis.eval.return_value = 1

        lock = DistributedLock("test:key", ttl=30, blocking=False)
        lock.acquire()

        assert lock.extend(ttl=90) is True
        # eval(EXTEND_SCRIPT, 1, key, token, ttl)
        assert mock_redis.eval.call_args[0][4] == 90

    def test_extend_returns_false_without_lock(self, mock_redis):
        lock = DistributedLock("test:key", blocking=False)

        assert lock.extend() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_exception(self, mock_redis):
        mock_redis.set.return_value = True
        mock_redis.eval.return_value = 1

        with pytest.raises(ValueError, match="boom"):
            with DistributedLock("test:key"):
                raise ValueError("boom")

        mock_redis.eval.assert_called_once()


class TestDistributedLockExclusion:
    """Mutual exclusion against the in-memory Redis."""

    def test_same_key_is_exclusive(self):
        first = DistributedLock("escrow:release:1", ttl=5, blocking=False)
        second = DistributedLock("escrow:release:1", ttl=5, blocking=False)

        with first:
            with pytest.raises(LockAcquisitionError):
                second.acquire()

        assert second.acquire() is True
        second.release()

    def test_different_keys_not_exclusive(self):
        with DistributedLock("escrow:release:1", blocking=False) as first:
            with DistributedLock("escrow:release:2", blocking=False) as second:
                assert first.is_held
                assert second.is_held

    def test_stale_owner_cannot_release_new_holder(self, fake_redis):
        """After the TTL lapsed and another worker took the lock, our release is a no-op."""
        stale = DistributedLock("premium_placement_scheduler", blocking=False)
        stale.acquire()
        fake_redis.delete("lock:premium_placement_scheduler")
        current = DistributedLock("premium_placement_scheduler", blocking=False)
        current.acquire()

        assert stale.release() is False
        assert fake_redis.get("lock:premium_placement_scheduler") is not None

        current.release()


@pytest.mark.django_db
class TestCheckVersion:
    def test_returns_locked_row(self):
        record = PaymentRecordFactory()

        locked = check_version(PaymentRecord, record.pk, expected_version=record.version)

        assert locked.pk == record.pk

    def test_stale_version(self):
        record = PaymentRecordFactory()

        with pytest.raises(ConcurrentModificationError) as exc_info:
            check_version(PaymentRecord, record.pk, expected_version=record.version + 1)

        assert exc_info.value.details["current_version"] == record.version

    def test_missing_row(self):
        record = PaymentRecordFactory()
        PaymentRecord.objects.filter(pk=record.pk).delete()

        with pytest.raises(NotFoundError) as exc_info:
            check_version(PaymentRecord, record.pk, expected_version=1)

        assert exc_info.value.error_code == "PAYMENTRECORD_NOT_FOUND"
