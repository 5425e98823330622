"""
Concurrency control for escrow operations.

Two mechanisms are used side by side:

1. **DistributedLock** - Redis mutual exclusion across web and Celery
   processes. Guards multi-step work that calls Stripe (escrow release for
   one booking) and singleton jobs (the premium placement sweep).

2. **check_version** - optimistic concurrency on a single row. Every
   versioned model bumps ``version`` on save; writers lock the row and
   compare the version they read against the stored one.

Usage:

    from payments.locks import DistributedLock, check_version

    with DistributedLock(f"escrow:release:{booking_id}", ttl=60):
        orchestrator.release_escrow_funds(booking_id)

    with transaction.atomic():
        record = check_version(PaymentRecord, record.pk, expected_version=3)
        ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from payments.exceptions import ConcurrentModificationError, LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with a TTL and token ownership.

    ``SET key token NX EX ttl`` acquires; release and extend run as Lua
    scripts that only act when the stored token is still ours, so a lock
    that expired and was re-acquired elsewhere is never released by us.

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds before Redis drops the lock on its own
        blocking: Wait for the lock instead of failing immediately
        timeout: Maximum wait in seconds when blocking

    Example:
        lock = DistributedLock("premium:scheduler", ttl=600, blocking=False)
        try:
            with lock:
                sweep()
        except LockAcquisitionError:
            pass  # another worker is already sweeping
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: Lock held elsewhere (non-blocking) or not
                obtained within ``timeout`` (blocking)
        """
        token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.time() + self.timeout
            while time.time() < deadline:
                if redis.set(self.key, token, nx=True, ex=self.ttl):
                    self._token = token
                    return True
                time.sleep(0.05)

            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not redis.set(self.key, token, nx=True, ex=self.ttl):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        self._token = token
        return True

    def release(self) -> bool:
        """Release the lock if we still own it. Safe to call twice."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the TTL (replaces the remaining time) if we own the lock."""
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Lock a row and verify it still carries ``expected_version``.

    Must run inside ``transaction.atomic()``; the row lock is held until
    the surrounding transaction ends.

    Raises:
        ConcurrentModificationError: Row changed since the caller read it
        NotFoundError: Row does not exist
    """
    model_name = model_class.__name__

    with transaction.atomic():
        instance = model_class.objects.select_for_update().filter(pk=pk).first()

        if instance is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                error_code=f"{model_name.upper()}_NOT_FOUND",
                details={"pk": str(pk)},
            )

        if instance.version != expected_version:
            raise ConcurrentModificationError(
                f"{model_name} {pk} has been modified "
                f"(expected version {expected_version}, current {instance.version})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": instance.version,
                },
            )

        return instance


__all__ = [
    "DistributedLock",
    "check_version",
]
