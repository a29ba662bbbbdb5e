"""
Concurrency control utilities for billing operations.

1. **Distributed Locks** (DistributedLock)
   - Redis-based mutual exclusion across processes and Celery workers
   - TTL prevents deadlocks from crashed processes
   - Used to keep a single payment retry tick running at a time

2. **Optimistic Locking** (check_version)
   - Version-based conflict detection on VersionedModelMixin models
   - Used by the period-end sweep, where a concurrent webhook wins

The webhook path takes no distributed lock: events for one subscription
serialize on the row lock (select_for_update) inside their transaction.

Usage:
    from billing.locks import DistributedLock, check_version

    with DistributedLock("billing:retry-tick", ttl=600, blocking=False):
        scheduler.tick()

    with transaction.atomic():
        subscription = check_version(Subscription, pk, expected_version=3)
        subscription.cancel()
        subscription.save()
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from billing.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Ownership is tracked with a random token so that a process can never
    release a lock another process acquired after its own TTL expired.

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Lock TTL in seconds (auto-releases after this time)
        blocking: If True, acquire() waits until lock is available
        timeout: Maximum wait time in seconds (only if blocking=True)

    Example:
        lock = DistributedLock("billing:retry-tick", ttl=600, blocking=False)
        try:
            with lock:
                run_tick()
        except LockAcquisitionError:
            return {"status": "skipped"}
    """

    # Atomic check-and-delete
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
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

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: Lock is held elsewhere (non-blocking) or
                could not be taken within the timeout (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.time() + self.timeout
            while time.time() < end_time:
                if self._try_acquire(redis):
                    return True
                time.sleep(0.05)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Safe to call multiple times.
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
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
    Lock a record for update if it still has the expected version.

    Args:
        model_class: Model with a 'version' field (VersionedModelMixin)
        pk: Primary key of the record
        expected_version: Version the caller read earlier

    Returns:
        The locked model instance

    Raises:
        StaleRecordError: Version moved on (concurrent modification)
        NotFoundError: Record doesn't exist

    Note:
        Call inside a transaction; the row lock is held until it ends.
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )

        if instance is None:
            model_name = model_class.__name__
            current = model_class.objects.filter(pk=pk).values("version").first()
            if current is None:
                raise NotFoundError(
                    f"{model_name} {pk} not found",
                    error_code=f"{model_name.upper()}_NOT_FOUND",
                    details={"pk": str(pk)},
                )

            raise StaleRecordError(
                f"{model_name} {pk} has been modified "
                f"(expected version {expected_version}, current {current['version']})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": current["version"],
                },
            )

        return instance


__all__ = [
    "DistributedLock",
    "check_version",
]
