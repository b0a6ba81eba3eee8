"""
Concurrency control for escrow operations.

Two mechanisms work together:

1. **Row locks** (lock_escrow)
   - select_for_update on the escrow row inside the caller's transaction
   - Optional expected_version check for callers holding a snapshot
   - Use for: every state-changing escrow operation

2. **Distributed locks** (DistributedLock)
   - Redis-based mutual exclusion across processes/servers
   - TTL prevents deadlocks from crashed workers
   - Use for: batch jobs that must not run twice at once (auto-validation)

The optimistic version check on EscrowRecord.save() backs both: a writer
that skipped the row lock still cannot overwrite a newer version.

Usage:
    from escrow.locks import DistributedLock, lock_escrow

    with transaction.atomic():
        record = lock_escrow(escrow_id)
        ...

    with DistributedLock("escrow:auto-validation", ttl=300, blocking=False):
        reconciler.run()
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING

from django_redis import get_redis_connection

from escrow.exceptions import (
    EscrowNotFoundError,
    LockAcquisitionError,
    StaleRecordError,
)

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

    from escrow.models import EscrowRecord


# =============================================================================
# Row Locks
# =============================================================================


def lock_escrow(escrow_id: Any, expected_version: int | None = None) -> EscrowRecord:
    """
    Fetch an escrow record with a row lock.

    Must be called inside transaction.atomic(); the lock is held until the
    transaction ends. Concurrent callers on the same escrow are serialized.
    Only the escrow row is locked; the joined parties are read unlocked.

    Args:
        escrow_id: Primary key of the escrow record
        expected_version: If given, the version the caller last read

    Returns:
        The locked EscrowRecord

    Raises:
        EscrowNotFoundError: If no such record exists
        StaleRecordError: If expected_version no longer matches
    """
    from escrow.models import EscrowRecord

    record = (
        EscrowRecord.objects.select_for_update(of=("self",))
        .select_related("seller", "buyer")
        .filter(pk=escrow_id)
        .first()
    )
    if record is None:
        raise EscrowNotFoundError(
            f"Escrow {escrow_id} not found",
            details={"escrow_id": str(escrow_id)},
        )

    if expected_version is not None and record.version != expected_version:
        raise StaleRecordError(
            f"EscrowRecord {escrow_id} has been modified "
            f"(expected version {expected_version}, current {record.version})",
            details={
                "pk": str(escrow_id),
                "expected_version": expected_version,
                "current_version": record.version,
            },
        )

    return record


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Features:
        - TTL releases the lock if the holder crashes
        - Token-based ownership: only the holder can release or extend
        - Blocking and non-blocking acquisition modes
        - Context manager support

    Example:
        lock = DistributedLock("escrow:auto-validation", ttl=300, blocking=False)
        try:
            with lock:
                reconciler.run()
        except LockAcquisitionError:
            logger.info("Another worker is already running")

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Lock TTL in seconds
        blocking: If True, acquire() waits until the lock is free
        timeout: Maximum wait in seconds (blocking mode only)
    """

    # Atomic check-and-delete
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Atomic check-and-expire
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL = 0.05

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
            LockAcquisitionError: If the lock is held elsewhere (non-blocking)
                or could not be obtained within timeout (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis):
                    return True
                time.sleep(self.POLL_INTERVAL)

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
        Release the lock if we hold it. Safe to call more than once.

        Returns:
            True if the lock was released, False if we did not hold it
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """
        Reset the lock TTL if we hold it.

        Args:
            additional_ttl: New TTL in seconds (defaults to the original TTL)

        Returns:
            True if extended, False if we no longer hold the lock
        """
        if self._token is None:
            return False

        ttl = additional_ttl or self.ttl
        redis = self._get_redis()
        return bool(redis.eval(self.EXTEND_SCRIPT, 1, self.key, self._token, ttl))

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


__all__ = [
    "DistributedLock",
    "lock_escrow",
]
