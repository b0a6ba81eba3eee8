"""
Auto-validation reconciler for escrows awaiting seller confirmation.

When a seller neither confirms nor disputes within the validation window,
the escrow is released to the buyer automatically. The reconciler only
drives EscrowService.release(): guards, provider calls and persistence are
exactly those of a manual release, and each record is locked on its own.

Tasks:
- run_auto_validations: Periodic task (celery-beat, every 5 minutes)

Usage:
    from escrow.workers import AutoValidationReconciler

    result = AutoValidationReconciler().run()
    result.released_count, result.errors

    # Or through Celery
    run_auto_validations.delay()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from celery import shared_task
from django.conf import settings

from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock
from escrow.services import EscrowService

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Redis lock guarding the batch against overlapping scheduler ticks
AUTO_VALIDATION_LOCK_KEY = "escrow:auto-validation"

# Lock TTL (seconds); longer than a batch of provider calls
AUTO_VALIDATION_LOCK_TTL = 300


# =============================================================================
# Reconciler
# =============================================================================


@dataclass
class AutoValidationResult:
    """
    Outcome of one reconciler run.

    Attributes:
        released_count: Records released in this run
        errors: One exception per record that could not be released
        failed_ids: Escrow IDs matching errors, in the same order
        lock_lost: The run stopped because its lock expired
    """

    released_count: int = 0
    errors: list[Exception] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    lock_lost: bool = False

    @property
    def error_count(self) -> int:
        return len(self.errors)


class AutoValidationReconciler:
    """
    Release every escrow whose validation deadline has passed.

    A failing release is logged and counted; the batch moves on to the
    next record. With a lock, its TTL is renewed before each record and the
    run stops as soon as the lock can no longer be renewed.

    Args:
        service: Escrow service to release through
        batch_size: Max records per run (default ESCROW_AUTO_VALIDATION_BATCH_SIZE)
        lock: Held lock guarding the run, if any
    """

    def __init__(
        self,
        service: EscrowService | None = None,
        batch_size: int | None = None,
        lock: DistributedLock | None = None,
    ) -> None:
        self.service = service or EscrowService()
        self.batch_size = batch_size or settings.ESCROW_AUTO_VALIDATION_BATCH_SIZE
        self.lock = lock

    def run(self) -> AutoValidationResult:
        result = AutoValidationResult()
        due = self.service.expired_validations(limit=self.batch_size)

        logger.info(
            "Starting auto-validation run",
            extra={"due_count": len(due), "batch_size": self.batch_size},
        )

        for record in due:
            if self.lock is not None and not self.lock.extend():
                result.lock_lost = True
                logger.warning(
                    "Auto-validation lock expired, stopping run",
                    extra={
                        "lock_key": self.lock.key,
                        "released_count": result.released_count,
                    },
                )
                break

            try:
                self.service.release(record.pk)
            except Exception as e:
                result.errors.append(e)
                result.failed_ids.append(str(record.pk))
                logger.error(
                    f"Auto-validation release failed: {e}",
                    extra={
                        "escrow_id": str(record.pk),
                        "error_type": type(e).__name__,
                        "error_code": getattr(e, "error_code", None),
                    },
                    exc_info=not hasattr(e, "error_code"),
                )
                continue

            result.released_count += 1
            logger.info(
                "Escrow auto-validated",
                extra={
                    "escrow_id": str(record.pk),
                    "validation_deadline": record.validation_deadline.isoformat(),
                },
            )

        logger.info(
            f"Auto-validation run complete: released {result.released_count}, "
            f"failed {result.error_count}",
            extra={
                "released_count": result.released_count,
                "error_count": result.error_count,
            },
        )
        return result


# =============================================================================
# Periodic Task
# =============================================================================


@shared_task(bind=True)
def run_auto_validations(self) -> dict:
    """
    Celery entry point for the reconciler.

    Returns:
        Dict with:
        - status: "completed" or "skipped" (another run holds the lock)
        - released_count: Escrows released
        - error_count: Escrows that failed to release
        - failed_ids: IDs of the failed escrows
        - lock_lost: True if the run stopped because its lock expired
    """
    lock = DistributedLock(
        AUTO_VALIDATION_LOCK_KEY,
        ttl=AUTO_VALIDATION_LOCK_TTL,
        blocking=False,
    )
    try:
        lock.acquire()
    except LockAcquisitionError:
        logger.warning(
            "Auto-validation already running, skipping this tick",
            extra={"lock_key": lock.key},
        )
        return {
            "status": "skipped",
            "released_count": 0,
            "error_count": 0,
            "failed_ids": [],
            "lock_lost": False,
        }

    try:
        result = AutoValidationReconciler(lock=lock).run()
    finally:
        if lock.is_held:
            lock.release()

    return {
        "status": "completed",
        "released_count": result.released_count,
        "error_count": result.error_count,
        "failed_ids": result.failed_ids,
        "lock_lost": result.lock_lost,
    }
