"""
Clock abstraction for deadline logic.

The escrow service and reconciler read "now" only through a Clock, so
deadline expiry can be tested deterministically without sleeping.

Usage:
    from escrow.clock import SystemClock

    service = EscrowService(clock=SystemClock())

    # In tests
    service = EscrowService(clock=FixedClock(at=some_datetime))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from django.utils import timezone

if TYPE_CHECKING:
    from datetime import datetime


@runtime_checkable
class Clock(Protocol):
    """Source of the current, timezone-aware time."""

    def now(self) -> datetime:
        """Return the current time (timezone-aware)."""
        ...


class SystemClock:
    """Wall clock backed by django.utils.timezone."""

    def now(self) -> datetime:
        return timezone.now()
