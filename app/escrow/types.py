"""
Collaborator types consumed by the escrow service.

The escrow engine never owns or mutates the job being paid for. It reads
the job's reference, price and scheduled time through JobLike and reports
back a job payment status fact (EscrowRecord.job_payment_status) for the
caller to propagate.

Usage:
    from escrow.types import JobSnapshot

    job = JobSnapshot(reference="ride:981", price=Decimal("100.00"))
    record = service.create_escrow(job, seller)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable


@runtime_checkable
class JobLike(Protocol):
    """
    What the escrow engine needs to know about a job.

    Attributes:
        reference: Stable identifier of the job in the marketplace
        price: Job price (the escrow base amount)
        scheduled_at: When the service takes place, or None if unknown
    """

    reference: str
    price: Decimal
    scheduled_at: datetime | None


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable JobLike for callers without a job model of their own."""

    reference: str
    price: Decimal
    scheduled_at: datetime | None = None
