"""
EscrowRecord model: the persisted escrow state machine.

One EscrowRecord exists per job (failed holds excepted, so a job can be
re-published after a declined card). Status is a django-fsm field with
protected=True: the transition methods below are its only mutators, and
each sets exactly the timestamps and amounts of its step. The escrow
service decides whether a transition is allowed for a given caller; the
model only knows which statuses a transition may start from.

Usage:
    from escrow.models import EscrowRecord

    record = EscrowRecord.objects.create(
        job_ref="job:123",
        seller=seller,
        base_amount=Decimal("100.00"),
        commission_amount=Decimal("15.00"),
        total_amount=Decimal("115.00"),
    )
    record.hold_succeeded(hold_ref="pi_123", held_at=now)
    record.save()

    EscrowRecord.objects.expired_validations(now)
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from django.db import models, transaction
from django.db.models import Count, Q, Sum

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.calculator import ZERO, validation_deadline_for
from escrow.exceptions import InconsistentStateError, StaleRecordError
from escrow.state_machines import (
    TERMINAL_STATUSES,
    CancelReason,
    EscrowStatus,
    JobPaymentStatus,
)

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any

    from escrow.models.party import Party


# Statuses in which a buyer must be assigned
BUYER_REQUIRED_STATUSES = frozenset(
    {
        EscrowStatus.AWAITING_VALIDATION,
        EscrowStatus.COMPLETED,
        EscrowStatus.DISPUTED,
        EscrowStatus.PARTIAL_REFUND,
    }
)

# Statuses in which no buyer can have committed yet
BUYER_FORBIDDEN_STATUSES = frozenset({EscrowStatus.PENDING, EscrowStatus.FAILED})

JOB_PAYMENT_STATUS = {
    EscrowStatus.PENDING: JobPaymentStatus.PENDING,
    EscrowStatus.HELD: JobPaymentStatus.SECURED,
    EscrowStatus.AWAITING_VALIDATION: JobPaymentStatus.AWAITING_VALIDATION,
    EscrowStatus.COMPLETED: JobPaymentStatus.PAID,
    EscrowStatus.DISPUTED: JobPaymentStatus.DISPUTED,
    EscrowStatus.REFUNDED: JobPaymentStatus.REFUNDED,
    EscrowStatus.PARTIAL_REFUND: JobPaymentStatus.PARTIAL_REFUND,
    EscrowStatus.FAILED: JobPaymentStatus.FAILED,
}


# =============================================================================
# QuerySet
# =============================================================================


class EscrowRecordQuerySet(models.QuerySet):
    """Read-side queries over escrow records."""

    def for_seller(self, seller: Party) -> EscrowRecordQuerySet:
        return self.filter(seller=seller).order_by("-created_at")

    def for_buyer(self, buyer: Party) -> EscrowRecordQuerySet:
        return self.filter(buyer=buyer).order_by("-created_at")

    def for_job(self, job_ref: str) -> EscrowRecordQuerySet:
        """Records of a job, failed holds excluded."""
        return self.filter(job_ref=job_ref).exclude(status=EscrowStatus.FAILED)

    def awaiting_validation_for_seller(self, seller: Party) -> EscrowRecordQuerySet:
        """Jobs the seller still has to confirm, soonest deadline first."""
        return self.filter(
            seller=seller,
            status=EscrowStatus.AWAITING_VALIDATION,
        ).order_by("validation_deadline")

    def expired_validations(self, now: datetime) -> EscrowRecordQuerySet:
        """
        Records whose validation window lapsed before `now`.

        This is the reconciler's work list, oldest deadline first.
        """
        return self.filter(
            status=EscrowStatus.AWAITING_VALIDATION,
            validation_deadline__lt=now,
            buyer__isnull=False,
        ).order_by("validation_deadline")

    def total_commissions(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Decimal:
        """
        Commission earned on completed escrows, by payment date.

        Args:
            start: Inclusive lower bound on paid_at
            end: Inclusive upper bound on paid_at
        """
        qs = self.filter(status=EscrowStatus.COMPLETED)
        if start is not None:
            qs = qs.filter(paid_at__gte=start)
        if end is not None:
            qs = qs.filter(paid_at__lte=end)
        total = qs.aggregate(total=Sum("commission_amount"))["total"]
        return total if total is not None else ZERO

    def stats(self) -> dict[str, Any]:
        """
        Aggregate counters for dashboards.

        Returns:
            Dict with total count, a count per status, total volume held
            (escrows whose hold succeeded, whatever their status now) and
            commission earned on completed escrows.
        """
        per_status = {
            status.value: Count("id", filter=Q(status=status.value))
            for status in EscrowStatus
        }
        row = self.aggregate(
            total=Count("id"),
            total_volume=Sum("total_amount", filter=Q(held_at__isnull=False)),
            total_commissions=Sum(
                "commission_amount",
                filter=Q(status=EscrowStatus.COMPLETED),
            ),
            **per_status,
        )
        return {
            "total": row["total"],
            "by_status": {status.value: row[status.value] for status in EscrowStatus},
            "total_volume": row["total_volume"] or ZERO,
            "total_commissions": row["total_commissions"] or ZERO,
        }


# =============================================================================
# Model
# =============================================================================


class EscrowRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Escrow between a seller and a buyer for one job.

    State Flow:
        PENDING → HELD → AWAITING_VALIDATION → COMPLETED
        PENDING → FAILED
        HELD → REFUNDED | PARTIAL_REFUND
        AWAITING_VALIDATION → DISPUTED → REFUNDED | COMPLETED | PARTIAL_REFUND

    Fields:
        job_ref: Reference of the job this escrow pays for
        seller / buyer: Parties (buyer is null until accepted)
        base_amount / commission_amount / total_amount: Held amounts
        status: Current FSM state (protected)
        hold_ref / transfer_ref / refund_ref: Provider object IDs
        held_at ... refunded_at: Timestamps, each assigned once
        validation_deadline: marked_completed_at + validation window
        refunded_amount / compensation_amount: Settlement amounts
        cancel_reason: Why the escrow was refunded
        notes: Append-only audit text
        version: Optimistic locking version, checked and bumped on save

    Note:
        Never assign status directly; call a transition and save().
        Do not call refresh_from_db() on status: the field is protected.
        Fetch a fresh instance instead.
    """

    # ==========================================================================
    # Job & Parties
    # ==========================================================================

    job_ref = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Reference of the job being paid for",
    )

    service_scheduled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the job is scheduled to take place (copied from the job)",
    )

    seller = models.ForeignKey(
        "escrow.Party",
        on_delete=models.PROTECT,
        related_name="escrows_as_seller",
        help_text="Party who posted the job and whose funds are held",
    )

    buyer = models.ForeignKey(
        "escrow.Party",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="escrows_as_buyer",
        help_text="Party who accepted the job (null until accepted)",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    base_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Job price paid to the buyer on release",
    )

    commission_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Platform commission",
    )

    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Amount held from the seller (base + commission)",
    )

    currency = models.CharField(
        max_length=3,
        default="eur",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=EscrowStatus.PENDING,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,  # Prevent direct assignment outside transitions
        help_text="Current escrow status (managed by FSM)",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # Provider References
    # ==========================================================================

    hold_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Provider reference of the hold (pi_xxx)",
    )

    transfer_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Provider reference of the transfer to the buyer (tr_xxx)",
    )

    refund_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Provider reference of the refund to the seller (re_xxx)",
    )

    # ==========================================================================
    # Timeline
    # ==========================================================================

    held_at = models.DateTimeField(null=True, blank=True)

    marked_completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the buyer marked the job complete",
    )

    validation_deadline = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Auto-release deadline (marked_completed_at + window)",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the seller confirmed completion",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the base amount was transferred to the buyer",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the (full or partial) refund was issued",
    )

    # ==========================================================================
    # Settlement
    # ==========================================================================

    refunded_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount refunded to the seller",
    )

    compensation_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount transferred to the buyer outside a normal release",
    )

    cancel_reason = models.CharField(
        max_length=32,
        choices=CancelReason.choices,
        null=True,
        blank=True,
    )

    notes = models.TextField(
        blank=True,
        default="",
        help_text="Append-only audit trail",
    )

    in_flight_action = models.CharField(
        max_length=32,
        null=True,
        blank=True,
        help_text=(
            "Action whose earlier provider legs succeeded while a later leg "
            "failed; only that action may run until it completes"
        ),
    )

    metadata = models.JSONField(default=dict, blank=True)

    objects = EscrowRecordQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Record"
        verbose_name_plural = "Escrow Records"
        indexes = [
            models.Index(fields=["seller", "status"], name="escrow_escr_seller__b1f0a2_idx"),
            models.Index(fields=["buyer", "status"], name="escrow_escr_buyer_i_4c2d9e_idx"),
            models.Index(
                fields=["status", "validation_deadline"],
                name="escrow_escr_status_7e3a51_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["job_ref"],
                condition=~Q(status=EscrowStatus.FAILED),
                name="escrow_one_active_per_job",
            ),
            models.CheckConstraint(
                check=Q(base_amount__gt=0),
                name="escrow_base_amount_positive",
            ),
            models.CheckConstraint(
                check=Q(commission_amount__gte=0),
                name="escrow_commission_non_negative",
            ),
            models.CheckConstraint(
                check=Q(total_amount=models.F("base_amount") + models.F("commission_amount")),
                name="escrow_total_is_base_plus_commission",
            ),
            models.CheckConstraint(
                check=Q(paid_at__isnull=True) | Q(refunded_at__isnull=True),
                name="escrow_not_both_paid_and_refunded",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"EscrowRecord({self.id}, {self.status}, "
            f"{self.total_amount} {self.currency.upper()})"
        )

    def save(self, *args, **kwargs):
        """
        Save with an optimistic version check.

        On update, the stored version is compared-and-bumped in a single
        UPDATE before the row is written. If another writer saved first,
        no row matches and StaleRecordError is raised; nothing is written.

        Raises:
            StaleRecordError: If the row changed since this instance was read
        """
        if self._state.adding or kwargs.get("force_insert", False):
            super().save(*args, **kwargs)
            return

        expected = self.version
        manager = type(self)._base_manager
        with transaction.atomic(using=kwargs.get("using")):
            claimed = manager.filter(pk=self.pk, version=expected).update(
                version=expected + 1
            )
            if not claimed:
                current = (
                    manager.filter(pk=self.pk)
                    .values_list("version", flat=True)
                    .first()
                )
                raise StaleRecordError(
                    f"EscrowRecord {self.pk} has been modified "
                    f"(expected version {expected}, current {current})",
                    details={
                        "pk": str(self.pk),
                        "expected_version": expected,
                        "current_version": current,
                    },
                )
            self.version = expected + 1
            try:
                super().save(*args, **kwargs)
            except Exception:
                self.version = expected
                raise

    # ==========================================================================
    # Derived Facts
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def job_payment_status(self) -> str:
        """Payment status the caller should propagate to the job."""
        return JOB_PAYMENT_STATUS[EscrowStatus(self.status)]

    def validation_expired(self, now: datetime) -> bool:
        return self.validation_deadline is not None and now > self.validation_deadline

    def can_release(self, now: datetime) -> bool:
        """Whether the release guard passes at `now`."""
        return (
            self.status == EscrowStatus.AWAITING_VALIDATION
            and self.buyer_id is not None
            and (self.confirmed_at is not None or self.validation_expired(now))
        )

    def append_note(self, text: str, at: datetime) -> None:
        """Append a timestamped line to the audit notes."""
        line = f"[{at:%Y-%m-%d %H:%M:%S}] {text}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def check_invariants(self) -> None:
        """
        Verify the record's cross-field invariants.

        Raises:
            InconsistentStateError: With the list of violations in details
        """
        violations: list[str] = []

        if self.total_amount != self.base_amount + self.commission_amount:
            violations.append("total_amount != base_amount + commission_amount")

        for name in ("base_amount", "commission_amount", "total_amount",
                     "refunded_amount", "compensation_amount"):
            value = getattr(self, name)
            if value is not None and value < 0:
                violations.append(f"{name} is negative")

        if (
            self.refunded_amount is not None
            and self.compensation_amount is not None
            and self.refunded_amount + self.compensation_amount > self.total_amount
        ):
            violations.append("refunded_amount + compensation_amount > total_amount")

        if self.status in BUYER_REQUIRED_STATUSES and self.buyer_id is None:
            violations.append(f"status {self.status} requires a buyer")
        if self.status in BUYER_FORBIDDEN_STATUSES and self.buyer_id is not None:
            violations.append(f"status {self.status} cannot have a buyer")

        if (self.marked_completed_at is None) != (self.validation_deadline is None):
            violations.append("validation_deadline set without marked_completed_at")
        elif (
            self.marked_completed_at is not None
            and self.validation_deadline <= self.marked_completed_at
        ):
            violations.append("validation_deadline not after marked_completed_at")

        if self.paid_at is not None and self.refunded_at is not None:
            violations.append("record is both paid and refunded")

        if self.status == EscrowStatus.COMPLETED and (
            self.paid_at is None or self.transfer_ref is None
        ):
            violations.append("completed record without transfer")
        if self.status in (EscrowStatus.REFUNDED, EscrowStatus.PARTIAL_REFUND) and (
            self.refunded_at is None
        ):
            violations.append(f"{self.status} record without refunded_at")

        if violations:
            raise InconsistentStateError(
                f"EscrowRecord {self.pk} violates its invariants",
                details={"escrow_id": str(self.pk), "violations": violations},
            )

    # ==========================================================================
    # Transition Conditions
    # ==========================================================================

    def _has_buyer(self) -> bool:
        return self.buyer_id is not None

    def _has_no_buyer(self) -> bool:
        return self.buyer_id is None

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.HELD,
    )
    def hold_succeeded(self, hold_ref: str, held_at: datetime) -> None:
        """
        Record the seller's funds as held.

        Transition: PENDING -> HELD
        """
        self.hold_ref = hold_ref
        self.held_at = held_at

    @transition(
        field=status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.FAILED,
    )
    def hold_failed(self, reason: str, at: datetime) -> None:
        """
        Record that the initial hold was refused.

        Transition: PENDING -> FAILED
        """
        self.append_note(f"Hold failed: {reason}", at)

    @transition(
        field=status,
        source=EscrowStatus.HELD,
        target=EscrowStatus.HELD,
        conditions=[_has_no_buyer],
    )
    def assign_buyer(self, buyer: Party) -> None:
        """
        Assign the accepting party.

        Transition: HELD -> HELD (buyer set)
        """
        self.buyer = buyer

    @transition(
        field=status,
        source=EscrowStatus.HELD,
        target=EscrowStatus.HELD,
        conditions=[_has_buyer],
    )
    def unassign_buyer(self, note: str, at: datetime) -> None:
        """
        Return the job to the unassigned pool. Amounts are unchanged.

        Transition: HELD -> HELD (buyer cleared)
        """
        self.buyer = None
        self.append_note(note, at)

    @transition(
        field=status,
        source=EscrowStatus.HELD,
        target=EscrowStatus.AWAITING_VALIDATION,
        conditions=[_has_buyer],
    )
    def mark_completed(self, at: datetime, window_hours: int | None = None) -> None:
        """
        Start the validation window.

        Transition: HELD -> AWAITING_VALIDATION
        """
        self.marked_completed_at = at
        self.validation_deadline = validation_deadline_for(at, window_hours)

    @transition(
        field=status,
        source=EscrowStatus.AWAITING_VALIDATION,
        target=EscrowStatus.AWAITING_VALIDATION,
    )
    def confirm(self, at: datetime) -> None:
        """
        Record the seller's confirmation (kept from the first call).

        Transition: AWAITING_VALIDATION -> AWAITING_VALIDATION
        """
        if self.confirmed_at is None:
            self.confirmed_at = at

    @transition(
        field=status,
        source=[EscrowStatus.AWAITING_VALIDATION, EscrowStatus.DISPUTED],
        target=EscrowStatus.COMPLETED,
        conditions=[_has_buyer],
    )
    def release(self, transfer_ref: str, paid_at: datetime) -> None:
        """
        Record the transfer of the base amount to the buyer.

        Transition: AWAITING_VALIDATION | DISPUTED -> COMPLETED
        """
        self.transfer_ref = transfer_ref
        self.paid_at = paid_at
        self.in_flight_action = None

    @transition(
        field=status,
        source=EscrowStatus.AWAITING_VALIDATION,
        target=EscrowStatus.DISPUTED,
    )
    def open_dispute(self, note: str, at: datetime) -> None:
        """
        Freeze the escrow for admin review.

        Transition: AWAITING_VALIDATION -> DISPUTED
        """
        self.append_note(note, at)

    @transition(
        field=status,
        source=[
            EscrowStatus.PENDING,
            EscrowStatus.HELD,
            EscrowStatus.AWAITING_VALIDATION,
            EscrowStatus.DISPUTED,
        ],
        target=EscrowStatus.REFUNDED,
    )
    def refund_full(
        self,
        refund_ref: str | None,
        amount: Decimal,
        refunded_at: datetime,
        reason: str,
    ) -> None:
        """
        Record a full refund to the seller.

        Transition: PENDING | HELD | AWAITING_VALIDATION | DISPUTED -> REFUNDED
        """
        self.refund_ref = refund_ref
        self.refunded_amount = amount
        self.refunded_at = refunded_at
        self.cancel_reason = reason
        self.in_flight_action = None

    @transition(
        field=status,
        source=[EscrowStatus.HELD, EscrowStatus.DISPUTED],
        target=EscrowStatus.PARTIAL_REFUND,
        conditions=[_has_buyer],
    )
    def refund_partial(
        self,
        refund_ref: str | None,
        transfer_ref: str | None,
        refunded_amount: Decimal,
        compensation_amount: Decimal,
        refunded_at: datetime,
        reason: str,
    ) -> None:
        """
        Record a split settlement: part refunded, part paid to the buyer.

        Transition: HELD | DISPUTED -> PARTIAL_REFUND
        """
        self.refund_ref = refund_ref
        self.transfer_ref = transfer_ref
        self.refunded_amount = refunded_amount
        self.compensation_amount = compensation_amount
        self.refunded_at = refunded_at
        self.cancel_reason = reason
        self.in_flight_action = None
