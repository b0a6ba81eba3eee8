"""
Escrow service: the only entry point that changes escrow records.

Every operation follows the same sequence inside one database transaction:

    1. Lock the record (select_for_update, held across the provider call)
    2. Check the caller's role and the record's status (guards)
    3. Call the payment provider, logging every attempt as a ProviderCall
    4. Apply the FSM transition and persist it (optimistic version check)

A failed guard raises InvalidTransitionError and leaves the record
untouched. A failed provider call leaves the status unchanged and raises
PaymentProviderError; the ProviderCall row of the failed attempt is still
committed. When money moved but the new state could not be saved, the save
is retried and, if it keeps failing, InconsistentStateError with code
MANUAL_RECONCILIATION_REQUIRED is raised and logged at critical severity.

Multi-leg actions (seller cancellation after acceptance, custom dispute
split) can fail between legs. The record is then flagged with
in_flight_action: only a retry of that action is accepted, and the retry
reuses the legs that already succeeded instead of calling the provider
again.

Usage:
    from escrow.services import EscrowService

    service = EscrowService()
    record = service.create_escrow(job, seller)
    record = service.accept(record.id, buyer)
    record = service.mark_completed(record.id, buyer)
    record = service.confirm(record.id, seller)   # -> COMPLETED
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction

from escrow.adapters import (
    IdempotencyKeyGenerator,
    PaymentProvider,
    StripePaymentProvider,
    backoff_delay,
    is_retryable_stripe_error,
)
from escrow.calculator import (
    ZERO,
    CancellationSplit,
    calculate_amounts,
    calculate_cancellation_split,
    default_commission_rate,
    hours_between,
    to_minor_units,
)
from escrow.clock import Clock, SystemClock
from escrow.exceptions import (
    EscrowNotFoundError,
    EscrowValidationError,
    InconsistentStateError,
    InvalidTransitionError,
    PaymentProviderError,
    StaleRecordError,
)
from escrow.locks import lock_escrow
from escrow.models import EscrowRecord, ProviderCall
from escrow.services.split_policies import Outcome, SplitPolicy
from escrow.state_machines import (
    CancelReason,
    EscrowAction,
    EscrowStatus,
    PartyRole,
    ProviderOperation,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from typing import Any

    from django.contrib.auth.models import AbstractBaseUser

    from escrow.models import Party
    from escrow.types import JobLike


logger = logging.getLogger(__name__)


# Statuses an admin may force-refund from
FORCE_REFUNDABLE_STATUSES = (
    EscrowStatus.PENDING,
    EscrowStatus.HELD,
    EscrowStatus.AWAITING_VALIDATION,
    EscrowStatus.DISPUTED,
)

PERSIST_BACKOFF_BASE = 0.1
PERSIST_BACKOFF_MAX = 1.0

# metadata key holding the amounts of an interrupted multi-leg action
PENDING_SPLIT_KEY = "pending_split"


@dataclass
class ActionContext:
    """
    State of one escrow operation while its transaction is open.

    Attributes:
        record: The locked record
        action: Action being executed
        now: Time the action started (from the service clock)
        from_status: Status when the record was locked
        moved: Provider calls that moved money during this action
        pinned: Amounts to keep if the action is interrupted and retried
    """

    record: EscrowRecord
    action: str
    now: datetime
    from_status: str
    moved: list[ProviderCall] = field(default_factory=list)
    pinned: dict[str, str] | None = None


class EscrowService:
    """
    Operations on escrow records, one per state machine transition.

    Args:
        provider: Payment provider (default: StripePaymentProvider)
        clock: Source of the current time (default: SystemClock)
        commission_rate: Commission as a fraction (default from
            PLATFORM_FEE_PERCENT)
        validation_window_hours: Hours the seller has to confirm
            (default ESCROW_VALIDATION_WINDOW_HOURS)
        currency: Currency of new escrows (default ESCROW_CURRENCY)
        persist_attempts: Save attempts after money moved
            (default ESCROW_PERSIST_ATTEMPTS)
    """

    def __init__(
        self,
        provider: PaymentProvider | None = None,
        clock: Clock | None = None,
        commission_rate: Decimal | None = None,
        validation_window_hours: int | None = None,
        currency: str | None = None,
        persist_attempts: int | None = None,
    ) -> None:
        self.provider = provider or StripePaymentProvider()
        self.clock = clock or SystemClock()
        self.commission_rate = (
            commission_rate if commission_rate is not None else default_commission_rate()
        )
        self.validation_window_hours = (
            validation_window_hours
            if validation_window_hours is not None
            else settings.ESCROW_VALIDATION_WINDOW_HOURS
        )
        self.currency = currency or settings.ESCROW_CURRENCY
        self.persist_attempts = max(
            1,
            persist_attempts
            if persist_attempts is not None
            else settings.ESCROW_PERSIST_ATTEMPTS,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, escrow_id: Any) -> EscrowRecord:
        """
        Fetch an escrow record.

        Raises:
            EscrowNotFoundError: If no such record exists
        """
        record = (
            EscrowRecord.objects.select_related("seller", "buyer")
            .filter(pk=escrow_id)
            .first()
        )
        if record is None:
            raise EscrowNotFoundError(
                f"Escrow {escrow_id} not found",
                details={"escrow_id": str(escrow_id)},
            )
        return record

    def for_seller(self, seller: Party):
        return EscrowRecord.objects.for_seller(seller)

    def for_buyer(self, buyer: Party):
        return EscrowRecord.objects.for_buyer(buyer)

    def awaiting_validation_for_seller(self, seller: Party):
        return EscrowRecord.objects.awaiting_validation_for_seller(seller)

    def expired_validations(self, limit: int | None = None) -> list[EscrowRecord]:
        """Records whose validation deadline passed, oldest first."""
        qs = EscrowRecord.objects.expired_validations(self.clock.now())
        if limit is not None:
            qs = qs[:limit]
        return list(qs)

    def stats(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Dashboard statistics.

        Returns:
            EscrowRecordQuerySet.stats() plus commission_in_period, the
            commission earned on escrows paid between start and end
        """
        data = EscrowRecord.objects.stats()
        data["commission_in_period"] = EscrowRecord.objects.total_commissions(start, end)
        return data

    # =========================================================================
    # Creation
    # =========================================================================

    def create_escrow(
        self,
        job: JobLike,
        seller: Party,
        payment_method_id: str | None = None,
    ) -> EscrowRecord:
        """
        Hold the job price plus commission from the seller.

        A record is written in PENDING first so every hold attempt is
        audited against it. A permanent hold failure moves it to FAILED
        (the job can then be published again); a transient failure leaves
        it PENDING and calling create_escrow again for the same job resumes
        the hold with the same idempotency key.

        Args:
            job: Job being paid for (reference, price, scheduled_at)
            seller: Party posting the job
            payment_method_id: Overrides the seller's default payment method

        Returns:
            The record in HELD

        Raises:
            InvalidTransitionError: Seller cannot pay, or the job already
                has an active escrow
            EscrowValidationError: Invalid price
            PaymentProviderError: Hold failed
        """
        if not seller.has_payment_source:
            self._reject(
                action=EscrowAction.CREATE,
                guard="seller_has_payment_source",
                message="Seller has no payment method to hold funds from",
                current_status=None,
                required_status=[EscrowStatus.PENDING],
                required_role=PartyRole.SELLER,
            )

        existing = EscrowRecord.objects.for_job(job.reference).first()
        if existing is not None:
            if existing.status != EscrowStatus.PENDING or existing.seller_id != seller.pk:
                self._reject(
                    action=EscrowAction.CREATE,
                    guard="job_has_no_active_escrow",
                    message=f"Job {job.reference} already has an active escrow",
                    current_status=existing.status,
                    required_status=[EscrowStatus.PENDING],
                    required_role=PartyRole.SELLER,
                    escrow_id=str(existing.pk),
                )
            logger.info(
                "Resuming pending escrow hold",
                extra={"escrow_id": str(existing.pk), "job_ref": job.reference},
            )
            record = existing
        else:
            record = self._create_pending(job, seller)

        def handler(ctx: ActionContext) -> None:
            self._require_status(ctx, [EscrowStatus.PENDING], PartyRole.SELLER)
            try:
                hold_ref = self._call_provider(
                    ctx,
                    ProviderOperation.HOLD,
                    ctx.record.total_amount,
                    lambda cents, key, metadata: self.provider.hold(
                        cents,
                        ctx.record.currency,
                        seller,
                        metadata,
                        key,
                        payment_method_id=payment_method_id,
                    ),
                )
            except PaymentProviderError as e:
                if not is_retryable_stripe_error(e):
                    ctx.record.hold_failed(reason=e.provider_message, at=ctx.now)
                    self._save(ctx)
                raise
            ctx.record.hold_succeeded(hold_ref=hold_ref, held_at=ctx.now)
            self._save(ctx)

        return self._execute(record.pk, EscrowAction.CREATE, handler)

    def _create_pending(self, job: JobLike, seller: Party) -> EscrowRecord:
        amounts = calculate_amounts(job.price, self.commission_rate)
        try:
            with transaction.atomic():
                record = EscrowRecord.objects.create(
                    job_ref=job.reference,
                    service_scheduled_at=job.scheduled_at,
                    seller=seller,
                    base_amount=amounts.base,
                    commission_amount=amounts.commission,
                    total_amount=amounts.total,
                    currency=self.currency,
                )
        except IntegrityError as e:
            raise InvalidTransitionError(
                f"Job {job.reference} already has an active escrow",
                details={
                    "action": EscrowAction.CREATE,
                    "guard": "job_has_no_active_escrow",
                    "current_status": None,
                    "required_status": [EscrowStatus.PENDING],
                    "required_role": PartyRole.SELLER,
                },
            ) from e

        logger.info(
            "Escrow created",
            extra={
                "escrow_id": str(record.pk),
                "job_ref": record.job_ref,
                "seller_id": str(seller.pk),
                "base_amount": str(amounts.base),
                "commission_amount": str(amounts.commission),
                "total_amount": str(amounts.total),
            },
        )
        return record

    # =========================================================================
    # Buyer Operations
    # =========================================================================

    def accept(
        self,
        escrow_id: Any,
        buyer: Party,
        expected_version: int | None = None,
    ) -> EscrowRecord:
        """
        Assign the buyer who takes the job.

        Raises:
            InvalidTransitionError: Not HELD, already taken, buyer is the
                seller, or the buyer cannot receive payouts
        """

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_status(ctx, [EscrowStatus.HELD], PartyRole.BUYER)
            if record.buyer_id is not None:
                self._reject_ctx(
                    ctx,
                    "no_existing_buyer",
                    "Job has already been accepted",
                    [EscrowStatus.HELD],
                    PartyRole.BUYER,
                )
            if buyer.pk == record.seller_id:
                self._reject_ctx(
                    ctx,
                    "buyer_not_seller",
                    "Seller cannot accept their own job",
                    [EscrowStatus.HELD],
                    PartyRole.BUYER,
                )
            if not buyer.is_ready_for_payouts:
                self._reject_ctx(
                    ctx,
                    "buyer_payout_destination",
                    "Buyer has no payout account able to receive funds",
                    [EscrowStatus.HELD],
                    PartyRole.BUYER,
                )
            record.assign_buyer(buyer)
            self._save(ctx)

        return self._execute(
            escrow_id, EscrowAction.ACCEPT, handler, expected_version=expected_version
        )

    def abandon(self, escrow_id: Any, buyer: Party) -> EscrowRecord:
        """
        Release the job back to the unassigned pool. Amounts are unchanged
        and no penalty is recorded.
        """

        def handler(ctx: ActionContext) -> None:
            self._require_status(ctx, [EscrowStatus.HELD], PartyRole.BUYER)
            self._require_assigned_buyer(ctx, buyer, [EscrowStatus.HELD])
            ctx.record.unassign_buyer(
                note=f"Buyer {buyer} abandoned the job",
                at=ctx.now,
            )
            self._save(ctx)

        return self._execute(escrow_id, EscrowAction.ABANDON, handler)

    def mark_completed(self, escrow_id: Any, buyer: Party) -> EscrowRecord:
        """Start the validation window; the seller can now confirm or dispute."""

        def handler(ctx: ActionContext) -> None:
            self._require_status(ctx, [EscrowStatus.HELD], PartyRole.BUYER)
            self._require_assigned_buyer(ctx, buyer, [EscrowStatus.HELD])
            ctx.record.mark_completed(at=ctx.now, window_hours=self.validation_window_hours)
            self._save(ctx)

        return self._execute(escrow_id, EscrowAction.MARK_COMPLETED, handler)

    # =========================================================================
    # Seller Operations
    # =========================================================================

    def confirm(self, escrow_id: Any, seller: Party) -> EscrowRecord:
        """
        Record the seller's confirmation, then release immediately.

        The confirmation is kept even if the release fails, so a later
        release (manual retry or reconciler) can proceed without waiting for
        the deadline.
        """

        def handler(ctx: ActionContext) -> None:
            self._require_status(ctx, [EscrowStatus.AWAITING_VALIDATION], PartyRole.SELLER)
            self._require_seller(ctx, seller, [EscrowStatus.AWAITING_VALIDATION])
            ctx.record.confirm(at=ctx.now)
            self._save(ctx)
            self._release(ctx)

        return self._execute(escrow_id, EscrowAction.CONFIRM, handler)

    def release(self, escrow_id: Any) -> EscrowRecord:
        """
        Transfer the base amount to the buyer and complete the escrow.

        Allowed once the seller confirmed or the validation deadline has
        passed. Calling it on a completed record raises InvalidTransitionError
        and never transfers twice.
        """

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_status(ctx, [EscrowStatus.AWAITING_VALIDATION], PartyRole.SYSTEM)
            if record.buyer_id is None:
                self._reject_ctx(
                    ctx,
                    "buyer_assigned",
                    "Escrow has no buyer to release to",
                    [EscrowStatus.AWAITING_VALIDATION],
                    PartyRole.SYSTEM,
                )
            if not record.can_release(ctx.now):
                self._reject_ctx(
                    ctx,
                    "confirmed_or_deadline_elapsed",
                    "Seller has not confirmed and the validation window is still open",
                    [EscrowStatus.AWAITING_VALIDATION],
                    PartyRole.SYSTEM,
                    validation_deadline=record.validation_deadline.isoformat(),
                )
            self._release(ctx)

        return self._execute(escrow_id, EscrowAction.RELEASE, handler)

    def cancel_by_seller(
        self,
        escrow_id: Any,
        seller: Party,
        scheduled_at: datetime | None = None,
    ) -> EscrowRecord:
        """
        Cancel a held escrow.

        Without a buyer the full total is refunded (REFUNDED). With a buyer
        the tiered penalty applies: the buyer is compensated from the base
        amount, the seller gets the rest of the base back and the platform
        keeps its commission (PARTIAL_REFUND).

        The tier is chosen once. A retry of an interrupted cancellation
        settles with the amounts of the first attempt, however late it runs.

        Args:
            escrow_id: Escrow to cancel
            seller: Caller, must be the escrow's seller
            scheduled_at: Service time; defaults to the time copied from
                the job when the escrow was created

        Raises:
            EscrowValidationError: Buyer assigned but the service time is unknown
        """

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_status(ctx, [EscrowStatus.HELD], PartyRole.SELLER)
            self._require_seller(ctx, seller, [EscrowStatus.HELD])

            if record.buyer_id is None:
                refund_ref = self._refund(ctx, record.total_amount)
                record.refund_full(
                    refund_ref=refund_ref,
                    amount=record.total_amount,
                    refunded_at=ctx.now,
                    reason=CancelReason.SELLER_BEFORE_ACCEPT,
                )
                record.append_note("Seller cancelled before acceptance", ctx.now)
                self._save(ctx)
                return

            ctx.action = EscrowAction.CANCEL_AFTER_ACCEPT
            pending = self._pending_split(ctx)
            if pending is not None:
                # Resumed: the tier is fixed by the first attempt
                split = CancellationSplit(
                    tier=pending["tier"],
                    refund_to_seller=Decimal(pending["refund_to_seller"]),
                    compensation_to_buyer=Decimal(pending["compensation_to_buyer"]),
                    platform_keeps=Decimal(pending["platform_keeps"]),
                )
            else:
                service_at = scheduled_at or record.service_scheduled_at
                if service_at is None:
                    raise EscrowValidationError(
                        "Service time is required to cancel an accepted job",
                        details={"escrow_id": str(record.pk)},
                    )
                split = calculate_cancellation_split(
                    record.base_amount,
                    record.total_amount,
                    record.commission_amount,
                    hours_between(ctx.now, service_at),
                )
            ctx.pinned = {
                "tier": split.tier,
                "refund_to_seller": str(split.refund_to_seller),
                "compensation_to_buyer": str(split.compensation_to_buyer),
                "platform_keeps": str(split.platform_keeps),
            }

            refund_ref = (
                self._refund(ctx, split.refund_to_seller)
                if split.refund_to_seller > ZERO
                else None
            )
            transfer_ref = (
                self._transfer(ctx, split.compensation_to_buyer)
                if split.compensation_to_buyer > ZERO
                else None
            )
            record.refund_partial(
                refund_ref=refund_ref,
                transfer_ref=transfer_ref,
                refunded_amount=split.refund_to_seller,
                compensation_amount=split.compensation_to_buyer,
                refunded_at=ctx.now,
                reason=CancelReason.SELLER_AFTER_ACCEPT,
            )
            record.append_note(
                f"Seller cancelled after acceptance ({split.tier}): "
                f"refund {split.refund_to_seller}, "
                f"compensation {split.compensation_to_buyer}, "
                f"platform keeps {split.platform_keeps}",
                ctx.now,
            )
            self._save(ctx)

        return self._execute(
            escrow_id,
            EscrowAction.CANCEL_BEFORE_ACCEPT,
            handler,
            resumes=(EscrowAction.CANCEL_AFTER_ACCEPT,),
        )

    # =========================================================================
    # Disputes
    # =========================================================================

    def open_dispute(self, escrow_id: Any, initiator: Party, reason: str) -> EscrowRecord:
        """Freeze an escrow awaiting validation until an admin resolves it."""

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_status(
                ctx, [EscrowStatus.AWAITING_VALIDATION], PartyRole.PARTICIPANT
            )
            if initiator.pk == record.seller_id:
                role = PartyRole.SELLER
            elif record.buyer_id is not None and initiator.pk == record.buyer_id:
                role = PartyRole.BUYER
            else:
                self._reject_ctx(
                    ctx,
                    "caller_is_participant",
                    "Only the seller or the buyer can open a dispute",
                    [EscrowStatus.AWAITING_VALIDATION],
                    PartyRole.PARTICIPANT,
                )
            record.open_dispute(
                note=f"Dispute opened by {role} {initiator}: {reason}",
                at=ctx.now,
            )
            self._save(ctx)
            logger.warning(
                "Escrow dispute opened",
                extra={
                    "escrow_id": str(record.pk),
                    "initiator_id": str(initiator.pk),
                    "initiator_role": role,
                    "reason": reason,
                },
            )

        return self._execute(escrow_id, EscrowAction.OPEN_DISPUTE, handler)

    def resolve_dispute(
        self,
        escrow_id: Any,
        admin: AbstractBaseUser,
        policy: SplitPolicy,
        note: str = "",
    ) -> EscrowRecord:
        """
        Settle a disputed escrow according to a split policy.

        FavorSeller refunds the total, FavorBuyer runs the standard release
        and CustomSplit refunds and pays the admin-chosen amounts.

        Once a resolution has moved money and been interrupted, only a
        policy producing the same split may finish it.

        Raises:
            InvalidTransitionError: Caller is not an admin, the record is
                not DISPUTED, a custom split exceeds the total, or the split
                differs from an interrupted resolution
            EscrowValidationError: Negative custom split amounts
        """

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_admin(ctx, admin, [EscrowStatus.DISPUTED])
            self._require_status(ctx, [EscrowStatus.DISPUTED], PartyRole.ADMIN)

            split = policy.split(record)
            pinned = {
                "policy": policy.describe(),
                "outcome": str(split.outcome),
                "refund_to_seller": str(split.refund_to_seller),
                "pay_to_buyer": str(split.pay_to_buyer),
            }
            pending = self._pending_split(ctx)
            if pending is not None and (
                pending["outcome"] != pinned["outcome"]
                or Decimal(pending["refund_to_seller"]) != split.refund_to_seller
                or Decimal(pending["pay_to_buyer"]) != split.pay_to_buyer
            ):
                self._reject_ctx(
                    ctx,
                    "in_flight_split_mismatch",
                    f"An interrupted resolution ({pending['policy']}) must be "
                    f"retried with the same split",
                    [EscrowStatus.DISPUTED],
                    PartyRole.ADMIN,
                    pending_split=pending,
                    requested_split=pinned,
                )
            ctx.pinned = pending or pinned

            summary = f"Dispute resolved by admin {admin.get_username()} ({policy.describe()})"
            if note:
                summary = f"{summary}: {note}"

            if split.outcome == Outcome.RELEASE:
                record.append_note(summary, ctx.now)
                self._release(ctx)
                return

            if split.outcome == Outcome.REFUND:
                refund_ref = self._refund(ctx, split.refund_to_seller)
                record.refund_full(
                    refund_ref=refund_ref,
                    amount=split.refund_to_seller,
                    refunded_at=ctx.now,
                    reason=CancelReason.DISPUTE,
                )
            else:
                refund_ref = (
                    self._refund(ctx, split.refund_to_seller)
                    if split.refund_to_seller > ZERO
                    else None
                )
                transfer_ref = (
                    self._transfer(ctx, split.pay_to_buyer)
                    if split.pay_to_buyer > ZERO
                    else None
                )
                record.refund_partial(
                    refund_ref=refund_ref,
                    transfer_ref=transfer_ref,
                    refunded_amount=split.refund_to_seller,
                    compensation_amount=split.pay_to_buyer,
                    refunded_at=ctx.now,
                    reason=CancelReason.DISPUTE,
                )
            record.append_note(summary, ctx.now)
            self._save(ctx)

        return self._execute(escrow_id, EscrowAction.RESOLVE_DISPUTE, handler)

    # =========================================================================
    # Admin Override
    # =========================================================================

    def force_refund(
        self,
        escrow_id: Any,
        admin: AbstractBaseUser,
        reason: str,
    ) -> EscrowRecord:
        """
        Refund the full total from any non-terminal status.

        A record whose hold never succeeded is closed as REFUNDED with a
        refunded amount of zero and no provider call. A record stuck with an
        unfinished multi-leg action is closed too: only what is left of the
        hold after the legs that already succeeded is refunded.
        """

        def handler(ctx: ActionContext) -> None:
            record = ctx.record
            self._require_admin(ctx, admin, list(FORCE_REFUNDABLE_STATUSES))
            self._require_status(ctx, list(FORCE_REFUNDABLE_STATUSES), PartyRole.ADMIN)

            hold_ref = record.hold_ref or self._recorded_ref(
                record, EscrowAction.CREATE, ProviderOperation.HOLD
            )
            # Legs of an interrupted action already took part of the hold
            interrupted = record.in_flight_action
            earlier = ProviderCall.objects.exclude(action=EscrowAction.FORCE_REFUND)
            refunded_before = earlier.paid_out(record, [ProviderOperation.REFUND])
            transferred_before = earlier.paid_out(record, [ProviderOperation.TRANSFER])

            if hold_ref:
                remaining = record.total_amount - refunded_before - transferred_before
                refund_ref = (
                    self._refund(ctx, remaining, hold_ref=hold_ref)
                    if remaining > ZERO
                    else None
                )
                amount = refunded_before + remaining
            else:
                refund_ref = None
                amount = ZERO

            record.refund_full(
                refund_ref=refund_ref,
                amount=amount,
                refunded_at=ctx.now,
                reason=CancelReason.ADMIN_FORCE_REFUND,
            )
            if transferred_before > ZERO:
                record.compensation_amount = transferred_before
            if interrupted and interrupted != EscrowAction.FORCE_REFUND:
                record.append_note(
                    f"Abandoned unfinished '{interrupted}': {refunded_before} already "
                    f"refunded, {transferred_before} already paid to the buyer",
                    ctx.now,
                )
            record.append_note(
                f"Force refund by admin {admin.get_username()}: {reason}",
                ctx.now,
            )
            self._save(ctx)
            logger.warning(
                "Escrow force refunded",
                extra={
                    "escrow_id": str(record.pk),
                    "from_status": ctx.from_status,
                    "refunded_amount": str(amount),
                    "admin": admin.get_username(),
                    "reason": reason,
                },
            )

        return self._execute(
            escrow_id, EscrowAction.FORCE_REFUND, handler, overrides_in_flight=True
        )

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(
        self,
        escrow_id: Any,
        action: str,
        handler: Callable[[ActionContext], None],
        expected_version: int | None = None,
        resumes: tuple[str, ...] = (),
        overrides_in_flight: bool = False,
    ) -> EscrowRecord:
        """
        Run `handler` against the locked record in one transaction.

        A record flagged with an unfinished action only accepts that action
        (or one listed in `resumes`), unless `overrides_in_flight` is set.

        Provider and consistency failures are caught inside the transaction
        so the audit rows of the attempt are committed, then re-raised.
        Any other exception rolls everything back.
        """
        failure: PaymentProviderError | InconsistentStateError | None = None

        with transaction.atomic():
            try:
                record = lock_escrow(escrow_id, expected_version)
            except StaleRecordError as e:
                raise self._conflict(action, None, e) from e
            ctx = ActionContext(
                record=record,
                action=action,
                now=self.clock.now(),
                from_status=record.status,
            )

            if (
                record.in_flight_action
                and not overrides_in_flight
                and record.in_flight_action not in (action, *resumes)
            ):
                self._reject_ctx(
                    ctx,
                    "provider_operation_in_progress",
                    f"Escrow has an unfinished '{record.in_flight_action}' operation",
                    [record.status],
                    PartyRole.ADMIN,
                    in_flight_action=record.in_flight_action,
                )

            try:
                handler(ctx)
            except (PaymentProviderError, InconsistentStateError) as e:
                failure = e
                if ctx.moved:
                    self._flag_in_flight(ctx)

        if failure is not None:
            if isinstance(failure, InconsistentStateError):
                logger.critical(
                    "Escrow operation aborted in an inconsistent state",
                    extra={
                        "escrow_id": str(escrow_id),
                        "action": ctx.action,
                        "error_code": failure.error_code,
                        "details": failure.details,
                    },
                )
            raise failure

        if record.status != ctx.from_status or ctx.moved:
            logger.info(
                "Escrow transition completed",
                extra={
                    "escrow_id": str(record.pk),
                    "action": ctx.action,
                    "from_status": ctx.from_status,
                    "to_status": record.status,
                    "version": record.version,
                },
            )
        return record

    def _flag_in_flight(self, ctx: ActionContext) -> None:
        """Mark the record so only the interrupted action can run next."""
        try:
            with transaction.atomic():
                changes: dict[str, Any] = {"in_flight_action": ctx.action}
                if ctx.pinned is not None:
                    changes["metadata"] = {
                        **(ctx.record.metadata or {}),
                        PENDING_SPLIT_KEY: ctx.pinned,
                    }
                EscrowRecord.objects.filter(pk=ctx.record.pk).update(**changes)
        except DatabaseError:
            logger.critical(
                "Could not flag escrow with an unfinished provider operation",
                extra={
                    "escrow_id": str(ctx.record.pk),
                    "action": ctx.action,
                    "provider_refs": [call.provider_ref for call in ctx.moved],
                },
                exc_info=True,
            )

    @staticmethod
    def _pending_split(ctx: ActionContext) -> dict[str, str] | None:
        """Amounts pinned by an interrupted attempt of the current action."""
        record = ctx.record
        if record.in_flight_action != ctx.action:
            return None
        return (record.metadata or {}).get(PENDING_SPLIT_KEY)

    # =========================================================================
    # Provider Legs
    # =========================================================================

    def _release(self, ctx: ActionContext) -> None:
        """Standard release path shared by confirm, release and dispute."""
        record = ctx.record
        transfer_ref = self._transfer(
            ctx, record.base_amount, leg_action=EscrowAction.RELEASE
        )
        record.release(transfer_ref=transfer_ref, paid_at=ctx.now)
        self._save(ctx)

    def _refund(
        self,
        ctx: ActionContext,
        amount: Decimal,
        hold_ref: str | None = None,
    ) -> str:
        hold_ref = hold_ref or ctx.record.hold_ref
        return self._call_provider(
            ctx,
            ProviderOperation.REFUND,
            amount,
            lambda cents, key, metadata: self.provider.refund(hold_ref, cents, metadata, key),
        )

    def _transfer(
        self,
        ctx: ActionContext,
        amount: Decimal,
        leg_action: str | None = None,
    ) -> str:
        buyer = ctx.record.buyer
        return self._call_provider(
            ctx,
            ProviderOperation.TRANSFER,
            amount,
            lambda cents, key, metadata: self.provider.transfer(
                cents, ctx.record.currency, buyer, metadata, key
            ),
            leg_action=leg_action,
        )

    def _call_provider(
        self,
        ctx: ActionContext,
        operation: str,
        amount: Decimal,
        call: Callable[[int, str, dict[str, str]], str],
        leg_action: str | None = None,
    ) -> str:
        """
        Make (or reuse) one provider call and log it as a ProviderCall.

        A leg that already succeeded for this record is never called again;
        its provider reference is returned instead. The idempotency key
        stays the same across transient failures and changes only after a
        permanent one.

        Raises:
            PaymentProviderError: With operation and attempt set
            InvalidTransitionError: A retry asked for a different amount than
                the leg that already moved money, or the call would pay out
                more than the hold
        """
        record = ctx.record
        leg_action = leg_action or ctx.action
        leg = ProviderCall.objects.for_leg(record, leg_action, operation)

        previous = leg.succeeded().first()
        if previous is not None:
            if previous.amount != amount:
                self._reject_ctx(
                    ctx,
                    "in_flight_amount_mismatch",
                    f"A {operation} of {previous.amount} already succeeded for "
                    f"this escrow; cannot retry it with {amount}",
                    [record.status],
                    PartyRole.ADMIN,
                    previous_amount=str(previous.amount),
                    requested_amount=str(amount),
                )
            logger.info(
                "Reusing successful provider call",
                extra={
                    "escrow_id": str(record.pk),
                    "action": leg_action,
                    "operation": operation,
                    "provider_ref": previous.provider_ref,
                },
            )
            ctx.moved.append(previous)
            return previous.provider_ref

        if operation != ProviderOperation.HOLD:
            paid_out = ProviderCall.objects.paid_out(record)
            if paid_out + amount > record.total_amount:
                self._reject_ctx(
                    ctx,
                    "exceeds_held_amount",
                    f"A {operation} of {amount} would take more than the "
                    f"{record.total_amount} held ({paid_out} already paid out)",
                    [record.status],
                    PartyRole.ADMIN,
                    paid_out=str(paid_out),
                    requested_amount=str(amount),
                )

        attempt = leg.count() + 1
        generation = 1 + leg.filter(succeeded=False, retryable=False).count()
        idempotency_key = IdempotencyKeyGenerator.generate(
            f"{leg_action}-{operation}", record.pk, generation
        )
        metadata = {
            "escrow_id": str(record.pk),
            "job_ref": record.job_ref,
            "action": str(leg_action),
        }
        log_context = {
            "escrow_id": str(record.pk),
            "action": leg_action,
            "operation": operation,
            "amount": str(amount),
            "attempt": attempt,
            "idempotency_key": idempotency_key,
        }

        try:
            provider_ref = call(to_minor_units(amount), idempotency_key, metadata)
        except PaymentProviderError as e:
            e.operation = operation
            e.attempt = attempt
            retryable = is_retryable_stripe_error(e)
            ProviderCall.objects.create(
                escrow=record,
                action=leg_action,
                operation=operation,
                attempt=attempt,
                idempotency_key=idempotency_key,
                amount=amount,
                succeeded=False,
                error_code=e.error_code,
                error_message=e.provider_message,
                retryable=retryable,
            )
            logger.error(
                "Payment provider call failed",
                extra={
                    **log_context,
                    "error_code": e.error_code,
                    "provider_message": e.provider_message,
                    "retryable": retryable,
                },
            )
            raise

        try:
            with transaction.atomic():
                provider_call = ProviderCall.objects.create(
                    escrow=record,
                    action=leg_action,
                    operation=operation,
                    attempt=attempt,
                    idempotency_key=idempotency_key,
                    amount=amount,
                    succeeded=True,
                    provider_ref=provider_ref,
                )
        except DatabaseError as e:
            logger.critical(
                "Provider call succeeded but could not be recorded",
                extra={**log_context, "provider_ref": provider_ref},
                exc_info=True,
            )
            raise InconsistentStateError(
                "Money moved but the provider call could not be recorded",
                error_code=InconsistentStateError.MANUAL_RECONCILIATION_REQUIRED,
                details={**log_context, "provider_ref": provider_ref},
            ) from e

        logger.info(
            "Payment provider call succeeded",
            extra={**log_context, "provider_ref": provider_ref},
        )
        ctx.moved.append(provider_call)
        return provider_ref

    @staticmethod
    def _recorded_ref(record: EscrowRecord, action: str, operation: str) -> str | None:
        call = ProviderCall.objects.for_leg(record, action, operation).succeeded().first()
        return call.provider_ref if call else None

    # =========================================================================
    # Persistence
    # =========================================================================

    def _save(self, ctx: ActionContext) -> None:
        """
        Validate invariants and save the record.

        Without money moved, a failure propagates unchanged (a stale write
        becomes InvalidTransitionError). Once money moved, the save is
        retried; if it still fails the record needs manual reconciliation.
        """
        record = ctx.record
        if record.in_flight_action is None and record.metadata:
            record.metadata.pop(PENDING_SPLIT_KEY, None)
        record.check_invariants()

        last_error: Exception | None = None
        for attempt in range(self.persist_attempts):
            try:
                with transaction.atomic():
                    record.save()
                return
            except StaleRecordError as e:
                if not ctx.moved:
                    raise self._conflict(ctx.action, ctx.from_status, e) from e
                last_error = e
                break
            except DatabaseError as e:
                if not ctx.moved:
                    raise
                last_error = e
                logger.warning(
                    "Escrow save failed after money moved, retrying",
                    extra={
                        "escrow_id": str(record.pk),
                        "action": ctx.action,
                        "attempt": attempt + 1,
                    },
                )
                if attempt + 1 < self.persist_attempts:
                    time.sleep(
                        backoff_delay(
                            attempt,
                            base=PERSIST_BACKOFF_BASE,
                            max_delay=PERSIST_BACKOFF_MAX,
                        )
                    )

        provider_refs = [call.provider_ref for call in ctx.moved]
        logger.critical(
            "Money moved but escrow state was not recorded: manual reconciliation required",
            extra={
                "escrow_id": str(record.pk),
                "action": ctx.action,
                "target_status": record.status,
                "provider_refs": provider_refs,
            },
        )
        raise InconsistentStateError(
            f"Escrow {record.pk}: provider operation succeeded but state was not saved",
            error_code=InconsistentStateError.MANUAL_RECONCILIATION_REQUIRED,
            details={
                "escrow_id": str(record.pk),
                "action": ctx.action,
                "target_status": record.status,
                "provider_refs": provider_refs,
                "error": str(last_error),
            },
        ) from last_error

    # =========================================================================
    # Guards
    # =========================================================================

    def _require_status(
        self,
        ctx: ActionContext,
        allowed: list[str],
        role: str,
    ) -> None:
        if ctx.record.status not in allowed:
            self._reject_ctx(
                ctx,
                "status",
                f"Cannot {ctx.action} an escrow in status '{ctx.record.status}'",
                allowed,
                role,
            )

    def _require_seller(self, ctx: ActionContext, seller: Party, allowed: list[str]) -> None:
        if seller.pk != ctx.record.seller_id:
            self._reject_ctx(
                ctx,
                "caller_is_seller",
                "Only the seller can perform this action",
                allowed,
                PartyRole.SELLER,
            )

    def _require_assigned_buyer(
        self,
        ctx: ActionContext,
        buyer: Party,
        allowed: list[str],
    ) -> None:
        if ctx.record.buyer_id is None or buyer.pk != ctx.record.buyer_id:
            self._reject_ctx(
                ctx,
                "caller_is_buyer",
                "Only the assigned buyer can perform this action",
                allowed,
                PartyRole.BUYER,
            )

    def _require_admin(
        self,
        ctx: ActionContext,
        admin: AbstractBaseUser,
        allowed: list[str],
    ) -> None:
        if not (getattr(admin, "is_active", False) and getattr(admin, "is_staff", False)):
            self._reject_ctx(
                ctx,
                "caller_is_admin",
                "Only an admin can perform this action",
                allowed,
                PartyRole.ADMIN,
            )

    def _reject_ctx(
        self,
        ctx: ActionContext,
        guard: str,
        message: str,
        required_status: list[str],
        required_role: str,
        **extra: Any,
    ) -> None:
        self._reject(
            action=ctx.action,
            guard=guard,
            message=message,
            current_status=ctx.record.status,
            required_status=required_status,
            required_role=required_role,
            escrow_id=str(ctx.record.pk),
            **extra,
        )

    @staticmethod
    def _conflict(
        action: str,
        from_status: str | None,
        error: StaleRecordError,
    ) -> InvalidTransitionError:
        """Translate a version conflict into a rejected transition."""
        details = {
            "action": str(action),
            "guard": "concurrent_modification",
            "current_status": str(from_status) if from_status else None,
            "required_status": [str(from_status)] if from_status else [],
            "required_role": None,
            "expected_version": error.details.get("expected_version"),
            "current_version": error.details.get("current_version"),
        }
        logger.warning("Escrow transition rejected", extra=details)
        return InvalidTransitionError(
            "Escrow was modified concurrently; reload and retry",
            details=details,
        )

    @staticmethod
    def _reject(
        action: str,
        guard: str,
        message: str,
        current_status: str | None,
        required_status: list[str],
        required_role: str,
        **extra: Any,
    ) -> None:
        details = {
            "action": str(action),
            "guard": guard,
            "current_status": str(current_status) if current_status else None,
            "required_status": [str(status) for status in required_status],
            "required_role": str(required_role),
            **extra,
        }
        logger.warning("Escrow transition rejected", extra=details)
        raise InvalidTransitionError(message, details=details)
