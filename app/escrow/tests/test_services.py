"""
Tests for EscrowService.

The service runs against InMemoryProvider and FixedClock (see conftest.py),
so every provider call and every deadline is deterministic. Records are
read back with EscrowRecord.objects.get() after each operation to assert
on what was actually committed.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import DatabaseError

from escrow.exceptions import (
    EscrowNotFoundError,
    EscrowValidationError,
    InconsistentStateError,
    InvalidTransitionError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
    StripeTimeoutError,
)
from escrow.models import EscrowRecord, ProviderCall
from escrow.services import CustomSplit, EscrowService, FavorBuyer, FavorSeller
from escrow.state_machines import (
    CancelReason,
    EscrowAction,
    EscrowStatus,
    JobPaymentStatus,
    ProviderOperation,
)
from escrow.tests.factories import AdminUserFactory, PartyFactory
from escrow.types import JobSnapshot


def fetch(record):
    return EscrowRecord.objects.get(pk=record.pk)


# =============================================================================
# Creation
# =============================================================================


@pytest.mark.django_db
class TestCreateEscrow:
    """Tests for EscrowService.create_escrow()."""

    def test_holds_total_from_seller(self, service, provider, clock, job, seller):
        record = service.create_escrow(job, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.HELD
        assert fresh.base_amount == Decimal("100.00")
        assert fresh.commission_amount == Decimal("15.00")
        assert fresh.total_amount == Decimal("115.00")
        assert fresh.currency == "eur"
        assert fresh.held_at == clock.now()
        assert fresh.service_scheduled_at == job.scheduled_at
        assert fresh.job_payment_status == JobPaymentStatus.SECURED

        [hold] = provider.calls_for("hold")
        assert hold.amount_cents == 11500
        assert hold.target == seller.stripe_customer_id
        assert hold.metadata["job_ref"] == "job:ride-1"
        assert hold.metadata["escrow_id"] == str(record.pk)
        assert fresh.hold_ref == hold.provider_ref

    def test_hold_is_audited(self, service, job, seller):
        record = service.create_escrow(job, seller)

        [call] = ProviderCall.objects.filter(escrow=record)
        assert call.action == EscrowAction.CREATE
        assert call.operation == ProviderOperation.HOLD
        assert call.attempt == 1
        assert call.succeeded is True
        assert call.amount == Decimal("115.00")

    def test_seller_without_payment_source(self, service, provider, job):
        seller = PartyFactory(stripe_customer_id=None)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.create_escrow(job, seller)

        assert exc_info.value.guard == "seller_has_payment_source"
        assert not EscrowRecord.objects.exists()
        assert provider.calls == []

    def test_job_with_active_escrow_rejected(self, service, provider, held_record, job, seller):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.create_escrow(job, seller)

        assert exc_info.value.guard == "job_has_no_active_escrow"
        assert exc_info.value.details["escrow_id"] == str(held_record.pk)
        assert len(provider.calls_for("hold")) == 1

    def test_non_positive_price_rejected(self, service, provider, seller):
        job = JobSnapshot(reference="job:free", price=Decimal("0.00"))

        with pytest.raises(EscrowValidationError):
            service.create_escrow(job, seller)

        assert not EscrowRecord.objects.exists()

    def test_card_declined_marks_failed(self, service, provider, job, seller):
        provider.fail_next("hold", StripeCardDeclinedError("Your card was declined."))

        with pytest.raises(StripeCardDeclinedError) as exc_info:
            service.create_escrow(job, seller)

        assert exc_info.value.operation == ProviderOperation.HOLD
        assert exc_info.value.attempt == 1

        record = EscrowRecord.objects.get(job_ref=job.reference)
        assert record.status == EscrowStatus.FAILED
        assert record.hold_ref is None
        assert "Hold failed: Your card was declined." in record.notes

        [call] = ProviderCall.objects.filter(escrow=record)
        assert call.succeeded is False
        assert call.error_code == "CARD_DECLINED"
        assert call.error_message == "Your card was declined."
        assert call.retryable is False

    def test_job_can_be_republished_after_failed_hold(self, service, provider, job, seller):
        provider.fail_next("hold", StripeCardDeclinedError("Your card was declined."))
        with pytest.raises(StripeCardDeclinedError):
            service.create_escrow(job, seller)

        record = service.create_escrow(job, seller)

        assert fetch(record).status == EscrowStatus.HELD
        assert EscrowRecord.objects.filter(job_ref=job.reference).count() == 2
        assert EscrowRecord.objects.for_job(job.reference).get() == record

    def test_transient_failure_keeps_pending_and_resumes(self, service, provider, job, seller):
        provider.fail_next("hold", StripeTimeoutError("Request timed out"))

        with pytest.raises(StripeTimeoutError):
            service.create_escrow(job, seller)

        pending = EscrowRecord.objects.get(job_ref=job.reference)
        assert pending.status == EscrowStatus.PENDING

        record = service.create_escrow(job, seller)

        assert record.pk == pending.pk
        assert fetch(record).status == EscrowStatus.HELD
        first_key, second_key = provider.attempted_keys
        assert first_key == second_key
        attempts = list(
            ProviderCall.objects.filter(escrow=record)
            .order_by("attempt")
            .values_list("attempt", "succeeded")
        )
        assert attempts == [(1, False), (2, True)]

    def test_pending_escrow_of_another_seller_not_resumed(
        self, service, provider, job, seller, other_party
    ):
        provider.fail_next("hold", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.create_escrow(job, seller)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.create_escrow(job, other_party)

        assert exc_info.value.guard == "job_has_no_active_escrow"


# =============================================================================
# Buyer Operations
# =============================================================================


@pytest.mark.django_db
class TestAccept:
    """Tests for EscrowService.accept()."""

    def test_assigns_buyer(self, service, held_record, buyer):
        record = service.accept(held_record.id, buyer)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.HELD
        assert fresh.buyer_id == buyer.pk
        assert fresh.version == held_record.version + 1

    def test_already_accepted(self, service, accepted_record, other_party):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.accept(accepted_record.id, other_party)

        assert exc_info.value.guard == "no_existing_buyer"

    def test_seller_cannot_accept_own_job(self, service, held_record, seller):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.accept(held_record.id, seller)

        assert exc_info.value.guard == "buyer_not_seller"

    def test_buyer_needs_payout_account(self, service, held_record):
        buyer = PartyFactory(payouts_enabled=False)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.accept(held_record.id, buyer)

        assert exc_info.value.guard == "buyer_payout_destination"
        assert fetch(held_record).buyer_id is None

    def test_pending_record_rejected(self, service, pending_record, buyer):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.accept(pending_record.id, buyer)

        details = exc_info.value.details
        assert details["guard"] == "status"
        assert details["action"] == "accept"
        assert details["current_status"] == "pending"
        assert details["required_status"] == ["held"]
        assert details["required_role"] == "buyer"
        assert exc_info.value.error_code == "INVALID_TRANSITION"

    def test_rejection_leaves_record_untouched(self, service, accepted_record, other_party):
        version = fetch(accepted_record).version

        with pytest.raises(InvalidTransitionError):
            service.accept(accepted_record.id, other_party)

        assert fetch(accepted_record).version == version

    def test_unknown_escrow(self, service, buyer):
        with pytest.raises(EscrowNotFoundError):
            service.accept(uuid.uuid4(), buyer)


@pytest.mark.django_db
class TestAbandon:
    """Tests for EscrowService.abandon()."""

    def test_returns_job_to_pool(self, service, provider, accepted_record, buyer):
        record = service.abandon(accepted_record.id, buyer)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.HELD
        assert fresh.buyer_id is None
        assert fresh.total_amount == Decimal("115.00")
        assert "abandoned the job" in fresh.notes
        assert provider.calls_for("refund") == []

    def test_another_buyer_can_accept_after_abandon(
        self, service, accepted_record, buyer, other_party
    ):
        service.abandon(accepted_record.id, buyer)

        record = service.accept(accepted_record.id, other_party)

        assert fetch(record).buyer_id == other_party.pk

    def test_only_assigned_buyer(self, service, accepted_record, other_party):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.abandon(accepted_record.id, other_party)

        assert exc_info.value.guard == "caller_is_buyer"

    def test_no_buyer_assigned(self, service, held_record, buyer):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.abandon(held_record.id, buyer)

        assert exc_info.value.guard == "caller_is_buyer"


@pytest.mark.django_db
class TestMarkCompleted:
    """Tests for EscrowService.mark_completed()."""

    def test_starts_validation_window(self, service, clock, accepted_record, buyer):
        record = service.mark_completed(accepted_record.id, buyer)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.AWAITING_VALIDATION
        assert fresh.marked_completed_at == clock.now()
        assert fresh.validation_deadline == clock.now() + timedelta(hours=24)

    def test_only_assigned_buyer(self, service, accepted_record, seller):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.mark_completed(accepted_record.id, seller)

        assert exc_info.value.guard == "caller_is_buyer"

    def test_twice_rejected(self, service, awaiting_record, buyer):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.mark_completed(awaiting_record.id, buyer)

        assert exc_info.value.guard == "status"


# =============================================================================
# Seller Operations
# =============================================================================


@pytest.mark.django_db
class TestConfirm:
    """Tests for EscrowService.confirm()."""

    def test_confirm_releases_base_to_buyer(
        self, service, provider, clock, awaiting_record, buyer
    ):
        clock.advance(hours=2)

        record = service.confirm(awaiting_record.id, awaiting_record.seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.COMPLETED
        assert fresh.confirmed_at == clock.now()
        assert fresh.paid_at == clock.now()
        assert fresh.job_payment_status == JobPaymentStatus.PAID

        [transfer] = provider.calls_for("transfer")
        assert transfer.amount_cents == 10000
        assert transfer.target == buyer.stripe_account_id
        assert fresh.transfer_ref == transfer.provider_ref

    def test_only_seller(self, service, awaiting_record, buyer):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.confirm(awaiting_record.id, buyer)

        assert exc_info.value.guard == "caller_is_seller"
        assert exc_info.value.details["required_role"] == "seller"

    def test_confirm_after_completion_rejected(self, service, provider, awaiting_record, seller):
        service.confirm(awaiting_record.id, seller)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.confirm(awaiting_record.id, seller)

        assert exc_info.value.guard == "status"
        assert len(provider.calls_for("transfer")) == 1

    def test_confirmation_kept_when_transfer_fails(
        self, service, provider, clock, awaiting_record, seller
    ):
        provider.fail_next("transfer", StripeInvalidAccountError("No such destination"))

        with pytest.raises(StripeInvalidAccountError):
            service.confirm(awaiting_record.id, seller)

        fresh = fetch(awaiting_record)
        assert fresh.status == EscrowStatus.AWAITING_VALIDATION
        assert fresh.confirmed_at == clock.now()

        # Confirmed, so a release no longer waits for the deadline
        record = service.release(awaiting_record.id)
        assert fetch(record).status == EscrowStatus.COMPLETED


@pytest.mark.django_db
class TestRelease:
    """Tests for EscrowService.release()."""

    def test_window_open_without_confirmation(self, service, awaiting_record):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.release(awaiting_record.id)

        assert exc_info.value.guard == "confirmed_or_deadline_elapsed"

    def test_exactly_at_deadline_still_open(self, service, clock, awaiting_record):
        clock.advance(hours=24)

        with pytest.raises(InvalidTransitionError):
            service.release(awaiting_record.id)

    def test_after_deadline(self, service, provider, clock, awaiting_record):
        clock.advance(hours=25)

        record = service.release(awaiting_record.id)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.COMPLETED
        assert fresh.confirmed_at is None
        assert [call.amount_cents for call in provider.calls_for("transfer")] == [10000]

    def test_release_twice_transfers_once(self, service, provider, clock, awaiting_record):
        clock.advance(hours=25)
        service.release(awaiting_record.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.release(awaiting_record.id)

        assert exc_info.value.guard == "status"
        assert exc_info.value.details["current_status"] == "completed"
        assert len(provider.calls_for("transfer")) == 1

    def test_held_record_rejected(self, service, accepted_record):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.release(accepted_record.id)

        assert exc_info.value.guard == "status"


@pytest.mark.django_db
class TestCancelBySeller:
    """Tests for EscrowService.cancel_by_seller()."""

    def test_before_accept_refunds_total(self, service, provider, held_record, seller):
        record = service.cancel_by_seller(held_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.refunded_amount == Decimal("115.00")
        assert fresh.cancel_reason == CancelReason.SELLER_BEFORE_ACCEPT
        assert fresh.job_payment_status == JobPaymentStatus.REFUNDED

        [refund] = provider.calls_for("refund")
        assert refund.amount_cents == 11500
        assert refund.target == held_record.hold_ref
        assert fresh.refund_ref == refund.provider_ref

    def test_more_than_48h_no_compensation(self, service, provider, accepted_record, seller):
        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("100.00")
        assert fresh.compensation_amount == Decimal("0.00")
        assert fresh.transfer_ref is None
        assert fresh.cancel_reason == CancelReason.SELLER_AFTER_ACCEPT
        assert [c.amount_cents for c in provider.calls_for("refund")] == [10000]
        assert provider.calls_for("transfer") == []

    def test_late_cancellation_splits_base(
        self, service, provider, clock, accepted_record, seller, buyer
    ):
        """3h before service: 50 back to seller, 50 to buyer, platform keeps 15."""
        clock.advance(hours=69)

        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("50.00")
        assert fresh.compensation_amount == Decimal("50.00")
        assert "less_than_6h" in fresh.notes
        assert "platform keeps 15.00" in fresh.notes

        [refund] = provider.calls_for("refund")
        [transfer] = provider.calls_for("transfer")
        assert refund.amount_cents == 5000
        assert transfer.amount_cents == 5000
        assert transfer.target == buyer.stripe_account_id
        assert fresh.refund_ref == refund.provider_ref
        assert fresh.transfer_ref == transfer.provider_ref

    def test_24_to_48h_tier(self, service, clock, accepted_record, seller):
        clock.advance(hours=42)

        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.refunded_amount == Decimal("85.00")
        assert fresh.compensation_amount == Decimal("15.00")

    def test_explicit_service_time(self, service, clock, accepted_record, seller):
        record = service.cancel_by_seller(
            accepted_record.id,
            seller,
            scheduled_at=clock.now() + timedelta(hours=12),
        )

        fresh = fetch(record)
        assert fresh.refunded_amount == Decimal("70.00")
        assert fresh.compensation_amount == Decimal("30.00")

    def test_unknown_service_time(self, service, provider, seller, buyer):
        job = JobSnapshot(reference="job:unscheduled", price=Decimal("100.00"))
        record = service.create_escrow(job, seller)
        service.accept(record.id, buyer)

        with pytest.raises(EscrowValidationError):
            service.cancel_by_seller(record.id, seller)

        assert fetch(record).status == EscrowStatus.HELD
        assert provider.calls_for("refund") == []

    def test_only_seller(self, service, held_record, buyer):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.cancel_by_seller(held_record.id, buyer)

        assert exc_info.value.guard == "caller_is_seller"

    def test_not_after_mark_completed(self, service, awaiting_record, seller):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.cancel_by_seller(awaiting_record.id, seller)

        assert exc_info.value.guard == "status"

    def test_refund_failure_keeps_escrow_held(self, service, provider, held_record, seller):
        provider.fail_next("refund", StripeAPIUnavailableError("Service unavailable"))

        with pytest.raises(StripeAPIUnavailableError):
            service.cancel_by_seller(held_record.id, seller)

        fresh = fetch(held_record)
        assert fresh.status == EscrowStatus.HELD
        assert fresh.in_flight_action is None


# =============================================================================
# Disputes
# =============================================================================


@pytest.mark.django_db
class TestOpenDispute:
    """Tests for EscrowService.open_dispute()."""

    def test_seller_opens(self, service, awaiting_record, seller):
        record = service.open_dispute(awaiting_record.id, seller, "Job not done")

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.DISPUTED
        assert "Dispute opened by seller" in fresh.notes
        assert "Job not done" in fresh.notes

    def test_buyer_opens(self, service, awaiting_record, buyer):
        record = service.open_dispute(awaiting_record.id, buyer, "Seller unreachable")

        assert fetch(record).status == EscrowStatus.DISPUTED

    def test_outsider_rejected(self, service, awaiting_record, other_party):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.open_dispute(awaiting_record.id, other_party, "x")

        assert exc_info.value.guard == "caller_is_participant"

    def test_only_while_awaiting_validation(self, service, accepted_record, seller):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.open_dispute(accepted_record.id, seller, "x")

        assert exc_info.value.guard == "status"

    def test_dispute_freezes_release(self, service, clock, disputed_record):
        clock.advance(hours=48)

        with pytest.raises(InvalidTransitionError):
            service.release(disputed_record.id)

        assert service.expired_validations() == []


@pytest.mark.django_db
class TestResolveDispute:
    """Tests for EscrowService.resolve_dispute()."""

    def test_favor_seller_refunds_total(self, service, provider, disputed_record, admin_user):
        record = service.resolve_dispute(disputed_record.id, admin_user, FavorSeller())

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.refunded_amount == Decimal("115.00")
        assert fresh.cancel_reason == CancelReason.DISPUTE
        assert f"Dispute resolved by admin {admin_user.username} (favor_seller)" in fresh.notes
        assert [c.amount_cents for c in provider.calls_for("refund")] == [11500]
        assert provider.calls_for("transfer") == []

    def test_favor_buyer_releases_base(self, service, provider, disputed_record, admin_user):
        record = service.resolve_dispute(disputed_record.id, admin_user, FavorBuyer())

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.COMPLETED
        assert fresh.paid_at is not None
        assert [c.amount_cents for c in provider.calls_for("transfer")] == [10000]
        assert provider.calls_for("refund") == []

    def test_custom_split(self, service, provider, disputed_record, admin_user):
        policy = CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("60.00"))

        record = service.resolve_dispute(
            disputed_record.id, admin_user, policy, note="Half the job was done"
        )

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("40.00")
        assert fresh.compensation_amount == Decimal("60.00")
        assert "Half the job was done" in fresh.notes
        assert [c.amount_cents for c in provider.calls_for("refund")] == [4000]
        assert [c.amount_cents for c in provider.calls_for("transfer")] == [6000]

    def test_custom_split_with_zero_refund(self, service, provider, disputed_record, admin_user):
        policy = CustomSplit(refund_to_seller=Decimal("0"), pay_to_buyer=Decimal("100.00"))

        record = service.resolve_dispute(disputed_record.id, admin_user, policy)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refund_ref is None
        assert provider.calls_for("refund") == []

    def test_custom_split_exceeding_total(self, service, provider, disputed_record, admin_user):
        policy = CustomSplit(refund_to_seller=Decimal("100.00"), pay_to_buyer=Decimal("20.00"))

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(disputed_record.id, admin_user, policy)

        assert exc_info.value.guard == "split_within_total"
        assert fetch(disputed_record).status == EscrowStatus.DISPUTED
        assert provider.calls_for("refund") == []

    def test_custom_split_negative(self, service, disputed_record, admin_user):
        policy = CustomSplit(refund_to_seller=Decimal("-1.00"), pay_to_buyer=Decimal("60.00"))

        with pytest.raises(EscrowValidationError):
            service.resolve_dispute(disputed_record.id, admin_user, policy)

    def test_non_admin_rejected(self, service, disputed_record, regular_user):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(disputed_record.id, regular_user, FavorSeller())

        assert exc_info.value.guard == "caller_is_admin"

    def test_inactive_admin_rejected(self, service, disputed_record):
        admin = AdminUserFactory(is_active=False)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(disputed_record.id, admin, FavorSeller())

        assert exc_info.value.guard == "caller_is_admin"

    def test_only_disputed(self, service, awaiting_record, admin_user):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(awaiting_record.id, admin_user, FavorSeller())

        assert exc_info.value.guard == "status"

    @pytest.mark.parametrize(
        "retry_policy",
        [
            FavorBuyer(),
            FavorSeller(),
            CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("75.00")),
        ],
        ids=["favor_buyer", "favor_seller", "larger_custom_split"],
    )
    def test_interrupted_split_retried_with_other_policy_rejected(
        self, service, provider, disputed_record, admin_user, retry_policy
    ):
        policy = CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("60.00"))
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.resolve_dispute(disputed_record.id, admin_user, policy)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(disputed_record.id, admin_user, retry_policy)

        assert exc_info.value.guard == "in_flight_split_mismatch"
        fresh = fetch(disputed_record)
        assert fresh.status == EscrowStatus.DISPUTED
        assert fresh.in_flight_action == EscrowAction.RESOLVE_DISPUTE
        assert [c.amount_cents for c in provider.calls_for("refund")] == [4000]
        assert provider.calls_for("transfer") == []

    def test_interrupted_split_completed_with_same_policy(
        self, service, provider, disputed_record, admin_user
    ):
        policy = CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("60.00"))
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.resolve_dispute(disputed_record.id, admin_user, policy)

        service.resolve_dispute(
            disputed_record.id,
            admin_user,
            CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("60.00")),
        )

        fresh = fetch(disputed_record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.in_flight_action is None
        assert "pending_split" not in fresh.metadata
        assert [c.amount_cents for c in provider.calls_for("refund")] == [4000]
        assert [c.amount_cents for c in provider.calls_for("transfer")] == [6000]

    def test_payout_never_exceeds_hold(self, service, provider, disputed_record, admin_user):
        policy = CustomSplit(refund_to_seller=Decimal("40.00"), pay_to_buyer=Decimal("60.00"))
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.resolve_dispute(disputed_record.id, admin_user, policy)
        EscrowRecord.objects.filter(pk=disputed_record.pk).update(metadata={})

        # 40 refunded + 100 released would take 140 out of a 115 hold
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.resolve_dispute(disputed_record.id, admin_user, FavorBuyer())

        assert exc_info.value.guard == "exceeds_held_amount"
        assert Decimal(exc_info.value.details["paid_out"]) == Decimal("40.00")
        assert provider.calls_for("transfer") == []


# =============================================================================
# Admin Override
# =============================================================================


@pytest.mark.django_db
class TestForceRefund:
    """Tests for EscrowService.force_refund()."""

    @pytest.mark.parametrize(
        "fixture_name",
        ["held_record", "accepted_record", "awaiting_record", "disputed_record"],
    )
    def test_refunds_total(self, request, service, provider, admin_user, fixture_name):
        record = request.getfixturevalue(fixture_name)

        service.force_refund(record.id, admin_user, "Fraud suspected")

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.refunded_amount == Decimal("115.00")
        assert fresh.cancel_reason == CancelReason.ADMIN_FORCE_REFUND
        assert "Fraud suspected" in fresh.notes
        assert [c.amount_cents for c in provider.calls_for("refund")] == [11500]

    def test_pending_without_hold(self, service, provider, pending_record, admin_user):
        service.force_refund(pending_record.id, admin_user, "Stuck record")

        fresh = fetch(pending_record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.refunded_amount == Decimal("0.00")
        assert fresh.refund_ref is None
        assert provider.calls == []

    def test_pending_with_recorded_hold(self, service, provider, pending_record, admin_user):
        ProviderCall.objects.create(
            escrow=pending_record,
            action=EscrowAction.CREATE,
            operation=ProviderOperation.HOLD,
            attempt=1,
            idempotency_key="create-hold:x:1:abcd1234",
            amount=Decimal("115.00"),
            succeeded=True,
            provider_ref="pi_orphan",
        )

        service.force_refund(pending_record.id, admin_user, "Hold saved but state lost")

        [refund] = provider.calls_for("refund")
        assert refund.target == "pi_orphan"
        assert refund.amount_cents == 11500
        assert fetch(pending_record).refunded_amount == Decimal("115.00")

    def test_terminal_record_rejected(self, service, provider, awaiting_record, seller, admin_user):
        service.confirm(awaiting_record.id, seller)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.force_refund(awaiting_record.id, admin_user, "too late")

        assert exc_info.value.guard == "status"
        assert provider.calls_for("refund") == []

    def test_non_admin_rejected(self, service, held_record, regular_user):
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.force_refund(held_record.id, regular_user, "x")

        assert exc_info.value.guard == "caller_is_admin"

    def test_unblocks_interrupted_cancellation(
        self, service, provider, clock, accepted_record, seller, admin_user
    ):
        # 3h before service: 50 refunded, then the compensation transfer fails
        clock.advance(hours=69)
        provider.fail_next("transfer", StripeInvalidAccountError("Account closed"))
        with pytest.raises(StripeInvalidAccountError):
            service.cancel_by_seller(accepted_record.id, seller)

        service.force_refund(accepted_record.id, admin_user, "Buyer account closed")

        fresh = fetch(accepted_record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.in_flight_action is None
        assert fresh.refunded_amount == Decimal("115.00")
        assert "pending_split" not in fresh.metadata
        assert "Abandoned unfinished 'cancel_after_accept'" in fresh.notes
        # Only what was left of the hold is refunded the second time
        assert [c.amount_cents for c in provider.calls_for("refund")] == [5000, 6500]
        assert provider.calls_for("transfer") == []
        fresh.check_invariants()

    def test_keeps_transfer_of_interrupted_release(
        self, service, provider, clock, awaiting_record, admin_user, no_persist_backoff, mocker
    ):
        clock.advance(hours=25)
        save = mocker.patch.object(EscrowRecord, "save", side_effect=DatabaseError("disk full"))
        with pytest.raises(InconsistentStateError):
            service.release(awaiting_record.id)
        mocker.stop(save)

        service.force_refund(awaiting_record.id, admin_user, "Close it out")

        fresh = fetch(awaiting_record)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.refunded_amount == Decimal("15.00")
        assert fresh.compensation_amount == Decimal("100.00")
        assert [c.amount_cents for c in provider.calls_for("transfer")] == [10000]
        assert [c.amount_cents for c in provider.calls_for("refund")] == [1500]
        fresh.check_invariants()


# =============================================================================
# Provider Failures & Retries
# =============================================================================


@pytest.mark.django_db
class TestProviderFailures:
    """Failed provider calls leave the status unchanged and are audited."""

    def test_failed_transfer_leaves_status(self, service, provider, clock, awaiting_record):
        clock.advance(hours=25)
        provider.fail_next("transfer", StripeAPIUnavailableError("Service unavailable"))

        with pytest.raises(StripeAPIUnavailableError) as exc_info:
            service.release(awaiting_record.id)

        assert exc_info.value.operation == ProviderOperation.TRANSFER
        assert exc_info.value.attempt == 1
        fresh = fetch(awaiting_record)
        assert fresh.status == EscrowStatus.AWAITING_VALIDATION
        assert fresh.transfer_ref is None

        [call] = ProviderCall.objects.filter(
            escrow=awaiting_record, operation=ProviderOperation.TRANSFER
        )
        assert call.succeeded is False
        assert call.retryable is True
        assert call.error_code == "STRIPE_UNAVAILABLE"
        assert call.error_message == "Service unavailable"

    def test_timeout_retry_reuses_idempotency_key(
        self, service, provider, clock, awaiting_record
    ):
        clock.advance(hours=25)
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))

        with pytest.raises(StripeTimeoutError):
            service.release(awaiting_record.id)
        service.release(awaiting_record.id)

        transfer_keys = [key for key in provider.attempted_keys if "-transfer:" in key]
        assert len(transfer_keys) == 2
        assert transfer_keys[0] == transfer_keys[1]
        assert transfer_keys[0].startswith(f"release-transfer:{awaiting_record.pk}:1:")
        assert fetch(awaiting_record).status == EscrowStatus.COMPLETED

    def test_permanent_failure_changes_idempotency_key(
        self, service, provider, clock, awaiting_record
    ):
        clock.advance(hours=25)
        provider.fail_next("transfer", StripeInvalidAccountError("Account closed"))

        with pytest.raises(StripeInvalidAccountError):
            service.release(awaiting_record.id)
        service.release(awaiting_record.id)

        transfer_keys = [key for key in provider.attempted_keys if "-transfer:" in key]
        assert transfer_keys[0] != transfer_keys[1]
        assert f":{awaiting_record.pk}:2:" in transfer_keys[1]

    def test_interrupted_cancellation_resumes_without_repeating_refund(
        self, service, provider, clock, accepted_record, seller, buyer
    ):
        clock.advance(hours=69)
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))

        with pytest.raises(StripeTimeoutError):
            service.cancel_by_seller(accepted_record.id, seller)

        interrupted = fetch(accepted_record)
        assert interrupted.status == EscrowStatus.HELD
        assert interrupted.in_flight_action == EscrowAction.CANCEL_AFTER_ACCEPT
        assert len(provider.calls_for("refund")) == 1

        # Nothing else may run until the cancellation completes
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.mark_completed(accepted_record.id, buyer)
        assert exc_info.value.guard == "provider_operation_in_progress"

        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.in_flight_action is None
        assert len(provider.calls_for("refund")) == 1
        assert len(provider.calls_for("transfer")) == 1
        assert fresh.refund_ref == provider.calls_for("refund")[0].provider_ref

    def test_interrupted_cancellation_keeps_first_tier(
        self, service, provider, clock, accepted_record, seller
    ):
        # 7h before service: 70 refund / 30 compensation
        clock.advance(hours=65)
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.cancel_by_seller(accepted_record.id, seller)

        interrupted = fetch(accepted_record)
        assert interrupted.metadata["pending_split"]["tier"] == "6h_to_24h"

        # 5h before service a fresh cancellation would split 50 / 50
        clock.advance(hours=2)
        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("70.00")
        assert fresh.compensation_amount == Decimal("30.00")
        assert "(6h_to_24h)" in fresh.notes
        assert "pending_split" not in fresh.metadata
        assert [c.amount_cents for c in provider.calls_for("refund")] == [7000]
        assert [c.amount_cents for c in provider.calls_for("transfer")] == [3000]

    def test_interrupted_cancellation_across_days(
        self, service, provider, clock, accepted_record, seller
    ):
        # 42h before service: 85 refund / 15 compensation
        clock.advance(hours=30)
        provider.fail_next("transfer", StripeAPIUnavailableError("Service unavailable"))
        with pytest.raises(StripeAPIUnavailableError):
            service.cancel_by_seller(accepted_record.id, seller)

        clock.advance(hours=40)
        service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(accepted_record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("85.00")
        assert fresh.compensation_amount == Decimal("15.00")
        fresh.check_invariants()

    def test_recorded_leg_with_different_amount_rejected(
        self, service, provider, clock, accepted_record, seller
    ):
        clock.advance(hours=65)
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.cancel_by_seller(accepted_record.id, seller)
        # Flagged before the split was kept on the record
        EscrowRecord.objects.filter(pk=accepted_record.pk).update(metadata={})

        clock.advance(hours=2)
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.cancel_by_seller(accepted_record.id, seller)

        assert exc_info.value.guard == "in_flight_amount_mismatch"
        assert len(provider.calls_for("refund")) == 1

    def test_interrupted_cancellation_resumes_within_same_tier(
        self, service, provider, clock, accepted_record, seller
    ):
        clock.advance(hours=65)
        provider.fail_next("transfer", StripeTimeoutError("Request timed out"))
        with pytest.raises(StripeTimeoutError):
            service.cancel_by_seller(accepted_record.id, seller)

        clock.advance(minutes=30)
        record = service.cancel_by_seller(accepted_record.id, seller)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.PARTIAL_REFUND
        assert fresh.refunded_amount == Decimal("70.00")
        assert fresh.compensation_amount == Decimal("30.00")


@pytest.mark.django_db
class TestPersistenceFailures:
    """Money moved but the new state cannot be saved."""

    def test_manual_reconciliation_required(
        self, service, provider, clock, awaiting_record, no_persist_backoff, mocker
    ):
        clock.advance(hours=25)
        mock_logger = mocker.patch("escrow.services.escrow_service.logger")
        save = mocker.patch.object(EscrowRecord, "save", side_effect=DatabaseError("disk full"))

        with pytest.raises(InconsistentStateError) as exc_info:
            service.release(awaiting_record.id)

        assert exc_info.value.error_code == "MANUAL_RECONCILIATION_REQUIRED"
        [transfer] = provider.calls_for("transfer")
        assert exc_info.value.details["provider_refs"] == [transfer.provider_ref]
        assert save.call_count == 3
        assert no_persist_backoff.call_count == 2
        assert mock_logger.critical.called

        fresh = EscrowRecord.objects.get(pk=awaiting_record.pk)
        assert fresh.status == EscrowStatus.AWAITING_VALIDATION
        assert fresh.in_flight_action == EscrowAction.RELEASE
        assert ProviderCall.objects.filter(
            escrow=awaiting_record, succeeded=True, operation=ProviderOperation.TRANSFER
        ).exists()

    def test_recovery_reuses_recorded_transfer(
        self, service, provider, clock, awaiting_record, no_persist_backoff, mocker
    ):
        clock.advance(hours=25)
        save = mocker.patch.object(EscrowRecord, "save", side_effect=DatabaseError("disk full"))
        with pytest.raises(InconsistentStateError):
            service.release(awaiting_record.id)
        mocker.stop(save)

        record = service.release(awaiting_record.id)

        fresh = fetch(record)
        assert fresh.status == EscrowStatus.COMPLETED
        assert fresh.in_flight_action is None
        assert len(provider.calls_for("transfer")) == 1

    def test_save_failure_before_money_moved_propagates(
        self, service, provider, held_record, buyer, mocker
    ):
        mocker.patch.object(EscrowRecord, "save", side_effect=DatabaseError("disk full"))

        with pytest.raises(DatabaseError):
            service.accept(held_record.id, buyer)

        assert provider.calls_for("transfer") == []


# =============================================================================
# Queries
# =============================================================================


@pytest.mark.django_db
class TestQueries:
    def test_get(self, service, held_record):
        assert service.get(held_record.id).pk == held_record.pk

    def test_get_unknown(self, service):
        with pytest.raises(EscrowNotFoundError):
            service.get(uuid.uuid4())

    def test_for_seller_and_buyer(self, service, accepted_record, seller, buyer, other_party):
        assert list(service.for_seller(seller)) == [accepted_record]
        assert list(service.for_buyer(buyer)) == [accepted_record]
        assert list(service.for_buyer(other_party)) == []

    def test_awaiting_validation_for_seller(self, service, awaiting_record, seller):
        assert list(service.awaiting_validation_for_seller(seller)) == [awaiting_record]

    def test_expired_validations_uses_clock(self, service, clock, awaiting_record):
        assert service.expired_validations() == []

        clock.advance(hours=25)

        assert service.expired_validations() == [awaiting_record]
        assert service.expired_validations(limit=0) == []

    def test_stats(self, service, clock, awaiting_record, seller):
        service.confirm(awaiting_record.id, seller)

        stats = service.stats(start=clock.now() - timedelta(hours=1))

        assert stats["total"] == 1
        assert stats["by_status"]["completed"] == 1
        assert stats["total_commissions"] == Decimal("15.00")
        assert stats["commission_in_period"] == Decimal("15.00")
        assert service.stats(end=clock.now() - timedelta(hours=1))[
            "commission_in_period"
        ] == Decimal("0.00")


class TestServiceDefaults:
    def test_defaults_from_settings(self, settings):
        settings.PLATFORM_FEE_PERCENT = 20
        settings.ESCROW_VALIDATION_WINDOW_HOURS = 48
        settings.ESCROW_PERSIST_ATTEMPTS = 0

        service = EscrowService(provider=object())

        assert service.commission_rate == Decimal("0.2")
        assert service.validation_window_hours == 48
        assert service.persist_attempts == 1
