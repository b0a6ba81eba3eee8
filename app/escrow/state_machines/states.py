"""
State enums for escrow models.

These are Django TextChoices for database storage and admin integration.
EscrowStatus drives the django-fsm field on EscrowRecord.

EscrowRecord state machine:
    pending → held                     (hold succeeds)
    pending → failed                   (hold fails)
    held → held                        (buyer accepts / buyer abandons)
    held → awaiting_validation         (buyer marks the job complete)
    awaiting_validation → completed    (seller confirms or window lapses)
    awaiting_validation → disputed     (seller or buyer opens a dispute)
    held → refunded                    (seller cancels, no buyer)
    held → partial_refund              (seller cancels, buyer assigned)
    disputed → refunded | completed | partial_refund  (admin resolution)
    pending/held/awaiting_validation/disputed → refunded  (admin force refund)
"""

from django.db import models


class EscrowStatus(models.TextChoices):
    """
    States for the EscrowRecord lifecycle.

    Terminal states: COMPLETED, REFUNDED, PARTIAL_REFUND, FAILED.
    Terminal records are never deleted; they are kept for audit.
    """

    PENDING = "pending", "Pending"
    HELD = "held", "Held"
    AWAITING_VALIDATION = "awaiting_validation", "Awaiting Validation"
    COMPLETED = "completed", "Completed"
    DISPUTED = "disputed", "Disputed"
    REFUNDED = "refunded", "Refunded"
    PARTIAL_REFUND = "partial_refund", "Partial Refund"
    FAILED = "failed", "Failed"


TERMINAL_STATUSES = frozenset(
    {
        EscrowStatus.COMPLETED,
        EscrowStatus.REFUNDED,
        EscrowStatus.PARTIAL_REFUND,
        EscrowStatus.FAILED,
    }
)


class CancelReason(models.TextChoices):
    """Why an escrow ended in a refund or partial refund."""

    SELLER_BEFORE_ACCEPT = "seller_before_accept", "Seller cancelled before acceptance"
    SELLER_AFTER_ACCEPT = "seller_after_accept", "Seller cancelled after acceptance"
    DISPUTE = "dispute", "Dispute resolution"
    ADMIN_FORCE_REFUND = "admin_force_refund", "Admin forced refund"


class PartyRole(models.TextChoices):
    """Role a caller must hold for a transition."""

    SELLER = "seller", "Seller"
    BUYER = "buyer", "Buyer"
    PARTICIPANT = "participant", "Seller or buyer"
    ADMIN = "admin", "Admin"
    SYSTEM = "system", "System"


class EscrowAction(models.TextChoices):
    """
    Logical operations of the escrow service.

    Provider calls are logged per (action, operation) leg so a retried
    action never repeats a leg that already moved money.
    """

    CREATE = "create", "Create"
    ACCEPT = "accept", "Accept"
    ABANDON = "abandon", "Abandon"
    MARK_COMPLETED = "mark_completed", "Mark completed"
    CONFIRM = "confirm", "Confirm"
    RELEASE = "release", "Release"
    CANCEL_BEFORE_ACCEPT = "cancel_before_accept", "Cancel before acceptance"
    CANCEL_AFTER_ACCEPT = "cancel_after_accept", "Cancel after acceptance"
    OPEN_DISPUTE = "open_dispute", "Open dispute"
    RESOLVE_DISPUTE = "resolve_dispute", "Resolve dispute"
    FORCE_REFUND = "force_refund", "Force refund"


class ProviderOperation(models.TextChoices):
    """Payment provider primitives."""

    HOLD = "hold", "Hold"
    TRANSFER = "transfer", "Transfer"
    REFUND = "refund", "Refund"


class JobPaymentStatus(models.TextChoices):
    """
    Payment status fact for the job collaborator.

    The escrow engine never mutates the job; callers propagate this value
    to their job record after each operation.
    """

    PENDING = "pending", "Pending"
    SECURED = "secured", "Secured"
    AWAITING_VALIDATION = "awaiting_validation", "Awaiting Validation"
    PAID = "paid", "Paid"
    REFUNDED = "refunded", "Refunded"
    PARTIAL_REFUND = "partial_refund", "Partial Refund"
    DISPUTED = "disputed", "Disputed"
    FAILED = "failed", "Failed"
