"""
Dispute split policies.

A dispute is resolved through one entry point, EscrowService.resolve_dispute,
parameterized by a split policy. A policy turns the disputed record into a
DisputeSplit: how much goes back to the seller and how much to the buyer.
What the platform keeps is whatever is left of the total.

Policies:
    FavorSeller  -> refund the full total (record ends REFUNDED)
    FavorBuyer   -> standard release of the base amount (record ends COMPLETED)
    CustomSplit  -> admin-chosen refund and payout (record ends PARTIAL_REFUND)

Usage:
    from escrow.services import CustomSplit

    service.resolve_dispute(escrow_id, admin, CustomSplit(
        refund_to_seller=Decimal("40.00"),
        pay_to_buyer=Decimal("60.00"),
    ))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow.calculator import ZERO, quantize_amount
from escrow.exceptions import EscrowValidationError, InvalidTransitionError
from escrow.state_machines import EscrowAction, EscrowStatus, PartyRole

if TYPE_CHECKING:
    from escrow.models import EscrowRecord


class Outcome:
    """Terminal outcome a split resolves to."""

    REFUND = "refund"
    RELEASE = "release"
    PARTIAL = "partial"


@dataclass(frozen=True)
class DisputeSplit:
    """Resolved amounts of a dispute."""

    outcome: str
    refund_to_seller: Decimal
    pay_to_buyer: Decimal


class SplitPolicy(ABC):
    """Strategy deciding how a disputed escrow is settled."""

    name: str = ""

    @abstractmethod
    def split(self, record: EscrowRecord) -> DisputeSplit:
        """Compute the settlement for `record`."""

    def describe(self) -> str:
        return self.name


class FavorSeller(SplitPolicy):
    """Seller gets the full total back."""

    name = "favor_seller"

    def split(self, record: EscrowRecord) -> DisputeSplit:
        return DisputeSplit(
            outcome=Outcome.REFUND,
            refund_to_seller=record.total_amount,
            pay_to_buyer=ZERO,
        )


class FavorBuyer(SplitPolicy):
    """Buyer is paid the base amount; the platform keeps its commission."""

    name = "favor_buyer"

    def split(self, record: EscrowRecord) -> DisputeSplit:
        return DisputeSplit(
            outcome=Outcome.RELEASE,
            refund_to_seller=ZERO,
            pay_to_buyer=record.base_amount,
        )


@dataclass(frozen=True)
class CustomSplit(SplitPolicy):
    """
    Admin-specified split.

    Both amounts must be non-negative and together may not exceed the
    record's total. Any remainder stays with the platform.
    """

    refund_to_seller: Decimal
    pay_to_buyer: Decimal

    name = "custom"

    def split(self, record: EscrowRecord) -> DisputeSplit:
        refund = quantize_amount(self.refund_to_seller)
        payout = quantize_amount(self.pay_to_buyer)

        if refund < ZERO or payout < ZERO:
            raise EscrowValidationError(
                "Split amounts cannot be negative",
                details={
                    "refund_to_seller": str(refund),
                    "pay_to_buyer": str(payout),
                },
            )

        if refund + payout > record.total_amount:
            raise InvalidTransitionError(
                f"Split of {refund + payout} exceeds the escrow total "
                f"{record.total_amount}",
                details={
                    "action": EscrowAction.RESOLVE_DISPUTE,
                    "guard": "split_within_total",
                    "current_status": record.status,
                    "required_status": [EscrowStatus.DISPUTED],
                    "required_role": PartyRole.ADMIN,
                    "refund_to_seller": str(refund),
                    "pay_to_buyer": str(payout),
                    "total_amount": str(record.total_amount),
                },
            )

        return DisputeSplit(
            outcome=Outcome.PARTIAL,
            refund_to_seller=refund,
            pay_to_buyer=payout,
        )

    def describe(self) -> str:
        return f"custom (seller {self.refund_to_seller}, buyer {self.pay_to_buyer})"
