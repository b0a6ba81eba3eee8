"""
Amount calculator for escrow payments.

Pure functions, no state and no database access. All amounts are Decimals
with two fraction digits; conversion to provider minor units (cents) happens
only at the provider edge through to_minor_units().

Amounts:
    commission = round(base x rate, 2)   (ROUND_HALF_UP)
    total      = base + commission

Cancellation tiers (seller cancels after a buyer committed):
    hours until service   compensation to buyer
    > 48                  0
    (24, 48]              min(15.00, 15% of base)
    (6, 24]               min(30.00, 30% of base)
    <= 6                  50% of base

    refund to seller = base - compensation
    platform keeps   = commission (every tier)

Each tier includes its upper bound: exactly 48h falls in the 24-48h tier,
exactly 24h in the 6-24h tier and exactly 6h in the under-6h tier.

Usage:
    from escrow.calculator import calculate_amounts, calculate_cancellation_split

    amounts = calculate_amounts(Decimal("100.00"))
    # EscrowAmounts(base=100.00, commission=15.00, total=115.00)

    split = calculate_cancellation_split(
        amounts.base, amounts.total, amounts.commission, hours_until_service=3
    )
    # refund_to_seller=50.00, compensation_to_buyer=50.00, platform_keeps=15.00
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.conf import settings

from escrow.exceptions import EscrowValidationError

if TYPE_CHECKING:
    from datetime import datetime


# =============================================================================
# Constants
# =============================================================================

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
SECONDS_PER_HOUR = Decimal("3600")


# =============================================================================
# Helpers
# =============================================================================


def quantize_amount(value: Decimal | int | str) -> Decimal:
    """
    Round a monetary value to two fraction digits (half up).

    Raises:
        EscrowValidationError: If the value is not a finite number
    """
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise EscrowValidationError(
            f"Invalid monetary amount: {value!r}",
            details={"value": str(value)},
        ) from e
    if not amount.is_finite():
        raise EscrowValidationError(
            f"Invalid monetary amount: {value!r}",
            details={"value": str(value)},
        )
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def default_commission_rate() -> Decimal:
    """Commission rate from settings.PLATFORM_FEE_PERCENT (15 -> 0.15)."""
    return Decimal(settings.PLATFORM_FEE_PERCENT) / HUNDRED


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a two-digit Decimal amount to provider minor units (cents).

    Example:
        to_minor_units(Decimal("115.00"))  # 11500
    """
    return int((quantize_amount(amount) * HUNDRED).to_integral_value(ROUND_HALF_UP))


def hours_between(start: datetime, end: datetime) -> Decimal:
    """Signed number of hours from start to end."""
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_HOUR


def validation_deadline_for(
    marked_completed_at: datetime,
    window_hours: int | None = None,
) -> datetime:
    """
    Deadline after which an escrow awaiting validation may be auto-released.

    Args:
        marked_completed_at: When the buyer marked the job complete
        window_hours: Validation window (default ESCROW_VALIDATION_WINDOW_HOURS)
    """
    if window_hours is None:
        window_hours = settings.ESCROW_VALIDATION_WINDOW_HOURS
    return marked_completed_at + timedelta(hours=window_hours)


# =============================================================================
# Escrow Amounts
# =============================================================================


@dataclass(frozen=True)
class EscrowAmounts:
    """Base price, platform commission and total held from the seller."""

    base: Decimal
    commission: Decimal
    total: Decimal


def calculate_amounts(
    base_price: Decimal | int | str,
    commission_rate: Decimal | None = None,
) -> EscrowAmounts:
    """
    Split a job price into base, commission and total.

    Args:
        base_price: Job price (must be > 0)
        commission_rate: Fraction of the base taken as commission
            (default from PLATFORM_FEE_PERCENT)

    Returns:
        EscrowAmounts with total == base + commission

    Raises:
        EscrowValidationError: If the price is not positive or the rate
            is outside [0, 1)
    """
    base = quantize_amount(base_price)
    if base <= ZERO:
        raise EscrowValidationError(
            "Job price must be positive",
            details={"base_price": str(base_price)},
        )

    rate = default_commission_rate() if commission_rate is None else Decimal(commission_rate)
    if rate < 0 or rate >= 1:
        raise EscrowValidationError(
            "Commission rate must be between 0 and 1",
            details={"commission_rate": str(rate)},
        )

    commission = quantize_amount(base * rate)
    return EscrowAmounts(base=base, commission=commission, total=base + commission)


# =============================================================================
# Cancellation Split
# =============================================================================


@dataclass(frozen=True)
class CancellationTier:
    """
    One step of the cancellation penalty schedule.

    The tier applies when hours_until_service > above_hours
    (above_hours=None matches everything left).

    Attributes:
        name: Identifier recorded in logs and notes
        above_hours: Exclusive lower bound in hours
        percent: Share of the base paid to the buyer
        cap: Maximum compensation, None for uncapped
    """

    name: str
    above_hours: Decimal | None
    percent: Decimal
    cap: Decimal | None = None

    def matches(self, hours_until_service: Decimal) -> bool:
        return self.above_hours is None or hours_until_service > self.above_hours

    def compensation_for(self, base: Decimal) -> Decimal:
        compensation = quantize_amount(base * self.percent)
        if self.cap is not None:
            compensation = min(compensation, self.cap)
        return compensation


CANCELLATION_TIERS: tuple[CancellationTier, ...] = (
    CancellationTier("more_than_48h", above_hours=Decimal("48"), percent=Decimal("0")),
    CancellationTier(
        "24h_to_48h",
        above_hours=Decimal("24"),
        percent=Decimal("0.15"),
        cap=Decimal("15.00"),
    ),
    CancellationTier(
        "6h_to_24h",
        above_hours=Decimal("6"),
        percent=Decimal("0.30"),
        cap=Decimal("30.00"),
    ),
    CancellationTier("less_than_6h", above_hours=None, percent=Decimal("0.50")),
)


@dataclass(frozen=True)
class CancellationSplit:
    """
    Outcome of a seller cancellation after acceptance.

    refund_to_seller + compensation_to_buyer == base, platform_keeps ==
    commission, so refund_to_seller + compensation_to_buyer + platform_keeps
    == total.
    """

    tier: str
    refund_to_seller: Decimal
    compensation_to_buyer: Decimal
    platform_keeps: Decimal


def select_tier(
    hours_until_service: Decimal | float | int,
    tiers: tuple[CancellationTier, ...] = CANCELLATION_TIERS,
) -> CancellationTier:
    """Return the first tier matching hours_until_service."""
    hours = Decimal(str(hours_until_service))
    for tier in tiers:
        if tier.matches(hours):
            return tier
    # The last tier is open-ended, so this is a malformed schedule
    raise EscrowValidationError(
        "No cancellation tier matches",
        details={"hours_until_service": str(hours)},
    )


def calculate_cancellation_split(
    base_amount: Decimal,
    total_amount: Decimal,
    commission_amount: Decimal,
    hours_until_service: Decimal | float | int,
    tiers: tuple[CancellationTier, ...] = CANCELLATION_TIERS,
) -> CancellationSplit:
    """
    Compute the penalty split for a seller cancellation.

    The refund is derived by subtraction from the already-rounded
    compensation, so the two parts always add back to the base exactly.

    Args:
        base_amount: Job price held for the buyer
        total_amount: Amount held from the seller (base + commission)
        commission_amount: Platform commission
        hours_until_service: Hours from now until the scheduled service
            (negative when the service time has passed)
        tiers: Penalty schedule, ordered from the earliest cancellation

    Raises:
        EscrowValidationError: If the amounts are inconsistent
    """
    base = quantize_amount(base_amount)
    commission = quantize_amount(commission_amount)
    if quantize_amount(total_amount) != base + commission:
        raise EscrowValidationError(
            "Total must equal base plus commission",
            details={
                "base_amount": str(base),
                "commission_amount": str(commission),
                "total_amount": str(total_amount),
            },
        )

    tier = select_tier(hours_until_service, tiers)
    compensation = tier.compensation_for(base)
    return CancellationSplit(
        tier=tier.name,
        refund_to_seller=base - compensation,
        compensation_to_buyer=compensation,
        platform_keeps=commission,
    )


__all__ = [
    "CANCELLATION_TIERS",
    "CancellationSplit",
    "CancellationTier",
    "EscrowAmounts",
    "calculate_amounts",
    "calculate_cancellation_split",
    "default_commission_rate",
    "hours_between",
    "quantize_amount",
    "select_tier",
    "to_minor_units",
    "validation_deadline_for",
]
