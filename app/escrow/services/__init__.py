"""
Escrow services.

Usage:
    from escrow.services import EscrowService, FavorSeller, CustomSplit
"""

from escrow.services.escrow_service import EscrowService
from escrow.services.split_policies import (
    CustomSplit,
    DisputeSplit,
    FavorBuyer,
    FavorSeller,
    SplitPolicy,
)

__all__ = [
    "CustomSplit",
    "DisputeSplit",
    "EscrowService",
    "FavorBuyer",
    "FavorSeller",
    "SplitPolicy",
]
