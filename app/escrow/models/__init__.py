"""
Escrow models.

Usage:
    from escrow.models import EscrowRecord, Party, ProviderCall
"""

from escrow.models.escrow_record import EscrowRecord
from escrow.models.party import Party
from escrow.models.provider_call import ProviderCall

__all__ = [
    "EscrowRecord",
    "Party",
    "ProviderCall",
]
