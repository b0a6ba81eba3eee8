"""
State machine enums for the escrow app.

Usage:
    from escrow.state_machines import EscrowStatus, CancelReason
"""

from escrow.state_machines.states import (
    TERMINAL_STATUSES,
    CancelReason,
    EscrowAction,
    EscrowStatus,
    JobPaymentStatus,
    PartyRole,
    ProviderOperation,
)

__all__ = [
    "TERMINAL_STATUSES",
    "CancelReason",
    "EscrowAction",
    "EscrowStatus",
    "JobPaymentStatus",
    "PartyRole",
    "ProviderOperation",
]
