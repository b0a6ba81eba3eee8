"""
Background workers for the escrow app.

Usage:
    from escrow.workers import run_auto_validations

    run_auto_validations.delay()
"""

from escrow.workers.auto_validation import (
    AutoValidationReconciler,
    AutoValidationResult,
    run_auto_validations,
)

__all__ = [
    "AutoValidationReconciler",
    "AutoValidationResult",
    "run_auto_validations",
]
