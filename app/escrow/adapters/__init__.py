"""
Payment provider adapters for the escrow engine.

Usage:
    from escrow.adapters import StripePaymentProvider

    service = EscrowService(provider=StripePaymentProvider())
"""

from escrow.adapters.base import PaymentProvider
from escrow.adapters.stripe_adapter import (
    CreateHoldParams,
    IdempotencyKeyGenerator,
    PaymentIntentResult,
    RefundResult,
    StripeAdapter,
    StripePaymentProvider,
    TransferResult,
    backoff_delay,
    is_retryable_stripe_error,
)

__all__ = [
    "CreateHoldParams",
    "IdempotencyKeyGenerator",
    "PaymentIntentResult",
    "PaymentProvider",
    "RefundResult",
    "StripeAdapter",
    "StripePaymentProvider",
    "TransferResult",
    "backoff_delay",
    "is_retryable_stripe_error",
]
