"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for the escrow domain)
    ├── EscrowNotFoundError - No such escrow record
    ├── EscrowValidationError - Malformed input (price, split amounts)
    └── InconsistentStateError - An escrow invariant would be violated, or
                                 money moved but the new state was not saved

    InvalidTransitionError - Guard failed: wrong status or wrong caller role
    StaleRecordError - Optimistic locking conflict
    LockAcquisitionError - Distributed lock held by another process

    PaymentProviderError - Wrapped provider failure (raw message preserved)
    └── StripeError - Base for all Stripe errors
        ├── StripeCardDeclinedError - Card declined (permanent)
        ├── StripeInsufficientFundsError - Insufficient funds (permanent)
        ├── StripeInvalidAccountError - Invalid Connect account (permanent)
        ├── StripeInvalidRequestError - Invalid request params (permanent)
        ├── StripeHoldNotConfirmedError - Hold needs customer action (permanent)
        ├── StripeRateLimitError - Rate limited (transient)
        ├── StripeAPIUnavailableError - API unavailable (transient)
        └── StripeTimeoutError - Request timeout (transient)

Recovery policy:
    InvalidTransitionError and EscrowNotFoundError are user-facing and never
    retried automatically. PaymentProviderError may be retried by the caller;
    each retry is logged as a separate provider call attempt.
    InconsistentStateError is fatal to the operation and always logged at
    critical severity.

Usage:
    from escrow.exceptions import InvalidTransitionError

    try:
        service.release(escrow_id)
    except InvalidTransitionError as e:
        return JsonResponse(e.to_dict(), status=409)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """Base exception for escrow domain errors."""

    default_error_code: str = "ESCROW_ERROR"


class EscrowNotFoundError(EscrowError, NotFoundError):
    """
    Raised when an escrow record cannot be found.

    Example:
        raise EscrowNotFoundError(
            f"Escrow {escrow_id} not found",
            details={"escrow_id": str(escrow_id)},
        )
    """

    default_error_code: str = "ESCROW_NOT_FOUND"


class EscrowValidationError(EscrowError, ValidationError):
    """
    Raised when input to an escrow operation is malformed.

    Use for non-positive prices, negative split amounts, or a cancellation
    whose service time cannot be determined.
    """

    default_error_code: str = "ESCROW_VALIDATION_ERROR"


class InconsistentStateError(EscrowError):
    """
    Raised when an escrow invariant would be violated.

    Treated as a programming-logic bug: the operation is aborted and the
    error is logged at critical severity. The same class, with error code
    MANUAL_RECONCILIATION_REQUIRED, reports that the provider moved money
    but the resulting state could not be persisted.
    """

    default_error_code: str = "INCONSISTENT_STATE"

    MANUAL_RECONCILIATION_REQUIRED = "MANUAL_RECONCILIATION_REQUIRED"


# =============================================================================
# Transition & Concurrency Exceptions
# =============================================================================


class InvalidTransitionError(ConflictError):
    """
    Raised when a transition guard fails.

    The record is left untouched. details explains the rejection:
        action: the attempted operation
        guard: the failed guard (e.g. "status", "caller_is_seller")
        current_status: status of the record when the guard ran
        required_status: list of statuses that would have been accepted
        required_role: role the caller needed (seller, buyer, admin, ...)

    Example:
        raise InvalidTransitionError(
            "Only the seller can confirm completion",
            details={
                "action": "confirm",
                "guard": "caller_is_seller",
                "current_status": "awaiting_validation",
                "required_status": ["awaiting_validation"],
                "required_role": "seller",
            },
        )
    """

    default_error_code: str = "INVALID_TRANSITION"

    @property
    def guard(self) -> str | None:
        """Name of the guard that rejected the transition."""
        return self.details.get("guard")


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects a concurrent modification.

    The record was saved by another writer between our read and our write.
    details contains pk, expected_version and current_version.
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    details contains the lock key (and timeout in blocking mode).
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Payment Provider Exceptions
# =============================================================================


class PaymentProviderError(ExternalServiceError):
    """
    Wrapped payment provider failure.

    Attributes:
        provider_message: Raw message returned by the provider, kept for audit
        provider_code: Provider error code, when available
        is_retryable: True for transient failures (timeouts, rate limits)
        operation: Provider primitive that failed (hold, transfer, refund)
        attempt: Attempt number of the failed call for this escrow leg

    A failed provider call leaves the escrow status unchanged.
    """

    default_error_code: str = "PAYMENT_PROVIDER_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_message: str | None = None,
        provider_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider_message = provider_message or message
        self.provider_code = provider_code
        self.operation: str | None = None
        self.attempt: int | None = None


class StripeError(PaymentProviderError):
    """
    Base exception for all Stripe-related errors.

    Attributes:
        stripe_code: Stripe's error code
        decline_code: Card decline code (if applicable)
    """

    default_error_code: str = "STRIPE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        provider_message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(
            message,
            error_code=error_code,
            provider_message=provider_message,
            provider_code=stripe_code,
            details=details,
        )
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(StripeError):
    """Card was declined by the issuing bank. See decline_code."""

    default_error_code: str = "CARD_DECLINED"


class StripeInsufficientFundsError(StripeError):
    """
    Insufficient funds on the payment method, or on the platform balance
    for a transfer.
    """

    default_error_code: str = "INSUFFICIENT_FUNDS"


class StripeInvalidAccountError(StripeError):
    """
    Destination Connect account cannot receive the transfer.

    Requires the buyer to finish payout onboarding before a retry can work.
    """

    default_error_code: str = "INVALID_STRIPE_ACCOUNT"


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe.

    Usually a bug (e.g. refund larger than the captured amount); log for
    developer investigation.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"


class StripeHoldNotConfirmedError(StripeError):
    """
    The hold PaymentIntent did not reach 'succeeded' (e.g. 3-D Secure is
    required). The seller must act before publishing again.
    """

    default_error_code: str = "HOLD_NOT_CONFIRMED"


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with the same idempotency key)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Rate limited by the Stripe API."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """Network error or Stripe server error (5xx)."""

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe API call timed out.

    The operation may have succeeded on Stripe's side. The escrow transition
    fails closed; a retry reuses the same idempotency key so Stripe returns
    the original result instead of moving money twice.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Escrow domain
    "EscrowError",
    "EscrowNotFoundError",
    "EscrowValidationError",
    "InconsistentStateError",
    # Transitions & concurrency
    "InvalidTransitionError",
    "StaleRecordError",
    "LockAcquisitionError",
    # Provider
    "PaymentProviderError",
    "StripeError",
    "StripeCardDeclinedError",
    "StripeInsufficientFundsError",
    "StripeInvalidAccountError",
    "StripeInvalidRequestError",
    "StripeHoldNotConfirmedError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
]
