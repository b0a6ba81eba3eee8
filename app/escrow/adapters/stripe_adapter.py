"""
Stripe API adapter for escrow payments.

All Stripe calls made by the escrow engine go through StripeAdapter so
timeouts, idempotency, error translation and logging are uniform.
StripePaymentProvider wraps the adapter behind the PaymentProvider
contract the escrow service depends on.

Escrow money flow on Stripe:
    hold     -> PaymentIntent confirmed off-session on the seller's saved
                card (automatic capture; funds land on the platform balance)
    transfer -> Transfer from the platform balance to the buyer's Connect
                account
    refund   -> Refund (full or partial) against the hold PaymentIntent

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK-level network retries (default: 0; retries are
  driven by the escrow service with stable idempotency keys)

Usage:
    from escrow.adapters import StripeAdapter, CreateHoldParams

    result = StripeAdapter.create_hold(
        CreateHoldParams(
            amount_cents=11500,
            currency="eur",
            customer_id="cus_123",
            payment_method_id="pm_123",
            idempotency_key="create-hold:<escrow_id>:1:a1b2c3d4",
        )
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from escrow.adapters.base import PaymentProvider
from escrow.exceptions import (
    PaymentProviderError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeError,
    StripeHoldNotConfirmedError,
    StripeInsufficientFundsError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

if TYPE_CHECKING:
    from escrow.models import Party


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CreateHoldParams:
    """
    Parameters for holding funds from a seller.

    Attributes:
        amount_cents: Amount in smallest currency unit
        currency: ISO 4217 currency code
        customer_id: Stripe Customer ID of the seller
        idempotency_key: Unique key for idempotent creation
        payment_method_id: Saved PaymentMethod to charge off-session
        metadata: Key-value pairs attached to the PaymentIntent
    """

    amount_cents: int
    currency: str
    customer_id: str
    idempotency_key: str
    payment_method_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.currency:
            raise ValueError("currency is required")
        if not self.customer_id:
            raise ValueError("customer_id is required")


@dataclass
class PaymentIntentResult:
    """
    Result of a hold.

    Attributes:
        id: PaymentIntent ID (pi_xxx)
        status: PaymentIntent status (succeeded after a confirmed hold)
        amount_cents: Amount in cents
        currency: Currency code
        metadata: Attached metadata
        raw_response: Full Stripe response dict
    """

    id: str
    status: str
    amount_cents: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransferResult:
    """Result of a transfer to a Connect account."""

    id: str
    amount_cents: int
    currency: str
    destination_account: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a refund against a hold."""

    id: str
    amount_cents: int
    currency: str
    status: str
    payment_intent_id: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{generation}:{hash}"

    The same inputs always give the same key, so a retry after a timeout
    reaches Stripe with the key of the original call. The generation is
    only bumped after a definitive (non-retryable) failure.

    Example:
        key = IdempotencyKeyGenerator.generate("release-transfer", escrow.id, 1)
        # "release-transfer:550e8400-e29b-41d4-a716-446655440000:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_stripe_error(error: Exception) -> bool:
    """True if the error is a transient provider failure."""
    if isinstance(error, PaymentProviderError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff delay with 0-25% jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Upper bound before jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for the Stripe operations the escrow engine needs.

    All methods are classmethods; no instance state is kept, so the adapter
    is safe to use from Celery workers.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure the Stripe client with API key, timeout and retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 0)
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Core Operations
    # =========================================================================

    @classmethod
    def create_hold(cls, params: CreateHoldParams) -> PaymentIntentResult:
        """
        Charge the seller's saved payment method off-session.

        The PaymentIntent is confirmed immediately. Anything but 'succeeded'
        (e.g. requires_action for 3-D Secure) counts as a failed hold.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeHoldNotConfirmedError: PaymentIntent did not succeed
            StripeRateLimitError, StripeAPIUnavailableError,
            StripeTimeoutError: Transient failures
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_hold",
            "amount_cents": params.amount_cents,
            "currency": params.currency,
            "idempotency_key": params.idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            intent_params: dict[str, Any] = {
                "amount": params.amount_cents,
                "currency": params.currency,
                "customer": params.customer_id,
                "metadata": params.metadata,
                "confirm": True,
                "off_session": True,
            }
            if params.payment_method_id:
                intent_params["payment_method"] = params.payment_method_id

            intent = stripe.PaymentIntent.create(
                idempotency_key=params.idempotency_key,
                **intent_params,
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000

        if intent.status != "succeeded":
            logger.warning(
                "Stripe hold not confirmed",
                extra={
                    **log_context,
                    "payment_intent_id": intent.id,
                    "status": intent.status,
                    "duration_ms": duration_ms,
                },
            )
            raise StripeHoldNotConfirmedError(
                f"PaymentIntent {intent.id} ended in status '{intent.status}'",
                stripe_code=intent.status,
                details={"payment_intent_id": intent.id},
            )

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": duration_ms,
            },
        )

        return PaymentIntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            metadata=dict(intent.metadata or {}),
            raw_response=intent.to_dict(),
        )

    @classmethod
    def create_transfer(
        cls,
        amount_cents: int,
        destination_account: str,
        idempotency_key: str,
        currency: str = "eur",
        metadata: dict[str, str] | None = None,
        source_transaction: str | None = None,
    ) -> TransferResult:
        """
        Transfer funds to a connected Stripe account.

        Args:
            amount_cents: Amount to transfer in cents
            destination_account: Stripe Connect account ID (acct_xxx)
            idempotency_key: Unique key for idempotent transfer
            currency: Currency code
            metadata: Optional metadata dict
            source_transaction: Charge the funds come from

        Raises:
            StripeInvalidAccountError: Invalid destination account
            StripeInsufficientFundsError: Insufficient platform balance
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_transfer",
            "amount_cents": amount_cents,
            "destination_account": destination_account,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            transfer_params: dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency,
                "destination": destination_account,
                "metadata": metadata or {},
            }
            if source_transaction:
                transfer_params["source_transaction"] = source_transaction

            transfer = stripe.Transfer.create(
                idempotency_key=idempotency_key,
                **transfer_params,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "transfer_id": transfer.id,
                    "duration_ms": duration_ms,
                },
            )

            return TransferResult(
                id=transfer.id,
                amount_cents=transfer.amount,
                currency=transfer.currency,
                destination_account=transfer.destination,
                metadata=dict(transfer.metadata or {}),
                raw_response=transfer.to_dict(),
            )

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    @classmethod
    def create_refund(
        cls,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund a hold, fully or partially.

        Args:
            payment_intent_id: Hold PaymentIntent ID (pi_xxx)
            idempotency_key: Unique key for idempotent refund
            amount_cents: Amount to refund (None for the full amount)
            metadata: Optional metadata dict

        Raises:
            StripeInvalidRequestError: Refund not possible
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_refund",
            "payment_intent_id": payment_intent_id,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            refund_params: dict[str, Any] = {
                "payment_intent": payment_intent_id,
                "metadata": metadata or {},
            }
            if amount_cents is not None:
                refund_params["amount"] = amount_cents

            refund = stripe.Refund.create(
                idempotency_key=idempotency_key,
                **refund_params,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "refund_id": refund.id,
                    "status": refund.status,
                    "duration_ms": duration_ms,
                },
            )

            return RefundResult(
                id=refund.id,
                amount_cents=refund.amount,
                currency=refund.currency,
                status=refund.status,
                payment_intent_id=refund.payment_intent,
                metadata=dict(refund.metadata or {}),
                raw_response=refund.to_dict(),
            )

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK exceptions to domain exceptions.

        The raw Stripe message is kept in provider_message for audit.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeInvalidAccountError: Invalid Connect account
            StripeInvalidRequestError: Invalid request parameters
            StripeRateLimitError: Rate limited
            StripeTimeoutError: Request timed out
            StripeAPIUnavailableError: API unavailable or unknown failure
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}
        raw_message = str(error)

        if isinstance(error, StripeError):
            # Already translated (e.g. hold not confirmed)
            raise error

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )

            if decline_code == "insufficient_funds":
                raise StripeInsufficientFundsError(
                    str(error.user_message or error),
                    stripe_code=error.code,
                    decline_code=decline_code,
                    provider_message=raw_message,
                ) from error

            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
                provider_message=raw_message,
            ) from error

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )

            if error.code == "balance_insufficient":
                raise StripeInsufficientFundsError(
                    raw_message,
                    stripe_code=error.code,
                    provider_message=raw_message,
                ) from error

            if "account" in raw_message.lower():
                raise StripeInvalidAccountError(
                    raw_message,
                    stripe_code=error.code,
                    provider_message=raw_message,
                ) from error

            raise StripeInvalidRequestError(
                raw_message,
                stripe_code=error.code,
                provider_message=raw_message,
            ) from error

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
                provider_message=raw_message,
            ) from error

        elif isinstance(error, stripe.APIConnectionError):
            lowered = raw_message.lower()
            if "timed out" in lowered or "timeout" in lowered:
                logger.error("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                    provider_message=raw_message,
                ) from error

            logger.error(
                "Connection error to Stripe",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
                provider_message=raw_message,
            ) from error

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
                provider_message=raw_message,
            ) from error

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
                provider_message=raw_message,
            ) from error

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                f"Unexpected Stripe error: {error}",
                stripe_code="unknown_error",
                provider_message=raw_message,
            ) from error


# =============================================================================
# PaymentProvider implementation
# =============================================================================


class StripePaymentProvider(PaymentProvider):
    """
    PaymentProvider backed by Stripe.

    Sellers pay with their Stripe Customer's saved payment method; buyers
    are paid on their Stripe Connect account.
    """

    def hold(
        self,
        amount_cents: int,
        currency: str,
        payer: Party,
        metadata: dict[str, str],
        idempotency_key: str,
        payment_method_id: str | None = None,
    ) -> str:
        result = StripeAdapter.create_hold(
            CreateHoldParams(
                amount_cents=amount_cents,
                currency=currency,
                customer_id=payer.stripe_customer_id,
                payment_method_id=payment_method_id or payer.default_payment_method_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        )
        return result.id

    def transfer(
        self,
        amount_cents: int,
        currency: str,
        payee: Party,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        if not payee.stripe_account_id:
            raise StripeInvalidAccountError(
                f"Party {payee.pk} has no Stripe Connect account",
                details={"party_id": str(payee.pk)},
            )
        result = StripeAdapter.create_transfer(
            amount_cents=amount_cents,
            destination_account=payee.stripe_account_id,
            idempotency_key=idempotency_key,
            currency=currency,
            metadata=metadata,
        )
        return result.id

    def refund(
        self,
        hold_ref: str,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        result = StripeAdapter.create_refund(
            payment_intent_id=hold_ref,
            idempotency_key=idempotency_key,
            amount_cents=amount_cents,
            metadata=metadata,
        )
        return result.id
