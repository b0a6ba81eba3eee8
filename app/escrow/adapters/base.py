"""
Payment provider contract used by the escrow service.

The escrow service moves money only through these three primitives.
Every call carries an idempotency key: repeating a call with the same key
must return the original result instead of moving money again.

Implementations raise PaymentProviderError (or a subclass) on failure,
preserving the provider's raw message in provider_message.

Usage:
    class SandboxProvider(PaymentProvider):
        def hold(self, amount_cents, currency, payer, metadata, idempotency_key,
                 payment_method_id=None):
            ...

    service = EscrowService(provider=SandboxProvider())
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from escrow.models import Party


class PaymentProvider(ABC):
    """
    Abstract payment provider.

    All amounts are integer minor units (cents).
    """

    @abstractmethod
    def hold(
        self,
        amount_cents: int,
        currency: str,
        payer: Party,
        metadata: dict[str, str],
        idempotency_key: str,
        payment_method_id: str | None = None,
    ) -> str:
        """
        Charge the payer and keep the funds on the platform.

        Args:
            amount_cents: Amount to hold
            currency: ISO 4217 currency code
            payer: Party whose saved payment method is charged
            metadata: Key-value pairs attached to the provider object
            idempotency_key: Key for safe retries
            payment_method_id: Overrides the payer's default payment method

        Returns:
            Provider reference of the hold
        """

    @abstractmethod
    def transfer(
        self,
        amount_cents: int,
        currency: str,
        payee: Party,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """
        Send held funds to the payee's payout account.

        Returns:
            Provider reference of the transfer
        """

    @abstractmethod
    def refund(
        self,
        hold_ref: str,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """
        Return (part of) a hold to the payer.

        Returns:
            Provider reference of the refund
        """
