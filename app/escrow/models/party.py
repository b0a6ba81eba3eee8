"""
Party model: a marketplace participant acting as seller or buyer.

A Party carries the payment-provider identifiers the escrow engine needs:
a Stripe Customer with a saved payment method (to hold funds as a seller)
and a Stripe Connect account with payouts enabled (to receive funds as a
buyer). The marketplace's own user/profile model stays outside the engine;
external_ref links back to it.

Usage:
    from escrow.models import Party

    seller = Party.objects.create(
        external_ref="user:42",
        stripe_customer_id="cus_123",
        default_payment_method_id="pm_123",
    )
    if seller.has_payment_source:
        ...
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class Party(UUIDPrimaryKeyMixin, BaseModel):
    """
    A seller or buyer known to the escrow engine.

    Fields:
        external_ref: Identifier of the marketplace user (unique)
        display_name: Name used in notes and admin
        stripe_customer_id: Stripe Customer ID (cus_xxx) used for holds
        default_payment_method_id: Saved PaymentMethod (pm_xxx) for holds
        stripe_account_id: Stripe Connect account (acct_xxx) for payouts
        payouts_enabled: Whether Stripe has enabled payouts on the account

    Properties:
        has_payment_source: True if a hold can be placed for this party
        is_ready_for_payouts: True if transfers can be sent to this party
    """

    external_ref = models.CharField(
        max_length=255,
        unique=True,
        help_text="Identifier of the marketplace user this party represents",
    )

    display_name = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Human-readable name for notes and admin",
    )

    # ==========================================================================
    # Paying side (seller)
    # ==========================================================================

    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Customer ID (cus_xxx)",
    )

    default_payment_method_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Saved Stripe PaymentMethod used for holds (pm_xxx)",
    )

    # ==========================================================================
    # Receiving side (buyer)
    # ==========================================================================

    stripe_account_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Connect account ID (acct_xxx)",
    )

    payouts_enabled = models.BooleanField(
        default=False,
        help_text="Whether Stripe has enabled payouts for the Connect account",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Party"
        verbose_name_plural = "Parties"

    def __str__(self) -> str:
        return self.display_name or self.external_ref

    @property
    def has_payment_source(self) -> bool:
        """Whether a hold can be placed on this party's payment method."""
        return bool(self.stripe_customer_id)

    @property
    def is_ready_for_payouts(self) -> bool:
        """Whether this party can receive transfers."""
        return bool(self.stripe_account_id) and self.payouts_enabled
