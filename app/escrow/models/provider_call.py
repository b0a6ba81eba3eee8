"""
ProviderCall: audit log of every payment provider call.

One row per attempt. Rows of failed attempts are committed even though the
escrow transition itself is rolled back, so retries stay distinguishable
from the original attempt. A successful row is the source of truth that a
leg (action + operation) already moved money: a retried action reuses its
provider_ref instead of calling the provider again.
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import EscrowAction, ProviderOperation


class ProviderCallQuerySet(models.QuerySet):
    """Lookups over the provider call log."""

    def for_leg(self, escrow, action: str, operation: str) -> ProviderCallQuerySet:
        return self.filter(escrow=escrow, action=action, operation=operation)

    def succeeded(self) -> ProviderCallQuerySet:
        return self.filter(succeeded=True)

    def paid_out(self, escrow, operations: list[str] | None = None) -> Decimal:
        """Sum of succeeded refunds and transfers taken from an escrow's hold."""
        total = self.filter(
            escrow=escrow,
            succeeded=True,
            operation__in=operations
            or [ProviderOperation.REFUND, ProviderOperation.TRANSFER],
        ).aggregate(total=models.Sum("amount"))["total"]
        return total if total is not None else Decimal("0.00")


class ProviderCall(UUIDPrimaryKeyMixin, BaseModel):
    """
    A single hold, transfer or refund attempt for an escrow.

    Fields:
        escrow: Escrow the call was made for
        action: Escrow action that issued the call (release, cancel, ...)
        operation: Provider primitive (hold, transfer, refund)
        attempt: 1-based attempt number for this leg
        idempotency_key: Key sent to the provider; reused across transient
            failures so a timed-out call is never duplicated
        amount: Amount of the call in currency units
        succeeded: Whether the provider accepted the call
        provider_ref: Provider object ID (pi_xxx, tr_xxx, re_xxx)
        error_code: Domain error code of a failed call
        error_message: Raw provider message of a failed call
        retryable: Whether the failure was transient
    """

    escrow = models.ForeignKey(
        "escrow.EscrowRecord",
        on_delete=models.PROTECT,
        related_name="provider_calls",
    )

    action = models.CharField(max_length=32, choices=EscrowAction.choices)

    operation = models.CharField(max_length=16, choices=ProviderOperation.choices)

    attempt = models.PositiveIntegerField(default=1)

    idempotency_key = models.CharField(max_length=255)

    amount = models.DecimalField(max_digits=12, decimal_places=2)

    succeeded = models.BooleanField(default=False)

    provider_ref = models.CharField(max_length=255, null=True, blank=True)

    error_code = models.CharField(max_length=64, null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retryable = models.BooleanField(default=False)

    objects = ProviderCallQuerySet.as_manager()

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Provider Call"
        verbose_name_plural = "Provider Calls"
        indexes = [
            models.Index(
                fields=["escrow", "action", "operation"],
                name="escrow_prov_escrow__5d8c03_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["escrow", "action", "operation", "attempt"],
                name="provider_call_unique_attempt",
            ),
            models.UniqueConstraint(
                fields=["escrow", "action", "operation"],
                condition=models.Q(succeeded=True),
                name="provider_call_one_success_per_leg",
            ),
        ]

    def __str__(self) -> str:
        outcome = self.provider_ref if self.succeeded else self.error_code
        return (
            f"ProviderCall({self.action}:{self.operation} "
            f"#{self.attempt}, {self.amount}, {outcome})"
        )
