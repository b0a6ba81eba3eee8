"""
Escrow admin configuration.

Everything is read-only here: every state change goes through EscrowService
and parties are created by the application that owns the users.
"""

from django.contrib import admin

from escrow.models import EscrowRecord, Party, ProviderCall

__all__ = [
    "EscrowRecordAdmin",
    "PartyAdmin",
    "ProviderCallAdmin",
]


class ReadOnlyAdminMixin:
    """Disable add, change and delete in the admin."""

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class ProviderCallInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = ProviderCall
    extra = 0
    fields = [
        "created_at",
        "action",
        "operation",
        "attempt",
        "amount",
        "succeeded",
        "provider_ref",
        "error_code",
        "retryable",
    ]
    readonly_fields = fields
    ordering = ["created_at"]


@admin.register(Party)
class PartyAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin configuration for Party."""

    list_display = [
        "id",
        "display_name",
        "external_ref",
        "stripe_customer_id",
        "stripe_account_id",
        "payouts_enabled",
        "created_at",
    ]
    list_filter = ["payouts_enabled"]
    search_fields = ["id", "external_ref", "display_name", "stripe_customer_id", "stripe_account_id"]
    readonly_fields = ["id", "created_at", "updated_at"]
    ordering = ["-created_at"]


@admin.register(EscrowRecord)
class EscrowRecordAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for EscrowRecord.

    Shows amounts, timeline and provider references along with the log of
    every provider call made for the record.
    """

    list_display = [
        "id",
        "job_ref",
        "seller",
        "buyer",
        "amount_display",
        "status",
        "validation_deadline",
        "created_at",
    ]
    list_filter = ["status", "cancel_reason", "currency", "created_at"]
    search_fields = [
        "id",
        "job_ref",
        "hold_ref",
        "transfer_ref",
        "refund_ref",
        "seller__external_ref",
        "buyer__external_ref",
    ]
    ordering = ["-created_at"]
    inlines = [ProviderCallInline]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "job_ref", "seller", "buyer", "status", "in_flight_action"),
            },
        ),
        (
            "Amounts",
            {
                "fields": (
                    "base_amount",
                    "commission_amount",
                    "total_amount",
                    "currency",
                    "refunded_amount",
                    "compensation_amount",
                    "cancel_reason",
                ),
            },
        ),
        (
            "Provider",
            {
                "fields": ("hold_ref", "transfer_ref", "refund_ref"),
            },
        ),
        (
            "Timeline",
            {
                "fields": (
                    "service_scheduled_at",
                    "held_at",
                    "marked_completed_at",
                    "validation_deadline",
                    "confirmed_at",
                    "paid_at",
                    "refunded_at",
                ),
            },
        ),
        (
            "Audit",
            {
                "fields": ("notes", "metadata", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    @admin.display(description="Total")
    def amount_display(self, obj):
        return f"{obj.total_amount} {obj.currency.upper()}"


@admin.register(ProviderCall)
class ProviderCallAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin configuration for the provider call audit log."""

    list_display = [
        "id",
        "escrow",
        "action",
        "operation",
        "attempt",
        "amount",
        "succeeded",
        "provider_ref",
        "error_code",
        "created_at",
    ]
    list_filter = ["operation", "action", "succeeded", "retryable"]
    search_fields = ["id", "escrow__id", "provider_ref", "idempotency_key"]
    ordering = ["-created_at"]
