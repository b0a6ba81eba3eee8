import uuid

import django.db.models.deletion
import django_fsm
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Party",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "external_ref",
                    models.CharField(
                        help_text="Identifier of the marketplace user this party represents",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "display_name",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Human-readable name for notes and admin",
                        max_length=255,
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Customer ID (cus_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "default_payment_method_id",
                    models.CharField(
                        blank=True,
                        help_text="Saved Stripe PaymentMethod used for holds (pm_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "stripe_account_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Connect account ID (acct_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "payouts_enabled",
                    models.BooleanField(
                        default=False,
                        help_text="Whether Stripe has enabled payouts for the Connect account",
                    ),
                ),
            ],
            options={
                "verbose_name": "Party",
                "verbose_name_plural": "Parties",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="EscrowRecord",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "job_ref",
                    models.CharField(
                        db_index=True,
                        help_text="Reference of the job being paid for",
                        max_length=255,
                    ),
                ),
                (
                    "service_scheduled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the job is scheduled to take place (copied from the job)",
                        null=True,
                    ),
                ),
                (
                    "base_amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Job price paid to the buyer on release",
                        max_digits=12,
                    ),
                ),
                (
                    "commission_amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Platform commission",
                        max_digits=12,
                    ),
                ),
                (
                    "total_amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Amount held from the seller (base + commission)",
                        max_digits=12,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="eur",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("held", "Held"),
                            ("awaiting_validation", "Awaiting Validation"),
                            ("completed", "Completed"),
                            ("disputed", "Disputed"),
                            ("refunded", "Refunded"),
                            ("partial_refund", "Partial Refund"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current escrow status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "hold_ref",
                    models.CharField(
                        blank=True,
                        help_text="Provider reference of the hold (pi_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "transfer_ref",
                    models.CharField(
                        blank=True,
                        help_text="Provider reference of the transfer to the buyer (tr_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "refund_ref",
                    models.CharField(
                        blank=True,
                        help_text="Provider reference of the refund to the seller (re_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("held_at", models.DateTimeField(blank=True, null=True)),
                (
                    "marked_completed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the buyer marked the job complete",
                        null=True,
                    ),
                ),
                (
                    "validation_deadline",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Auto-release deadline (marked_completed_at + window)",
                        null=True,
                    ),
                ),
                (
                    "confirmed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the seller confirmed completion",
                        null=True,
                    ),
                ),
                (
                    "paid_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the base amount was transferred to the buyer",
                        null=True,
                    ),
                ),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the (full or partial) refund was issued",
                        null=True,
                    ),
                ),
                (
                    "refunded_amount",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Amount refunded to the seller",
                        max_digits=12,
                        null=True,
                    ),
                ),
                (
                    "compensation_amount",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Amount transferred to the buyer outside a normal release",
                        max_digits=12,
                        null=True,
                    ),
                ),
                (
                    "cancel_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("seller_before_accept", "Seller cancelled before acceptance"),
                            ("seller_after_accept", "Seller cancelled after acceptance"),
                            ("dispute", "Dispute resolution"),
                            ("admin_force_refund", "Admin forced refund"),
                        ],
                        max_length=32,
                        null=True,
                    ),
                ),
                (
                    "notes",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Append-only audit trail",
                    ),
                ),
                (
                    "in_flight_action",
                    models.CharField(
                        blank=True,
                        help_text=(
                            "Action whose earlier provider legs succeeded while a later leg "
                            "failed; only that action may run until it completes"
                        ),
                        max_length=32,
                        null=True,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "seller",
                    models.ForeignKey(
                        help_text="Party who posted the job and whose funds are held",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrows_as_seller",
                        to="escrow.party",
                    ),
                ),
                (
                    "buyer",
                    models.ForeignKey(
                        blank=True,
                        help_text="Party who accepted the job (null until accepted)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrows_as_buyer",
                        to="escrow.party",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Record",
                "verbose_name_plural": "Escrow Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["seller", "status"],
                        name="escrow_escr_seller__b1f0a2_idx",
                    ),
                    models.Index(
                        fields=["buyer", "status"],
                        name="escrow_escr_buyer_i_4c2d9e_idx",
                    ),
                    models.Index(
                        fields=["status", "validation_deadline"],
                        name="escrow_escr_status_7e3a51_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "failed"), _negated=True),
                        fields=("job_ref",),
                        name="escrow_one_active_per_job",
                    ),
                    models.CheckConstraint(
                        check=models.Q(("base_amount__gt", 0)),
                        name="escrow_base_amount_positive",
                    ),
                    models.CheckConstraint(
                        check=models.Q(("commission_amount__gte", 0)),
                        name="escrow_commission_non_negative",
                    ),
                    models.CheckConstraint(
                        check=models.Q(
                            (
                                "total_amount",
                                models.F("base_amount") + models.F("commission_amount"),
                            )
                        ),
                        name="escrow_total_is_base_plus_commission",
                    ),
                    models.CheckConstraint(
                        check=models.Q(
                            ("paid_at__isnull", True),
                            ("refunded_at__isnull", True),
                            _connector="OR",
                        ),
                        name="escrow_not_both_paid_and_refunded",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProviderCall",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("create", "Create"),
                            ("accept", "Accept"),
                            ("abandon", "Abandon"),
                            ("mark_completed", "Mark completed"),
                            ("confirm", "Confirm"),
                            ("release", "Release"),
                            ("cancel_before_accept", "Cancel before acceptance"),
                            ("cancel_after_accept", "Cancel after acceptance"),
                            ("open_dispute", "Open dispute"),
                            ("resolve_dispute", "Resolve dispute"),
                            ("force_refund", "Force refund"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "operation",
                    models.CharField(
                        choices=[
                            ("hold", "Hold"),
                            ("transfer", "Transfer"),
                            ("refund", "Refund"),
                        ],
                        max_length=16,
                    ),
                ),
                ("attempt", models.PositiveIntegerField(default=1)),
                ("idempotency_key", models.CharField(max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("succeeded", models.BooleanField(default=False)),
                ("provider_ref", models.CharField(blank=True, max_length=255, null=True)),
                ("error_code", models.CharField(blank=True, max_length=64, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("retryable", models.BooleanField(default=False)),
                (
                    "escrow",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="provider_calls",
                        to="escrow.escrowrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Provider Call",
                "verbose_name_plural": "Provider Calls",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(
                        fields=["escrow", "action", "operation"],
                        name="escrow_prov_escrow__5d8c03_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("escrow", "action", "operation", "attempt"),
                        name="provider_call_unique_attempt",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("succeeded", True)),
                        fields=("escrow", "action", "operation"),
                        name="provider_call_one_success_per_leg",
                    ),
                ],
            },
        ),
    ]
