"""
Payment admin configuration.

Escrow records are read-only here: every status change goes through
EscrowLedger so it is version-checked and audited.
"""

from django.contrib import admin

from payments.models import (
    ConnectedAccount,
    EscrowTransfer,
    PaymentAuditEntry,
    PaymentRecord,
    PremiumEvent,
    PremiumPlacement,
    RefundTransaction,
    WebhookEvent,
)


class ReadOnlyAdminMixin:
    """Visible in admin, never editable."""

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(ConnectedAccount)
class ConnectedAccountAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "stripe_account_id",
        "onboarding_status",
        "payouts_enabled",
        "charges_enabled",
        "created_at",
    ]
    list_filter = ["onboarding_status", "payouts_enabled", "charges_enabled"]
    search_fields = ["id", "stripe_account_id"]
    readonly_fields = ["id", "created_at", "updated_at", "version"]
    ordering = ["-created_at"]


class EscrowTransferInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = EscrowTransfer
    extra = 0
    fields = [
        "party",
        "amount_cents",
        "status",
        "stripe_transfer_id",
        "attempt_count",
        "failure_reason",
        "confirmed_at",
    ]
    readonly_fields = fields


@admin.register(PaymentRecord)
class PaymentRecordAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Escrow ledger rows.

    Filter on ``inconsistent_external_state`` to find records waiting for
    reconciliation.
    """

    list_display = [
        "booking_id",
        "status",
        "total_cents",
        "advance_cents",
        "is_on_hold",
        "inconsistent_external_state",
        "escrow_release_at",
        "updated_at",
    ]
    list_filter = ["status", "is_on_hold", "inconsistent_external_state", "currency"]
    search_fields = [
        "booking_id",
        "stripe_payment_intent_id",
        "remaining_payment_intent_id",
        "transfer_group",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [EscrowTransferInline]

    fieldsets = (
        (None, {"fields": ("id", "booking_id", "devotee_id", "priest_id", "status", "version")}),
        (
            "Split",
            {
                "fields": (
                    "currency",
                    "total_cents",
                    "advance_cents",
                    "remaining_cents",
                    "priest_share_cents",
                    "temple_share_cents",
                    "platform_fee_cents",
                    "retention_cents",
                ),
            },
        ),
        (
            "Processor",
            {
                "fields": (
                    "stripe_payment_intent_id",
                    "remaining_payment_intent_id",
                    "transfer_group",
                    "priest_account_id",
                    "temple_account_id",
                ),
            },
        ),
        (
            "Escrow",
            {
                "fields": (
                    "escrow_release_at",
                    "is_on_hold",
                    "hold_reason",
                    "inconsistent_external_state",
                    "inconsistency_reason",
                ),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "processing_at",
                    "held_at",
                    "released_at",
                    "completed_at",
                    "refunded_at",
                    "remaining_collected_at",
                    "created_at",
                    "updated_at",
                ),
            },
        ),
    )


@admin.register(PaymentAuditEntry)
class PaymentAuditEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["booking_id", "event", "from_status", "to_status", "actor", "created_at"]
    list_filter = ["event", "to_status"]
    search_fields = ["booking_id", "actor"]
    ordering = ["-created_at"]


@admin.register(RefundTransaction)
class RefundTransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = [
        "booking_id",
        "refund_amount_cents",
        "cancellation_fee_cents",
        "refund_percentage",
        "policy_rule",
        "status",
        "created_at",
    ]
    list_filter = ["status", "policy_rule"]
    search_fields = ["booking_id", "stripe_refund_id", "payment_intent_id"]
    ordering = ["-created_at"]


class PremiumEventInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = PremiumEvent
    extra = 0
    fields = ["event_type", "previous_expires_at", "new_expires_at", "created_at"]
    readonly_fields = fields


@admin.register(PremiumPlacement)
class PremiumPlacementAdmin(admin.ModelAdmin):
    list_display = ["priest", "status", "expires_at", "ranking_delta", "boost_applied"]
    list_filter = ["status", "boost_applied"]
    readonly_fields = ["id", "boost_applied", "version", "created_at", "updated_at"]
    inlines = [PremiumEventInline]


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """Webhook events are immutable once received; status may be reset for retry."""

    list_display = [
        "id",
        "stripe_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["id", "stripe_event_id", "event_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "stripe_event_id",
        "event_type",
        "payload",
        "processed_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False
