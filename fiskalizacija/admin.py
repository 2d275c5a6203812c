# fiskalizacija/admin.py
from __future__ import annotations

from django.contrib import admin

from fiskalizacija.models import FiscalSubmission


@admin.register(FiscalSubmission)
class FiscalSubmissionAdmin(admin.ModelAdmin):
    list_display = (
        "invoice_number",
        "business_space_code",
        "cash_register_code",
        "invoice_date",
        "total_amount",
        "is_storno",
        "status",
        "jir",
        "error_code",
        "created_at",
    )
    list_filter = ("status", "is_storno", "error_kind", "invoice_date")
    search_fields = ("invoice_number", "jir", "zki", "original_jir", "message_id")
    date_hierarchy = "invoice_date"
    readonly_fields = (
        "zki",
        "jir",
        "message_id",
        "error_code",
        "error_kind",
        "error_message",
        "raw_response",
        "fiscal_receipt_url",
        "qr_code_data",
        "submitted_at",
        "reconciled_at",
        "created_at",
        "updated_at",
    )
    fieldsets = (
        (
            "Invoice",
            {
                "fields": (
                    "status",
                    "oib",
                    "invoice_number",
                    "business_space_code",
                    "cash_register_code",
                    "invoice_date",
                    "issued_at",
                    "total_amount",
                    "vat_breakdown",
                    "payment_method",
                    "operator_oib",
                )
            },
        ),
        (
            "Storno",
            {
                "fields": (
                    "is_storno",
                    "original_submission",
                    "original_jir",
                    "storno_type",
                    "storno_reason",
                )
            },
        ),
        (
            "CIS",
            {
                "fields": (
                    "zki",
                    "jir",
                    "message_id",
                    "fiscal_receipt_url",
                    "qr_code_data",
                    "error_code",
                    "error_kind",
                    "error_message",
                    "raw_response",
                )
            },
        ),
        (
            "Audit",
            {
                "fields": (
                    "created_by",
                    "submitted_at",
                    "reconciled_at",
                    "created_at",
                    "updated_at",
                )
            },
        ),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        # accepted submissions are fiscal records
        if obj is not None and obj.status == FiscalSubmission.Status.ACCEPTED:
            return False
        return super().has_delete_permission(request, obj)
