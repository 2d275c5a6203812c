# fiskalizacija/serializers.py
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils import timezone
from rest_framework import serializers

from fiskalizacija.models import FiscalSubmission
from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import FiscalValidationError
from fiskalizacija.services.cis.storno import create_full_storno, create_partial_storno
from fiskalizacija.services.cis.types import (
    FiscalInvoiceRequest,
    PaymentMethod,
    StornoRequest,
    StornoType,
    VatLine,
)
from fiskalizacija.services.cis.validation import collect_errors
from fiskalizacija.services.submissions import StornoNotAllowed, check_storno_allowed


class VatLineSerializer(serializers.Serializer):
    rate = serializers.DecimalField(max_digits=5, decimal_places=2)
    base = serializers.DecimalField(max_digits=12, decimal_places=2)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)


class FiscalInvoiceSerializer(serializers.Serializer):
    """
    Invoice fields sent by the billing side.

    oib, business_space_code, cash_register_code and operator_oib fall back
    to the FISCAL_* settings; issued_at defaults to now.
    """

    oib = serializers.CharField(max_length=11, required=False)
    issued_at = serializers.DateTimeField(required=False)
    invoice_number = serializers.CharField(max_length=20)
    business_space_code = serializers.CharField(max_length=20, required=False)
    cash_register_code = serializers.CharField(max_length=20, required=False)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_method = serializers.ChoiceField(
        choices=[method.value for method in PaymentMethod],
        default=PaymentMethod.CASH.value,
    )
    vat_breakdown = VatLineSerializer(many=True, required=False)
    operator_oib = serializers.CharField(max_length=11, required=False, allow_blank=True)
    async_submit = serializers.BooleanField(default=False)

    def _config(self) -> FiscalConfig:
        return self.context.get("config") or FiscalConfig.from_settings()

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        config = self._config()
        request = FiscalInvoiceRequest(
            oib=attrs.get("oib") or config.oib,
            issued_at=attrs.get("issued_at") or timezone.now(),
            invoice_number=attrs["invoice_number"],
            business_space_code=attrs.get("business_space_code") or config.business_space_code,
            cash_register_code=attrs.get("cash_register_code") or config.cash_register_code,
            total_amount=attrs["total_amount"],
            payment_method=PaymentMethod(attrs["payment_method"]),
            vat_breakdown=tuple(VatLine(**line) for line in attrs.get("vat_breakdown") or []),
            operator_oib=attrs.get("operator_oib") or config.operator_oib,
            vat_registered=config.vat_registered,
            sequence_mark=config.sequence_mark,
        )
        errors = collect_errors(request)
        if errors:
            raise serializers.ValidationError({"non_field_errors": errors})
        attrs["fiscal_request"] = request
        return attrs


class FiscalStornoSerializer(serializers.Serializer):
    """Storno of an ACCEPTED submission, full or partial."""

    original_submission = serializers.PrimaryKeyRelatedField(
        queryset=FiscalSubmission.objects.filter(
            status=FiscalSubmission.Status.ACCEPTED,
            is_storno=False,
        ),
    )
    invoice_number = serializers.CharField(max_length=20)
    issued_at = serializers.DateTimeField(required=False)
    business_space_code = serializers.CharField(max_length=20, required=False)
    cash_register_code = serializers.CharField(max_length=20, required=False)
    storno_type = serializers.ChoiceField(
        choices=[kind.value for kind in StornoType],
        default=StornoType.FULL.value,
    )
    partial_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    reason = serializers.CharField(max_length=100)
    async_submit = serializers.BooleanField(default=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        original: FiscalSubmission = attrs["original_submission"]
        if not original.jir:
            raise serializers.ValidationError({"original_submission": "The original invoice has no JIR."})

        storno_type = StornoType(attrs["storno_type"])
        partial: Optional[Any] = attrs.get("partial_amount")
        if storno_type == StornoType.PARTIAL and partial is None:
            raise serializers.ValidationError({"partial_amount": "Required for a partial storno."})

        common = dict(
            invoice_number=attrs["invoice_number"],
            issued_at=attrs.get("issued_at") or timezone.now(),
            business_space_code=attrs.get("business_space_code"),
            cash_register_code=attrs.get("cash_register_code"),
        )
        try:
            if storno_type == StornoType.PARTIAL:
                storno = create_partial_storno(
                    original.to_request(), original.jir, partial, attrs["reason"], **common
                )
            else:
                storno = create_full_storno(original.to_request(), original.jir, attrs["reason"], **common)
        except FiscalValidationError as exc:
            raise serializers.ValidationError({"non_field_errors": exc.errors}) from exc

        errors = collect_errors(storno.invoice)
        if errors:
            raise serializers.ValidationError({"non_field_errors": errors})

        try:
            check_storno_allowed(original, storno)
        except StornoNotAllowed as exc:
            raise serializers.ValidationError({"original_submission": str(exc)}) from exc

        attrs["storno_request"] = storno
        return attrs


class FiscalSubmissionSerializer(serializers.ModelSerializer):
    class Meta:
        model = FiscalSubmission
        fields = (
            "id",
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
            "is_storno",
            "original_submission",
            "original_jir",
            "storno_type",
            "storno_reason",
            "zki",
            "jir",
            "message_id",
            "fiscal_receipt_url",
            "qr_code_data",
            "error_code",
            "error_kind",
            "error_message",
            "raw_response",
            "submitted_at",
            "reconciled_at",
            "created_at",
        )
        read_only_fields = fields


class ReconcileSerializer(serializers.Serializer):
    jir = serializers.CharField(max_length=36, required=False, allow_blank=True)


def storno_payload(storno: StornoRequest) -> Dict[str, Any]:
    return {
        "stornoType": storno.storno_type.value,
        "originalJir": storno.original_jir,
        "totalAmount": str(storno.invoice.total_amount),
    }
