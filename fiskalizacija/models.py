# fiskalizacija/models.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import models
from django.db.models import Sum
from django.utils import timezone

from fiskalizacija.services.cis.types import (
    FiscalInvoiceRequest,
    FiscalResult,
    PaymentMethod,
    ResultStatus,
    VatLine,
)


class FiscalSubmissionQuerySet(models.QuerySet):
    def for_identity(
        self,
        invoice_number: str,
        business_space_code: str,
        cash_register_code: str,
        invoice_date,
    ) -> "FiscalSubmissionQuerySet":
        return self.filter(
            invoice_number=invoice_number,
            business_space_code=business_space_code,
            cash_register_code=cash_register_code,
            invoice_date=invoice_date,
        )

    def blocking(self) -> "FiscalSubmissionQuerySet":
        """Submissions that forbid another attempt under the same identity."""
        return self.filter(status__in=FiscalSubmission.BLOCKING_STATUSES)

    def needs_reconciliation(self) -> "FiscalSubmissionQuerySet":
        return self.filter(status=FiscalSubmission.Status.OUTCOME_UNKNOWN)

    def reversing(self) -> "FiscalSubmissionQuerySet":
        """Stornos that reversed (or may have reversed) part of their original."""
        return self.filter(is_storno=True, status__in=FiscalSubmission.REVERSING_STATUSES)


class FiscalSubmission(models.Model):
    """
    Caller-side record of one fiscalization attempt.

    The identity (number, business space, register, date) is frozen once
    CIS issued a JIR for it: any correction goes through a storno that
    references the JIR. A number CIS rejected is spent as well; the retry
    goes out under a new invoice number. Attempts with an unknown outcome
    stay visible here until someone reconciles them with the tax authority.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        ACCEPTED = "ACCEPTED", "Accepted (JIR issued)"
        REJECTED = "REJECTED", "Rejected by CIS"
        OUTCOME_UNKNOWN = "OUTCOME_UNKNOWN", "Outcome unknown (reconcile manually)"
        ERROR = "ERROR", "Not delivered"

    BLOCKING_STATUSES = (Status.PENDING, Status.ACCEPTED, Status.REJECTED, Status.OUTCOME_UNKNOWN)
    REVERSING_STATUSES = (Status.PENDING, Status.ACCEPTED, Status.OUTCOME_UNKNOWN)

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )

    # ----- Invoice identity -----
    oib = models.CharField(max_length=11)
    invoice_number = models.CharField(max_length=20)
    business_space_code = models.CharField(max_length=20)
    cash_register_code = models.CharField(max_length=20)
    invoice_date = models.DateField(db_index=True)
    issued_at = models.DateTimeField()

    # ----- Amounts -----
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    vat_breakdown = models.JSONField(default=list, blank=True)
    payment_method = models.CharField(
        max_length=10,
        choices=[(method.value, method.value) for method in PaymentMethod],
        default=PaymentMethod.CASH.value,
    )
    operator_oib = models.CharField(max_length=11, blank=True)

    # ----- Storno -----
    is_storno = models.BooleanField(default=False)
    original_submission = models.ForeignKey(
        "self",
        related_name="storno_submissions",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
    )
    original_jir = models.CharField(max_length=36, blank=True)
    storno_reason = models.CharField(max_length=100, blank=True)
    storno_type = models.CharField(max_length=10, blank=True)

    # ----- CIS answer -----
    zki = models.CharField(max_length=32, blank=True)
    jir = models.CharField(max_length=36, blank=True, db_index=True)
    message_id = models.CharField(max_length=36, blank=True)
    error_code = models.CharField(max_length=64, blank=True)
    error_kind = models.CharField(max_length=32, blank=True)
    error_message = models.TextField(blank=True)
    raw_response = models.TextField(blank=True)
    fiscal_receipt_url = models.URLField(max_length=255, blank=True)
    qr_code_data = models.CharField(max_length=255, blank=True)

    # ----- Audit -----
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    reconciled_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="fiscal_submissions",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )

    objects = FiscalSubmissionQuerySet.as_manager()

    class Meta:
        verbose_name = "Fiscal submission"
        verbose_name_plural = "Fiscal submissions"
        ordering = ["-created_at"]
        constraints = [
            # one JIR per invoice identity
            models.UniqueConstraint(
                fields=["invoice_number", "business_space_code", "cash_register_code", "invoice_date"],
                condition=models.Q(status="ACCEPTED"),
                name="fiscal_identity_accepted_uniq",
            ),
        ]
        indexes = [
            models.Index(
                fields=["invoice_number", "business_space_code", "cash_register_code", "invoice_date"],
                name="fiscal_identity_idx",
            ),
            models.Index(fields=["status", "created_at"], name="fiscal_status_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.invoice_number}/{self.business_space_code}/{self.cash_register_code} [{self.status}]"

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def serialize_vat(lines) -> List[Dict[str, str]]:
        return [
            {"rate": str(line.rate), "base": str(line.base), "amount": str(line.amount)}
            for line in lines
        ]

    @classmethod
    def from_request(cls, request: FiscalInvoiceRequest, **extra: Any) -> "FiscalSubmission":
        """Unsaved record for a request about to be submitted."""
        return cls(
            oib=request.oib,
            invoice_number=request.invoice_number,
            business_space_code=request.business_space_code,
            cash_register_code=request.cash_register_code,
            invoice_date=request.invoice_date,
            issued_at=request.issued_at,
            total_amount=request.total_amount,
            vat_breakdown=cls.serialize_vat(request.vat_breakdown),
            payment_method=request.payment_method.value,
            operator_oib=request.operator_oib or "",
            is_storno=request.is_storno,
            original_jir=request.original_jir or "",
            storno_reason=request.storno_reason or "",
            **extra,
        )

    def to_request(self, **overrides: Any) -> FiscalInvoiceRequest:
        fields: Dict[str, Any] = dict(
            oib=self.oib,
            issued_at=self.issued_at,
            invoice_number=self.invoice_number,
            business_space_code=self.business_space_code,
            cash_register_code=self.cash_register_code,
            total_amount=Decimal(self.total_amount).quantize(Decimal("0.01")),
            payment_method=PaymentMethod(self.payment_method),
            vat_breakdown=tuple(
                VatLine(
                    rate=Decimal(line["rate"]),
                    base=Decimal(line["base"]),
                    amount=Decimal(line["amount"]),
                )
                for line in (self.vat_breakdown or [])
            ),
            is_storno=self.is_storno,
            original_jir=self.original_jir or None,
            storno_reason=self.storno_reason or None,
            operator_oib=self.operator_oib or None,
        )
        fields.update(overrides)
        return FiscalInvoiceRequest(**fields)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_final(self) -> bool:
        return self.status in (self.Status.ACCEPTED, self.Status.REJECTED, self.Status.ERROR)

    def reversed_amount(self) -> Decimal:
        """Absolute amount already reversed by stornos of this invoice."""
        total = self.storno_submissions.reversing().aggregate(total=Sum("total_amount"))["total"]
        return abs(Decimal(total or 0))

    def identity_is_blocked(self) -> bool:
        return (
            FiscalSubmission.objects.for_identity(
                self.invoice_number,
                self.business_space_code,
                self.cash_register_code,
                self.invoice_date,
            )
            .blocking()
            .exclude(pk=self.pk)
            .exists()
        )

    def apply_result(self, result: FiscalResult) -> "FiscalSubmission":
        """
        Copies a FiscalResult onto the record and saves it.

        An unparseable answer means the request did reach CIS, so it is kept
        as OUTCOME_UNKNOWN like a read timeout.
        """
        status_map = {
            ResultStatus.ACCEPTED: self.Status.ACCEPTED,
            ResultStatus.REJECTED: self.Status.REJECTED,
            ResultStatus.OUTCOME_UNKNOWN: self.Status.OUTCOME_UNKNOWN,
            ResultStatus.UNKNOWN_RESPONSE: self.Status.OUTCOME_UNKNOWN,
            ResultStatus.TRANSPORT_FAILED: self.Status.ERROR,
        }
        self.status = status_map[result.status]
        self.zki = result.zki or ""
        self.jir = result.jir or ""
        self.message_id = result.message_id or ""
        self.error_code = result.error_code or ""
        self.error_kind = result.error_kind.value if result.error_kind else ""
        self.error_message = result.error_message or ""
        self.raw_response = result.raw_response or ""
        self.fiscal_receipt_url = result.fiscal_receipt_url or ""
        self.qr_code_data = result.qr_code_data or ""
        self.submitted_at = result.timestamp or timezone.now()
        self.save()
        return self

    def mark_failed(self, status: str, error_kind: str, message: str, zki: Optional[str] = None) -> None:
        self.status = status
        self.error_kind = error_kind
        self.error_message = message
        if zki:
            self.zki = zki
        self.save(update_fields=["status", "error_kind", "error_message", "zki", "updated_at"])

    def reconcile(self, jir: Optional[str] = None) -> "FiscalSubmission":
        """
        Manual resolution of an OUTCOME_UNKNOWN attempt after checking with
        the tax authority: with a JIR it was accepted, without one it never
        arrived and the identity is free again.
        """
        if self.status != self.Status.OUTCOME_UNKNOWN:
            raise ValueError(f"Only OUTCOME_UNKNOWN submissions can be reconciled (status={self.status}).")
        if jir:
            self.status = self.Status.ACCEPTED
            self.jir = jir
        else:
            self.status = self.Status.ERROR
        self.reconciled_at = timezone.now()
        self.save()
        return self
