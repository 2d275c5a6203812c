# fiskalizacija/services/cis/types.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from fiskalizacija.services.cis.exceptions import (
    FiscalErrorKind,
    ServerRejection,
    SubmissionOutcomeUnknown,
    TransportError,
    UnknownResponse,
)
from fiskalizacija.services.cis.formatting import wall_clock


class Environment(str, Enum):
    TEST = "TEST"
    PRODUCTION = "PRODUCTION"


class PaymentMethod(str, Enum):
    """Payment methods and their NacinPlac codes."""

    CASH = "CASH"
    CARD = "CARD"
    CHECK = "CHECK"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"

    @property
    def code(self) -> str:
        return _PAYMENT_CODES[self]


_PAYMENT_CODES = {
    PaymentMethod.CASH: "G",  # gotovina
    PaymentMethod.CARD: "K",  # kartice
    PaymentMethod.CHECK: "C",  # ček
    PaymentMethod.TRANSFER: "T",  # transakcijski račun
    PaymentMethod.OTHER: "O",  # ostalo
}


@dataclass(frozen=True)
class VatLine:
    """One row of the per-rate VAT breakdown (<Pdv><Porez>)."""

    rate: Decimal
    base: Decimal
    amount: Decimal

    def scaled(self, factor: Decimal) -> "VatLine":
        cent = Decimal("0.01")
        return VatLine(
            rate=self.rate,
            base=(self.base * factor).quantize(cent),
            amount=(self.amount * factor).quantize(cent),
        )

    def negated(self) -> "VatLine":
        return VatLine(rate=self.rate, base=-abs(self.base), amount=-abs(self.amount))


@dataclass(frozen=True)
class FiscalInvoiceRequest:
    """
    Invoice fields supplied by the billing collaborator.

    issued_at is the single instant from which both the ZKI date string and
    the XML date string are derived.
    """

    oib: str
    issued_at: datetime
    invoice_number: str
    business_space_code: str
    cash_register_code: str
    total_amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    vat_breakdown: Tuple[VatLine, ...] = ()
    is_storno: bool = False
    original_jir: Optional[str] = None
    storno_reason: Optional[str] = None
    operator_oib: Optional[str] = None
    vat_registered: bool = True
    sequence_mark: str = "N"

    @property
    def invoice_date(self) -> date:
        """Croatian calendar date of issued_at."""
        return wall_clock(self.issued_at).date()

    @property
    def identity(self) -> Tuple[str, str, str, date]:
        """(number, business space, register, date): immutable once a JIR exists."""
        return (
            self.invoice_number,
            self.business_space_code,
            self.cash_register_code,
            self.invoice_date,
        )

    @property
    def effective_operator_oib(self) -> str:
        return self.operator_oib or self.oib

    @property
    def total_vat(self) -> Decimal:
        return sum((line.amount for line in self.vat_breakdown), Decimal("0.00"))


@dataclass(frozen=True)
class SignedFiscalRequest:
    """Complete signed SOAP document for one attempt. Never cached or reused."""

    xml: bytes
    sign_id: str
    message_id: str
    zki: str


@dataclass(frozen=True)
class FiscalSuccess:
    jir: str
    qr_code_data: Optional[str] = None
    raw_response: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class FiscalFailure:
    error_code: str
    error_message: str
    raw_response: Optional[str] = None
    error_kind: FiscalErrorKind = FiscalErrorKind.UNKNOWN_SERVER_ERROR

    ok = False


FiscalResponse = Union[FiscalSuccess, FiscalFailure]


class StornoType(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


@dataclass(frozen=True)
class StornoRequest:
    """
    A cancellation invoice ready for the pipeline.

    invoice already carries the negative amounts, is_storno=True and the
    original JIR; the remaining fields describe how it was derived.
    """

    invoice: FiscalInvoiceRequest
    storno_type: StornoType
    reason: str
    original_total: Decimal
    partial_amount: Optional[Decimal] = None

    @property
    def original_jir(self) -> str:
        return self.invoice.original_jir or ""


class PipelineStage(str, Enum):
    """Stages reported by FiscalizationService.run_pipeline() to its on_stage callback."""

    ZKI_COMPUTED = "ZKI_COMPUTED"
    SIGNED = "SIGNED"
    SUBMITTED = "SUBMITTED"


class ResultStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    UNKNOWN_RESPONSE = "UNKNOWN_RESPONSE"
    TRANSPORT_FAILED = "TRANSPORT_FAILED"
    OUTCOME_UNKNOWN = "OUTCOME_UNKNOWN"


@dataclass
class FiscalResult:
    """
    Normalized outcome returned to the billing collaborator.

    ok is True only when CIS actually returned a JIR.
    """

    status: ResultStatus
    zki: Optional[str] = None
    jir: Optional[str] = None
    fiscal_receipt_url: Optional[str] = None
    qr_code_data: Optional[str] = None
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_kind: Optional[FiscalErrorKind] = None
    error_message: Optional[str] = None
    raw_response: Optional[str] = None
    timestamp: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.ACCEPTED and bool(self.jir)

    @property
    def needs_reconciliation(self) -> bool:
        return self.status == ResultStatus.OUTCOME_UNKNOWN

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.ok,
            "status": self.status.value,
            "zki": self.zki,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
        if self.ok:
            data.update(
                {
                    "jir": self.jir,
                    "fiscalReceiptUrl": self.fiscal_receipt_url,
                    "qrCodeData": self.qr_code_data,
                }
            )
        else:
            data.update(
                {
                    "errorCode": self.error_code,
                    "errorKind": self.error_kind.value if self.error_kind else None,
                    "errorMessage": self.error_message,
                    "rawResponse": self.raw_response,
                }
            )
        return data

    def raise_for_status(self) -> "FiscalResult":
        if self.ok:
            return self
        if self.status == ResultStatus.REJECTED:
            raise ServerRejection(
                self.error_code or "",
                self.error_message or "",
                self.error_kind or FiscalErrorKind.UNKNOWN_SERVER_ERROR,
                raw_response=self.raw_response,
            )
        if self.status == ResultStatus.OUTCOME_UNKNOWN:
            raise SubmissionOutcomeUnknown(self.error_message or "Outcome unknown")
        if self.status == ResultStatus.TRANSPORT_FAILED:
            raise TransportError(self.error_message or "Transport failed")
        raise UnknownResponse(
            self.error_message or "Unrecognized CIS response",
            raw_response=self.raw_response,
        )
