# fiskalizacija/services/cis/storno.py
# -*- coding: utf-8 -*-
"""
Storno (cancellation) of an invoice that already has a JIR.

An accepted invoice is never modified: it is corrected by a new invoice
with negative amounts that references the original JIR. A full storno
negates every amount; a partial storno negates a share of the total and
scales each VAT line by the same ratio.

Lifecycle of one storno submission:

    DRAFT -> ZKI_COMPUTED -> SIGNED -> SUBMITTED -> ACCEPTED | REJECTED
                                                 -> OUTCOME_UNKNOWN
                                                 -> NOT_DELIVERED

NOT_DELIVERED means CIS was never reached; the storno can be sent again
under the same number.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from fiskalizacija.services.cis.exceptions import FiscalError, FiscalValidationError
from fiskalizacija.services.cis.formatting import to_decimal
from fiskalizacija.services.cis.types import (
    FiscalInvoiceRequest,
    FiscalResult,
    PipelineStage,
    ResultStatus,
    StornoRequest,
    StornoType,
)

logger = logging.getLogger("fiskalizacija.cis")

_CENT = Decimal("0.01")


class StornoState(str, Enum):
    DRAFT = "DRAFT"
    ZKI_COMPUTED = "ZKI_COMPUTED"
    SIGNED = "SIGNED"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    OUTCOME_UNKNOWN = "OUTCOME_UNKNOWN"
    NOT_DELIVERED = "NOT_DELIVERED"


TRANSITIONS: Dict[StornoState, FrozenSet[StornoState]] = {
    StornoState.DRAFT: frozenset({StornoState.ZKI_COMPUTED}),
    StornoState.ZKI_COMPUTED: frozenset({StornoState.SIGNED}),
    StornoState.SIGNED: frozenset({StornoState.SUBMITTED}),
    StornoState.SUBMITTED: frozenset(
        {
            StornoState.ACCEPTED,
            StornoState.REJECTED,
            StornoState.OUTCOME_UNKNOWN,
            StornoState.NOT_DELIVERED,
        }
    ),
    StornoState.ACCEPTED: frozenset(),
    StornoState.REJECTED: frozenset(),
    StornoState.OUTCOME_UNKNOWN: frozenset(),
    StornoState.NOT_DELIVERED: frozenset(),
}

_STAGE_STATES = {
    PipelineStage.ZKI_COMPUTED: StornoState.ZKI_COMPUTED,
    PipelineStage.SIGNED: StornoState.SIGNED,
    PipelineStage.SUBMITTED: StornoState.SUBMITTED,
}


class InvalidStornoTransition(FiscalError):
    def __init__(self, current: StornoState, target: StornoState):
        super().__init__(f"Illegal storno transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class StornoStateMachine:
    def __init__(self) -> None:
        self.state = StornoState.DRAFT
        self.history: List[StornoState] = [StornoState.DRAFT]

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def transition(self, target: StornoState) -> StornoState:
        if target not in TRANSITIONS[self.state]:
            raise InvalidStornoTransition(self.state, target)
        logger.debug("Storno %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)
        return target


@dataclass(frozen=True)
class StornoOutcome:
    state: StornoState
    result: FiscalResult
    history: Tuple[StornoState, ...] = field(default_factory=tuple)

    @property
    def jir(self) -> Optional[str]:
        return self.result.jir if self.state == StornoState.ACCEPTED else None


# ======================================================================================
# Building storno requests
# ======================================================================================

def _check_common(
    original: FiscalInvoiceRequest,
    original_jir: str,
    reason: str,
    storno_invoice: FiscalInvoiceRequest,
) -> List[str]:
    errors: List[str] = []
    if original.is_storno:
        errors.append("A storno invoice cannot itself be reversed")
    if not (original_jir or "").strip():
        errors.append("Storno requires the JIR of the original invoice")
    if not (reason or "").strip():
        errors.append("Storno requires a reason")
    if storno_invoice.identity == original.identity:
        errors.append(
            "Storno invoice must have its own number; "
            f"{'/'.join(str(part) for part in original.identity)} is already used by the original"
        )
    return errors


def _storno_invoice(
    original: FiscalInvoiceRequest,
    original_jir: str,
    reason: str,
    total: Decimal,
    vat_lines,
    invoice_number: str,
    issued_at: datetime,
    business_space_code: Optional[str],
    cash_register_code: Optional[str],
) -> FiscalInvoiceRequest:
    return dataclasses.replace(
        original,
        invoice_number=invoice_number,
        issued_at=issued_at,
        business_space_code=business_space_code or original.business_space_code,
        cash_register_code=cash_register_code or original.cash_register_code,
        total_amount=total,
        vat_breakdown=tuple(vat_lines),
        is_storno=True,
        original_jir=(original_jir or "").strip() or None,
        storno_reason=(reason or "").strip() or None,
    )


def create_full_storno(
    original: FiscalInvoiceRequest,
    original_jir: str,
    reason: str,
    *,
    invoice_number: str,
    issued_at: datetime,
    business_space_code: Optional[str] = None,
    cash_register_code: Optional[str] = None,
) -> StornoRequest:
    """Reverses the whole original invoice: total and every VAT line negated."""
    original_total = to_decimal(original.total_amount)
    invoice = _storno_invoice(
        original,
        original_jir,
        reason,
        -abs(original_total),
        (line.negated() for line in original.vat_breakdown),
        invoice_number,
        issued_at,
        business_space_code,
        cash_register_code,
    )

    errors = _check_common(original, original_jir, reason, invoice)
    if errors:
        raise FiscalValidationError(errors)

    logger.info(
        "Full storno %s of invoice %s (JIR %s): %s",
        invoice_number,
        original.invoice_number,
        original_jir,
        invoice.total_amount,
    )
    return StornoRequest(
        invoice=invoice,
        storno_type=StornoType.FULL,
        reason=invoice.storno_reason or "",
        original_total=original_total,
    )


def create_partial_storno(
    original: FiscalInvoiceRequest,
    original_jir: str,
    partial_amount: Decimal | str | int,
    reason: str,
    *,
    invoice_number: str,
    issued_at: datetime,
    business_space_code: Optional[str] = None,
    cash_register_code: Optional[str] = None,
) -> StornoRequest:
    """
    Reverses part of the original total.

    Each VAT line is scaled by |partial| / |original total|, e.g. total
    150.00 with 30.00 VAT and a partial storno of 50.00 gives -10.00 VAT.
    """
    original_total = to_decimal(original.total_amount)
    partial = abs(to_decimal(partial_amount)).quantize(_CENT)

    errors: List[str] = []
    if partial <= 0:
        errors.append("Partial storno amount must be greater than zero")
    elif partial > abs(original_total):
        errors.append(
            f"Partial storno amount {partial} exceeds the original total {abs(original_total)}"
        )
    if errors:
        raise FiscalValidationError(errors)

    factor = partial / abs(original_total)
    invoice = _storno_invoice(
        original,
        original_jir,
        reason,
        -partial,
        (line.scaled(factor).negated() for line in original.vat_breakdown),
        invoice_number,
        issued_at,
        business_space_code,
        cash_register_code,
    )

    errors = _check_common(original, original_jir, reason, invoice)
    if errors:
        raise FiscalValidationError(errors)

    logger.info(
        "Partial storno %s of invoice %s (JIR %s): %s of %s",
        invoice_number,
        original.invoice_number,
        original_jir,
        invoice.total_amount,
        original_total,
    )
    return StornoRequest(
        invoice=invoice,
        storno_type=StornoType.PARTIAL,
        reason=invoice.storno_reason or "",
        original_total=original_total,
        partial_amount=partial,
    )


# ======================================================================================
# Submission
# ======================================================================================

def _check_request(storno: StornoRequest) -> None:
    errors: List[str] = []
    invoice = storno.invoice
    if not invoice.is_storno:
        errors.append("Storno request must carry a storno invoice")
    if not storno.original_jir:
        errors.append("Storno request must reference the original JIR")
    if storno.storno_type == StornoType.PARTIAL and storno.partial_amount is None:
        errors.append("Partial storno requires partial_amount")
    if storno.storno_type == StornoType.FULL and storno.partial_amount is not None:
        errors.append("Full storno must not carry partial_amount")
    if errors:
        raise FiscalValidationError(errors)


class StornoEngine:
    """
    Drives a StornoRequest through the regular invoice pipeline and tracks
    its state. service is any object with run_pipeline(request, on_stage)
    returning a FiscalResult (normally FiscalizationService).
    """

    def __init__(self, service: Any):
        self.service = service

    def submit(self, storno: StornoRequest) -> StornoOutcome:
        _check_request(storno)
        machine = StornoStateMachine()

        def on_stage(stage: PipelineStage, _payload: Any) -> None:
            machine.transition(_STAGE_STATES[stage])

        result: FiscalResult = self.service.run_pipeline(storno.invoice, on_stage)

        if result.ok:
            machine.transition(StornoState.ACCEPTED)
        elif result.status == ResultStatus.OUTCOME_UNKNOWN:
            machine.transition(StornoState.OUTCOME_UNKNOWN)
        elif result.status == ResultStatus.TRANSPORT_FAILED:
            machine.transition(StornoState.NOT_DELIVERED)
        else:
            machine.transition(StornoState.REJECTED)

        result.extra.update(
            {
                "storno_type": storno.storno_type.value,
                "original_jir": storno.original_jir,
                "storno_state": machine.state.value,
            }
        )
        logger.info(
            "Storno %s (%s, original JIR %s) finished in state %s",
            storno.invoice.invoice_number,
            storno.storno_type.value,
            storno.original_jir,
            machine.state.value,
        )
        return StornoOutcome(state=machine.state, result=result, history=tuple(machine.history))
