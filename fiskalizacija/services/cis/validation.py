# fiskalizacija/services/cis/validation.py
# -*- coding: utf-8 -*-
"""
Validators for the invoice fields sent to CIS.

Functions:
- validate_oib: 11 digits with ISO 7064 MOD 11,10 check digit.
- validate_invoice_number / validate_business_space / validate_cash_register.
- validate_amount: exactly two fraction digits, range depends on storno.
- validate_invoice_request: runs every check, raises FiscalValidationError.

Every check runs before any key material is touched or any network call
is made. CIS rejects malformed fields with an opaque sNNN code, so the
message produced here is the only useful diagnostic the caller gets.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import List, Tuple

from fiskalizacija.services.cis.exceptions import FiscalValidationError
from fiskalizacija.services.cis.formatting import to_decimal
from fiskalizacija.services.cis.types import FiscalInvoiceRequest, PaymentMethod, VatLine


# ======================================================================================
# Constants
# ======================================================================================

OIB_REGEX = re.compile(r"^\d{11}$")
INVOICE_NUMBER_REGEX = re.compile(r"^\d{1,20}$")
BUSINESS_SPACE_REGEX = re.compile(r"^[0-9a-zA-Z]{1,20}$")
CASH_REGISTER_REGEX = re.compile(r"^\d{1,20}$")
JIR_REGEX = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("999999.99")
STORNO_REASON_MAX_LENGTH = 100
SEQUENCE_MARKS = ("N", "P")


# ======================================================================================
# Field validators
# ======================================================================================

def oib_check_digit(first_ten: str) -> int:
    """ISO 7064 MOD 11,10 check digit over the first ten OIB digits."""
    a = 10
    for char in first_ten:
        a = (a + int(char)) % 10
        if a == 0:
            a = 10
        a = (a * 2) % 11
    check = 11 - a
    return 0 if check == 10 else check


def validate_oib(oib: str, label: str = "OIB") -> Tuple[bool, str]:
    """
    Validates a Croatian personal identification number.

    Examples:
        >>> validate_oib("87246357068")
        (True, '')
        >>> validate_oib("87246357069")
        (False, 'OIB check digit mismatch')
    """
    if not oib or not OIB_REGEX.match(oib):
        return False, f"{label} must be exactly 11 digits"
    if oib_check_digit(oib[:10]) != int(oib[10]):
        return False, f"{label} check digit mismatch"
    return True, ""


def validate_invoice_number(value: str) -> Tuple[bool, str]:
    if not value or not INVOICE_NUMBER_REGEX.match(value):
        return False, "Invoice number must be 1-20 digits"
    return True, ""


def validate_business_space(value: str) -> Tuple[bool, str]:
    if not value or not BUSINESS_SPACE_REGEX.match(value):
        return False, "Business space code must be 1-20 letters or digits"
    return True, ""


def validate_cash_register(value: str) -> Tuple[bool, str]:
    if not value or not CASH_REGISTER_REGEX.match(value):
        return False, "Cash register code must be 1-20 digits"
    return True, ""


def _has_two_decimals(value: Decimal) -> bool:
    exponent = value.as_tuple().exponent
    return isinstance(exponent, int) and exponent == -2


def validate_amount(value, is_storno: bool = False) -> Tuple[bool, str]:
    """
    Total amount with exactly two fraction digits.

    Regular invoice: 0.01 <= total <= 999999.99. Storno: total < 0, same
    magnitude limit.
    """
    try:
        amount = to_decimal(value)
    except ValueError:
        return False, f"Total amount {value!r} is not a number"

    if not amount.is_finite():
        return False, "Total amount must be a finite number"
    if not _has_two_decimals(amount):
        return False, f"Total amount {amount} must have exactly two decimals"
    if is_storno:
        if amount >= 0:
            return False, "Storno total amount must be negative"
        if -amount > MAX_AMOUNT:
            return False, f"Storno total amount must not be below -{MAX_AMOUNT}"
        return True, ""
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        return False, f"Total amount must be between {MIN_AMOUNT} and {MAX_AMOUNT}"
    return True, ""


def validate_vat_lines(lines: Tuple[VatLine, ...], total: Decimal, is_storno: bool) -> List[str]:
    errors: List[str] = []
    for index, line in enumerate(lines, start=1):
        for name in ("rate", "base", "amount"):
            value = getattr(line, name)
            if not isinstance(value, Decimal) or not value.is_finite():
                errors.append(f"VAT line {index}: {name} must be a Decimal")
                continue
            if name != "rate" and not _has_two_decimals(value):
                errors.append(f"VAT line {index}: {name} must have exactly two decimals")
        if isinstance(line.rate, Decimal) and line.rate < 0:
            errors.append(f"VAT line {index}: rate must not be negative")
        if isinstance(line.base, Decimal) and isinstance(line.amount, Decimal):
            if is_storno and (line.base > 0 or line.amount > 0):
                errors.append(f"VAT line {index}: storno amounts must not be positive")
            if not is_storno and (line.base < 0 or line.amount < 0):
                errors.append(f"VAT line {index}: amounts must not be negative")

    if errors:
        return errors

    total_vat = sum((line.amount for line in lines), Decimal("0.00"))
    if abs(total_vat) > abs(total):
        errors.append("Total VAT must not exceed the invoice total")
    return errors


# ======================================================================================
# Request validator
# ======================================================================================

def collect_errors(request: FiscalInvoiceRequest) -> List[str]:
    errors: List[str] = []

    checks = [
        validate_oib(request.oib, "OIB"),
        validate_invoice_number(request.invoice_number),
        validate_business_space(request.business_space_code),
        validate_cash_register(request.cash_register_code),
        validate_amount(request.total_amount, request.is_storno),
    ]
    if request.operator_oib:
        checks.append(validate_oib(request.operator_oib, "Operator OIB"))
    errors.extend(message for ok, message in checks if not ok)

    if request.issued_at is None:
        errors.append("Invoice issue time is required")

    if not isinstance(request.payment_method, PaymentMethod):
        errors.append(f"Invalid payment method: {request.payment_method!r}")

    if request.sequence_mark not in SEQUENCE_MARKS:
        errors.append("Sequence mark must be 'N' or 'P'")

    if request.is_storno:
        if not request.original_jir:
            errors.append("Storno invoice requires the JIR of the original invoice")
        elif not JIR_REGEX.match(request.original_jir):
            errors.append(f"Original JIR {request.original_jir!r} is not a valid JIR")
        reason = (request.storno_reason or "").strip()
        if not reason:
            errors.append("Storno invoice requires a reason")
        elif len(reason) > STORNO_REASON_MAX_LENGTH:
            errors.append(f"Storno reason must not exceed {STORNO_REASON_MAX_LENGTH} characters")
    elif request.original_jir:
        errors.append("Only a storno invoice may reference an original JIR")

    if request.vat_breakdown and isinstance(request.total_amount, Decimal):
        errors.extend(validate_vat_lines(request.vat_breakdown, request.total_amount, request.is_storno))

    return errors


def validate_invoice_request(request: FiscalInvoiceRequest) -> FiscalInvoiceRequest:
    """Raises FiscalValidationError listing every malformed field."""
    errors = collect_errors(request)
    if errors:
        raise FiscalValidationError(errors)
    return request
