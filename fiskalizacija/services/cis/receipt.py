# fiskalizacija/services/cis/receipt.py
# -*- coding: utf-8 -*-
"""Verification data printed on a fiscalized receipt."""
from __future__ import annotations

from fiskalizacija.services.cis.formatting import format_amount, format_zki_datetime
from fiskalizacija.services.cis.types import Environment, FiscalInvoiceRequest

VERIFICATION_BASE_URL = "https://porezna-uprava.gov.hr/rn"
TEST_VERIFICATION_URL = "https://cistest.apis-it.hr:8449/qr/{jir}"


def fiscal_receipt_url(jir: str, environment: Environment) -> str:
    """URL where a customer can check the receipt by its JIR."""
    if environment == Environment.TEST:
        return TEST_VERIFICATION_URL.format(jir=jir)
    return f"{VERIFICATION_BASE_URL}?jir={jir}"


def qr_code_data(jir: str, request: FiscalInvoiceRequest) -> str:
    # verification URL | JIR | issue time (dd.MM.yyyy HH:mm:ss) | total
    return "|".join(
        (
            VERIFICATION_BASE_URL,
            jir,
            format_zki_datetime(request.issued_at),
            format_amount(request.total_amount),
        )
    )
