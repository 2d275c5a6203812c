# fiskalizacija/services/cis/zki.py
# -*- coding: utf-8 -*-
"""
ZKI (zaštitni kod izdavatelja): the issuer security code.

The algorithm is fixed by the tax authority:

    data  = OIB + "dd.MM.yyyy HH:mm:ss" + number + business space + register + amount
    zki   = hex(MD5(RSA-PKCS1v15-SHA1(key, utf8(data))))

with no delimiters in the data string. For storno invoices the amount carries
its minus sign (e.g. "-150.00").
"""
from __future__ import annotations

import hashlib
import logging

from fiskalizacija.services.cis.certificates import FiscalCertificate
from fiskalizacija.services.cis.exceptions import SigningError
from fiskalizacija.services.cis.formatting import aware, format_amount, format_zki_datetime
from fiskalizacija.services.cis.types import FiscalInvoiceRequest

logger = logging.getLogger("fiskalizacija.cis")


def zki_data_string(request: FiscalInvoiceRequest) -> str:
    return "".join(
        (
            request.oib,
            format_zki_datetime(request.issued_at),
            request.invoice_number,
            request.business_space_code,
            request.cash_register_code,
            format_amount(request.total_amount),
        )
    )


def compute_zki(certificate: FiscalCertificate, request: FiscalInvoiceRequest) -> str:
    """
    32 lowercase hex characters. Deterministic: RSA PKCS#1 v1.5 signatures
    carry no randomness, so identical inputs always give the same code.
    """
    if not certificate.is_valid_at(aware(request.issued_at)):
        raise SigningError(
            f"Certificate {certificate.subject_cn} is not valid at {request.issued_at} "
            f"(valid {certificate.not_before} to {certificate.not_after})."
        )

    data = zki_data_string(request)
    logger.debug("ZKI data string: %s", data)

    signature = certificate.sign(data.encode("utf-8"))
    zki = hashlib.md5(signature).hexdigest()

    logger.debug("ZKI for invoice %s: %s", request.invoice_number, zki)
    return zki
