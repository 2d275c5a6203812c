# fiskalizacija/tests/helpers.py
# -*- coding: utf-8 -*-
"""
Test fixtures: a throwaway RSA key, a self-signed "fiscal" certificate and
invoice requests built around the FINA demo values.
"""
from __future__ import annotations

import functools
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from fiskalizacija.services.cis.certificates import CertificateStore, FiscalCertificate
from fiskalizacija.services.cis.types import FiscalInvoiceRequest, PaymentMethod, VatLine

TEST_OIB = "87246357068"
OTHER_OIB = "12345678903"
TEST_PASSWORD = "tajna123"
ORIGINAL_JIR = "a1b2c3d4-e5f6-4789-8abc-def012345678"


@functools.lru_cache(maxsize=None)
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_x509(
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    common_name: str = "FISKAL TEST 1",
) -> x509.Certificate:
    now = datetime.now(dt_timezone.utc)
    not_before = not_before or datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
    not_after = not_after or now + timedelta(days=365)

    key = private_key()
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "HR"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "TEST D.O.O."),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Demo CA")])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


def make_pkcs12(password: str = TEST_PASSWORD, **cert_kwargs) -> bytes:
    """PKCS#12 container (key + certificate) protected with password."""
    return pkcs12.serialize_key_and_certificates(
        b"fiskal",
        private_key(),
        make_x509(**cert_kwargs),
        None,
        BestAvailableEncryption(password.encode("utf-8")),
    )


def make_certificate(**cert_kwargs) -> FiscalCertificate:
    return FiscalCertificate(private_key(), make_x509(**cert_kwargs))


def load_test_certificate() -> FiscalCertificate:
    return CertificateStore.load(make_pkcs12(), TEST_PASSWORD)


def make_request(**overrides) -> FiscalInvoiceRequest:
    """Invoice 634/POSL1/2 of 02.08.2025 21:48:29 for 7.00 EUR, 25% VAT."""
    fields = dict(
        oib=TEST_OIB,
        issued_at=datetime(2025, 8, 2, 21, 48, 29),
        invoice_number="634",
        business_space_code="POSL1",
        cash_register_code="2",
        total_amount=Decimal("7.00"),
        payment_method=PaymentMethod.CASH,
        vat_breakdown=(VatLine(rate=Decimal("25.00"), base=Decimal("5.60"), amount=Decimal("1.40")),),
    )
    fields.update(overrides)
    return FiscalInvoiceRequest(**fields)


def jir_response(jir: str = "ABC123") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap:Body>"
        '<tns:RacunOdgovor xmlns:tns="http://www.apis-it.hr/fin/2012/types/f73" Id="odg1">'
        "<tns:Zaglavlje><tns:IdPoruke>b1c2</tns:IdPoruke>"
        "<tns:DatumVrijeme>02.08.2025T21:48:30</tns:DatumVrijeme></tns:Zaglavlje>"
        f"<tns:Jir>{jir}</tns:Jir>"
        "</tns:RacunOdgovor>"
        "</soap:Body>"
        "</soap:Envelope>"
    )


def error_response(code: str = "s004", message: str = "Neispravan digitalni potpis.") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap:Body>"
        '<tns:RacunOdgovor xmlns:tns="http://www.apis-it.hr/fin/2012/types/f73">'
        "<tns:Greske><tns:Greska>"
        f"<tns:SifraGreske>{code}</tns:SifraGreske>"
        f"<tns:PorukaGreske>{message}</tns:PorukaGreske>"
        "</tns:Greska></tns:Greske>"
        "</tns:RacunOdgovor>"
        "</soap:Body>"
        "</soap:Envelope>"
    )
