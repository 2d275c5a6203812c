# fiskalizacija/services/cis/certificates.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import binascii
import logging
import threading
from datetime import datetime, timezone as dt_timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from cryptography.x509.oid import NameOID

from fiskalizacija.services.cis.exceptions import CertificateError, SigningError

logger = logging.getLogger("fiskalizacija.cis")


def _common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return name.rfc4514_string()
    return str(attrs[0].value)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt_timezone.utc)
    return value


class FiscalCertificate:
    """
    RSA private key + leaf certificate of the invoice issuer.

    Immutable after loading and shared read-only between concurrent signers;
    sign() keeps no state between calls. close() drops the key reference,
    after which every signing attempt fails with SigningError.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, certificate: x509.Certificate):
        self._private_key: Optional[rsa.RSAPrivateKey] = private_key
        self._lock = threading.Lock()
        self.certificate = certificate
        self.not_before = _as_aware(certificate.not_valid_before_utc)
        self.not_after = _as_aware(certificate.not_valid_after_utc)
        self.subject_cn = _common_name(certificate.subject)
        self.issuer_cn = _common_name(certificate.issuer)
        self.serial_number = certificate.serial_number

    def __repr__(self) -> str:
        return (
            f"FiscalCertificate(subject={self.subject_cn!r}, issuer={self.issuer_cn!r}, "
            f"not_after={self.not_after.isoformat()})"
        )

    def __enter__(self) -> "FiscalCertificate":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._private_key is None

    def is_valid_at(self, instant: datetime) -> bool:
        instant = _as_aware(instant)
        return self.not_before <= instant <= self.not_after

    def sign(self, data: bytes) -> bytes:
        """RSA PKCS#1 v1.5 signature over SHA-1(data)."""
        key = self._private_key
        if key is None:
            raise SigningError("Fiscal certificate has been closed; the key is no longer available.")
        try:
            return key.sign(data, padding.PKCS1v15(), hashes.SHA1())
        except Exception as exc:  # noqa: BLE001
            logger.exception("RSA-SHA1 signing failed: %s", exc)
            raise SigningError(f"RSA-SHA1 signing failed: {exc}") from exc

    def public_key(self) -> rsa.RSAPublicKey:
        return self.certificate.public_key()  # type: ignore[return-value]

    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(Encoding.PEM).decode("ascii")

    def certificate_base64(self) -> str:
        """Base64 of the DER certificate, as embedded in <X509Certificate>."""
        return base64.b64encode(self.certificate.public_bytes(Encoding.DER)).decode("ascii")

    def close(self) -> None:
        with self._lock:
            if self._private_key is not None:
                logger.info("Releasing fiscal certificate key (%s)", self.subject_cn)
            self._private_key = None


_PFX_VERSION = b"\x02\x01\x03"  # INTEGER 3


def _looks_like_pfx(data: bytes) -> bool:
    """
    Checks the outer DER TLV of a PKCS#12 PFX: a SEQUENCE whose declared
    length covers exactly the rest of the buffer and whose first element is
    the PFX version. A bare X.509 certificate is a SEQUENCE too, but it
    starts with another SEQUENCE.
    """
    if len(data) < 2 or data[0] != 0x30:
        return False
    first = data[1]
    if first == 0x80:
        # BER indefinite length (some Java/Windows exports)
        return data.endswith(b"\x00\x00") and data[2:5] == _PFX_VERSION
    if first < 0x80:
        return 2 + first == len(data) and data[2:5] == _PFX_VERSION
    num_octets = first & 0x7F
    if num_octets == 0 or num_octets > 4 or len(data) < 2 + num_octets:
        return False
    length = int.from_bytes(data[2 : 2 + num_octets], "big")
    start = 2 + num_octets
    return start + length == len(data) and data[start : start + 3] == _PFX_VERSION



class CertificateStore:
    """Loads the password-protected PKCS#12 container holding the fiscal key."""

    @staticmethod
    def load(
        container: bytes,
        passphrase: str | bytes,
        *,
        at: Optional[datetime] = None,
    ) -> FiscalCertificate:
        if not container or not _looks_like_pfx(container):
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                "The certificate container is not a valid PKCS#12 (DER) structure.",
            )

        password = passphrase.encode("utf-8") if isinstance(passphrase, str) else passphrase

        try:
            private_key, cert, _additional = pkcs12.load_key_and_certificates(
                container,
                password or None,
            )
        except UnsupportedAlgorithm as exc:
            logger.error("PKCS#12 container uses an unsupported algorithm: %s", exc)
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                f"The PKCS#12 container uses an unsupported algorithm: {exc}",
            ) from exc
        except (ValueError, TypeError) as exc:
            logger.error("Could not open PKCS#12 container: %s", exc)
            raise CertificateError(
                CertificateError.INVALID_PASSPHRASE,
                "Could not open the PKCS#12 container with the given passphrase.",
            ) from exc

        if private_key is None or cert is None:
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                "The PKCS#12 container does not hold both a private key and a certificate.",
            )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                f"Fiscal key must be RSA, got {type(private_key).__name__}.",
            )

        fiscal_cert = FiscalCertificate(private_key, cert)

        now = _as_aware(at) if at is not None else datetime.now(dt_timezone.utc)
        if not fiscal_cert.is_valid_at(now):
            logger.warning(
                "Fiscal certificate %s outside its validity window. Valid: %s to %s. Now: %s",
                fiscal_cert.subject_cn,
                fiscal_cert.not_before,
                fiscal_cert.not_after,
                now,
            )
            fiscal_cert.close()
            raise CertificateError(
                CertificateError.EXPIRED,
                f"Certificate valid from {fiscal_cert.not_before} to {fiscal_cert.not_after}.",
            )

        logger.info(
            "Fiscal certificate loaded: subject=%s issuer=%s valid until %s",
            fiscal_cert.subject_cn,
            fiscal_cert.issuer_cn,
            fiscal_cert.not_after,
        )
        return fiscal_cert

    @classmethod
    def load_file(cls, path: str | Path, passphrase: str | bytes, **kwargs) -> FiscalCertificate:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            logger.exception("Error reading PKCS#12 file %s: %s", path, exc)
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                f"Could not read certificate file {path}: {exc}",
            ) from exc
        return cls.load(data, passphrase, **kwargs)

    @classmethod
    def load_base64(cls, blob: str, passphrase: str | bytes, **kwargs) -> FiscalCertificate:
        try:
            data = base64.b64decode(blob, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise CertificateError(
                CertificateError.MALFORMED_CONTAINER,
                "FISCAL_CERT_BASE64 is not valid base64.",
            ) from exc
        return cls.load(data, passphrase, **kwargs)
