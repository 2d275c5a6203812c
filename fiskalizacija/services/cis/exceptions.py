# fiskalizacija/services/cis/exceptions.py
# -*- coding: utf-8 -*-
"""
Error taxonomy of the fiscalization core.

- CertificateError: the PKCS#12 container could not be loaded (fatal at startup).
- SigningError: the key cannot be used to sign (fatal).
- FiscalValidationError: malformed invoice field, raised before any network call.
- TransportError: network/TLS failure, retried by the client up to a bound.
- SubmissionOutcomeUnknown: the request may have reached CIS but no answer was
  read. Never retried automatically; needs manual reconciliation.
- ServerRejection / UnknownResponse: terminal answers, raised only by
  FiscalResult.raise_for_status() for callers that prefer exceptions.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional


class FiscalErrorKind(str, Enum):
    """Closed set of error kinds exposed at the service boundary."""

    VALIDATION = "VALIDATION"
    CERTIFICATE = "CERTIFICATE"
    SIGNING = "SIGNING"
    TRANSPORT = "TRANSPORT"
    OUTCOME_UNKNOWN = "OUTCOME_UNKNOWN"
    CERTIFICATE_ENVIRONMENT = "CERTIFICATE_ENVIRONMENT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    SCHEMA_VALIDATION = "SCHEMA_VALIDATION"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    UNKNOWN_SERVER_ERROR = "UNKNOWN_SERVER_ERROR"
    UNKNOWN_RESPONSE = "UNKNOWN_RESPONSE"


class FiscalError(Exception):
    """Base class for every error raised by the fiscalization core."""

    kind: FiscalErrorKind = FiscalErrorKind.UNKNOWN_SERVER_ERROR


class CertificateError(FiscalError):
    """Errors loading the fiscal certificate (PKCS#12)."""

    INVALID_PASSPHRASE = "INVALID_PASSPHRASE"
    MALFORMED_CONTAINER = "MALFORMED_CONTAINER"
    EXPIRED = "EXPIRED"

    kind = FiscalErrorKind.CERTIFICATE

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class SigningError(FiscalError):
    """The private key is unusable (closed, expired certificate, crypto failure)."""

    kind = FiscalErrorKind.SIGNING


class FiscalValidationError(FiscalError):
    """One or more invoice fields are malformed. Carries every problem found."""

    kind = FiscalErrorKind.VALIDATION

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class TransportError(FiscalError):
    """Network or TLS failure talking to CIS."""

    kind = FiscalErrorKind.TRANSPORT

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class SubmissionOutcomeUnknown(TransportError):
    """
    The request was (or may have been) delivered but no response was read.

    The server-side outcome is unknown: resubmitting under the same invoice
    identity risks double fiscalization.
    """

    kind = FiscalErrorKind.OUTCOME_UNKNOWN


class ServerRejection(FiscalError):
    """CIS answered with a structured error (SifraGreske/PorukaGreske)."""

    def __init__(
        self,
        error_code: str,
        error_message: str,
        kind: FiscalErrorKind,
        raw_response: Optional[str] = None,
    ):
        super().__init__(f"{error_code}: {error_message}")
        self.error_code = error_code
        self.error_message = error_message
        self.kind = kind
        self.raw_response = raw_response


class UnknownResponse(FiscalError):
    """The CIS answer could not be interpreted. The body is kept verbatim."""

    kind = FiscalErrorKind.UNKNOWN_RESPONSE

    def __init__(self, message: str, raw_response: Any = None):
        super().__init__(message)
        self.raw_response = raw_response
