# fiskalizacija/services/cis/response_parser.py
# -*- coding: utf-8 -*-
"""
Interpretation of the RacunOdgovor answer.

Lookup is namespace-agnostic: CIS answers with a tns: prefix today but
the parser does not depend on it. An error (Greska or SOAP Fault) always
wins over a JIR found in the same body.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, Mapping, Optional

from lxml import etree

from fiskalizacija.services.cis.exceptions import FiscalErrorKind
from fiskalizacija.services.cis.types import FiscalFailure, FiscalResponse, FiscalSuccess

logger = logging.getLogger("fiskalizacija.cis")

UNKNOWN_CODE = "UNKNOWN"

ERROR_KINDS: Dict[str, FiscalErrorKind] = {
    "s001": FiscalErrorKind.SCHEMA_VALIDATION,
    "s002": FiscalErrorKind.CERTIFICATE_ENVIRONMENT,
    "s003": FiscalErrorKind.SCHEMA_VALIDATION,
    "s004": FiscalErrorKind.INVALID_SIGNATURE,
    "s005": FiscalErrorKind.CERTIFICATE_ENVIRONMENT,
}

_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    huge_tree=False,
    recover=False,
)

# fallback for bodies lxml refuses (truncated envelopes, HTML wrappers...)
_FALLBACK = {
    "jir": re.compile(r"<(?:\w+:)?Jir>\s*([^<]+?)\s*</(?:\w+:)?Jir>", re.S),
    "code": re.compile(r"<(?:\w+:)?SifraGreske>\s*([^<]+?)\s*</(?:\w+:)?SifraGreske>", re.S),
    "message": re.compile(r"<(?:\w+:)?PorukaGreske>\s*([^<]*?)\s*</(?:\w+:)?PorukaGreske>", re.S),
}


def classify_error_code(code: str, extra: Optional[Mapping[str, str]] = None) -> FiscalErrorKind:
    """
    Maps a CIS error code to a FiscalErrorKind.

    extra (FiscalConfig.error_kinds, from FISCAL_ERROR_KINDS) adds or
    overrides entries, e.g. {"s006": "DUPLICATE_INVOICE"}. Unlisted codes
    are UNKNOWN_SERVER_ERROR.
    """
    if not code or code == UNKNOWN_CODE:
        return FiscalErrorKind.UNKNOWN_RESPONSE

    normalized = code.strip().lower()
    for key, value in (extra or {}).items():
        if key.strip().lower() == normalized:
            try:
                return FiscalErrorKind(value)
            except ValueError:
                logger.warning("FISCAL_ERROR_KINDS[%r]=%r is not a known error kind", key, value)
                break

    return ERROR_KINDS.get(normalized, FiscalErrorKind.UNKNOWN_SERVER_ERROR)


def _first_text(root: etree._Element, local_name: str) -> Optional[str]:
    nodes = root.xpath(f"//*[local-name()='{local_name}']")
    for node in nodes:
        text = (node.text or "").strip()
        if text:
            return text
    return None


def _failure(
    code: str,
    message: str,
    raw: str,
    error_kinds: Optional[Mapping[str, str]] = None,
) -> FiscalFailure:
    return FiscalFailure(
        error_code=code,
        error_message=message,
        raw_response=raw,
        error_kind=classify_error_code(code, error_kinds),
    )


def _parse_tree(
    root: etree._Element,
    raw: str,
    error_kinds: Optional[Mapping[str, str]],
) -> Optional[FiscalResponse]:
    code = _first_text(root, "SifraGreske")
    if code:
        message = _first_text(root, "PorukaGreske") or "Unknown error"
        return _failure(code, message, raw, error_kinds)

    if root.xpath("//*[local-name()='Fault']"):
        fault_code = _first_text(root, "faultcode") or "soap:Fault"
        fault_string = _first_text(root, "faultstring") or "SOAP Fault without faultstring"
        return _failure(fault_code, fault_string, raw, error_kinds)

    jir = _first_text(root, "Jir")
    if jir:
        return FiscalSuccess(jir=jir, raw_response=raw)
    return None


def _scan_text(raw: str, error_kinds: Optional[Mapping[str, str]]) -> Optional[FiscalResponse]:
    code = _FALLBACK["code"].search(raw)
    if code:
        message = _FALLBACK["message"].search(raw)
        text = message.group(1) if message else "Unknown error"
        return _failure(code.group(1), text, raw, error_kinds)
    jir = _FALLBACK["jir"].search(raw)
    if jir:
        return FiscalSuccess(jir=jir.group(1), raw_response=raw)
    return None


def parse_response(
    raw: bytes | str | None,
    error_kinds: Optional[Mapping[str, str]] = None,
) -> FiscalResponse:
    """
    Never raises. Anything that is neither a JIR nor a structured error
    becomes FiscalFailure("UNKNOWN", ...) with the body kept verbatim.
    """
    if raw is None:
        raw = ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if not raw.strip():
        return _failure(UNKNOWN_CODE, "Empty response from CIS", raw)

    result: Optional[FiscalResponse] = None
    try:
        root = etree.fromstring(raw.encode("utf-8"), _PARSER)
    except (etree.XMLSyntaxError, ValueError) as exc:
        logger.warning("CIS response is not well-formed XML (%s), scanning as text", exc)
        result = _scan_text(raw, error_kinds)
    else:
        result = _parse_tree(root, raw, error_kinds)

    if result is None:
        logger.error("CIS response has neither a JIR nor an error: %.500s", raw)
        return _failure(UNKNOWN_CODE, "No JIR or error found in response", raw)

    if isinstance(result, FiscalSuccess):
        logger.info("CIS accepted the invoice: JIR=%s", result.jir)
    else:
        logger.warning(
            "CIS rejected the invoice: %s %s (%s)",
            result.error_code,
            result.error_message,
            result.error_kind.value,
        )
    return result
