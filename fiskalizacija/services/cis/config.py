# fiskalizacija/services/cis/config.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from django.conf import settings

from fiskalizacija.services.cis.types import Environment

logger = logging.getLogger("fiskalizacija.cis")


# =========================
# CIS endpoints
# =========================

CIS_TEST_URL = getattr(
    settings,
    "FISCAL_TEST_URL",
    "https://cistest.apis-it.hr:8449/FiskalizacijaServiceTest",
)
CIS_PROD_URL = getattr(
    settings,
    "FISCAL_PROD_URL",
    "https://cis.porezna-uprava.hr:8449/FiskalizacijaService",
)

# FINA demo PKI: cistest.apis-it.hr server certificate + "Fina Demo CA 2020"
CIS_TEST_CA_BUNDLE = Path(__file__).resolve().parent / "certs" / "cistest-chain.pem"


@dataclass(frozen=True)
class FiscalConfig:
    """
    Recognized configuration of the fiscalization core.

    Built from Django settings by from_settings(); tests build it directly.
    """

    oib: str = ""
    business_space_code: str = ""
    cash_register_code: str = ""
    environment: Environment = Environment.TEST
    operator_oib: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_blob: Optional[str] = None
    certificate_password: str = field(default="", repr=False)
    ca_bundle: Optional[str] = None
    request_timeout: float = 15.0
    retry_max: int = 3
    retry_backoff: float = 0.5
    retry_backoff_max: float = 8.0
    sequence_mark: str = "N"
    vat_registered: bool = True
    error_kinds: Dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        if self.environment == Environment.PRODUCTION:
            return CIS_PROD_URL
        return CIS_TEST_URL

    @property
    def verify(self) -> str | bool:
        """Value for requests' verify: pinned bundle in TEST, system store in PRODUCTION."""
        if self.ca_bundle:
            return self.ca_bundle
        if self.environment == Environment.TEST:
            return str(CIS_TEST_CA_BUNDLE)
        return True

    @classmethod
    def from_settings(cls) -> "FiscalConfig":
        environment = _resolve_environment(
            getattr(settings, "FISCAL_ENVIRONMENT", "TEST"),
            getattr(settings, "FISCAL_ALLOW_PRODUCTION", False),
        )
        return cls(
            oib=getattr(settings, "FISCAL_OIB", ""),
            business_space_code=getattr(settings, "FISCAL_BUSINESS_SPACE_CODE", ""),
            cash_register_code=getattr(settings, "FISCAL_CASH_REGISTER_CODE", ""),
            environment=environment,
            operator_oib=getattr(settings, "FISCAL_OPERATOR_OIB", None) or None,
            certificate_path=getattr(settings, "FISCAL_CERT_PATH", None) or None,
            certificate_blob=getattr(settings, "FISCAL_CERT_BASE64", None) or None,
            certificate_password=getattr(settings, "FISCAL_CERT_PASSWORD", "") or "",
            ca_bundle=getattr(settings, "FISCAL_CA_BUNDLE", None) or None,
            request_timeout=float(getattr(settings, "FISCAL_REQUEST_TIMEOUT", 15)),
            retry_max=int(getattr(settings, "FISCAL_RETRY_MAX", 3)),
            retry_backoff=float(getattr(settings, "FISCAL_RETRY_BACKOFF", 0.5)),
            retry_backoff_max=float(getattr(settings, "FISCAL_RETRY_BACKOFF_MAX", 8)),
            sequence_mark=getattr(settings, "FISCAL_SEQUENCE_MARK", "N"),
            vat_registered=bool(getattr(settings, "FISCAL_VAT_REGISTERED", True)),
            error_kinds=dict(getattr(settings, "FISCAL_ERROR_KINDS", {}) or {}),
        )


def _resolve_environment(value: str, allow_production: bool) -> Environment:
    """
    PRODUCTION has to be opted into explicitly with FISCAL_ALLOW_PRODUCTION.
    Anything else falls back to TEST.
    """
    try:
        environment = Environment((value or "TEST").upper())
    except ValueError:
        logger.warning("FISCAL_ENVIRONMENT=%r not recognized, using TEST", value)
        return Environment.TEST

    if environment == Environment.PRODUCTION and not allow_production:
        logger.warning(
            "FISCAL_ENVIRONMENT=PRODUCTION without FISCAL_ALLOW_PRODUCTION, using TEST"
        )
        return Environment.TEST
    return environment
