# fiskalizacija/services/cis/workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import atexit
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from django.utils import timezone

from fiskalizacija.services.cis.certificates import CertificateStore, FiscalCertificate
from fiskalizacija.services.cis.client import CISClient, TransportResponse
from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import (
    CertificateError,
    FiscalErrorKind,
    SubmissionOutcomeUnknown,
    TransportError,
)
from fiskalizacija.services.cis.receipt import fiscal_receipt_url, qr_code_data
from fiskalizacija.services.cis.response_parser import UNKNOWN_CODE, parse_response
from fiskalizacija.services.cis.signer import sign_xml
from fiskalizacija.services.cis.storno import StornoEngine
from fiskalizacija.services.cis.types import (
    FiscalInvoiceRequest,
    FiscalResult,
    FiscalSuccess,
    PipelineStage,
    ResultStatus,
    SignedFiscalRequest,
    StornoRequest,
)
from fiskalizacija.services.cis.validation import validate_invoice_request
from fiskalizacija.services.cis.xml_builder import build_invoice_xml, new_message_id, new_sign_id
from fiskalizacija.services.cis.zki import compute_zki

logger = logging.getLogger("fiskalizacija.cis")

StageCallback = Callable[[PipelineStage, Any], None]


class FiscalizationService:
    """
    Orchestrates one fiscalization attempt:

        validation -> ZKI -> XML -> XML-DSIG -> POST -> RacunOdgovor

    Validation and signing errors raise (nothing was sent). Every outcome
    after the request left the process is returned as a FiscalResult, so
    the caller can persist it together with the raw CIS answer.

    ZKI, XML and signature are recomputed on every call; nothing is cached
    between attempts.
    """

    def __init__(
        self,
        certificate: FiscalCertificate,
        client: Optional[CISClient] = None,
        config: Optional[FiscalConfig] = None,
    ):
        self.certificate = certificate
        self.config = config or (client.config if client is not None else FiscalConfig())
        self.client = client or CISClient(self.config)

    def close(self) -> None:
        self.client.close()
        self.certificate.close()

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def prepare(
        self,
        request: FiscalInvoiceRequest,
        *,
        sent_at: Optional[datetime] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> SignedFiscalRequest:
        """Validated, ZKI-protected and signed RacunZahtjev. Does not touch the network."""
        validate_invoice_request(request)

        zki = compute_zki(self.certificate, request)
        if on_stage:
            on_stage(PipelineStage.ZKI_COMPUTED, zki)

        sign_id = new_sign_id()
        message_id = new_message_id()
        xml = build_invoice_xml(request, zki, sign_id, message_id, sent_at=sent_at)
        signed = SignedFiscalRequest(
            xml=sign_xml(xml, sign_id, self.certificate),
            sign_id=sign_id,
            message_id=message_id,
            zki=zki,
        )
        if on_stage:
            on_stage(PipelineStage.SIGNED, signed)
        return signed

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def run_pipeline(
        self,
        request: FiscalInvoiceRequest,
        on_stage: Optional[StageCallback] = None,
    ) -> FiscalResult:
        signed = self.prepare(request, on_stage=on_stage)

        logger.info(
            "Sending invoice %s/%s/%s to CIS (%s) IdPoruke=%s storno=%s",
            request.invoice_number,
            request.business_space_code,
            request.cash_register_code,
            self.config.environment.value,
            signed.message_id,
            request.is_storno,
        )
        if on_stage:
            on_stage(PipelineStage.SUBMITTED, signed)

        try:
            response = self.client.send(signed.xml)
        except SubmissionOutcomeUnknown as exc:
            return self._result(
                signed,
                ResultStatus.OUTCOME_UNKNOWN,
                error_code="OUTCOME_UNKNOWN",
                error_kind=FiscalErrorKind.OUTCOME_UNKNOWN,
                error_message=str(exc),
                extra={"attempts": exc.attempts},
            )
        except TransportError as exc:
            return self._result(
                signed,
                ResultStatus.TRANSPORT_FAILED,
                error_code="TRANSPORT",
                error_kind=FiscalErrorKind.TRANSPORT,
                error_message=str(exc),
                extra={"attempts": exc.attempts},
            )

        return self._interpret(request, signed, response)

    def _interpret(
        self,
        request: FiscalInvoiceRequest,
        signed: SignedFiscalRequest,
        response: TransportResponse,
    ) -> FiscalResult:
        parsed = parse_response(response.body, self.config.error_kinds)
        extra = {"http_status": response.status_code}

        if isinstance(parsed, FiscalSuccess):
            return self._result(
                signed,
                ResultStatus.ACCEPTED,
                jir=parsed.jir,
                fiscal_receipt_url=fiscal_receipt_url(parsed.jir, self.config.environment),
                qr_code_data=qr_code_data(parsed.jir, request),
                raw_response=parsed.raw_response,
                extra=extra,
            )

        if parsed.error_code == UNKNOWN_CODE:
            status = ResultStatus.UNKNOWN_RESPONSE
        else:
            status = ResultStatus.REJECTED
        return self._result(
            signed,
            status,
            error_code=parsed.error_code,
            error_kind=parsed.error_kind,
            error_message=parsed.error_message,
            raw_response=parsed.raw_response,
            extra=extra,
        )

    def _result(self, signed: SignedFiscalRequest, status: ResultStatus, **fields) -> FiscalResult:
        result = FiscalResult(
            status=status,
            zki=signed.zki,
            message_id=signed.message_id,
            timestamp=timezone.now(),
            **fields,
        )
        log = logger.info if result.ok else logger.warning
        log(
            "Fiscalization finished status=%s jir=%s zki=%s error=%s %s",
            result.status.value,
            result.jir,
            result.zki,
            result.error_code,
            result.error_message,
        )
        return result

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit_invoice(self, request: FiscalInvoiceRequest) -> FiscalResult:
        return self.run_pipeline(request)

    def submit_storno(self, storno: StornoRequest) -> FiscalResult:
        outcome = StornoEngine(self).submit(storno)
        return outcome.result


def load_certificate(config: FiscalConfig) -> FiscalCertificate:
    if config.certificate_path:
        return CertificateStore.load_file(config.certificate_path, config.certificate_password)
    if config.certificate_blob:
        return CertificateStore.load_base64(config.certificate_blob, config.certificate_password)
    raise CertificateError(
        CertificateError.MALFORMED_CONTAINER,
        "No fiscal certificate configured (FISCAL_CERT_PATH or FISCAL_CERT_BASE64).",
    )


@functools.lru_cache(maxsize=None)
def get_fiscalization_service() -> FiscalizationService:
    """
    Process-wide service built from Django settings.

    The certificate is loaded on first use and released at interpreter exit.
    """
    config = FiscalConfig.from_settings()
    certificate = load_certificate(config)
    service = FiscalizationService(certificate, config=config)
    atexit.register(service.close)
    return service
