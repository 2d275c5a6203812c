# fiskalizacija/tests/test_workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

from django.test import SimpleTestCase, override_settings

from fiskalizacija.services.cis.client import TransportResponse
from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import (
    CertificateError,
    FiscalErrorKind,
    FiscalValidationError,
    ServerRejection,
    SigningError,
    SubmissionOutcomeUnknown,
    TransportError,
)
from fiskalizacija.services.cis.receipt import fiscal_receipt_url, qr_code_data
from fiskalizacija.services.cis.signer import verify_xml_signature
from fiskalizacija.services.cis.storno import create_full_storno
from fiskalizacija.services.cis.types import Environment, PipelineStage, ResultStatus
from fiskalizacija.services.cis.workflow import FiscalizationService, get_fiscalization_service
from fiskalizacija.services.cis.zki import compute_zki
from fiskalizacija.tests.helpers import (
    ORIGINAL_JIR,
    error_response,
    jir_response,
    make_certificate,
    make_request,
)

JIR = "6a4f2b1e-3c5d-4e7f-8a9b-0c1d2e3f4a5b"


class FiscalizationServiceTests(SimpleTestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.certificate = make_certificate()

    def setUp(self):
        self.client = Mock()
        self.config = FiscalConfig(environment=Environment.TEST, error_kinds={"s006": "DUPLICATE_INVOICE"})
        self.service = FiscalizationService(self.certificate, client=self.client, config=self.config)

    # ===================================================================
    # prepare (dry run)
    # ===================================================================

    def test_prepare_signs_without_sending(self):
        stages = []
        signed = self.service.prepare(make_request(), on_stage=lambda stage, _payload: stages.append(stage))

        self.assertEqual(signed.zki, compute_zki(self.certificate, make_request()))
        self.assertIn(signed.zki.encode("ascii"), signed.xml)
        self.assertTrue(verify_xml_signature(signed.xml, signed.sign_id))
        self.assertEqual(stages, [PipelineStage.ZKI_COMPUTED, PipelineStage.SIGNED])
        self.client.send.assert_not_called()

    def test_each_attempt_gets_fresh_ids(self):
        first = self.service.prepare(make_request())
        second = self.service.prepare(make_request())
        self.assertEqual(first.zki, second.zki)
        self.assertNotEqual(first.sign_id, second.sign_id)
        self.assertNotEqual(first.message_id, second.message_id)

    def test_invalid_request_raises_before_signing(self):
        with patch("fiskalizacija.services.cis.workflow.compute_zki") as zki:
            with self.assertRaises(FiscalValidationError):
                self.service.prepare(make_request(oib="00000000000"))
        zki.assert_not_called()

    # ===================================================================
    # run_pipeline
    # ===================================================================

    def test_accepted(self):
        self.client.send.return_value = TransportResponse(200, jir_response(JIR))
        stages = []
        result = self.service.run_pipeline(make_request(), on_stage=lambda stage, _payload: stages.append(stage))

        self.assertTrue(result.ok)
        self.assertEqual(result.status, ResultStatus.ACCEPTED)
        self.assertEqual(result.jir, JIR)
        self.assertEqual(len(result.zki), 32)
        self.assertEqual(result.fiscal_receipt_url, f"https://cistest.apis-it.hr:8449/qr/{JIR}")
        self.assertEqual(
            result.qr_code_data,
            f"https://porezna-uprava.gov.hr/rn|{JIR}|02.08.2025 21:48:29|7.00",
        )
        self.assertEqual(result.extra["http_status"], 200)
        self.assertIsNotNone(result.timestamp)
        self.assertEqual(stages, list(PipelineStage))

        data = result.as_dict()
        self.assertTrue(data["success"])
        self.assertEqual(data["jir"], JIR)
        self.assertNotIn("errorCode", data)

    def test_rejected(self):
        self.client.send.return_value = TransportResponse(200, error_response("s004", "Neispravan potpis"))
        result = self.service.submit_invoice(make_request())

        self.assertFalse(result.ok)
        self.assertEqual(result.status, ResultStatus.REJECTED)
        self.assertEqual(result.error_code, "s004")
        self.assertEqual(result.error_kind, FiscalErrorKind.INVALID_SIGNATURE)
        self.assertIsNotNone(result.zki)
        self.assertIsNone(result.jir)
        with self.assertRaises(ServerRejection):
            result.raise_for_status()

    def test_configured_error_kind(self):
        self.client.send.return_value = TransportResponse(200, error_response("s006", "Duplikat"))
        result = self.service.submit_invoice(make_request())
        self.assertEqual(result.error_kind, FiscalErrorKind.DUPLICATE_INVOICE)

    def test_unparseable_answer(self):
        self.client.send.return_value = TransportResponse(502, "<html>Bad Gateway</html>")
        result = self.service.submit_invoice(make_request())

        self.assertEqual(result.status, ResultStatus.UNKNOWN_RESPONSE)
        self.assertEqual(result.error_code, "UNKNOWN")
        self.assertEqual(result.raw_response, "<html>Bad Gateway</html>")
        self.assertEqual(result.extra["http_status"], 502)

    def test_outcome_unknown(self):
        self.client.send.side_effect = SubmissionOutcomeUnknown("read timed out", attempts=1)
        result = self.service.submit_invoice(make_request())

        self.assertFalse(result.ok)
        self.assertTrue(result.needs_reconciliation)
        self.assertEqual(result.status, ResultStatus.OUTCOME_UNKNOWN)
        self.assertEqual(result.error_kind, FiscalErrorKind.OUTCOME_UNKNOWN)
        self.assertEqual(result.extra["attempts"], 1)

    def test_transport_failed(self):
        self.client.send.side_effect = TransportError("unreachable", attempts=4)
        result = self.service.submit_invoice(make_request())

        self.assertEqual(result.status, ResultStatus.TRANSPORT_FAILED)
        self.assertEqual(result.error_code, "TRANSPORT")
        self.assertEqual(result.extra["attempts"], 4)
        with self.assertRaises(TransportError):
            result.raise_for_status()

    def test_signing_error_propagates_and_nothing_is_sent(self):
        certificate = make_certificate()
        certificate.close()
        service = FiscalizationService(certificate, client=self.client, config=self.config)
        with self.assertRaises(SigningError):
            service.submit_invoice(make_request())
        self.client.send.assert_not_called()

    def test_submit_storno(self):
        self.client.send.return_value = TransportResponse(200, jir_response(JIR))
        original = make_request(
            total_amount=Decimal("150.00"),
            vat_breakdown=(),
        )
        storno = create_full_storno(
            original,
            ORIGINAL_JIR,
            "Povrat robe",
            invoice_number="635",
            issued_at=original.issued_at,
        )
        result = self.service.submit_storno(storno)

        self.assertTrue(result.ok)
        self.assertEqual(result.extra["storno_state"], "ACCEPTED")
        self.assertEqual(result.extra["storno_type"], "FULL")
        sent = self.client.send.call_args.args[0]
        self.assertIn(f"<tns:StornoRacun>{ORIGINAL_JIR}</tns:StornoRacun>".encode("utf-8"), sent)
        self.assertIn(b"<tns:IznosUkupno>-150.00</tns:IznosUkupno>", sent)

    def test_close_releases_key_and_session(self):
        certificate = make_certificate()
        service = FiscalizationService(certificate, client=self.client, config=self.config)
        service.close()
        self.assertTrue(certificate.closed)
        self.client.close.assert_called_once()


class GetFiscalizationServiceTests(SimpleTestCase):
    def tearDown(self):
        get_fiscalization_service.cache_clear()

    @override_settings(FISCAL_CERT_PATH="", FISCAL_CERT_BASE64="")
    def test_missing_certificate(self):
        get_fiscalization_service.cache_clear()
        with self.assertRaises(CertificateError):
            get_fiscalization_service()


class ReceiptDataTests(SimpleTestCase):
    def test_qr_payload_uses_croatian_wall_clock_with_space(self):
        # 19:48:29 UTC is 21:48:29 in Zagreb (CEST)
        request = make_request(issued_at=datetime(2025, 8, 2, 19, 48, 29, tzinfo=timezone.utc))
        self.assertEqual(
            qr_code_data(JIR, request),
            f"https://porezna-uprava.gov.hr/rn|{JIR}|02.08.2025 21:48:29|7.00",
        )

    def test_receipt_url_per_environment(self):
        self.assertEqual(fiscal_receipt_url(JIR, Environment.TEST), f"https://cistest.apis-it.hr:8449/qr/{JIR}")
        self.assertEqual(
            fiscal_receipt_url(JIR, Environment.PRODUCTION),
            f"https://porezna-uprava.gov.hr/rn?jir={JIR}",
        )
