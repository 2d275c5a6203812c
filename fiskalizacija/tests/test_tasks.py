# fiskalizacija/tests/test_tasks.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime
from unittest.mock import Mock, patch

from celery.exceptions import Retry, SoftTimeLimitExceeded
from django.test import TestCase

from fiskalizacija.models import FiscalSubmission
from fiskalizacija.services.cis.client import TransportResponse
from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import CertificateError
from fiskalizacija.services.cis.formatting import aware
from fiskalizacija.services.cis.workflow import FiscalizationService
from fiskalizacija.tasks import _run, submit_invoice_task, submit_storno_task
from fiskalizacija.tests.helpers import jir_response, make_certificate, make_request

JIR = "6a4f2b1e-3c5d-4e7f-8a9b-0c1d2e3f4a5b"


class SubmitInvoiceTaskTests(TestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.certificate = make_certificate()

    def setUp(self):
        self.submission = FiscalSubmission.from_request(
            make_request(issued_at=aware(datetime(2025, 8, 2, 21, 48, 29)))
        )
        self.submission.save()

    def test_submits_pending_invoice(self):
        transport = Mock()
        transport.send.return_value = TransportResponse(200, jir_response(JIR))
        service = FiscalizationService(self.certificate, client=transport, config=FiscalConfig.from_settings())

        with patch("fiskalizacija.services.submissions.get_fiscalization_service", return_value=service):
            data = submit_invoice_task.apply(args=(self.submission.pk,)).get()

        self.assertTrue(data["success"])
        self.assertEqual(data["jir"], JIR)
        self.assertEqual(data["submissionId"], self.submission.pk)
        self.submission.refresh_from_db()
        self.assertEqual(self.submission.status, FiscalSubmission.Status.ACCEPTED)

    def test_missing_submission(self):
        data = submit_invoice_task.apply(args=(999999,)).get()
        self.assertEqual(data["error"], "FiscalSubmissionDoesNotExist")

    def test_wrong_task_for_submission_type(self):
        data = submit_storno_task.apply(args=(self.submission.pk,)).get()
        self.assertEqual(data["error"], "WrongSubmissionType")

    def test_already_processed_submission_is_not_sent_again(self):
        FiscalSubmission.objects.filter(pk=self.submission.pk).update(
            status=FiscalSubmission.Status.ACCEPTED,
            jir=JIR,
        )
        with patch("fiskalizacija.services.submissions.get_fiscalization_service") as get_service:
            data = submit_invoice_task.apply(args=(self.submission.pk,)).get()

        self.assertEqual(data["error"], "SubmissionNotPending")
        get_service.assert_not_called()

    def test_soft_time_limit_marks_outcome_unknown(self):
        with patch("fiskalizacija.tasks.process_submission", side_effect=SoftTimeLimitExceeded()):
            data = submit_invoice_task.apply(args=(self.submission.pk,)).get()

        self.assertEqual(data["error"], "OUTCOME_UNKNOWN")
        self.submission.refresh_from_db()
        self.assertEqual(self.submission.status, FiscalSubmission.Status.OUTCOME_UNKNOWN)
        self.assertEqual(self.submission.error_kind, "OUTCOME_UNKNOWN")

    # ===================================================================
    # CertificateError: the only case that is retried
    # ===================================================================

    def _task(self, retries: int) -> Mock:
        task = Mock()
        task.name = "fiskalizacija.tasks.submit_invoice_task"
        task.max_retries = 3
        task.request.retries = retries
        task.retry.side_effect = Retry("retry")
        return task

    def test_certificate_error_schedules_retry(self):
        task = self._task(retries=1)
        error = CertificateError(CertificateError.EXPIRED, "expired")
        with patch("fiskalizacija.services.submissions.get_fiscalization_service", side_effect=error):
            with self.assertRaises(Retry):
                _run(task, self.submission.pk, expect_storno=False)

        task.retry.assert_called_once_with(exc=error, countdown=120)
        self.submission.refresh_from_db()
        self.assertEqual(self.submission.status, FiscalSubmission.Status.PENDING)
        self.assertIsNone(self.submission.submitted_at)

    def test_certificate_error_after_last_retry(self):
        task = self._task(retries=3)
        error = CertificateError(CertificateError.EXPIRED, "expired")
        with patch("fiskalizacija.services.submissions.get_fiscalization_service", side_effect=error):
            data = _run(task, self.submission.pk, expect_storno=False)

        self.assertEqual(data["error"], "CERTIFICATE")
        task.retry.assert_not_called()
        self.submission.refresh_from_db()
        self.assertEqual(self.submission.status, FiscalSubmission.Status.ERROR)
