# fiskalizacija/views.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from fiskalizacija.models import FiscalSubmission
from fiskalizacija.serializers import (
    FiscalInvoiceSerializer,
    FiscalStornoSerializer,
    FiscalSubmissionSerializer,
    ReconcileSerializer,
    storno_payload,
)
from fiskalizacija.services.cis.exceptions import CertificateError, FiscalError
from fiskalizacija.services.cis.types import FiscalResult, ResultStatus
from fiskalizacija.services.submissions import (
    IdentityLocked,
    StornoNotAllowed,
    process_submission,
    register_submission,
)
from fiskalizacija.tasks import submit_invoice_task, submit_storno_task

logger = logging.getLogger(__name__)

RESULT_HTTP_STATUS = {
    ResultStatus.ACCEPTED: status.HTTP_200_OK,
    ResultStatus.REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ResultStatus.UNKNOWN_RESPONSE: status.HTTP_502_BAD_GATEWAY,
    ResultStatus.TRANSPORT_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ResultStatus.OUTCOME_UNKNOWN: status.HTTP_504_GATEWAY_TIMEOUT,
}


def _error_body(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "success": False,
        "errorCode": code,
        "errorMessage": message,
        "timestamp": timezone.now().isoformat(),
    }
    data.update(extra)
    return data


class BaseFiscalView(APIView):
    """
    Shared POST flow for invoices and stornos:

    - 400 when the fields do not validate (nothing is signed or sent).
    - 409 when the identity already has a JIR, a CIS rejection, an unknown
      outcome or an attempt in flight, and when a storno would reverse more
      than is left of its original.
    - 202 with the submission id when async_submit is set.
    - Otherwise the FiscalResult, with an HTTP status per result status.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = None
    task = None

    def build(self, validated: Dict[str, Any]):
        """Returns (fiscal_request, storno_request or None, original submission or None)."""
        raise NotImplementedError

    def extra_payload(self, validated: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def post(self, request, *args, **kwargs):
        serializer = self.serializer_class(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data
        fiscal_request, storno, original = self.build(validated)

        try:
            submission = register_submission(
                fiscal_request,
                user=request.user,
                storno=storno,
                original=original,
            )
        except IdentityLocked as exc:
            return Response(
                _error_body(
                    "IDENTITY_LOCKED",
                    str(exc),
                    submissionId=exc.existing.pk,
                    status=exc.existing.status,
                    jir=exc.existing.jir or None,
                ),
                status=status.HTTP_409_CONFLICT,
            )
        except StornoNotAllowed as exc:
            logger.warning("Refusing storno of FiscalSubmission %s: %s", exc.original.pk, exc)
            return Response(
                _error_body("STORNO_NOT_ALLOWED", str(exc), originalSubmissionId=exc.original.pk),
                status=status.HTTP_409_CONFLICT,
            )

        if validated.get("async_submit"):
            task = self.task
            transaction.on_commit(lambda: task.delay(submission.pk))
            return Response(
                {
                    "success": True,
                    "submissionId": submission.pk,
                    "status": submission.status,
                    **self.extra_payload(validated),
                },
                status=status.HTTP_202_ACCEPTED,
            )

        try:
            result = process_submission(submission)
        except CertificateError as exc:
            logger.error("Fiscal certificate unavailable: %s", exc)
            return Response(
                _error_body(exc.kind.value, str(exc), submissionId=submission.pk, reason=exc.reason),
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        except FiscalError as exc:
            logger.exception("Fiscalization of submission %s failed: %s", submission.pk, exc)
            return Response(
                _error_body(exc.kind.value, str(exc), submissionId=submission.pk),
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return self._result_response(submission, result, validated)

    def _result_response(
        self,
        submission: FiscalSubmission,
        result: FiscalResult,
        validated: Dict[str, Any],
    ) -> Response:
        data = result.as_dict()
        data["submissionId"] = submission.pk
        data.update(self.extra_payload(validated))
        return Response(data, status=RESULT_HTTP_STATUS[result.status])


class FiscalInvoiceView(BaseFiscalView):
    """POST /api/fiskalizacija/racuni/"""

    serializer_class = FiscalInvoiceSerializer
    task = submit_invoice_task

    def build(self, validated):
        return validated["fiscal_request"], None, None


class FiscalStornoView(BaseFiscalView):
    """POST /api/fiskalizacija/storno/"""

    serializer_class = FiscalStornoSerializer
    task = submit_storno_task

    def build(self, validated):
        storno = validated["storno_request"]
        return storno.invoice, storno, validated["original_submission"]

    def extra_payload(self, validated):
        return storno_payload(validated["storno_request"])


class FiscalSubmissionViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """
    Read access to submissions plus manual reconciliation of attempts whose
    outcome is unknown.
    """

    queryset = FiscalSubmission.objects.all()
    serializer_class = FiscalSubmissionSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = super().get_queryset()
        status_param: Optional[str] = self.request.query_params.get("status")
        if status_param:
            queryset = queryset.filter(status=status_param.upper())
        invoice_number = self.request.query_params.get("invoice_number")
        if invoice_number:
            queryset = queryset.filter(invoice_number=invoice_number)
        return queryset

    @action(detail=True, methods=["post"], url_path="reconcile")
    def reconcile(self, request, pk: Optional[str] = None):
        submission = self.get_object()
        serializer = ReconcileSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            submission.reconcile(serializer.validated_data.get("jir") or None)
        except ValueError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        logger.info(
            "FiscalSubmission %s reconciled by %s -> %s",
            submission.pk,
            request.user,
            submission.status,
        )
        return Response(FiscalSubmissionSerializer(submission).data, status=status.HTTP_200_OK)
