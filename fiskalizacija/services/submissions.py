# fiskalizacija/services/submissions.py
# -*- coding: utf-8 -*-
"""
Glue between FiscalSubmission records and the CIS pipeline.

- register_submission: creates the PENDING record, refusing identities
  that already have a JIR, a CIS rejection, an unknown outcome or an
  attempt in flight.
- process_submission: claims a PENDING record, runs the pipeline and
  stores the FiscalResult.

Used by the API views (synchronous path) and by the Celery tasks.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from fiskalizacija.models import FiscalSubmission
from fiskalizacija.services.cis.exceptions import CertificateError, FiscalError
from fiskalizacija.services.cis.types import (
    FiscalInvoiceRequest,
    FiscalResult,
    StornoRequest,
    StornoType,
)
from fiskalizacija.services.cis.workflow import FiscalizationService, get_fiscalization_service

logger = logging.getLogger("fiskalizacija.cis")


class IdentityLocked(Exception):
    """Another submission already holds this invoice identity."""

    def __init__(self, existing: FiscalSubmission):
        super().__init__(
            f"Invoice {existing.invoice_number}/{existing.business_space_code}/"
            f"{existing.cash_register_code} of {existing.invoice_date} already has a "
            f"{existing.status} submission (id={existing.pk})."
        )
        self.existing = existing


class SubmissionNotPending(Exception):
    """The submission was already processed or is being processed."""


class StornoNotAllowed(Exception):
    """The original invoice cannot be reversed by this storno."""

    def __init__(self, original: FiscalSubmission, message: str):
        super().__init__(message)
        self.original = original


def check_storno_allowed(original: FiscalSubmission, storno: StornoRequest) -> None:
    """
    A full storno needs an original nothing has reversed yet; a partial one
    may not push the reversed total past the original amount.
    """
    already = original.reversed_amount()
    if storno.storno_type == StornoType.FULL:
        if already:
            raise StornoNotAllowed(
                original,
                f"Invoice {original.invoice_number} already has stornos totalling {already}; "
                "a full storno is no longer possible.",
            )
        return

    amount = abs(Decimal(storno.invoice.total_amount))
    original_total = abs(Decimal(original.total_amount))
    if already + amount > original_total:
        raise StornoNotAllowed(
            original,
            f"Storno of {amount} exceeds what is left of invoice {original.invoice_number} "
            f"({original_total - already} of {original_total}).",
        )


def register_submission(
    request: FiscalInvoiceRequest,
    *,
    user: Any = None,
    storno: Optional[StornoRequest] = None,
    original: Optional[FiscalSubmission] = None,
) -> FiscalSubmission:
    invoice_date = request.invoice_date
    with transaction.atomic():
        existing = (
            FiscalSubmission.objects.select_for_update()
            .for_identity(
                request.invoice_number,
                request.business_space_code,
                request.cash_register_code,
                invoice_date,
            )
            .blocking()
            .first()
        )
        if existing is not None:
            logger.warning("Refusing resubmission: %s", existing)
            raise IdentityLocked(existing)

        if storno is not None and original is not None:
            # one storno at a time per original
            original = FiscalSubmission.objects.select_for_update().get(pk=original.pk)
            check_storno_allowed(original, storno)

        submission = FiscalSubmission.from_request(
            request,
            created_by=user if getattr(user, "is_authenticated", False) else None,
            original_submission=original,
            storno_type=storno.storno_type.value if storno else "",
        )
        try:
            with transaction.atomic():
                submission.save()
        except IntegrityError as exc:
            existing = (
                FiscalSubmission.objects.for_identity(
                    request.invoice_number,
                    request.business_space_code,
                    request.cash_register_code,
                    invoice_date,
                )
                .blocking()
                .first()
            )
            if existing is None:
                raise
            raise IdentityLocked(existing) from exc

    logger.info("FiscalSubmission %s registered (storno=%s)", submission.pk, submission.is_storno)
    return submission


def storno_request_for(submission: FiscalSubmission) -> StornoRequest:
    """Rebuilds the StornoRequest stored in a storno FiscalSubmission."""
    original = submission.original_submission
    storno_type = StornoType(submission.storno_type or StornoType.FULL.value)
    original_total = (
        Decimal(original.total_amount) if original is not None else abs(Decimal(submission.total_amount))
    )
    return StornoRequest(
        invoice=submission.to_request(),
        storno_type=storno_type,
        reason=submission.storno_reason,
        original_total=original_total,
        partial_amount=abs(Decimal(submission.total_amount)) if storno_type == StornoType.PARTIAL else None,
    )


def _claim(submission: FiscalSubmission) -> None:
    claimed = FiscalSubmission.objects.filter(
        pk=submission.pk,
        status=FiscalSubmission.Status.PENDING,
        submitted_at__isnull=True,
    ).update(submitted_at=timezone.now())
    if claimed != 1:
        raise SubmissionNotPending(f"FiscalSubmission {submission.pk} is not pending.")
    submission.refresh_from_db()


def release_claim(submission: FiscalSubmission) -> None:
    """Puts a PENDING submission back in the queue (nothing was sent)."""
    FiscalSubmission.objects.filter(
        pk=submission.pk,
        status=FiscalSubmission.Status.PENDING,
    ).update(submitted_at=None)


def process_submission(
    submission: FiscalSubmission,
    service: Optional[FiscalizationService] = None,
) -> FiscalResult:
    """
    Runs the pipeline for a PENDING submission and stores the outcome.

    CertificateError leaves the record PENDING (nothing was signed, the
    attempt may be repeated once the certificate is fixed). Any other
    FiscalError raised before sending marks it ERROR and propagates.
    """
    _claim(submission)

    try:
        service = service or get_fiscalization_service()
    except CertificateError:
        release_claim(submission)
        raise

    try:
        if submission.is_storno:
            result = service.submit_storno(storno_request_for(submission))
        else:
            result = service.submit_invoice(submission.to_request())
    except FiscalError as exc:
        logger.error("FiscalSubmission %s failed before sending: %s", submission.pk, exc)
        submission.mark_failed(FiscalSubmission.Status.ERROR, exc.kind.value, str(exc))
        raise

    submission.apply_result(result)
    logger.info(
        "FiscalSubmission %s -> %s (jir=%s, error=%s)",
        submission.pk,
        submission.status,
        submission.jir or "-",
        submission.error_code or "-",
    )
    return result
