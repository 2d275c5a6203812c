# fiskalizacija/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from fiskalizacija.models import FiscalSubmission
from fiskalizacija.services.cis.exceptions import CertificateError, FiscalError, FiscalErrorKind
from fiskalizacija.services.submissions import (
    SubmissionNotPending,
    process_submission,
    release_claim,
)

logger = logging.getLogger(__name__)

FISCAL_TASK_SOFT_TIME_LIMIT = getattr(settings, "FISCAL_TASK_SOFT_TIME_LIMIT", 60)
FISCAL_TASK_TIME_LIMIT = getattr(settings, "FISCAL_TASK_TIME_LIMIT", 90)


def _run(task, submission_id: int, expect_storno: bool) -> Dict[str, Any]:
    """
    Shared body of the submission tasks.

    A Celery retry is only ever scheduled for CertificateError, which is
    raised before anything is signed or sent. Once the request may have
    reached CIS the task never runs again for the same identity.
    """
    try:
        submission = FiscalSubmission.objects.get(pk=submission_id)
    except FiscalSubmission.DoesNotExist:
        logger.error("%s: FiscalSubmission %s does not exist.", task.name, submission_id)
        return {"ok": False, "error": "FiscalSubmissionDoesNotExist"}

    if submission.is_storno != expect_storno:
        logger.error(
            "%s: FiscalSubmission %s has is_storno=%s", task.name, submission_id, submission.is_storno
        )
        return {"ok": False, "error": "WrongSubmissionType"}

    logger.info("%s started for submission_id=%s", task.name, submission_id)

    try:
        result = process_submission(submission)
    except SubmissionNotPending as exc:
        logger.warning("%s: %s", task.name, exc)
        return {"ok": False, "error": "SubmissionNotPending", "status": submission.status}
    except SoftTimeLimitExceeded:
        logger.error(
            "%s: soft time limit hit while submitting %s; outcome unknown, not retrying.",
            task.name,
            submission_id,
        )
        submission.refresh_from_db()
        if submission.status == FiscalSubmission.Status.PENDING:
            submission.mark_failed(
                FiscalSubmission.Status.OUTCOME_UNKNOWN,
                FiscalErrorKind.OUTCOME_UNKNOWN.value,
                "Task time limit exceeded during submission.",
            )
        return {"ok": False, "error": "OUTCOME_UNKNOWN", "status": submission.status}
    except CertificateError as exc:
        logger.exception("%s: certificate unavailable for %s: %s", task.name, submission_id, exc)
        if task.request.retries < task.max_retries:
            countdown = 60 * (2 ** task.request.retries)
            raise task.retry(exc=exc, countdown=countdown)
        release_claim(submission)
        submission.mark_failed(FiscalSubmission.Status.ERROR, exc.kind.value, str(exc))
        return {"ok": False, "error": exc.kind.value, "message": str(exc)}
    except FiscalError as exc:
        return {"ok": False, "error": exc.kind.value, "message": str(exc)}

    logger.info(
        "%s finished for submission_id=%s, status=%s",
        task.name,
        submission_id,
        result.status.value,
    )
    data = result.as_dict()
    data["submissionId"] = submission_id
    return data


@shared_task(
    bind=True,
    max_retries=3,
    soft_time_limit=FISCAL_TASK_SOFT_TIME_LIMIT,
    time_limit=FISCAL_TASK_TIME_LIMIT,
)
def submit_invoice_task(self, submission_id: int) -> Dict[str, Any]:
    """Fiscalizes a PENDING invoice submission in the background."""
    return _run(self, submission_id, expect_storno=False)


@shared_task(
    bind=True,
    max_retries=3,
    soft_time_limit=FISCAL_TASK_SOFT_TIME_LIMIT,
    time_limit=FISCAL_TASK_TIME_LIMIT,
)
def submit_storno_task(self, submission_id: int) -> Dict[str, Any]:
    """Fiscalizes a PENDING storno submission in the background."""
    return _run(self, submission_id, expect_storno=True)
