"""Apply out-of-band audio-service callbacks to the job they name."""

from __future__ import annotations

import logging
from typing import Any

from pulse_tracks.jobs.contracts import parse_callback_payload
from pulse_tracks.jobs.errors import ReconciliationConflict
from pulse_tracks.jobs.models import (
    CallbackAck,
    CallbackOutcome,
    CallbackPayload,
    FailureClass,
    JobStatus,
    JobView,
)
from pulse_tracks.jobs.repository import JobRepository
from pulse_tracks.jobs.state_machine import is_terminal

logger = logging.getLogger(__name__)


class CallbackReconciler:
    """Routes callbacks strictly by job id and applies each at most once.

    Every call is acknowledged. Terminal jobs absorb duplicate deliveries, and
    anything that cannot be applied is logged rather than reported back to
    the provider. A final callback that races ahead of the submission response
    is kept on the job and applied once the task id is recorded.
    """

    def __init__(self, *, repository: JobRepository) -> None:
        self.repository = repository

    def handle_callback(self, job_id: str, payload: Any) -> CallbackAck:
        try:
            return self._handle(job_id=job_id, payload=payload)
        except ReconciliationConflict as conflict:
            logger.warning("Callback conflict for job %s: %s", job_id, conflict)
            return CallbackAck(job_id=job_id, applied=False, detail=f"conflict: {conflict}")
        except Exception:
            logger.exception("Callback for job %s could not be applied", job_id)
            return CallbackAck(job_id=job_id, applied=False, detail="internal error")

    def _handle(self, *, job_id: str, payload: Any) -> CallbackAck:
        job = self.repository.get_job(job_id=job_id) if job_id else None
        if job is None:
            logger.warning("Callback for unknown job %r ignored", job_id)
            return CallbackAck(job_id=job_id, applied=False, detail="unknown job")

        parsed = parse_callback_payload(payload)
        if parsed.outcome == CallbackOutcome.PROGRESS:
            logger.info("Progress callback for job %s (task %s)", job_id, parsed.task_id)
            return CallbackAck(job_id=job_id, applied=False, detail="progress")

        if is_terminal(job.status):
            logger.info(
                "Duplicate %s callback for terminal job %s (%s) ignored",
                parsed.outcome.value,
                job_id,
                job.status.value,
            )
            return CallbackAck(job_id=job_id, applied=False, detail="already terminal")

        if job.status == JobStatus.AUDIO_PROCESSING:
            return self._defer(job=job, parsed=parsed)
        if job.status != JobStatus.PROCESSING:
            raise ReconciliationConflict(
                f"job is '{job.status.value}', not awaiting a callback",
            )
        self._cross_check_task_id(job=job, parsed=parsed)
        return self._apply(job=job, parsed=parsed)

    def _defer(self, *, job: JobView, parsed: CallbackPayload) -> CallbackAck:
        """Keep a callback that beat the submission response; applied on submit."""

        if self.repository.defer_callback(job_id=job.job_id, callback=parsed):
            logger.info(
                "Deferred %s callback for job %s until its submission is recorded",
                parsed.outcome.value,
                job.job_id,
            )
            return CallbackAck(job_id=job.job_id, applied=True, detail="deferred")

        current = self.repository.get_job(job_id=job.job_id)
        if current is not None and current.status == JobStatus.PROCESSING:
            self._cross_check_task_id(job=current, parsed=parsed)
            return self._apply(job=current, parsed=parsed)
        if current is not None and is_terminal(current.status):
            return CallbackAck(job_id=job.job_id, applied=False, detail="already terminal")
        if current is None or current.status == JobStatus.AUDIO_PROCESSING:
            raise ReconciliationConflict("an earlier callback is already deferred for this job")
        raise ReconciliationConflict(
            f"job is '{current.status.value}', not awaiting a callback",
        )

    def _apply(self, *, job: JobView, parsed: CallbackPayload) -> CallbackAck:
        if parsed.outcome == CallbackOutcome.COMPLETE and parsed.artifact_url is not None:
            applied = self.repository.complete_audio(
                job_id=job.job_id,
                artifact_url=parsed.artifact_url,
            )
            if applied:
                logger.info("Job %s complete: %s", job.job_id, parsed.artifact_url)
            return CallbackAck(job_id=job.job_id, applied=applied, detail="complete")

        if parsed.outcome == CallbackOutcome.FAIL:
            applied = self.repository.fail_audio(
                job_id=job.job_id,
                status_from=JobStatus.PROCESSING,
                failure_class=FailureClass.CALLBACK_FAILED,
                error_summary=parsed.failure_message or "audio generation failed",
                refund=True,
            )
            if applied:
                logger.warning("Job %s failed by callback: %s", job.job_id, parsed.failure_message)
            return CallbackAck(job_id=job.job_id, applied=applied, detail="fail")

        applied = self.repository.fail_audio(
            job_id=job.job_id,
            status_from=JobStatus.PROCESSING,
            failure_class=FailureClass.CALLBACK_MALFORMED,
            error_summary=f"malformed callback: {parsed.reason}",
            refund=False,
        )
        logger.error("Malformed callback for job %s: %s", job.job_id, parsed.reason)
        return CallbackAck(job_id=job.job_id, applied=applied, detail="malformed")

    def _cross_check_task_id(self, *, job: JobView, parsed: CallbackPayload) -> None:
        if parsed.task_id is None or job.external_task_id is None:
            return
        if parsed.task_id != job.external_task_id:
            logger.warning(
                "Callback task %s does not match stored task %s for job %s",
                parsed.task_id,
                job.external_task_id,
                job.job_id,
            )
