"""Stage processors driving the external generative services."""

from __future__ import annotations

import logging

from pulse_tracks.clients.base import AudioGenerator, AudioSubmission, LyricsGenerator
from pulse_tracks.jobs.contracts import build_callback_url
from pulse_tracks.jobs.errors import ExternalServiceError, TransientExternalFailure
from pulse_tracks.jobs.models import AudioClaim, FailureClass, JobStatus, JobView
from pulse_tracks.jobs.prompts import audio_style, audio_title, build_lyrics_prompt
from pulse_tracks.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class LyricsStage:
    """Turns a ``lyrics_processing`` job into ``lyrics_complete`` or ``lyrics_error``."""

    def __init__(self, *, repository: JobRepository, generator: LyricsGenerator) -> None:
        self.repository = repository
        self.generator = generator

    def process(self, job: JobView) -> JobStatus | None:
        """Run one generation call; returns the committed status or ``None`` on conflict."""

        prompt = build_lyrics_prompt(job.inputs)
        try:
            lyrics = self.generator.generate(prompt).strip()
        except ExternalServiceError as error:
            logger.warning(
                "Lyrics generation failed for job %s (%s): %s",
                job.job_id,
                error.failure_class.value,
                error,
            )
            return self._fail(
                job=job,
                failure_class=error.failure_class,
                summary=str(error),
                details=error.details,
            )

        if not lyrics:
            return self._fail(
                job=job,
                failure_class=FailureClass.MALFORMED_RESPONSE,
                summary="lyrics service returned empty text",
            )
        if not self.repository.complete_lyrics(job_id=job.job_id, lyrics=lyrics):
            logger.warning("Job %s left lyrics_processing before lyrics were stored", job.job_id)
            return None
        logger.info("Lyrics stored for job %s (%d chars)", job.job_id, len(lyrics))
        return JobStatus.LYRICS_COMPLETE

    def fail_unexpected(self, job: JobView, error: BaseException) -> JobStatus | None:
        return self._fail(
            job=job,
            failure_class=FailureClass.SERVICE_REJECTED,
            summary=f"internal error: {error}",
        )

    def _fail(
        self,
        *,
        job: JobView,
        failure_class: FailureClass,
        summary: str,
        details: dict[str, object] | None = None,
    ) -> JobStatus | None:
        if not self.repository.fail_lyrics(
            job_id=job.job_id,
            failure_class=failure_class,
            error_summary=summary,
            details=details,
        ):
            logger.warning("Job %s left lyrics_processing before failure was stored", job.job_id)
            return None
        return JobStatus.LYRICS_ERROR


class AudioStage:
    """Submits a charged ``audio_processing`` job and records the provider task id."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        generator: AudioGenerator,
        callback_base_url: str,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.repository = repository
        self.generator = generator
        self.callback_base_url = callback_base_url
        self.max_attempts = max_attempts

    def process(self, claim: AudioClaim) -> JobStatus | None:
        job = claim.job
        if claim.insufficient_credits:
            return JobStatus.ERROR
        if not job.lyrics:
            return self._fail(
                job=job,
                failure_class=FailureClass.MALFORMED_RESPONSE,
                summary="job reached the audio stage without lyrics",
            )

        submission = AudioSubmission(
            style=audio_style(job.inputs),
            title=audio_title(title=job.title, track_name=job.inputs.track_name),
            prompt=job.lyrics,
            callback_url=build_callback_url(base_url=self.callback_base_url, job_id=job.job_id),
        )
        try:
            result = self.generator.submit(submission)
        except TransientExternalFailure as error:
            status = self.repository.retry_or_exhaust_audio(
                job_id=job.job_id,
                failure_class=error.failure_class,
                error_summary=str(error),
                max_attempts=self.max_attempts,
                details=error.details,
            )
            logger.warning(
                "Transient audio submission failure for job %s (attempt %d/%d): %s -> %s",
                job.job_id,
                job.audio_attempts,
                self.max_attempts,
                error,
                status.value if status is not None else "conflict",
            )
            return status
        except ExternalServiceError as error:
            logger.error("Audio submission rejected for job %s: %s", job.job_id, error)
            return self._fail(
                job=job,
                failure_class=error.failure_class,
                summary=str(error),
                details=error.details,
            )

        status = self.repository.mark_audio_submitted(
            job_id=job.job_id,
            external_task_id=result.external_task_id,
        )
        if status is None:
            logger.error(
                "Job %s could not record task %s; it left audio_processing concurrently",
                job.job_id,
                result.external_task_id,
            )
            return None
        logger.info(
            "Audio task %s submitted for job %s -> %s",
            result.external_task_id,
            job.job_id,
            status.value,
        )
        return status

    def fail_unexpected(self, claim: AudioClaim, error: BaseException) -> JobStatus | None:
        return self._fail(
            job=claim.job,
            failure_class=FailureClass.SERVICE_REJECTED,
            summary=f"internal error: {error}",
        )

    def _fail(
        self,
        *,
        job: JobView,
        failure_class: FailureClass,
        summary: str,
        details: dict[str, object] | None = None,
    ) -> JobStatus | None:
        if not self.repository.fail_audio(
            job_id=job.job_id,
            status_from=JobStatus.AUDIO_PROCESSING,
            failure_class=failure_class,
            error_summary=summary,
            refund=True,
            details=details,
        ):
            logger.warning("Job %s left audio_processing before failure was stored", job.job_id)
            return None
        return JobStatus.ERROR
