"""Trigger-driven dequeue runs: one claimed job per invocation and stage."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from pulse_tracks.jobs.models import DequeueOutcome, FailureClass, JobStatus
from pulse_tracks.jobs.repository import JobRepository
from pulse_tracks.jobs.stages import AudioStage, LyricsStage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate dequeue counters for CLI reporting."""

    processed: int = 0
    idle: int = 0
    internal_errors: int = 0

    def add(self, outcome: DequeueOutcome) -> None:
        if outcome == DequeueOutcome.PROCESSED:
            self.processed += 1
        elif outcome == DequeueOutcome.IDLE:
            self.idle += 1
        else:
            self.internal_errors += 1


@dataclass(slots=True)
class StaleRecoverySummary:
    lyrics_failed: int = 0
    audio_retried: int = 0
    audio_failed: int = 0
    callbacks_expired: int = 0


class JobWorker:
    """Runs one claim plus stage processing per call.

    Safe to invoke from overlapping periodic triggers: the only coordination
    is the repository's atomic claim. Stage errors never escape; callers see
    ``PROCESSED``, ``IDLE`` or ``INTERNAL_ERROR`` only. A worker may be built
    with a single stage when the other service is not configured.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        lyrics_stage: LyricsStage | None = None,
        audio_stage: AudioStage | None = None,
        credits_per_song: int = 1,
        max_audio_attempts: int = 3,
        stale_after_seconds: int = 0,
        callback_timeout_seconds: int = 0,
    ) -> None:
        self.repository = repository
        self.lyrics_stage = lyrics_stage
        self.audio_stage = audio_stage
        self.credits_per_song = credits_per_song
        self.max_audio_attempts = max_audio_attempts
        self.stale_after_seconds = stale_after_seconds
        self.callback_timeout_seconds = callback_timeout_seconds

    def run_lyrics_dequeue(self) -> DequeueOutcome:
        stage = self.lyrics_stage
        if stage is None:
            raise RuntimeError("Lyrics stage is not configured for this worker.")
        try:
            self._recover_if_enabled()
            job = self.repository.claim_next_lyrics_job()
        except Exception:
            logger.exception("Lyrics dequeue failed before a job was claimed")
            return DequeueOutcome.INTERNAL_ERROR
        if job is None:
            return DequeueOutcome.IDLE

        try:
            stage.process(job)
        except Exception as error:
            logger.exception("Unexpected error in lyrics stage for job %s", job.job_id)
            self._best_effort(lambda: stage.fail_unexpected(job, error), job_id=job.job_id)
            return DequeueOutcome.INTERNAL_ERROR
        return DequeueOutcome.PROCESSED

    def run_audio_dequeue(self) -> DequeueOutcome:
        stage = self.audio_stage
        if stage is None:
            raise RuntimeError("Audio stage is not configured for this worker.")
        try:
            self._recover_if_enabled()
            claim = self.repository.claim_next_audio_job(price=self.credits_per_song)
        except Exception:
            logger.exception("Audio dequeue failed before a job was claimed")
            return DequeueOutcome.INTERNAL_ERROR
        if claim is None:
            return DequeueOutcome.IDLE

        try:
            stage.process(claim)
        except Exception as error:
            logger.exception("Unexpected error in audio stage for job %s", claim.job.job_id)
            self._best_effort(lambda: stage.fail_unexpected(claim, error), job_id=claim.job.job_id)
            return DequeueOutcome.INTERNAL_ERROR
        return DequeueOutcome.PROCESSED

    def run_batch(self, *, stage: str, max_jobs: int) -> WorkerRunSummary:
        """Drain up to ``max_jobs`` for one stage, stopping at the first idle poll."""

        runners: dict[str, Callable[[], DequeueOutcome]] = {
            "lyrics": self.run_lyrics_dequeue,
            "audio": self.run_audio_dequeue,
        }
        runner = runners.get(stage)
        if runner is None:
            raise ValueError(f"Unknown stage: {stage!r}")

        summary = WorkerRunSummary()
        for _ in range(max_jobs):
            outcome = runner()
            summary.add(outcome)
            if outcome == DequeueOutcome.IDLE:
                break
        return summary

    def recover_stale_jobs(
        self,
        *,
        stale_after: timedelta | None = None,
        callback_timeout: timedelta | None = None,
    ) -> StaleRecoverySummary:
        """Release claims abandoned by crashed or killed invocations.

        ``lyrics_processing`` goes to ``lyrics_error``; ``audio_processing`` is
        handled like a transient submission failure. With ``callback_timeout``,
        ``processing`` jobs the provider never called back for move to ``error``
        and their debit is refunded.
        """

        summary = StaleRecoverySummary()
        if callback_timeout is not None:
            self._expire_overdue_callbacks(callback_timeout=callback_timeout, summary=summary)
        if stale_after is None:
            return summary
        for job in self.repository.list_stale_jobs(stale_after=stale_after):
            if job.status == JobStatus.LYRICS_PROCESSING:
                if self.repository.fail_lyrics(
                    job_id=job.job_id,
                    failure_class=FailureClass.STALE_CLAIM,
                    error_summary="lyrics claim abandoned",
                ):
                    summary.lyrics_failed += 1
                    logger.warning("Recovered stale lyrics claim for job %s", job.job_id)
                continue

            status = self.repository.retry_or_exhaust_audio(
                job_id=job.job_id,
                failure_class=FailureClass.STALE_CLAIM,
                error_summary="audio claim abandoned",
                max_attempts=self.max_audio_attempts,
            )
            if status == JobStatus.AUDIO_PENDING:
                summary.audio_retried += 1
            elif status == JobStatus.ERROR:
                summary.audio_failed += 1
            if status is not None:
                logger.warning(
                    "Recovered stale audio claim for job %s -> %s",
                    job.job_id,
                    status.value,
                )
        return summary

    def _expire_overdue_callbacks(
        self,
        *,
        callback_timeout: timedelta,
        summary: StaleRecoverySummary,
    ) -> None:
        for job in self.repository.list_overdue_callbacks(callback_timeout=callback_timeout):
            if self.repository.fail_audio(
                job_id=job.job_id,
                status_from=JobStatus.PROCESSING,
                failure_class=FailureClass.CALLBACK_TIMEOUT,
                error_summary=(
                    f"no callback for task {job.external_task_id} "
                    f"within {int(callback_timeout.total_seconds())}s"
                ),
                refund=True,
            ):
                summary.callbacks_expired += 1
                logger.warning(
                    "Job %s (task %s) expired waiting for its callback; debit refunded",
                    job.job_id,
                    job.external_task_id,
                )

    def _recover_if_enabled(self) -> None:
        stale_after = (
            timedelta(seconds=self.stale_after_seconds) if self.stale_after_seconds > 0 else None
        )
        callback_timeout = (
            timedelta(seconds=self.callback_timeout_seconds)
            if self.callback_timeout_seconds > 0
            else None
        )
        if stale_after is None and callback_timeout is None:
            return
        self.recover_stale_jobs(stale_after=stale_after, callback_timeout=callback_timeout)

    def _best_effort(self, action: Callable[[], object], *, job_id: str) -> None:
        try:
            action()
        except Exception:
            logger.exception("Could not move job %s to an error state", job_id)
