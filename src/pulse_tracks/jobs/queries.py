"""Ownership-checked, read-only status polls."""

from __future__ import annotations

from pulse_tracks.jobs.errors import ForbiddenError, JobNotFoundError
from pulse_tracks.jobs.models import AudioStatusView, JobStatus, JobView, LyricsStatusView
from pulse_tracks.jobs.repository import JobRepository
from pulse_tracks.jobs.state_machine import LYRICS_VISIBLE_STATUSES


class StatusQuery:
    def __init__(self, *, repository: JobRepository) -> None:
        self.repository = repository

    def get_lyrics_status(self, *, account_id: str, job_id: str) -> LyricsStatusView:
        job = self._owned(
            account_id=account_id,
            job_ref=job_id,
            job=self.repository.get_job(job_id=job_id),
        )
        lyrics = job.lyrics if job.status in LYRICS_VISIBLE_STATUSES else None
        return LyricsStatusView(job_id=job.job_id, status=job.status, lyrics=lyrics)

    def get_audio_status(self, *, account_id: str, job_ref: str) -> AudioStatusView:
        """Look up by job id first, then by the provider task id."""

        job = self.repository.get_job(job_id=job_ref)
        if job is None:
            job = self.repository.find_job_by_task_id(external_task_id=job_ref)
        job = self._owned(account_id=account_id, job_ref=job_ref, job=job)
        artifact_url = job.artifact_url if job.status == JobStatus.COMPLETE else None
        return AudioStatusView(
            job_id=job.job_id,
            external_task_id=job.external_task_id,
            status=job.status,
            artifact_url=artifact_url,
        )

    @staticmethod
    def _owned(*, account_id: str, job_ref: str, job: JobView | None) -> JobView:
        if job is None:
            raise JobNotFoundError(job_ref)
        if job.account_id != account_id:
            raise ForbiddenError(job_ref)
        return job
