"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import text

from pulse_tracks.clients.base import AudioSubmission, AudioSubmissionResult
from pulse_tracks.jobs.models import JobInputs, JobStatus, JobView
from pulse_tracks.jobs.repository import JobRepository

CALLBACK_BASE_URL = "https://hooks.example.com/audio-callback"


class FakeLyricsGenerator:
    """Returns canned lyrics or raises the configured error."""

    def __init__(self, result: str | Exception = "Run strong\nRun far") -> None:
        self.result = result
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeAudioGenerator:
    """Plays back one scripted outcome per submission; the last one repeats."""

    def __init__(self, *outcomes: str | Exception) -> None:
        self.outcomes = list(outcomes) or ["task-1"]
        self.submissions: list[AudioSubmission] = []

    def submit(self, request: AudioSubmission) -> AudioSubmissionResult:
        self.submissions.append(request)
        index = min(len(self.submissions), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return AudioSubmissionResult(external_task_id=outcome)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "pulse.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def execute_sql(
    repository: JobRepository,
    statement: str,
    params: dict[str, object] | None = None,
) -> None:
    """Write rows directly, for states the public API never produces."""

    with repository.engine.begin() as connection:
        connection.execute(text(statement), params or {})


def make_inputs(**overrides: str) -> JobInputs:
    values = {
        "workout": "Hill sprints",
        "music_style": "rock",
        "tone": "Fierce",
        "language": "English",
        "athlete_name": "Sam",
    }
    values.update(overrides)
    return JobInputs(**values)


def seed_job(
    repository: JobRepository,
    *,
    account_id: str = "acct-1",
    credits: int = 1,
    create_account: bool = True,
) -> JobView:
    if create_account:
        repository.create_account(account_id=account_id, display_name="Sam", credits=credits)
    return repository.create_job(
        account_id=account_id,
        inputs=make_inputs(),
        title="Hill sprints - rock",
        price=1,
    )


def seed_lyrics_complete_job(repository: JobRepository, **kwargs: object) -> JobView:
    job = seed_job(repository, **kwargs)  # type: ignore[arg-type]
    claimed = repository.claim_next_lyrics_job()
    assert claimed is not None and claimed.job_id == job.job_id
    assert repository.complete_lyrics(job_id=job.job_id, lyrics="Run strong\nRun far")
    return job


def seed_audio_pending_job(repository: JobRepository, **kwargs: object) -> JobView:
    job = seed_lyrics_complete_job(repository, **kwargs)
    account_id = str(kwargs.get("account_id", "acct-1"))
    return repository.request_audio(account_id=account_id, job_id=job.job_id, price=1)


def seed_processing_job(
    repository: JobRepository,
    *,
    task_id: str = "task-1",
    **kwargs: object,
) -> JobView:
    job = seed_audio_pending_job(repository, **kwargs)
    claim = repository.claim_next_audio_job(price=1)
    assert claim is not None and claim.job.job_id == job.job_id
    status = repository.mark_audio_submitted(job_id=job.job_id, external_task_id=task_id)
    assert status == JobStatus.PROCESSING
    view = repository.get_job(job_id=job.job_id)
    assert view is not None
    return view
