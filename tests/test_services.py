from __future__ import annotations

import allure
import pytest

from pulse_tracks.jobs.errors import (
    AccountNotFoundError,
    ForbiddenError,
    InsufficientCreditsError,
    JobNotFoundError,
    ValidationError,
    WrongStateError,
)
from pulse_tracks.jobs.models import JobStatus
from pulse_tracks.jobs.queries import StatusQuery
from pulse_tracks.jobs.repository import JobRepository
from pulse_tracks.jobs.services import CreateSongJob, SongJobService, validate_inputs

from conftest import seed_job, seed_lyrics_complete_job, seed_processing_job

pytestmark = [
    allure.epic("Song Pipeline"),
    allure.feature("Client Operations"),
]


def _service(repository: JobRepository) -> SongJobService:
    return SongJobService(repository=repository, credits_per_song=1)


def test_create_job_trims_inputs_and_builds_default_title(repository: JobRepository) -> None:
    repository.create_account(account_id="acct-1", display_name="Sam", credits=1)

    job = _service(repository).create_job(
        CreateSongJob(
            account_id="acct-1",
            workout="  Tempo run  ",
            music_style="pop",
            custom_style=" synthwave ",
        ),
    )

    assert job.status == JobStatus.LYRICS_PENDING
    assert job.inputs.workout == "Tempo run"
    assert job.title == "Tempo run - synthwave"


def test_create_job_without_credits_is_rejected(repository: JobRepository) -> None:
    repository.create_account(account_id="acct-1", display_name="Sam", credits=0)

    with pytest.raises(InsufficientCreditsError):
        _service(repository).create_job(
            CreateSongJob(account_id="acct-1", workout="Tempo run", music_style="pop"),
        )
    assert repository.list_jobs(account_id="acct-1") == []


def test_validation_collects_every_problem() -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_inputs(
            CreateSongJob(account_id="acct-1", workout=" ", tone="x" * 101),
        )

    assert excinfo.value.problems == [
        "workout is required",
        "either music_style or custom_style is required",
        "tone must be at most 100 characters (got 101)",
    ]


def test_validation_enforces_length_limits() -> None:
    with pytest.raises(ValidationError, match="workout must be at most 500"):
        validate_inputs(CreateSongJob(account_id="a", workout="w" * 501, music_style="pop"))
    with pytest.raises(ValidationError, match="custom_style must be at most 200"):
        validate_inputs(CreateSongJob(account_id="a", workout="w", custom_style="s" * 201))

    accepted = validate_inputs(
        CreateSongJob(account_id="a", workout="w" * 500, custom_style="s" * 200),
    )
    assert accepted.effective_style == "s" * 200


def test_request_audio_stage_requires_finished_lyrics(repository: JobRepository) -> None:
    job = seed_job(repository, credits=1)

    with pytest.raises(WrongStateError):
        _service(repository).request_audio_stage(account_id="acct-1", job_id=job.job_id)


def test_profile_and_library(repository: JobRepository) -> None:
    seed_job(repository, credits=2)
    service = _service(repository)

    profile = service.get_profile(account_id="acct-1")
    assert (profile.display_name, profile.credits) == ("Sam", 2)
    assert len(service.list_jobs(account_id="acct-1")) == 1
    with pytest.raises(AccountNotFoundError):
        service.get_profile(account_id="ghost")
    with pytest.raises(ValidationError):
        service.list_jobs(account_id="acct-1", limit=0)


def test_lyrics_status_hides_text_until_defined(repository: JobRepository) -> None:
    pending = seed_job(repository, credits=5)
    query = StatusQuery(repository=repository)

    view = query.get_lyrics_status(account_id="acct-1", job_id=pending.job_id)
    assert view.status == JobStatus.LYRICS_PENDING
    assert view.lyrics is None
    assert not view.ready

    repository.claim_next_lyrics_job()
    repository.complete_lyrics(job_id=pending.job_id, lyrics="Go go go")
    view = query.get_lyrics_status(account_id="acct-1", job_id=pending.job_id)
    assert view.ready
    assert view.lyrics == "Go go go"


def test_status_queries_enforce_ownership(repository: JobRepository) -> None:
    job = seed_lyrics_complete_job(repository, credits=1)
    repository.create_account(account_id="other", display_name="Other")
    query = StatusQuery(repository=repository)

    with pytest.raises(ForbiddenError):
        query.get_lyrics_status(account_id="other", job_id=job.job_id)
    with pytest.raises(ForbiddenError):
        query.get_audio_status(account_id="other", job_ref=job.job_id)
    with pytest.raises(JobNotFoundError):
        query.get_audio_status(account_id="acct-1", job_ref="missing")


def test_audio_status_by_job_id_or_task_id(repository: JobRepository) -> None:
    job = seed_processing_job(repository, task_id="suno-42", credits=1)
    query = StatusQuery(repository=repository)

    by_task = query.get_audio_status(account_id="acct-1", job_ref="suno-42")
    assert by_task.job_id == job.job_id
    assert by_task.status == JobStatus.PROCESSING
    assert by_task.artifact_url is None
    assert not by_task.ready

    repository.complete_audio(job_id=job.job_id, artifact_url="https://cdn.example.com/a.mp3")
    by_job = query.get_audio_status(account_id="acct-1", job_ref=job.job_id)
    assert by_job.ready
    assert by_job.artifact_url == "https://cdn.example.com/a.mp3"
    assert by_job.external_task_id == "suno-42"
