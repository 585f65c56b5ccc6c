"""Use-case services for song job admission and the owner's library."""

from __future__ import annotations

from dataclasses import dataclass

from pulse_tracks.jobs.errors import AccountNotFoundError, ValidationError
from pulse_tracks.jobs.models import AccountView, JobInputs, JobStatus, JobView
from pulse_tracks.jobs.prompts import default_title
from pulse_tracks.jobs.repository import JobRepository

WORKOUT_MAX_CHARS = 500
STYLE_MAX_CHARS = 200
SHORT_FIELD_MAX_CHARS = 100


@dataclass(slots=True)
class CreateSongJob:
    """High-level command to admit one song job."""

    account_id: str
    workout: str
    music_style: str = ""
    custom_style: str = ""
    tone: str = ""
    language: str = ""
    athlete_name: str = ""
    track_name: str = ""


class SongJobService:
    """Validates client requests and records them; never charges credits."""

    def __init__(self, *, repository: JobRepository, credits_per_song: int) -> None:
        self.repository = repository
        self.credits_per_song = credits_per_song

    def create_job(self, command: CreateSongJob) -> JobView:
        """Admit a job in ``lyrics_pending`` once inputs and balance check out."""

        inputs = validate_inputs(command)
        return self.repository.create_job(
            account_id=command.account_id,
            inputs=inputs,
            title=default_title(inputs),
            price=self.credits_per_song,
        )

    def request_audio_stage(self, *, account_id: str, job_id: str) -> JobView:
        return self.repository.request_audio(
            account_id=account_id,
            job_id=job_id,
            price=self.credits_per_song,
        )

    def delete_job(self, *, account_id: str, job_id: str) -> None:
        self.repository.delete_job(account_id=account_id, job_id=job_id)

    def list_jobs(
        self,
        *,
        account_id: str,
        limit: int = 50,
        status: JobStatus | None = None,
    ) -> list[JobView]:
        if limit <= 0:
            raise ValidationError([f"limit must be > 0, got {limit}"])
        return self.repository.list_jobs(account_id=account_id, status=status, limit=limit)

    def get_profile(self, *, account_id: str) -> AccountView:
        account = self.repository.get_account(account_id=account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account


def validate_inputs(command: CreateSongJob) -> JobInputs:
    """Trim and check admission fields; collects every problem before raising."""

    inputs = JobInputs(
        workout=command.workout.strip(),
        music_style=command.music_style.strip(),
        custom_style=command.custom_style.strip(),
        tone=command.tone.strip(),
        language=command.language.strip(),
        athlete_name=command.athlete_name.strip(),
        track_name=command.track_name.strip(),
    )
    problems: list[str] = []
    if not inputs.workout:
        problems.append("workout is required")
    _check_length(problems, "workout", inputs.workout, WORKOUT_MAX_CHARS)
    if not inputs.music_style and not inputs.custom_style:
        problems.append("either music_style or custom_style is required")
    _check_length(problems, "music_style", inputs.music_style, STYLE_MAX_CHARS)
    _check_length(problems, "custom_style", inputs.custom_style, STYLE_MAX_CHARS)
    for name in ("tone", "language", "athlete_name", "track_name"):
        _check_length(problems, name, getattr(inputs, name), SHORT_FIELD_MAX_CHARS)
    if problems:
        raise ValidationError(problems)
    return inputs


def _check_length(problems: list[str], name: str, value: str, limit: int) -> None:
    if len(value) > limit:
        problems.append(f"{name} must be at most {limit} characters (got {len(value)})")
