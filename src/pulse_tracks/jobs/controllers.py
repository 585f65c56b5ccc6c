"""Controllers for song job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pulse_tracks.clients import OpenAiLyricsClient, SunoAudioClient
from pulse_tracks.config import Settings
from pulse_tracks.jobs.contracts import job_id_from_callback_url
from pulse_tracks.jobs.errors import JobNotFoundError
from pulse_tracks.jobs.models import JobStatus
from pulse_tracks.jobs.queries import StatusQuery
from pulse_tracks.jobs.reconciler import CallbackReconciler
from pulse_tracks.jobs.repository import JobRepository
from pulse_tracks.jobs.services import CreateSongJob, SongJobService
from pulse_tracks.jobs.stages import AudioStage, LyricsStage
from pulse_tracks.jobs.worker import JobWorker, WorkerRunSummary


@dataclass(slots=True)
class AccountCreateCommand:
    """CLI input for account creation."""

    db_path: Path | None
    account_id: str
    display_name: str
    credits: int


@dataclass(slots=True)
class AccountGrantCommand:
    db_path: Path | None
    account_id: str
    amount: int


@dataclass(slots=True)
class AccountShowCommand:
    db_path: Path | None
    account_id: str


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for song job admission."""

    db_path: Path | None
    account_id: str
    workout: str
    music_style: str
    custom_style: str
    tone: str
    language: str
    athlete_name: str
    track_name: str


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one owned job."""

    db_path: Path | None
    account_id: str
    job_ref: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    account_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for one trigger-driven worker invocation."""

    db_path: Path | None
    max_jobs: int


@dataclass(slots=True)
class RecoverStaleCommand:
    db_path: Path | None
    stale_after_seconds: int | None
    callback_timeout_seconds: int | None = None


@dataclass(slots=True)
class CallbackApplyCommand:
    """CLI input for applying one provider callback body."""

    db_path: Path | None
    job_id: str | None
    callback_url: str | None
    payload_text: str


class SongJobCliController:
    """Command handlers used by the root CLI module."""

    def create_account(self, command: AccountCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            account = repository.create_account(
                account_id=command.account_id,
                display_name=command.display_name,
                credits=command.credits,
            )
        return [f"Account created: {account.account_id} credits={account.credits}"]

    def grant_credits(self, command: AccountGrantCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            account = repository.grant_credits(
                account_id=command.account_id,
                amount=command.amount,
            )
        return [f"Credits granted: {account.account_id} credits={account.credits}"]

    def show_account(self, command: AccountShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            account = _service(repository, settings).get_profile(account_id=command.account_id)
            entries = repository.list_ledger_entries(account_id=command.account_id)

        lines = [
            f"Account: {account.account_id}",
            f"Name: {account.display_name}",
            f"Credits: {account.credits}",
            f"Ledger entries: {len(entries)}",
        ]
        for entry in entries:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.kind.value} amount={entry.amount} "
                f"balance_before={entry.balance_before} job={entry.job_id or '-'}",
            )
        return lines

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = _service(repository, settings).create_job(
                CreateSongJob(
                    account_id=command.account_id,
                    workout=command.workout,
                    music_style=command.music_style,
                    custom_style=command.custom_style,
                    tone=command.tone,
                    language=command.language,
                    athlete_name=command.athlete_name,
                    track_name=command.track_name,
                ),
            )
        return [
            f"Job created: {job.job_id}",
            f"Title: {job.title}",
            f"Status: {job.status.value}",
        ]

    def request_audio(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = _service(repository, settings).request_audio_stage(
                account_id=command.account_id,
                job_id=command.job_ref,
            )
        return [f"Audio requested: {job.job_id} status={job.status.value}"]

    def lyrics_status(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            view = StatusQuery(repository=repository).get_lyrics_status(
                account_id=command.account_id,
                job_id=command.job_ref,
            )
        lines = [f"Job: {view.job_id}", f"Status: {view.status.value}"]
        if view.lyrics is not None:
            lines.extend(["Lyrics:", *view.lyrics.splitlines()])
        return lines

    def audio_status(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            view = StatusQuery(repository=repository).get_audio_status(
                account_id=command.account_id,
                job_ref=command.job_ref,
            )
        return [
            f"Job: {view.job_id}",
            f"Task: {view.external_task_id or '-'}",
            f"Status: {view.status.value}",
            f"Audio: {view.artifact_url or '-'}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            if command.account_id is not None:
                jobs = _service(repository, settings).list_jobs(
                    account_id=command.account_id,
                    status=status_filter,
                    limit=command.limit,
                )
            else:
                jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} account={job.account_id} status={job.status.value} "
                f"attempts={job.audio_attempts} created={job.created_at.isoformat()} "
                f"title={job.title!r}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        """Operator view: includes error summaries and the ledger trail."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            raise JobNotFoundError(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Account: {job.account_id}",
            f"Title: {job.title}",
            f"Status: {job.status.value}",
            f"Audio attempts: {job.audio_attempts}",
            f"Task: {job.external_task_id or '-'}",
            f"Audio: {job.artifact_url or '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            status_from = event.status_from.value if event.status_from else "-"
            status_to = event.status_to.value if event.status_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{status_from}->{status_to} {json.dumps(event.details, sort_keys=True)}",
            )
        lines.append(f"Ledger entries: {len(details.ledger)}")
        for entry in details.ledger:
            lines.append(
                f"  {entry.kind.value} amount={entry.amount} balance_before={entry.balance_before}",
            )
        return lines

    def delete_job(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _service(repository, settings).delete_job(
                account_id=command.account_id,
                job_id=command.job_ref,
            )
        return [f"Job deleted: {command.job_ref}"]

    def run_lyrics_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        settings.validate_for_lyrics()
        with (
            _repository(settings) as repository,
            OpenAiLyricsClient(
                endpoint=settings.lyrics.endpoint,
                api_key=settings.lyrics.api_key,
                model=settings.lyrics.model,
                timeout_seconds=settings.lyrics.timeout_seconds,
            ) as client,
        ):
            worker = _worker(
                repository,
                settings,
                lyrics_stage=LyricsStage(repository=repository, generator=client),
            )
            summary = worker.run_batch(stage="lyrics", max_jobs=command.max_jobs)
        return [_summary_line("Lyrics", summary)]

    def run_audio_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        settings.validate_for_audio()
        with (
            _repository(settings) as repository,
            SunoAudioClient(
                endpoint=settings.audio.endpoint,
                api_key=settings.audio.api_key,
                model=settings.audio.model,
                timeout_seconds=settings.audio.timeout_seconds,
                instrumental=settings.audio.instrumental,
            ) as client,
        ):
            worker = _worker(
                repository,
                settings,
                audio_stage=AudioStage(
                    repository=repository,
                    generator=client,
                    callback_base_url=settings.audio.callback_base_url,
                    max_attempts=settings.pipeline.max_audio_attempts,
                ),
            )
            summary = worker.run_batch(stage="audio", max_jobs=command.max_jobs)
        return [_summary_line("Audio", summary)]

    def recover_stale(self, command: RecoverStaleCommand) -> list[str]:
        settings = _settings(command.db_path)
        stale_seconds = command.stale_after_seconds or settings.pipeline.stale_after_seconds
        callback_seconds = (
            command.callback_timeout_seconds or settings.pipeline.callback_timeout_seconds
        )
        if stale_seconds <= 0 and callback_seconds <= 0:
            raise ValueError(
                "Stale recovery is disabled; pass --stale-after-seconds or "
                "--callback-timeout-seconds > 0.",
            )
        with _repository(settings) as repository:
            summary = _worker(repository, settings).recover_stale_jobs(
                stale_after=timedelta(seconds=stale_seconds) if stale_seconds > 0 else None,
                callback_timeout=(
                    timedelta(seconds=callback_seconds) if callback_seconds > 0 else None
                ),
            )
        return [
            "Stale recovery: "
            f"lyrics_failed={summary.lyrics_failed} audio_retried={summary.audio_retried} "
            f"audio_failed={summary.audio_failed} "
            f"callbacks_expired={summary.callbacks_expired}",
        ]

    def apply_callback(self, command: CallbackApplyCommand) -> list[str]:
        job_id = command.job_id
        if job_id is None and command.callback_url is not None:
            job_id = job_id_from_callback_url(command.callback_url)
        if not job_id:
            raise ValueError("A job id is required: pass --job-id or a --callback-url with jobId.")
        try:
            payload: object = json.loads(command.payload_text)
        except json.JSONDecodeError:
            payload = None

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            ack = CallbackReconciler(repository=repository).handle_callback(job_id, payload)
        return [f"Callback acknowledged: job={ack.job_id} applied={ack.applied} ({ack.detail})"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(repository: JobRepository, settings: Settings) -> SongJobService:
    return SongJobService(
        repository=repository,
        credits_per_song=settings.pipeline.credits_per_song,
    )


def _worker(
    repository: JobRepository,
    settings: Settings,
    *,
    lyrics_stage: LyricsStage | None = None,
    audio_stage: AudioStage | None = None,
) -> JobWorker:
    return JobWorker(
        repository=repository,
        lyrics_stage=lyrics_stage,
        audio_stage=audio_stage,
        credits_per_song=settings.pipeline.credits_per_song,
        max_audio_attempts=settings.pipeline.max_audio_attempts,
        stale_after_seconds=settings.pipeline.stale_after_seconds,
        callback_timeout_seconds=settings.pipeline.callback_timeout_seconds,
    )


def _summary_line(label: str, summary: WorkerRunSummary) -> str:
    return (
        f"{label} worker summary: processed={summary.processed} "
        f"idle={summary.idle} internal_errors={summary.internal_errors}"
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
