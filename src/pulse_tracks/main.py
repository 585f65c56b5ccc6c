"""CLI entrypoint for pulse-tracks."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from pulse_tracks import __version__
from pulse_tracks.jobs.controllers import (
    AccountCreateCommand,
    AccountGrantCommand,
    AccountShowCommand,
    CallbackApplyCommand,
    JobCreateCommand,
    JobInspectCommand,
    JobListCommand,
    JobRefCommand,
    RecoverStaleCommand,
    SongJobCliController,
    WorkerCommand,
)
from pulse_tracks.jobs.errors import PulseTracksError
from pulse_tracks.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SongJobCliController()

CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_ACCOUNT_OPTION = click.option(
    "--account",
    "account_id",
    required=True,
    help="Verified account id of the caller.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pulse-tracks")
def pulse_tracks() -> None:
    """Workout song generation CLI."""

    level = os.getenv("PULSE_TRACKS_LOG_LEVEL", "WARNING").strip().upper()
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pulse_tracks.group()
def accounts() -> None:
    """Account and credit commands."""


@accounts.command("create")
@_DB_PATH_OPTION
@click.argument("account_id")
@click.option("--name", "display_name", required=True, help="Display name.")
@click.option(
    "--credits",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Opening balance.",
)
def accounts_create(db_path: Path | None, account_id: str, display_name: str, credits: int) -> None:
    """Create an account with an opening credit balance."""

    _emit_lines(
        _run(
            CONTROLLER.create_account,
            AccountCreateCommand(
                db_path=db_path,
                account_id=account_id,
                display_name=display_name,
                credits=credits,
            ),
        ),
    )


@accounts.command("grant")
@_DB_PATH_OPTION
@click.argument("account_id")
@click.argument("amount", type=click.IntRange(min=1))
def accounts_grant(db_path: Path | None, account_id: str, amount: int) -> None:
    """Top up an account balance."""

    _emit_lines(
        _run(
            CONTROLLER.grant_credits,
            AccountGrantCommand(db_path=db_path, account_id=account_id, amount=amount),
        ),
    )


@accounts.command("show")
@_DB_PATH_OPTION
@click.argument("account_id")
def accounts_show(db_path: Path | None, account_id: str) -> None:
    """Show balance and ledger entries."""

    _emit_lines(
        _run(
            CONTROLLER.show_account,
            AccountShowCommand(db_path=db_path, account_id=account_id),
        ),
    )


@pulse_tracks.group()
def jobs() -> None:
    """Song job commands."""


@jobs.command("create")
@_DB_PATH_OPTION
@_ACCOUNT_OPTION
@click.option("--workout", required=True, help="Workout description.")
@click.option("--music-style", default="", help="Preset music style.")
@click.option("--custom-style", default="", help="Free-text style; overrides the preset.")
@click.option("--tone", default="", help="Lyrics tone.")
@click.option("--language", default="", help="Lyrics language.")
@click.option("--athlete-name", default="", help="Athlete to address in the lyrics.")
@click.option("--track-name", default="", help="Track title override.")
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    account_id: str,
    workout: str,
    music_style: str,
    custom_style: str,
    tone: str,
    language: str,
    athlete_name: str,
    track_name: str,
) -> None:
    """Admit a song job; lyrics are generated by the next lyrics worker run."""

    _emit_lines(
        _run(
            CONTROLLER.create_job,
            JobCreateCommand(
                db_path=db_path,
                account_id=account_id,
                workout=workout,
                music_style=music_style,
                custom_style=custom_style,
                tone=tone,
                language=language,
                athlete_name=athlete_name,
                track_name=track_name,
            ),
        ),
    )


@jobs.command("request-audio")
@_DB_PATH_OPTION
@_ACCOUNT_OPTION
@click.argument("job_id")
def jobs_request_audio(db_path: Path | None, account_id: str, job_id: str) -> None:
    """Queue audio generation for a job with finished lyrics."""

    _emit_lines(
        _run(
            CONTROLLER.request_audio,
            JobRefCommand(db_path=db_path, account_id=account_id, job_ref=job_id),
        ),
    )


@jobs.command("lyrics-status")
@_DB_PATH_OPTION
@_ACCOUNT_OPTION
@click.argument("job_id")
def jobs_lyrics_status(db_path: Path | None, account_id: str, job_id: str) -> None:
    """Poll lyrics for a job."""

    _emit_lines(
        _run(
            CONTROLLER.lyrics_status,
            JobRefCommand(db_path=db_path, account_id=account_id, job_ref=job_id),
        ),
    )


@jobs.command("audio-status")
@_DB_PATH_OPTION
@_ACCOUNT_OPTION
@click.argument("job_ref")
def jobs_audio_status(db_path: Path | None, account_id: str, job_ref: str) -> None:
    """Poll audio by job id or provider task id."""

    _emit_lines(
        _run(
            CONTROLLER.audio_status,
            JobRefCommand(db_path=db_path, account_id=account_id, job_ref=job_ref),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option("--account", "account_id", default=None, help="Only jobs owned by this account.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def jobs_list(db_path: Path | None, account_id: str | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _emit_lines(
        _run(
            CONTROLLER.list_jobs,
            JobListCommand(db_path=db_path, account_id=account_id, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job details, events and ledger entries."""

    _emit_lines(
        _run(CONTROLLER.inspect_job, JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


@jobs.command("delete")
@_DB_PATH_OPTION
@_ACCOUNT_OPTION
@click.argument("job_id")
def jobs_delete(db_path: Path | None, account_id: str, job_id: str) -> None:
    """Delete a finished or failed job."""

    _emit_lines(
        _run(
            CONTROLLER.delete_job,
            JobRefCommand(db_path=db_path, account_id=account_id, job_ref=job_id),
        ),
    )


@pulse_tracks.group()
def worker() -> None:
    """Trigger-driven stage workers (run from cron or a scheduler)."""


@worker.command("lyrics")
@_DB_PATH_OPTION
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Jobs to process before exiting.",
)
def worker_lyrics(db_path: Path | None, max_jobs: int) -> None:
    """Claim and process pending lyrics jobs."""

    _emit_lines(
        _run(CONTROLLER.run_lyrics_worker, WorkerCommand(db_path=db_path, max_jobs=max_jobs)),
    )


@worker.command("audio")
@_DB_PATH_OPTION
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Jobs to process before exiting.",
)
def worker_audio(db_path: Path | None, max_jobs: int) -> None:
    """Claim, charge and submit pending audio jobs."""

    _emit_lines(
        _run(CONTROLLER.run_audio_worker, WorkerCommand(db_path=db_path, max_jobs=max_jobs)),
    )


@worker.command("recover-stale")
@_DB_PATH_OPTION
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override PULSE_TRACKS_STALE_AFTER_SECONDS.",
)
@click.option(
    "--callback-timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override PULSE_TRACKS_CALLBACK_TIMEOUT_SECONDS.",
)
def worker_recover_stale(
    db_path: Path | None,
    stale_after_seconds: int | None,
    callback_timeout_seconds: int | None,
) -> None:
    """Release abandoned claims and expire submissions that never got a callback."""

    _emit_lines(
        _run(
            CONTROLLER.recover_stale,
            RecoverStaleCommand(
                db_path=db_path,
                stale_after_seconds=stale_after_seconds,
                callback_timeout_seconds=callback_timeout_seconds,
            ),
        ),
    )


@pulse_tracks.group()
def callback() -> None:
    """Audio-service callback commands."""


@callback.command("apply")
@_DB_PATH_OPTION
@click.option("--job-id", default=None, help="Job id the callback is addressed to.")
@click.option(
    "--callback-url",
    default=None,
    help="Callback address as invoked by the provider (jobId is read from it).",
)
@click.argument("payload", type=click.File("r"), default="-")
def callback_apply(
    db_path: Path | None,
    job_id: str | None,
    callback_url: str | None,
    payload,  # noqa: ANN001
) -> None:
    """Apply a JSON callback body read from PAYLOAD (default: stdin)."""

    _emit_lines(
        _run(
            CONTROLLER.apply_callback,
            CallbackApplyCommand(
                db_path=db_path,
                job_id=job_id,
                callback_url=callback_url,
                payload_text=payload.read(),
            ),
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (PulseTracksError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pulse_tracks()
