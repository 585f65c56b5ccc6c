"""Durable job store, dequeue claims and ledger-coupled transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pulse_tracks.jobs import ledger
from pulse_tracks.jobs.errors import (
    AccountNotFoundError,
    ForbiddenError,
    InsufficientCreditsError,
    JobNotFoundError,
    WrongStateError,
)
from pulse_tracks.jobs.models import (
    AccountView,
    AudioClaim,
    CallbackOutcome,
    CallbackPayload,
    FailureClass,
    JobDetails,
    JobEventView,
    JobInputs,
    JobStatus,
    JobView,
    LedgerEntryKind,
    LedgerEntryView,
)
from pulse_tracks.jobs.state_machine import TERMINAL_STATUSES, ensure_transition, is_terminal
from pulse_tracks.storage.alembic_runner import upgrade_head
from pulse_tracks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pulse_tracks.storage.sqlmodel_models import Account, LedgerEntry, SongJob, SongJobEvent

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5_000


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- accounts ---------------------------------------------------------

    def create_account(
        self,
        *,
        account_id: str,
        display_name: str,
        credits: int = 0,
    ) -> AccountView:
        """Create an account; an opening balance is recorded as a grant."""

        if credits < 0:
            raise ValueError(f"Opening credits must be >= 0, got {credits}")
        now = utc_now()
        with Session(self.engine) as session:
            existing = session.exec(
                select(Account).where(Account.account_id == account_id),
            ).one_or_none()
            if existing is not None:
                raise ValueError(f"Account already exists: {account_id}")
            session.add(
                Account(
                    account_id=account_id,
                    display_name=display_name,
                    credits=0,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.flush()
            if credits:
                ledger.credit(
                    session,
                    account_id=account_id,
                    amount=credits,
                    kind=LedgerEntryKind.GRANT,
                )
            session.commit()
        account = self.get_account(account_id=account_id)
        if account is None:
            raise RuntimeError(f"Account not persisted: {account_id}")
        return account

    def grant_credits(self, *, account_id: str, amount: int) -> AccountView:
        """Top up a balance (payment capture happens outside this core)."""

        with Session(self.engine) as session:
            if ledger.get_balance(session, account_id=account_id) is None:
                raise AccountNotFoundError(account_id)
            ledger.credit(
                session,
                account_id=account_id,
                amount=amount,
                kind=LedgerEntryKind.GRANT,
            )
            session.commit()
        account = self.get_account(account_id=account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def get_account(self, *, account_id: str) -> AccountView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Account).where(Account.account_id == account_id),
            ).one_or_none()
            if row is None:
                return None
            return AccountView(
                account_id=row.account_id,
                display_name=row.display_name,
                credits=row.credits,
                created_at=to_utc_aware_datetime(row.created_at),
            )

    def list_ledger_entries(
        self,
        *,
        account_id: str | None = None,
        job_id: str | None = None,
    ) -> list[LedgerEntryView]:
        with Session(self.engine) as session:
            statement = select(LedgerEntry).order_by(col(LedgerEntry.id).asc())
            if account_id is not None:
                statement = statement.where(LedgerEntry.account_id == account_id)
            if job_id is not None:
                statement = statement.where(LedgerEntry.job_id == job_id)
            rows = session.exec(statement).all()
            return [_to_ledger_view(row) for row in rows]

    # -- admission and client transitions ----------------------------------

    def create_job(
        self,
        *,
        account_id: str,
        inputs: JobInputs,
        title: str,
        price: int,
    ) -> JobView:
        """Insert a ``lyrics_pending`` job if the balance covers ``price`` (no charge)."""

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            balance = ledger.get_balance(session, account_id=account_id)
            if balance is None:
                raise AccountNotFoundError(account_id)
            if balance < price:
                raise InsufficientCreditsError(
                    account_id=account_id,
                    balance=balance,
                    required=price,
                )
            row = SongJob(
                job_id=job_id,
                account_id=account_id,
                workout=inputs.workout,
                music_style=inputs.music_style,
                custom_style=inputs.custom_style,
                tone=inputs.tone,
                language=inputs.language,
                athlete_name=inputs.athlete_name,
                track_name=inputs.track_name,
                title=title,
                status=JobStatus.LYRICS_PENDING.value,
                audio_attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.LYRICS_PENDING,
                details={"title": title},
            )
            view = _to_job_view(row)
            session.commit()
        logger.info("Created job %s for account %s", job_id, account_id)
        return view

    def request_audio(self, *, account_id: str, job_id: str, price: int) -> JobView:
        """Move an owned ``lyrics_complete`` job to ``audio_pending`` (no charge)."""

        with Session(self.engine) as session:
            row = self._get_owned_job(session=session, job_id=job_id, account_id=account_id)
            status = JobStatus(row.status)
            if status != JobStatus.LYRICS_COMPLETE:
                raise WrongStateError(
                    job_id=job_id,
                    status=status,
                    expected=f"'{JobStatus.LYRICS_COMPLETE.value}'",
                )
            balance = ledger.get_balance(session, account_id=account_id)
            if balance is None:
                raise AccountNotFoundError(account_id)
            if balance < price:
                raise InsufficientCreditsError(
                    account_id=account_id,
                    balance=balance,
                    required=price,
                )
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.LYRICS_COMPLETE,
                status_to=JobStatus.AUDIO_PENDING,
                event_type="audio_requested",
            )
            if not moved:
                session.rollback()
                raise WrongStateError(
                    job_id=job_id,
                    status=status,
                    expected=f"'{JobStatus.LYRICS_COMPLETE.value}' (changed concurrently)",
                )
            view = _to_job_view(self._reload(session=session, job_id=job_id))
            session.commit()
        return view

    def delete_job(self, *, account_id: str, job_id: str) -> None:
        """Delete an owned job once it is terminal."""

        with Session(self.engine) as session:
            row = self._get_owned_job(session=session, job_id=job_id, account_id=account_id)
            status = JobStatus(row.status)
            if not is_terminal(status):
                raise WrongStateError(job_id=job_id, status=status, expected="a terminal status")
            result = session.exec(
                sa_delete(SongJob).where(
                    col(SongJob.job_id) == job_id,
                    col(SongJob.account_id) == account_id,
                    col(SongJob.status).in_([item.value for item in TERMINAL_STATUSES]),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(job_id)
            session.commit()
        logger.info("Deleted job %s for account %s", job_id, account_id)

    # -- dequeue claims -----------------------------------------------------

    def claim_next_lyrics_job(self) -> JobView | None:
        """Atomically claim the oldest ``lyrics_pending`` job."""

        while True:
            with Session(self.engine) as session:
                candidate = self._select_next(session=session, status=JobStatus.LYRICS_PENDING)
                if candidate is None:
                    return None
                claimed = self._transition(
                    session=session,
                    job_id=candidate.job_id,
                    status_from=JobStatus.LYRICS_PENDING,
                    status_to=JobStatus.LYRICS_PROCESSING,
                    event_type="claimed",
                )
                if not claimed:
                    session.rollback()
                    continue
                view = _to_job_view(self._reload(session=session, job_id=candidate.job_id))
                session.commit()
                logger.info("Claimed job %s for lyrics", view.job_id)
                return view

    def claim_next_audio_job(self, *, price: int) -> AudioClaim | None:
        """Atomically claim the oldest ``audio_pending`` job and charge it.

        The debit and the move to ``audio_processing`` commit together. A job
        that still holds an unrefunded debit from an earlier transient failure
        is not charged again. When the balance no longer covers the price the
        job goes straight to ``error`` with no charge.
        """

        while True:
            with Session(self.engine) as session:
                candidate = self._select_next(session=session, status=JobStatus.AUDIO_PENDING)
                if candidate is None:
                    return None
                job_id = candidate.job_id
                account_id = candidate.account_id

                charged_now = False
                balance_before: int | None = None
                if not ledger.holds_unrefunded_debit(session, job_id=job_id):
                    balance_before = ledger.debit_if_sufficient(
                        session,
                        account_id=account_id,
                        amount=price,
                        job_id=job_id,
                    )
                    if balance_before is None:
                        rejected = self._reject_for_credits(
                            session=session,
                            job_id=job_id,
                            account_id=account_id,
                            price=price,
                        )
                        if rejected is None:
                            continue
                        return rejected
                    charged_now = True

                claimed = self._transition(
                    session=session,
                    job_id=job_id,
                    status_from=JobStatus.AUDIO_PENDING,
                    status_to=JobStatus.AUDIO_PROCESSING,
                    event_type="claimed",
                    values={"audio_attempts": col(SongJob.audio_attempts) + 1},
                    details={"charged_now": charged_now, "balance_before": balance_before},
                )
                if not claimed:
                    session.rollback()
                    continue
                view = _to_job_view(self._reload(session=session, job_id=job_id))
                session.commit()
                logger.info(
                    "Claimed job %s for audio (attempt %d, charged_now=%s)",
                    job_id,
                    view.audio_attempts,
                    charged_now,
                )
                return AudioClaim(job=view, charged_now=charged_now, balance_before=balance_before)

    def _reject_for_credits(
        self,
        *,
        session: Session,
        job_id: str,
        account_id: str,
        price: int,
    ) -> AudioClaim | None:
        """Fail a short-balance job; ``None`` when another claimer moved it first."""

        balance = ledger.get_balance(session, account_id=account_id)
        moved = self._transition(
            session=session,
            job_id=job_id,
            status_from=JobStatus.AUDIO_PENDING,
            status_to=JobStatus.ERROR,
            event_type="insufficient_credits",
            values={
                "error_summary": f"Insufficient credits at audio claim: balance={balance}",
            },
            details={
                "failure_class": FailureClass.INSUFFICIENT_CREDITS.value,
                "balance": balance,
                "required": price,
            },
        )
        if not moved:
            session.rollback()
            return None
        view = _to_job_view(self._reload(session=session, job_id=job_id))
        session.commit()
        logger.warning(
            "Job %s failed audio claim: balance %s below price %d",
            job_id,
            balance,
            price,
        )
        return AudioClaim(
            job=view,
            charged_now=False,
            balance_before=None,
            insufficient_credits=True,
        )

    # -- stage outcomes ----------------------------------------------------

    def complete_lyrics(self, *, job_id: str, lyrics: str) -> bool:
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.LYRICS_PROCESSING,
                status_to=JobStatus.LYRICS_COMPLETE,
                event_type="lyrics_completed",
                values={"lyrics": lyrics, "error_summary": None},
                details={"lyrics_chars": len(lyrics)},
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_lyrics(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
        details: Mapping[str, object] | None = None,
    ) -> bool:
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.LYRICS_PROCESSING,
                status_to=JobStatus.LYRICS_ERROR,
                event_type="lyrics_failed",
                values={"lyrics": None, "error_summary": error_summary},
                details={**(details or {}), "failure_class": failure_class.value},
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_audio_submitted(self, *, job_id: str, external_task_id: str) -> JobStatus | None:
        """Record the provider task id (write-once) and move to ``processing``.

        A callback that arrived while the submission was still in flight is
        applied in the same transaction, so the returned status may already be
        ``complete`` or ``error``. Returns ``None`` when the job was no longer
        ``audio_processing``.
        """

        with Session(self.engine) as session:
            deferred = session.exec(
                select(SongJob.deferred_callback_json).where(SongJob.job_id == job_id),
            ).one_or_none()
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.AUDIO_PROCESSING,
                status_to=JobStatus.PROCESSING,
                event_type="audio_submitted",
                values={
                    "external_task_id": external_task_id,
                    "error_summary": None,
                    "deferred_callback_json": None,
                },
                details={"external_task_id": external_task_id},
                extra_where=(
                    or_(
                        col(SongJob.external_task_id).is_(None),
                        col(SongJob.external_task_id) == external_task_id,
                    ),
                ),
            )
            if not moved:
                session.rollback()
                return None
            status: JobStatus | None = JobStatus.PROCESSING
            if deferred:
                status = self._apply_deferred_callback(
                    session=session,
                    job_id=job_id,
                    external_task_id=external_task_id,
                    callback=_callback_from_json(deferred),
                )
                if status is None:
                    session.rollback()
                    return None
            session.commit()
            return status

    def defer_callback(self, *, job_id: str, callback: CallbackPayload) -> bool:
        """Hold a final callback for a job whose submission has not been recorded yet.

        Only the first early callback is kept. Returns ``False`` when the job is
        no longer ``audio_processing`` or already holds one.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SongJob)
                .where(
                    col(SongJob.job_id) == job_id,
                    col(SongJob.status) == JobStatus.AUDIO_PROCESSING.value,
                    col(SongJob.deferred_callback_json).is_(None),
                )
                .values(deferred_callback_json=_callback_to_json(callback)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="callback_deferred",
                status_from=JobStatus.AUDIO_PROCESSING,
                status_to=JobStatus.AUDIO_PROCESSING,
                details={"outcome": callback.outcome.value, "task_id": callback.task_id},
            )
            session.commit()
            return True

    def _apply_deferred_callback(
        self,
        *,
        session: Session,
        job_id: str,
        external_task_id: str,
        callback: CallbackPayload,
    ) -> JobStatus | None:
        if callback.task_id is not None and callback.task_id != external_task_id:
            logger.warning(
                "Deferred callback task %s does not match submitted task %s for job %s",
                callback.task_id,
                external_task_id,
                job_id,
            )
        if callback.outcome == CallbackOutcome.COMPLETE and callback.artifact_url is not None:
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETE,
                event_type="audio_completed",
                values={"artifact_url": callback.artifact_url},
                details={"artifact_url": callback.artifact_url, "deferred": True},
            )
            return JobStatus.COMPLETE if moved else None
        if callback.outcome == CallbackOutcome.FAIL:
            return self._fail_audio_in_session(
                session=session,
                job_id=job_id,
                status_from=JobStatus.PROCESSING,
                failure_class=FailureClass.CALLBACK_FAILED,
                error_summary=callback.failure_message or "audio generation failed",
                event_type="audio_failed",
                refund=True,
                details={"deferred": True},
            )
        logger.error("Deferred malformed callback for job %s: %s", job_id, callback.reason)
        return self._fail_audio_in_session(
            session=session,
            job_id=job_id,
            status_from=JobStatus.PROCESSING,
            failure_class=FailureClass.CALLBACK_MALFORMED,
            error_summary=f"malformed callback: {callback.reason}",
            event_type="audio_failed",
            refund=False,
            details={"deferred": True},
        )

    def retry_or_exhaust_audio(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
        max_attempts: int,
        details: Mapping[str, object] | None = None,
    ) -> JobStatus | None:
        """Handle a transient audio failure under the carried-debit policy.

        Below ``max_attempts`` the job returns to ``audio_pending`` keeping its
        debit; on the last attempt it moves to ``error`` and the debit is
        refunded in the same transaction. Returns the new status, or ``None``
        when the job was no longer ``audio_processing``.
        """

        with Session(self.engine) as session:
            row = session.exec(select(SongJob).where(SongJob.job_id == job_id)).one_or_none()
            if row is None or row.status != JobStatus.AUDIO_PROCESSING.value:
                return None
            if row.audio_attempts >= max_attempts:
                status = self._fail_audio_in_session(
                    session=session,
                    job_id=job_id,
                    status_from=JobStatus.AUDIO_PROCESSING,
                    failure_class=failure_class,
                    error_summary=f"{error_summary} (attempts exhausted: {row.audio_attempts})",
                    event_type="audio_attempts_exhausted",
                    refund=True,
                    details=details,
                )
                if status is None:
                    session.rollback()
                    return None
                session.commit()
                return status

            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.AUDIO_PROCESSING,
                status_to=JobStatus.AUDIO_PENDING,
                event_type="audio_retry_scheduled",
                values={"error_summary": error_summary},
                details={
                    **(details or {}),
                    "failure_class": failure_class.value,
                    "attempt": row.audio_attempts,
                    "max_attempts": max_attempts,
                },
            )
            if not moved:
                session.rollback()
                return None
            session.commit()
            return JobStatus.AUDIO_PENDING

    def fail_audio(
        self,
        *,
        job_id: str,
        status_from: JobStatus,
        failure_class: FailureClass,
        error_summary: str,
        refund: bool,
        details: Mapping[str, object] | None = None,
    ) -> bool:
        """Move an in-flight audio job to ``error``, refunding in the same transaction."""

        with Session(self.engine) as session:
            status = self._fail_audio_in_session(
                session=session,
                job_id=job_id,
                status_from=status_from,
                failure_class=failure_class,
                error_summary=error_summary,
                event_type="audio_failed",
                refund=refund,
                details=details,
            )
            if status is None:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_audio(self, *, job_id: str, artifact_url: str) -> bool:
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                job_id=job_id,
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETE,
                event_type="audio_completed",
                values={"artifact_url": artifact_url, "error_summary": None},
                details={"artifact_url": artifact_url},
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def _fail_audio_in_session(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        status_from: JobStatus,
        failure_class: FailureClass,
        error_summary: str,
        event_type: str,
        refund: bool,
        details: Mapping[str, object] | None = None,
    ) -> JobStatus | None:
        moved = self._transition(
            session=session,
            job_id=job_id,
            status_from=status_from,
            status_to=JobStatus.ERROR,
            event_type=event_type,
            values={"error_summary": error_summary},
            details={**(details or {}), "failure_class": failure_class.value, "refund": refund},
        )
        if not moved:
            return None
        if refund:
            refunded = ledger.refund_job_debit(session, job_id=job_id)
            if refunded is not None:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="refunded",
                    status_from=JobStatus.ERROR,
                    status_to=JobStatus.ERROR,
                    details={"amount": refunded},
                )
        return JobStatus.ERROR

    # -- stale claim recovery -------------------------------------------------

    def list_stale_jobs(self, *, stale_after: timedelta) -> list[JobView]:
        """Jobs stuck in a ``*_processing`` claim longer than ``stale_after``."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        return self._list_unchanged_since(
            statuses=(JobStatus.LYRICS_PROCESSING, JobStatus.AUDIO_PROCESSING),
            older_than=stale_after,
        )

    def list_overdue_callbacks(self, *, callback_timeout: timedelta) -> list[JobView]:
        """Submitted jobs whose provider has not called back within ``callback_timeout``."""

        if callback_timeout.total_seconds() <= 0:
            raise ValueError("callback_timeout must be > 0")
        return self._list_unchanged_since(
            statuses=(JobStatus.PROCESSING,),
            older_than=callback_timeout,
        )

    def _list_unchanged_since(
        self,
        *,
        statuses: tuple[JobStatus, ...],
        older_than: timedelta,
    ) -> list[JobView]:
        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            rows = session.exec(
                select(SongJob)
                .where(
                    col(SongJob.status).in_([status.value for status in statuses]),
                    col(SongJob.updated_at) < cutoff,
                )
                .order_by(col(SongJob.updated_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    # -- reads --------------------------------------------------------------

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(SongJob).where(SongJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def find_job_by_task_id(self, *, external_task_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SongJob).where(SongJob.external_task_id == external_task_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        account_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(SongJob).order_by(col(SongJob.created_at).desc()).limit(limit)
            if account_id is not None:
                statement = statement.where(SongJob.account_id == account_id)
            if status is not None:
                statement = statement.where(SongJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream and ledger entries."""

        with Session(self.engine) as session:
            row = session.exec(select(SongJob).where(SongJob.job_id == job_id)).one_or_none()
            if row is None:
                return None
            job = _to_job_view(row)
            event_rows = session.exec(
                select(SongJobEvent)
                .where(SongJobEvent.job_id == job_id)
                .order_by(col(SongJobEvent.created_at).asc(), col(SongJobEvent.id).asc()),
            ).all()
            events = [_to_event_view(event_row) for event_row in event_rows]
        return JobDetails(job=job, events=events, ledger=self.list_ledger_entries(job_id=job_id))

    # -- internals ------------------------------------------------------------

    def _select_next(self, *, session: Session, status: JobStatus) -> SongJob | None:
        return session.exec(
            select(SongJob)
            .where(SongJob.status == status.value)
            .order_by(col(SongJob.created_at).asc(), col(SongJob.job_id).asc())
            .limit(1)
            .with_for_update(skip_locked=True),
        ).one_or_none()

    def _reload(self, *, session: Session, job_id: str) -> SongJob:
        return session.exec(
            select(SongJob)
            .where(SongJob.job_id == job_id)
            .execution_options(populate_existing=True),
        ).one()

    def _get_owned_job(self, *, session: Session, job_id: str, account_id: str) -> SongJob:
        row = session.exec(select(SongJob).where(SongJob.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        if row.account_id != account_id:
            raise ForbiddenError(job_id)
        return row

    def _transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        status_from: JobStatus,
        status_to: JobStatus,
        event_type: str,
        values: Mapping[str, Any] | None = None,
        details: dict[str, object] | None = None,
        extra_where: tuple[Any, ...] = (),
    ) -> bool:
        """Status-guarded UPDATE plus audit event; ``False`` if the row moved on."""

        ensure_transition(status_from, status_to)
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(SongJob)
            .where(
                col(SongJob.job_id) == job_id,
                col(SongJob.status) == status_from.value,
                *extra_where,
            )
            .values(status=status_to.value, updated_at=now, **(values or {})),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            job_id=job_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details=details or {},
        )
        return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            SongJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_job_view(row: SongJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        account_id=row.account_id,
        inputs=JobInputs(
            workout=row.workout,
            music_style=row.music_style,
            custom_style=row.custom_style,
            tone=row.tone,
            language=row.language,
            athlete_name=row.athlete_name,
            track_name=row.track_name,
        ),
        title=row.title,
        status=JobStatus(row.status),
        lyrics=row.lyrics,
        external_task_id=row.external_task_id,
        artifact_url=row.artifact_url,
        audio_attempts=row.audio_attempts,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: SongJobEvent) -> JobEventView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )


def _to_ledger_view(row: LedgerEntry) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.id or 0,
        account_id=row.account_id,
        job_id=row.job_id,
        kind=LedgerEntryKind(row.kind),
        amount=row.amount,
        balance_before=row.balance_before,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _callback_to_json(callback: CallbackPayload) -> str:
    return json.dumps(
        {
            "outcome": callback.outcome.value,
            "task_id": callback.task_id,
            "artifact_url": callback.artifact_url,
            "failure_message": callback.failure_message,
            "reason": callback.reason,
        },
        ensure_ascii=False,
        sort_keys=True,
    )


def _callback_from_json(raw: str) -> CallbackPayload:
    data = json.loads(raw)
    return CallbackPayload(
        outcome=CallbackOutcome(data["outcome"]),
        task_id=data.get("task_id"),
        artifact_url=data.get("artifact_url"),
        failure_message=data.get("failure_message"),
        reason=data.get("reason"),
    )
