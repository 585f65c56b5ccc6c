"""SQLModel ORM tables for accounts, song jobs and the credit ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Account(SQLModel, table=True):
    __tablename__ = "accounts"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),)

    account_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    credits: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SongJob(SQLModel, table=True):
    __tablename__ = "song_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_song_jobs_queue", "status", "created_at"),
        Index("idx_song_jobs_status_updated", "status", "updated_at"),
    )

    job_id: str = Field(primary_key=True)
    account_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    workout: str = Field(sa_column=Column(Text, nullable=False))
    music_style: str = ""
    custom_style: str = ""
    tone: str = ""
    language: str = ""
    athlete_name: str = ""
    track_name: str = ""
    title: str
    status: str = Field(index=True)
    lyrics: str | None = Field(default=None, sa_column=Column(Text))
    external_task_id: str | None = Field(default=None, unique=True, index=True)
    artifact_url: str | None = Field(default=None, sa_column=Column(Text))
    audio_attempts: int = Field(default=0)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    # early provider callback held until the job reaches processing
    deferred_callback_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SongJobEvent(SQLModel, table=True):
    __tablename__ = "song_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_song_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("song_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "kind", name="uq_ledger_entries_job_kind"),)

    id: int | None = Field(default=None, primary_key=True)
    account_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("song_jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    amount: int
    balance_before: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
