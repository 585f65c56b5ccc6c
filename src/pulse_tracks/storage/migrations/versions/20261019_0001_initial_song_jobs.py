"""Create accounts, song jobs, job events and credit ledger tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
        sa.CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
    )
    op.create_index("ix_accounts_account_id", "accounts", ["account_id"])
    op.create_index("ix_accounts_display_name", "accounts", ["display_name"])

    op.create_table(
        "song_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("workout", sa.Text(), nullable=False),
        sa.Column("music_style", sa.String(), nullable=False, server_default=""),
        sa.Column("custom_style", sa.String(), nullable=False, server_default=""),
        sa.Column("tone", sa.String(), nullable=False, server_default=""),
        sa.Column("language", sa.String(), nullable=False, server_default=""),
        sa.Column("athlete_name", sa.String(), nullable=False, server_default=""),
        sa.Column("track_name", sa.String(), nullable=False, server_default=""),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("lyrics", sa.Text(), nullable=True),
        sa.Column("external_task_id", sa.String(), nullable=True),
        sa.Column("artifact_url", sa.Text(), nullable=True),
        sa.Column("audio_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_song_jobs_account_id", "song_jobs", ["account_id"])
    op.create_index("ix_song_jobs_status", "song_jobs", ["status"])
    op.create_index(
        "ix_song_jobs_external_task_id",
        "song_jobs",
        ["external_task_id"],
        unique=True,
    )
    op.create_index("idx_song_jobs_queue", "song_jobs", ["status", "created_at"])

    op.create_table(
        "song_job_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["song_jobs.job_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_song_job_events_job_id", "song_job_events", ["job_id"])
    op.create_index("ix_song_job_events_event_type", "song_job_events", ["event_type"])
    op.create_index(
        "idx_song_job_events_job_time",
        "song_job_events",
        ["job_id", "created_at"],
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_id"], ["song_jobs.job_id"], ondelete="SET NULL"),
        sa.UniqueConstraint("job_id", "kind", name="uq_ledger_entries_job_kind"),
    )
    op.create_index("ix_ledger_entries_account_id", "ledger_entries", ["account_id"])
    op.create_index("ix_ledger_entries_job_id", "ledger_entries", ["job_id"])
    op.create_index("ix_ledger_entries_kind", "ledger_entries", ["kind"])


def downgrade() -> None:
    op.drop_table("ledger_entries")
    op.drop_table("song_job_events")
    op.drop_table("song_jobs")
    op.drop_table("accounts")
