"""Keep callbacks that arrive before the provider task id is recorded."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("song_jobs", sa.Column("deferred_callback_json", sa.Text(), nullable=True))
    op.create_index("idx_song_jobs_status_updated", "song_jobs", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("idx_song_jobs_status_updated", table_name="song_jobs")
    with op.batch_alter_table("song_jobs") as batch_op:
        batch_op.drop_column("deferred_callback_json")
