from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from pulse_tracks.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Song Pipeline"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('accounts', 'song_jobs', 'song_job_events', 'ledger_entries')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        song_job_columns = {
            row[1] for row in connection.exec_driver_sql("PRAGMA table_info(song_jobs)").all()
        }
        journal_mode = connection.exec_driver_sql("PRAGMA journal_mode").scalar_one()

    assert version == "20261019_0002"
    assert tables == ["accounts", "ledger_entries", "song_job_events", "song_jobs"]
    assert "deferred_callback_json" in song_job_columns
    assert str(journal_mode).lower() == "wal"
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = JobRepository(db_path)
    first.init_schema()
    first.create_account(account_id="acct-1", display_name="Sam", credits=2)
    first.close()

    second = JobRepository(db_path)
    second.init_schema()
    account = second.get_account(account_id="acct-1")
    assert account is not None and account.credits == 2
    second.close()


def test_negative_balance_is_rejected_by_check_constraint(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "check.db")
    repository.init_schema()
    repository.create_account(account_id="acct-1", display_name="Sam", credits=0)

    try:
        with pytest.raises(IntegrityError, match="CHECK constraint failed"):
            with repository.engine.begin() as connection:
                connection.execute(
                    text("UPDATE accounts SET credits = -1 WHERE account_id = 'acct-1'"),
                )
        account = repository.get_account(account_id="acct-1")
        assert account is not None and account.credits == 0
    finally:
        repository.close()
