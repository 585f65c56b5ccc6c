from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from pulse_tracks.jobs.errors import (
    AccountNotFoundError,
    ForbiddenError,
    InsufficientCreditsError,
    JobNotFoundError,
    WrongStateError,
)
from pulse_tracks.jobs.models import (
    AudioClaim,
    CallbackOutcome,
    CallbackPayload,
    FailureClass,
    JobStatus,
    LedgerEntryKind,
)
from pulse_tracks.jobs.repository import JobRepository

from conftest import (
    execute_sql,
    make_inputs,
    seed_audio_pending_job,
    seed_job,
    seed_lyrics_complete_job,
    seed_processing_job,
)

pytestmark = [
    allure.epic("Song Pipeline"),
    allure.feature("Durable Job Store"),
]


def _age_job(repository: JobRepository, job_id: str, *, column: str = "updated_at") -> None:
    execute_sql(
        repository,
        f"UPDATE song_jobs SET {column} = '2020-01-01 00:00:00.000000' WHERE job_id = :job_id",
        {"job_id": job_id},
    )


def _kinds(repository: JobRepository, job_id: str) -> list[LedgerEntryKind]:
    return [entry.kind for entry in repository.list_ledger_entries(job_id=job_id)]


def test_create_account_records_opening_grant(repository: JobRepository) -> None:
    account = repository.create_account(account_id="acct-1", display_name="Sam", credits=3)

    assert account.credits == 3
    entries = repository.list_ledger_entries(account_id="acct-1")
    assert [(entry.kind, entry.amount, entry.balance_before) for entry in entries] == [
        (LedgerEntryKind.GRANT, 3, 0),
    ]
    with pytest.raises(ValueError, match="already exists"):
        repository.create_account(account_id="acct-1", display_name="Sam")


def test_grant_credits_requires_existing_account(repository: JobRepository) -> None:
    with pytest.raises(AccountNotFoundError):
        repository.grant_credits(account_id="missing", amount=1)


def test_create_job_is_admitted_without_charge(repository: JobRepository) -> None:
    job = seed_job(repository, credits=1)

    assert job.status == JobStatus.LYRICS_PENDING
    assert job.audio_attempts == 0
    account = repository.get_account(account_id="acct-1")
    assert account is not None and account.credits == 1
    assert _kinds(repository, job.job_id) == []
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_create_job_rejects_short_balance_and_unknown_account(repository: JobRepository) -> None:
    repository.create_account(account_id="broke", display_name="Broke", credits=0)

    with pytest.raises(InsufficientCreditsError) as excinfo:
        repository.create_job(account_id="broke", inputs=make_inputs(), title="t", price=1)
    assert excinfo.value.balance == 0
    assert excinfo.value.required == 1
    with pytest.raises(AccountNotFoundError):
        repository.create_job(account_id="ghost", inputs=make_inputs(), title="t", price=1)
    assert repository.list_jobs() == []


def test_lyrics_claim_is_fifo_and_exclusive(repository: JobRepository) -> None:
    first = seed_job(repository, credits=5)
    second = seed_job(repository, create_account=False)
    _age_job(repository, first.job_id, column="created_at")

    claimed = repository.claim_next_lyrics_job()
    assert claimed is not None
    assert claimed.job_id == first.job_id
    assert claimed.status == JobStatus.LYRICS_PROCESSING

    again = repository.claim_next_lyrics_job()
    assert again is not None and again.job_id == second.job_id
    assert repository.claim_next_lyrics_job() is None


def test_request_audio_guards_ownership_and_state(repository: JobRepository) -> None:
    job = seed_job(repository, credits=1)
    repository.create_account(account_id="other", display_name="Other", credits=1)

    with pytest.raises(JobNotFoundError):
        repository.request_audio(account_id="acct-1", job_id="nope", price=1)
    with pytest.raises(ForbiddenError):
        repository.request_audio(account_id="other", job_id=job.job_id, price=1)
    with pytest.raises(WrongStateError, match="lyrics_pending"):
        repository.request_audio(account_id="acct-1", job_id=job.job_id, price=1)


def test_request_audio_checks_balance_but_does_not_charge(repository: JobRepository) -> None:
    job = seed_lyrics_complete_job(repository, credits=1)

    with pytest.raises(InsufficientCreditsError):
        repository.request_audio(account_id="acct-1", job_id=job.job_id, price=2)

    moved = repository.request_audio(account_id="acct-1", job_id=job.job_id, price=1)
    assert moved.status == JobStatus.AUDIO_PENDING
    account = repository.get_account(account_id="acct-1")
    assert account is not None and account.credits == 1
    assert _kinds(repository, job.job_id) == []


def test_audio_claim_debits_and_transitions_together(repository: JobRepository) -> None:
    job = seed_audio_pending_job(repository, credits=2)

    claim = repository.claim_next_audio_job(price=1)

    assert claim is not None
    assert claim.charged_now
    assert claim.balance_before == 2
    assert not claim.insufficient_credits
    assert claim.job.job_id == job.job_id
    assert claim.job.status == JobStatus.AUDIO_PROCESSING
    assert claim.job.audio_attempts == 1
    account = repository.get_account(account_id="acct-1")
    assert account is not None and account.credits == 1
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT]


def test_audio_claim_with_drained_balance_moves_job_to_error(repository: JobRepository) -> None:
    job = seed_audio_pending_job(repository, credits=1)
    # balance drained after admission
    other = repository.create_job(
        account_id="acct-1",
        inputs=make_inputs(),
        title="other",
        price=1,
    )
    _age_job(repository, job.job_id, column="created_at")
    execute_sql(repository, "UPDATE accounts SET credits = 0 WHERE account_id = 'acct-1'")

    claim = repository.claim_next_audio_job(price=1)

    assert claim is not None
    assert claim.insufficient_credits
    assert claim.job.status == JobStatus.ERROR
    assert _kinds(repository, job.job_id) == []
    assert repository.get_job(job_id=other.job_id).status == JobStatus.LYRICS_PENDING


def test_transient_retry_keeps_single_debit(repository: JobRepository) -> None:
    job = seed_audio_pending_job(repository, credits=1)

    first = repository.claim_next_audio_job(price=1)
    assert first is not None and first.charged_now
    status = repository.retry_or_exhaust_audio(
        job_id=job.job_id,
        failure_class=FailureClass.TIMEOUT,
        error_summary="audio timed out",
        max_attempts=3,
    )
    assert status == JobStatus.AUDIO_PENDING

    second = repository.claim_next_audio_job(price=1)
    assert second is not None
    assert not second.charged_now
    assert second.job.audio_attempts == 2
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT]
    account = repository.get_account(account_id="acct-1")
    assert account is not None and account.credits == 0


def test_exhausted_attempts_fail_and_refund_once(repository: JobRepository) -> None:
    job = seed_audio_pending_job(repository, credits=1)

    for _ in range(2):
        assert repository.claim_next_audio_job(price=1) is not None
        status = repository.retry_or_exhaust_audio(
            job_id=job.job_id,
            failure_class=FailureClass.SERVICE_TRANSIENT,
            error_summary="busy",
            max_attempts=2,
        )

    assert status == JobStatus.ERROR
    final = repository.get_job(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.ERROR
    assert "attempts exhausted" in (final.error_summary or "")
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT, LedgerEntryKind.REFUND]
    account = repository.get_account(account_id="acct-1")
    assert account is not None and account.credits == 1


def test_fail_audio_refund_is_not_repeated(repository: JobRepository) -> None:
    job = seed_processing_job(repository, credits=1)

    assert repository.fail_audio(
        job_id=job.job_id,
        status_from=JobStatus.PROCESSING,
        failure_class=FailureClass.CALLBACK_FAILED,
        error_summary="provider failed",
        refund=True,
    )
    assert not repository.fail_audio(
        job_id=job.job_id,
        status_from=JobStatus.PROCESSING,
        failure_class=FailureClass.CALLBACK_FAILED,
        error_summary="provider failed",
        refund=True,
    )
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT, LedgerEntryKind.REFUND]


def test_task_id_is_recorded_only_from_audio_processing(repository: JobRepository) -> None:
    job = seed_processing_job(repository, task_id="task-a", credits=1)

    assert not repository.mark_audio_submitted(job_id=job.job_id, external_task_id="task-b")
    assert repository.find_job_by_task_id(external_task_id="task-a").job_id == job.job_id
    assert repository.find_job_by_task_id(external_task_id="task-b") is None


def test_complete_audio_only_from_processing(repository: JobRepository) -> None:
    job = seed_processing_job(repository, credits=1)

    assert repository.complete_audio(job_id=job.job_id, artifact_url="https://cdn/x.mp3")
    assert not repository.complete_audio(job_id=job.job_id, artifact_url="https://cdn/y.mp3")
    final = repository.get_job(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETE
    assert final.artifact_url == "https://cdn/x.mp3"


def test_delete_job_only_when_terminal(repository: JobRepository) -> None:
    job = seed_job(repository, credits=1)
    repository.create_account(account_id="other", display_name="Other")

    with pytest.raises(WrongStateError, match="terminal"):
        repository.delete_job(account_id="acct-1", job_id=job.job_id)

    repository.claim_next_lyrics_job()
    repository.fail_lyrics(
        job_id=job.job_id,
        failure_class=FailureClass.SERVICE_REJECTED,
        error_summary="rejected",
    )
    with pytest.raises(ForbiddenError):
        repository.delete_job(account_id="other", job_id=job.job_id)

    repository.delete_job(account_id="acct-1", job_id=job.job_id)
    assert repository.get_job(job_id=job.job_id) is None
    with pytest.raises(JobNotFoundError):
        repository.delete_job(account_id="acct-1", job_id=job.job_id)


def test_list_jobs_newest_first_with_filters(repository: JobRepository) -> None:
    older = seed_job(repository, credits=5)
    newer = seed_job(repository, create_account=False)
    repository.create_account(account_id="other", display_name="Other", credits=1)
    seed_job(repository, account_id="other", create_account=False)
    _age_job(repository, older.job_id, column="created_at")

    owned = repository.list_jobs(account_id="acct-1")
    assert [job.job_id for job in owned] == [newer.job_id, older.job_id]
    assert len(repository.list_jobs()) == 3
    assert repository.list_jobs(account_id="acct-1", limit=1)[0].job_id == newer.job_id
    assert repository.list_jobs(status=JobStatus.COMPLETE) == []


def test_list_stale_jobs_returns_only_old_processing_claims(repository: JobRepository) -> None:
    stale = seed_job(repository, credits=5)
    fresh = seed_job(repository, create_account=False)
    repository.claim_next_lyrics_job()
    repository.claim_next_lyrics_job()
    _age_job(repository, stale.job_id)

    jobs = repository.list_stale_jobs(stale_after=timedelta(minutes=15))

    assert [job.job_id for job in jobs] == [stale.job_id]
    assert fresh.job_id not in {job.job_id for job in jobs}
    with pytest.raises(ValueError, match="stale_after"):
        repository.list_stale_jobs(stale_after=timedelta(0))


def test_list_overdue_callbacks_returns_only_old_processing_jobs(
    repository: JobRepository,
) -> None:
    overdue = seed_processing_job(repository, task_id="task-old", credits=2)
    recent = seed_processing_job(repository, task_id="task-new", create_account=False)
    _age_job(repository, overdue.job_id)

    jobs = repository.list_overdue_callbacks(callback_timeout=timedelta(hours=1))

    assert [job.job_id for job in jobs] == [overdue.job_id]
    assert recent.job_id not in {job.job_id for job in jobs}
    assert repository.list_stale_jobs(stale_after=timedelta(minutes=15)) == []
    with pytest.raises(ValueError, match="callback_timeout"):
        repository.list_overdue_callbacks(callback_timeout=timedelta(0))


def test_deferred_complete_callback_is_applied_when_task_is_recorded(
    repository: JobRepository,
) -> None:
    job = seed_audio_pending_job(repository, credits=1)
    assert repository.claim_next_audio_job(price=1) is not None

    assert repository.defer_callback(
        job_id=job.job_id,
        callback=CallbackPayload(
            outcome=CallbackOutcome.COMPLETE,
            task_id="task-1",
            artifact_url="https://cdn.example.com/early.mp3",
        ),
    )
    assert not repository.defer_callback(
        job_id=job.job_id,
        callback=CallbackPayload(outcome=CallbackOutcome.FAIL, task_id="task-1"),
    )
    assert repository.get_job(job_id=job.job_id).status == JobStatus.AUDIO_PROCESSING

    status = repository.mark_audio_submitted(job_id=job.job_id, external_task_id="task-1")

    assert status == JobStatus.COMPLETE
    final = repository.get_job(job_id=job.job_id)
    assert final.artifact_url == "https://cdn.example.com/early.mp3"
    assert final.external_task_id == "task-1"
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT]
    events = [event.event_type for event in repository.get_job_details(job_id=job.job_id).events]
    assert events[-3:] == ["callback_deferred", "audio_submitted", "audio_completed"]


def test_deferred_fail_callback_refunds_when_task_is_recorded(repository: JobRepository) -> None:
    job = seed_audio_pending_job(repository, credits=1)
    assert repository.claim_next_audio_job(price=1) is not None
    repository.defer_callback(
        job_id=job.job_id,
        callback=CallbackPayload(
            outcome=CallbackOutcome.FAIL,
            task_id="task-1",
            failure_message="content rejected",
        ),
    )

    status = repository.mark_audio_submitted(job_id=job.job_id, external_task_id="task-1")

    assert status == JobStatus.ERROR
    final = repository.get_job(job_id=job.job_id)
    assert final.error_summary == "content rejected"
    assert _kinds(repository, job.job_id) == [LedgerEntryKind.DEBIT, LedgerEntryKind.REFUND]


def test_defer_callback_requires_audio_processing(repository: JobRepository) -> None:
    job = seed_processing_job(repository, credits=1)

    assert not repository.defer_callback(
        job_id=job.job_id,
        callback=CallbackPayload(outcome=CallbackOutcome.FAIL, task_id="task-1"),
    )
    assert repository.get_job(job_id=job.job_id).status == JobStatus.PROCESSING


def test_lost_credit_rejection_race_retries_the_claim(
    repository: JobRepository,
    monkeypatch,
) -> None:
    job = seed_audio_pending_job(repository, credits=1)
    execute_sql(repository, "UPDATE accounts SET credits = 0 WHERE account_id = 'acct-1'")
    real_transition = repository._transition
    lost: list[str] = []

    def _transition(**kwargs):  # noqa: ANN003, ANN202
        if kwargs["event_type"] == "insufficient_credits" and not lost:
            lost.append(kwargs["job_id"])
            return False
        return real_transition(**kwargs)

    monkeypatch.setattr(repository, "_transition", _transition)

    claim = repository.claim_next_audio_job(price=1)

    assert lost == [job.job_id]
    assert claim is not None
    assert claim.insufficient_credits
    assert claim.job.status == JobStatus.ERROR


def _run_overlapping(
    db_path: Path,
    claim: Callable[[JobRepository], object],
    *,
    workers: int,
) -> tuple[list[object], list[BaseException]]:
    start = threading.Event()
    results: list[object] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _worker() -> None:
        repository = JobRepository(db_path)
        try:
            start.wait(timeout=5)
            result = claim(repository)
            with lock:
                results.append(result)
        except Exception as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


def test_overlapping_lyrics_claims_yield_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "lyrics-race.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    job = seed_job(setup, credits=1)
    setup.close()

    results, errors = _run_overlapping(
        db_path,
        lambda repository: repository.claim_next_lyrics_job(),
        workers=8,
    )

    assert errors == []
    winners = [result for result in results if result is not None]
    assert len(winners) == 1
    assert winners[0].job_id == job.job_id

    check = JobRepository(db_path)
    try:
        claimed = [
            event.event_type
            for event in check.get_job_details(job_id=job.job_id).events
            if event.event_type == "claimed"
        ]
        assert claimed == ["claimed"]
        assert check.get_job(job_id=job.job_id).status == JobStatus.LYRICS_PROCESSING
    finally:
        check.close()


def test_overlapping_audio_claims_charge_exactly_once(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    job = seed_audio_pending_job(setup, credits=1)
    setup.close()

    results, errors = _run_overlapping(
        db_path,
        lambda repository: repository.claim_next_audio_job(price=1),
        workers=8,
    )

    assert errors == []
    winners: list[AudioClaim] = [result for result in results if result is not None]
    assert len(winners) == 1
    assert winners[0].job.job_id == job.job_id

    check = JobRepository(db_path)
    try:
        assert _kinds(check, job.job_id) == [LedgerEntryKind.DEBIT]
        account = check.get_account(account_id="acct-1")
        assert account is not None and account.credits == 0
    finally:
        check.close()
