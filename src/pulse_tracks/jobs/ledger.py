"""Credit ledger primitives.

Every function here runs inside a caller-owned ``Session`` and never commits:
the balance change lands in the same transaction as the job transition that
triggered it, so a charge without its transition (or the reverse) cannot be
persisted. The ``(job_id, kind)`` unique constraint on ``ledger_entries`` backs
the one-debit / one-refund-per-job rule at the database level.
"""

from __future__ import annotations

import logging

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pulse_tracks.jobs.models import LedgerEntryKind
from pulse_tracks.storage.common import utc_now
from pulse_tracks.storage.sqlmodel_models import Account, LedgerEntry

logger = logging.getLogger(__name__)


def get_balance(session: Session, *, account_id: str) -> int | None:
    return session.exec(
        select(Account.credits).where(Account.account_id == account_id),
    ).one_or_none()


def debit_if_sufficient(
    session: Session,
    *,
    account_id: str,
    amount: int,
    job_id: str,
) -> int | None:
    """Atomically subtract ``amount`` if the balance covers it.

    Returns the pre-debit balance, or ``None`` when the balance is short.
    """

    if amount <= 0:
        raise ValueError(f"Debit amount must be positive, got {amount}")

    now = utc_now()
    result = session.exec(
        sa_update(Account)
        .where(
            col(Account.account_id) == account_id,
            col(Account.credits) >= amount,
        )
        .values(credits=col(Account.credits) - amount, updated_at=now),
    )
    if result.rowcount != 1:
        return None

    balance_after = get_balance(session, account_id=account_id)
    if balance_after is None:
        raise RuntimeError(f"Account vanished during debit: {account_id}")
    balance_before = balance_after + amount
    session.add(
        LedgerEntry(
            account_id=account_id,
            job_id=job_id,
            kind=LedgerEntryKind.DEBIT.value,
            amount=amount,
            balance_before=balance_before,
            created_at=now,
        ),
    )
    logger.info(
        "Debited %d credit(s) from account %s for job %s (balance %d -> %d)",
        amount,
        account_id,
        job_id,
        balance_before,
        balance_after,
    )
    return balance_before


def credit(
    session: Session,
    *,
    account_id: str,
    amount: int,
    kind: LedgerEntryKind,
    job_id: str | None = None,
) -> int:
    """Add ``amount`` to the balance and record the entry; returns pre-credit balance."""

    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")
    if kind == LedgerEntryKind.DEBIT:
        raise ValueError("Use debit_if_sufficient for debits.")

    now = utc_now()
    result = session.exec(
        sa_update(Account)
        .where(col(Account.account_id) == account_id)
        .values(credits=col(Account.credits) + amount, updated_at=now),
    )
    if result.rowcount != 1:
        raise RuntimeError(f"Account not found for credit: {account_id}")

    balance_after = get_balance(session, account_id=account_id)
    if balance_after is None:
        raise RuntimeError(f"Account vanished during credit: {account_id}")
    balance_before = balance_after - amount
    session.add(
        LedgerEntry(
            account_id=account_id,
            job_id=job_id,
            kind=kind.value,
            amount=amount,
            balance_before=balance_before,
            created_at=now,
        ),
    )
    return balance_before


def find_job_entry(session: Session, *, job_id: str, kind: LedgerEntryKind) -> LedgerEntry | None:
    return session.exec(
        select(LedgerEntry).where(
            LedgerEntry.job_id == job_id,
            LedgerEntry.kind == kind.value,
        ),
    ).one_or_none()


def holds_unrefunded_debit(session: Session, *, job_id: str) -> bool:
    """True when the job has been charged and not yet refunded."""

    if find_job_entry(session, job_id=job_id, kind=LedgerEntryKind.DEBIT) is None:
        return False
    return find_job_entry(session, job_id=job_id, kind=LedgerEntryKind.REFUND) is None


def refund_job_debit(session: Session, *, job_id: str) -> int | None:
    """Return the job's debit to its account at most once.

    Returns the refunded amount, or ``None`` when there is nothing to refund.
    """

    debit = find_job_entry(session, job_id=job_id, kind=LedgerEntryKind.DEBIT)
    if debit is None:
        return None
    if find_job_entry(session, job_id=job_id, kind=LedgerEntryKind.REFUND) is not None:
        logger.warning("Refund already recorded for job %s; skipping", job_id)
        return None

    credit(
        session,
        account_id=debit.account_id,
        amount=debit.amount,
        kind=LedgerEntryKind.REFUND,
        job_id=job_id,
    )
    logger.info(
        "Refunded %d credit(s) to account %s for job %s",
        debit.amount,
        debit.account_id,
        job_id,
    )
    return debit.amount
