"""Append-only credit ledger.

A user's balance is the sum of their ledger deltas. Nothing here updates a
stored counter: grants and spends are inserts, and spends check the balance
inside the same write-locked transaction as the insert.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from commercepix import db
from commercepix.schemas import CreditReason, RefType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpendResult:
    success: bool
    ledger_id: int | None = None
    previous_balance: int | None = None
    new_balance: int | None = None
    error: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _balance(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(delta), 0) balance FROM credit_ledger WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return int(row["balance"])


def _insert(
    conn: sqlite3.Connection,
    user_id: str,
    delta: int,
    reason: CreditReason,
    ref_type: RefType | None,
    ref_id: str | None,
    note: str | None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO credit_ledger (user_id, delta, reason, ref_type, ref_id, note, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            delta,
            reason.value,
            ref_type.value if ref_type else None,
            ref_id,
            note,
            _now(),
        ),
    )
    return int(cur.lastrowid)


def get_balance(user_id: str) -> int:
    with db.connection() as conn:
        return _balance(conn, user_id)


def has_sufficient_credits(user_id: str, amount: int) -> bool:
    return get_balance(user_id) >= amount


def grant(
    user_id: str,
    amount: int,
    reason: CreditReason | str,
    ref_type: RefType | str | None = None,
    ref_id: str | None = None,
    note: str | None = None,
) -> int:
    reason = CreditReason(reason)
    if amount <= 0:
        raise ValueError("amount must be > 0")
    if reason == CreditReason.GENERATION_SPEND:
        raise ValueError("generation_spend entries are written by spend()")
    ref_type = RefType(ref_type) if ref_type is not None else None

    with db.transaction() as conn:
        ledger_id = _insert(conn, user_id, amount, reason, ref_type, ref_id, note)
    logger.info("granted %s credits to user %s (%s)", amount, user_id, reason.value)
    return ledger_id


def _spend(conn: sqlite3.Connection, user_id: str, amount: int, job_id: str) -> SpendResult:
    if amount <= 0:
        return SpendResult(success=False, error="Amount must be greater than 0")

    balance = _balance(conn, user_id)
    if balance < amount:
        return SpendResult(
            success=False,
            previous_balance=balance,
            error=f"Insufficient credits: balance {balance}, required {amount}",
        )

    ledger_id = _insert(conn, user_id, -amount, CreditReason.GENERATION_SPEND, RefType.JOB, job_id, None)
    return SpendResult(
        success=True,
        ledger_id=ledger_id,
        previous_balance=balance,
        new_balance=balance - amount,
    )


def spend(user_id: str, amount: int, job_id: str, conn: sqlite3.Connection | None = None) -> SpendResult:
    """Debit ``amount`` credits for a finished job.

    Call only after the job's output is persisted. When ``conn`` is given the
    insert joins the caller's transaction and is committed (or rolled back)
    with it; ``conn`` must come from :func:`commercepix.db.transaction`, and
    the caller logs the debit once it has committed. Storage errors propagate
    to the caller.
    """
    if conn is not None:
        result = _spend(conn, user_id, amount, job_id)
    else:
        with db.transaction() as own:
            result = _spend(own, user_id, amount, job_id)

    if not result.success:
        logger.warning("credit spend rejected for job %s: %s", job_id, result.error)
    elif conn is None:
        logger.info("spent %s credits for job %s (balance %s)", amount, job_id, result.new_balance)
    return result


def list_entries(user_id: str, limit: int = 20) -> list[dict]:
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT * FROM credit_ledger WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [dict(r) for r in rows]


def entries_for_ref(ref_type: RefType | str, ref_id: str) -> list[dict]:
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT * FROM credit_ledger WHERE ref_type = ? AND ref_id = ? ORDER BY id",
            (RefType(ref_type).value, ref_id),
        ).fetchall()
    return [dict(r) for r in rows]


def get_summary(user_id: str) -> dict:
    with db.connection() as conn:
        row = conn.execute(
            """
            SELECT
              COALESCE(SUM(delta), 0) balance,
              COUNT(*) transaction_count,
              COALESCE(SUM(CASE WHEN delta > 0 THEN delta ELSE 0 END), 0) total_earned,
              COALESCE(SUM(CASE WHEN delta < 0 THEN -delta ELSE 0 END), 0) total_spent
            FROM credit_ledger
            WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()
    return {
        "user_id": user_id,
        "balance": int(row["balance"]),
        "transaction_count": int(row["transaction_count"]),
        "total_earned": int(row["total_earned"]),
        "total_spent": int(row["total_spent"]),
    }
