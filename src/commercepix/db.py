import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from commercepix.config import settings
from commercepix.schemas import JobStatus

# Target status -> statuses it may be entered from. Nothing re-enters queued.
_ALLOWED_PREDECESSORS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.RUNNING: (JobStatus.QUEUED,),
    JobStatus.SUCCEEDED: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.QUEUED, JobStatus.RUNNING),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=settings.database_timeout_sec)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    conn = _connect()
    try:
        with conn:
            yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Yield a connection holding sqlite's write lock until commit.

    Everything executed on the connection commits together, or rolls back
    if the block raises.
    """
    conn = _connect()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db() -> None:
    with connection() as conn:
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_ledger (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              delta INTEGER NOT NULL,
              reason TEXT NOT NULL,
              ref_type TEXT,
              ref_id TEXT,
              note TEXT,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_credit_ledger_user ON credit_ledger (user_id)")
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_ledger_spend_ref
            ON credit_ledger (ref_type, ref_id) WHERE reason = 'generation_spend'
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_counters (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              window_kind TEXT NOT NULL,
              window_start TEXT NOT NULL,
              count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE (user_id, window_kind, window_start)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS generation_jobs (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              project_id TEXT NOT NULL,
              mode TEXT NOT NULL,
              input_asset_id TEXT NOT NULL,
              status TEXT NOT NULL,
              error TEXT,
              failure_reason_code TEXT,
              cost_units INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS assets (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              project_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              mode TEXT,
              source_asset_id TEXT,
              job_id TEXT,
              prompt_version TEXT,
              prompt_payload TEXT,
              storage_bucket TEXT NOT NULL,
              storage_path TEXT NOT NULL,
              mime_type TEXT NOT NULL,
              width INTEGER,
              height INTEGER,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_project ON assets (user_id, project_id, kind)")


def create_job(job_id: str, user_id: str, project_id: str, mode: str, input_asset_id: str) -> None:
    ts = _now()
    with connection() as conn:
        conn.execute(
            """
            INSERT INTO generation_jobs (
              id, user_id, project_id, mode, input_asset_id, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 'queued', ?, ?)
            """,
            (job_id, user_id, project_id, mode, input_asset_id, ts, ts),
        )


def get_job(job_id: str) -> dict | None:
    with connection() as conn:
        row = conn.execute("SELECT * FROM generation_jobs WHERE id = ?", (job_id,)).fetchone()
    return dict(row) if row else None


def count_jobs(user_id: str | None = None) -> int:
    with connection() as conn:
        if user_id is None:
            row = conn.execute("SELECT COUNT(*) c FROM generation_jobs").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) c FROM generation_jobs WHERE user_id = ?", (user_id,)).fetchone()
    return int(row["c"])


def transition_job(
    job_id: str,
    status: JobStatus | str,
    error: str | None = None,
    cost_units: int | None = None,
    failure_reason_code: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Move a job to ``status`` if its current status allows it.

    Returns False, leaving the row untouched, when the job does not exist or
    is in a status the target cannot be entered from (terminal jobs never
    move again).
    """
    status = JobStatus(status)
    if status == JobStatus.FAILED and not error:
        raise ValueError("failed jobs require an error message")
    if status != JobStatus.FAILED and (error is not None or failure_reason_code is not None):
        raise ValueError("only failed jobs carry an error")
    if cost_units and status != JobStatus.SUCCEEDED:
        raise ValueError("only succeeded jobs carry a cost")

    predecessors = _ALLOWED_PREDECESSORS.get(status, ())
    if not predecessors:
        return False

    fields = ["status = ?", "updated_at = ?"]
    values: list[Any] = [status.value, _now()]
    if error is not None:
        fields.append("error = ?")
        values.append(error)
    if failure_reason_code is not None:
        fields.append("failure_reason_code = ?")
        values.append(failure_reason_code)
    if cost_units is not None:
        fields.append("cost_units = ?")
        values.append(cost_units)

    values.append(job_id)
    values.extend(p.value for p in predecessors)
    placeholders = ", ".join("?" for _ in predecessors)
    sql = f"UPDATE generation_jobs SET {', '.join(fields)} WHERE id = ? AND status IN ({placeholders})"

    if conn is not None:
        return conn.execute(sql, tuple(values)).rowcount == 1
    with connection() as own:
        return own.execute(sql, tuple(values)).rowcount == 1


def list_stale_jobs(older_than: datetime) -> list[dict]:
    with connection() as conn:
        rows = conn.execute(
            "SELECT * FROM generation_jobs WHERE status IN ('queued', 'running') AND updated_at < ?",
            (older_than.isoformat(),),
        ).fetchall()
    return [dict(r) for r in rows]


def get_daily_stats(now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    since = (now - timedelta(days=1)).isoformat()
    with connection() as conn:
        row = conn.execute(
            """
            SELECT
              COUNT(*) total,
              SUM(CASE WHEN status = 'succeeded' THEN 1 ELSE 0 END) succeeded,
              SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) failed,
              SUM(CASE WHEN status IN ('queued', 'running') THEN 1 ELSE 0 END) in_flight,
              COALESCE(SUM(cost_units), 0) cost_units
            FROM generation_jobs
            WHERE created_at >= ?
            """,
            (since,),
        ).fetchone()

    total = int(row["total"] or 0)
    succeeded = int(row["succeeded"] or 0)
    return {
        "job_count": total,
        "success_count": succeeded,
        "failed_count": int(row["failed"] or 0),
        "in_flight_count": int(row["in_flight"] or 0),
        "success_rate": round(succeeded / total, 4) if total else 0.0,
        "cost_units": int(row["cost_units"]),
    }


def _asset_row(row: sqlite3.Row) -> dict:
    asset = dict(row)
    if asset.get("prompt_payload"):
        asset["prompt_payload"] = json.loads(asset["prompt_payload"])
    return asset


def create_asset(
    asset_id: str,
    user_id: str,
    project_id: str,
    kind: str,
    storage_bucket: str,
    storage_path: str,
    mime_type: str,
    mode: str | None = None,
    source_asset_id: str | None = None,
    job_id: str | None = None,
    prompt_version: str | None = None,
    prompt_payload: dict | None = None,
    width: int | None = None,
    height: int | None = None,
) -> None:
    payload = json.dumps(prompt_payload) if prompt_payload is not None else None
    with connection() as conn:
        conn.execute(
            """
            INSERT INTO assets (
              id, user_id, project_id, kind, mode, source_asset_id, job_id, prompt_version,
              prompt_payload, storage_bucket, storage_path, mime_type, width, height, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                asset_id,
                user_id,
                project_id,
                kind,
                mode,
                source_asset_id,
                job_id,
                prompt_version,
                payload,
                storage_bucket,
                storage_path,
                mime_type,
                width,
                height,
                _now(),
            ),
        )


def get_asset(asset_id: str) -> dict | None:
    with connection() as conn:
        row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
    return _asset_row(row) if row else None


def get_output_asset_for_job(job_id: str) -> dict | None:
    with connection() as conn:
        row = conn.execute(
            "SELECT * FROM assets WHERE job_id = ? AND kind = 'output' ORDER BY created_at DESC LIMIT 1",
            (job_id,),
        ).fetchone()
    return _asset_row(row) if row else None


def list_project_outputs(user_id: str, project_id: str, limit: int = 100) -> list[dict]:
    with connection() as conn:
        rows = conn.execute(
            """
            SELECT * FROM assets
            WHERE user_id = ? AND project_id = ? AND kind = 'output'
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, project_id, limit),
        ).fetchall()
    return [_asset_row(r) for r in rows]
