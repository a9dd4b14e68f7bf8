"""Fixed-window generation limits per user.

Two windows are tracked: the current UTC minute and the current UTC day.
Counters are keyed by (user, window kind, window start), so a window that has
rolled over simply starts a new row and old rows read as nothing.
"""

import logging
import math
import sqlite3
from datetime import datetime, timedelta, timezone

from commercepix import db
from commercepix.config import settings
from commercepix.schemas import RateLimitResult, WindowKind, WindowStatus

logger = logging.getLogger(__name__)

_WINDOW_LENGTH = {
    WindowKind.PER_MINUTE: timedelta(minutes=1),
    WindowKind.PER_DAY: timedelta(days=1),
}

# Rows older than this are purged by cleanup_usage_counters().
_RETENTION = {
    WindowKind.PER_MINUTE: timedelta(minutes=2),
    WindowKind.PER_DAY: timedelta(days=2),
}


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _window_start(kind: WindowKind, now: datetime) -> datetime:
    if kind == WindowKind.PER_MINUTE:
        return now.replace(second=0, microsecond=0)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _limit(kind: WindowKind) -> int:
    if kind == WindowKind.PER_MINUTE:
        return settings.rate_limit_per_minute
    return settings.rate_limit_per_day


def _read_count(conn: sqlite3.Connection, user_id: str, kind: WindowKind, start: datetime) -> int:
    row = conn.execute(
        "SELECT count FROM usage_counters WHERE user_id = ? AND window_kind = ? AND window_start = ?",
        (user_id, kind.value, start.isoformat()),
    ).fetchone()
    return int(row["count"]) if row else 0


def _increment(conn: sqlite3.Connection, user_id: str, kind: WindowKind, start: datetime, now: datetime) -> None:
    ts = now.isoformat()
    conn.execute(
        """
        INSERT INTO usage_counters (user_id, window_kind, window_start, count, created_at, updated_at)
        VALUES (?, ?, ?, 1, ?, ?)
        ON CONFLICT (user_id, window_kind, window_start)
        DO UPDATE SET count = count + 1, updated_at = excluded.updated_at
        """,
        (user_id, kind.value, start.isoformat(), ts, ts),
    )


def _blocked_message(kind: WindowKind, limit: int, reset_at: datetime, now: datetime) -> str:
    seconds = max(1, math.ceil((reset_at - now).total_seconds()))
    if kind == WindowKind.PER_MINUTE:
        return (
            f"Slow down! You've reached the maximum of {limit} generations per minute. "
            f"Please wait {seconds} seconds before trying again."
        )
    hours = math.ceil(seconds / 3600)
    return f"You've reached your daily limit of {limit} generations. This limit resets in {hours} hours."


def _status(kind: WindowKind, current: int, start: datetime, now: datetime, blocked: bool) -> WindowStatus:
    limit = _limit(kind)
    reset_at = start + _WINDOW_LENGTH[kind]
    return WindowStatus(
        limit=limit,
        current=current,
        remaining=max(0, limit - current),
        reset_at=reset_at.isoformat(),
        message=_blocked_message(kind, limit, reset_at, now) if blocked else None,
    )


def _result(
    counts: dict[WindowKind, int],
    starts: dict[WindowKind, datetime],
    now: datetime,
    blocked_by: WindowKind | None,
) -> RateLimitResult:
    return RateLimitResult(
        allowed=blocked_by is None,
        per_minute=_status(
            WindowKind.PER_MINUTE,
            counts[WindowKind.PER_MINUTE],
            starts[WindowKind.PER_MINUTE],
            now,
            blocked_by == WindowKind.PER_MINUTE,
        ),
        per_day=_status(
            WindowKind.PER_DAY,
            counts[WindowKind.PER_DAY],
            starts[WindowKind.PER_DAY],
            now,
            blocked_by == WindowKind.PER_DAY,
        ),
        blocked_by=blocked_by,
    )


def check_and_consume(user_id: str, now: datetime | None = None) -> RateLimitResult:
    """Admit one generation request for ``user_id`` if both windows allow it.

    The capacity check and both increments run in a single write-locked
    transaction, so concurrent requests cannot overshoot a limit. A rejected
    request increments neither window.
    """
    now = _utc(now)
    starts = {kind: _window_start(kind, now) for kind in WindowKind}

    with db.transaction() as conn:
        counts = {kind: _read_count(conn, user_id, kind, starts[kind]) for kind in WindowKind}
        blocked_by = next((kind for kind in WindowKind if counts[kind] >= _limit(kind)), None)
        if blocked_by is None:
            for kind in WindowKind:
                _increment(conn, user_id, kind, starts[kind], now)
                counts[kind] += 1

    if blocked_by is not None:
        logger.info("rate limit hit for user %s: %s (%s)", user_id, blocked_by.value, counts[blocked_by])
    return _result(counts, starts, now, blocked_by)


def get_usage(user_id: str, now: datetime | None = None) -> RateLimitResult:
    """Current window usage for ``user_id`` without consuming anything."""
    now = _utc(now)
    starts = {kind: _window_start(kind, now) for kind in WindowKind}
    with db.connection() as conn:
        counts = {kind: _read_count(conn, user_id, kind, starts[kind]) for kind in WindowKind}
    blocked_by = next((kind for kind in WindowKind if counts[kind] >= _limit(kind)), None)
    return _result(counts, starts, now, blocked_by)


def cleanup_usage_counters(now: datetime | None = None) -> int:
    now = _utc(now)
    deleted = 0
    with db.connection() as conn:
        for kind, keep in _RETENTION.items():
            cur = conn.execute(
                "DELETE FROM usage_counters WHERE window_kind = ? AND window_start < ?",
                (kind.value, (now - keep).isoformat()),
            )
            deleted += cur.rowcount
    return deleted
