from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from commercepix import config, db
from commercepix.rate_limit import check_and_consume, cleanup_usage_counters, get_usage
from commercepix.schemas import WindowKind

NOW = datetime(2026, 3, 14, 12, 30, 15, tzinfo=timezone.utc)


def test_per_minute_limit_blocks_extra_request(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 2)

    assert check_and_consume("u1", now=NOW).allowed
    assert check_and_consume("u1", now=NOW + timedelta(seconds=5)).allowed
    blocked = check_and_consume("u1", now=NOW + timedelta(seconds=10))

    assert not blocked.allowed
    assert blocked.blocked_by == WindowKind.PER_MINUTE
    assert blocked.per_minute.remaining == 0
    assert blocked.per_minute.reset_at == "2026-03-14T12:31:00+00:00"
    assert blocked.per_minute.message.startswith("Slow down!")
    assert "35 seconds" in blocked.per_minute.message


def test_rejected_request_increments_nothing(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 1)

    check_and_consume("u1", now=NOW)
    check_and_consume("u1", now=NOW)
    check_and_consume("u1", now=NOW)

    usage = get_usage("u1", now=NOW)
    assert usage.per_minute.current == 1
    assert usage.per_day.current == 1


def test_new_minute_window_allows_again(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 1)

    assert check_and_consume("u1", now=NOW).allowed
    assert not check_and_consume("u1", now=NOW).allowed
    result = check_and_consume("u1", now=NOW + timedelta(minutes=1))

    assert result.allowed
    assert result.per_minute.current == 1
    assert result.per_day.current == 2


def test_daily_limit_spans_minutes(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_day", 3)

    for i in range(3):
        assert check_and_consume("u1", now=NOW + timedelta(minutes=i)).allowed
    blocked = check_and_consume("u1", now=NOW + timedelta(minutes=10))

    assert blocked.blocked_by == WindowKind.PER_DAY
    assert blocked.per_day.reset_at == "2026-03-15T00:00:00+00:00"
    assert "daily limit of 3 generations" in blocked.per_day.message

    assert check_and_consume("u1", now=datetime(2026, 3, 15, 0, 0, 1, tzinfo=timezone.utc)).allowed


def test_minute_window_reported_when_both_exhausted(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 1)
    monkeypatch.setattr(config.settings, "rate_limit_per_day", 1)

    check_and_consume("u1", now=NOW)
    blocked = check_and_consume("u1", now=NOW)

    assert blocked.blocked_by == WindowKind.PER_MINUTE
    assert blocked.per_day.remaining == 0


def test_users_are_counted_separately(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 1)

    assert check_and_consume("u1", now=NOW).allowed
    assert check_and_consume("u2", now=NOW).allowed


def test_concurrent_requests_never_exceed_limit(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "rate_limit_per_minute", 5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: check_and_consume("u1", now=NOW), range(20)))

    assert sum(r.allowed for r in results) == 5
    assert get_usage("u1", now=NOW).per_minute.current == 5


def test_get_usage_does_not_consume() -> None:
    get_usage("u1", now=NOW)
    get_usage("u1", now=NOW)
    assert get_usage("u1", now=NOW).per_minute.current == 0


def test_cleanup_removes_expired_windows() -> None:
    check_and_consume("u1", now=NOW - timedelta(days=3))
    check_and_consume("u1", now=NOW)

    removed = cleanup_usage_counters(now=NOW)

    assert removed == 2
    with db.connection() as conn:
        remaining = conn.execute("SELECT COUNT(*) c FROM usage_counters").fetchone()["c"]
    assert remaining == 2
