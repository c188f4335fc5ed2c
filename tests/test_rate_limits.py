from __future__ import annotations

import threading
from datetime import UTC, datetime

import fakeredis
import pytest

from gamegate.config import RateLimitSettings
from gamegate.errors import RateLimited
from gamegate.sessions.rate_limit import HOUR_S, LimitKind, RollingWindowLimiter


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(clock: _Clock, **settings: int) -> tuple[RollingWindowLimiter, fakeredis.FakeRedis]:
    r = fakeredis.FakeRedis(decode_responses=True)
    return RollingWindowLimiter(r, RateLimitSettings(**settings), clock=clock), r


def test_eleventh_session_in_an_hour_is_denied_with_reset_time() -> None:
    clock = _Clock(1_000_000.0)
    limiter, _ = _limiter(clock)

    for i in range(10):
        limiter.acquire("agent-1", LimitKind.sessions)
        clock.now += 60

    with pytest.raises(RateLimited) as exc:
        limiter.acquire("agent-1", LimitKind.sessions)
    assert exc.value.kind == "sessions"
    assert exc.value.limit == 10
    assert exc.value.reset_at == datetime.fromtimestamp(1_000_000.0 + HOUR_S, tz=UTC)


def test_rejection_records_nothing_and_other_counters_are_untouched() -> None:
    clock = _Clock(5_000.0)
    limiter, r = _limiter(clock, sessions_per_hour=1)

    limiter.acquire("a", LimitKind.sessions, LimitKind.calls)
    with pytest.raises(RateLimited):
        limiter.acquire("a", LimitKind.sessions, LimitKind.calls)

    assert r.zcard(RollingWindowLimiter.key(LimitKind.calls, "a")) == 1
    assert limiter.remaining("a", LimitKind.calls) == 999
    assert limiter.remaining("a", LimitKind.submissions) == 10

    # Other agents have their own windows.
    limiter.acquire("b", LimitKind.sessions)


def test_window_rolls_forward() -> None:
    clock = _Clock(10_000.0)
    limiter, _ = _limiter(clock, calls_per_hour=2)

    limiter.acquire("a", LimitKind.calls)
    clock.now += 1_800
    limiter.acquire("a", LimitKind.calls)
    with pytest.raises(RateLimited):
        limiter.acquire("a", LimitKind.calls)

    # The first call leaves the window after an hour.
    clock.now = 10_000.0 + HOUR_S + 1
    limiter.acquire("a", LimitKind.calls)
    assert limiter.remaining("a", LimitKind.calls) == 0


def test_submissions_are_counted_per_day() -> None:
    clock = _Clock(100_000.0)
    limiter, _ = _limiter(clock, submissions_per_day=2)

    limiter.acquire("a", LimitKind.submissions)
    limiter.acquire("a", LimitKind.submissions)
    clock.now += 2 * HOUR_S
    with pytest.raises(RateLimited) as exc:
        limiter.acquire("a", LimitKind.submissions)
    assert exc.value.reset_at == datetime.fromtimestamp(100_000 + 86_400, tz=UTC)


def test_a_later_kind_being_full_records_none_of_the_earlier_ones() -> None:
    clock = _Clock(7_000.0)
    limiter, r = _limiter(clock, calls_per_hour=1)

    limiter.acquire("a", LimitKind.sessions, LimitKind.calls)
    with pytest.raises(RateLimited) as exc:
        limiter.acquire("a", LimitKind.sessions, LimitKind.calls)
    assert exc.value.kind == "calls"
    assert r.zcard(RollingWindowLimiter.key(LimitKind.sessions, "a")) == 1


def test_concurrent_callers_cannot_overrun_the_limit() -> None:
    clock = _Clock(9_000.0)
    limiter, r = _limiter(clock, sessions_per_hour=5)
    granted: list[int] = []
    denied: list[int] = []

    def _take(i: int) -> None:
        try:
            limiter.acquire("a", LimitKind.sessions)
            granted.append(i)
        except RateLimited:
            denied.append(i)

    threads = [threading.Thread(target=_take, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(granted) == 5
    assert len(denied) == 15
    assert r.zcard(RollingWindowLimiter.key(LimitKind.sessions, "a")) == 5
