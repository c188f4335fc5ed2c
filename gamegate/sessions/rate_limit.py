from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import redis

from gamegate.config import RateLimitSettings
from gamegate.errors import RateLimited

DAY_S = 86_400
HOUR_S = 3_600


class LimitKind(StrEnum):
    submissions = "submissions"
    calls = "calls"
    sessions = "sessions"


@dataclass(frozen=True, slots=True)
class Window:
    limit: int
    period_s: int


def windows_for(settings: RateLimitSettings) -> dict[LimitKind, Window]:
    return {
        LimitKind.submissions: Window(limit=settings.submissions_per_day, period_s=DAY_S),
        LimitKind.calls: Window(limit=settings.calls_per_hour, period_s=HOUR_S),
        LimitKind.sessions: Window(limit=settings.sessions_per_hour, period_s=HOUR_S),
    }


# KEYS: one sorted set per kind.
# ARGV: score, member, then (cutoff, limit, ttl) for each key in order.
# Returns 0 when every key had room and was recorded, else the 1-based index of the full key.
_ACQUIRE_LUA = """
for i, key in ipairs(KEYS) do
  local base = 3 * i
  redis.call('ZREMRANGEBYSCORE', key, '-inf', ARGV[base])
  if redis.call('ZCARD', key) >= tonumber(ARGV[base + 1]) then
    return i
  end
end
for i, key in ipairs(KEYS) do
  redis.call('ZADD', key, ARGV[1], ARGV[2])
  redis.call('EXPIRE', key, ARGV[3 * i + 2])
end
return 0
"""


class RollingWindowLimiter:
    """Per-agent rolling-window counters, one Redis sorted set per (kind, agent).

    Members are scored by their timestamp; anything older than the window is trimmed
    before counting. The three kinds never share a key, so hitting one limit leaves the
    other two counters untouched. Trimming, counting and recording run as one Lua script,
    so concurrent callers cannot both take the last slot.
    """

    def __init__(self, r: redis.Redis, settings: RateLimitSettings | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._r = r
        self._windows = windows_for(settings or RateLimitSettings())
        self._clock = clock
        self._acquire = r.register_script(_ACQUIRE_LUA)

    @staticmethod
    def key(kind: LimitKind, agent_id: str) -> str:
        return f"ratelimit:{kind.value}:{agent_id}"

    def _count(self, kind: LimitKind, agent_id: str, now: float) -> int:
        key = self.key(kind, agent_id)
        self._r.zremrangebyscore(key, "-inf", now - self._windows[kind].period_s)
        return int(self._r.zcard(key))

    def _reset_at(self, kind: LimitKind, agent_id: str, now: float) -> datetime:
        oldest = self._r.zrange(self.key(kind, agent_id), 0, 0, withscores=True)
        start = oldest[0][1] if oldest else now
        return datetime.fromtimestamp(start + self._windows[kind].period_s, tz=UTC)

    def acquire(self, agent_id: str, *kinds: LimitKind) -> None:
        """Count every kind, then record every kind. A rejection records nothing."""

        now = self._clock()
        keys = [self.key(kind, agent_id) for kind in kinds]
        args: list[str | int] = [repr(now), f"{now:.6f}:{uuid.uuid4().hex}"]
        for kind in kinds:
            window = self._windows[kind]
            args += [repr(now - window.period_s), window.limit, window.period_s]

        full = int(self._acquire(keys=keys, args=args))
        if full:
            kind = kinds[full - 1]
            window = self._windows[kind]
            raise RateLimited(kind=kind.value, limit=window.limit, reset_at=self._reset_at(kind, agent_id, now))

    def remaining(self, agent_id: str, kind: LimitKind) -> int:
        return max(0, self._windows[kind].limit - self._count(kind, agent_id, self._clock()))
