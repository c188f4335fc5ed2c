from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol

import redis

from gamegate.api.models import SessionRecord

logger = logging.getLogger(__name__)

SETTLEMENT_STREAM = "gamegate:settlements"
SETTLED_KEY_PREFIX = "gamegate:settled:"  # + {session uuid}


class ScoreSettlement(Protocol):
    """Hands a session's final score to whatever pays it out."""

    def settle(self, *, session: SessionRecord, score: float) -> bool:  # pragma: no cover
        ...


class StreamScoreSettlement:
    """Publishes final scores to a Redis stream, at most once per session.

    The `SET NX` guard is what makes settlement exactly-once: a second attempt for the
    same session finds the key and returns False without publishing.
    """

    def __init__(self, r: redis.Redis, *, stream_key: str = SETTLEMENT_STREAM, guard_ttl_s: int = 30 * 86_400) -> None:
        self._r = r
        self._stream_key = stream_key
        self._guard_ttl_s = guard_ttl_s

    def settle(self, *, session: SessionRecord, score: float) -> bool:
        sid = str(session.session_id)
        if not self._r.set(f"{SETTLED_KEY_PREFIX}{sid}", repr(score), nx=True, ex=self._guard_ttl_s):
            logger.warning("session %s already settled; ignoring score %s", sid, score)
            return False

        self._r.xadd(
            self._stream_key,
            {
                "session_id": sid,
                "agent_id": session.agent_id,
                "game_id": str(session.game_id),
                "score": repr(score),
                "inputs": str(session.input_count),
                "ts": datetime.now(tz=UTC).isoformat(),
            },
        )
        logger.info("settled session %s agent=%s score=%s", sid, session.agent_id, score)
        return True

    def settled_score(self, session_id: str) -> float | None:
        raw = self._r.get(f"{SETTLED_KEY_PREFIX}{session_id}")
        return float(raw) if raw is not None else None
