from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID

import redis

from gamegate.api.models import SessionRecord
from gamegate.errors import SessionNotFound

SESSION_KEY_PREFIX = "gamegate:session:"  # + {uuid}
AGENT_SESSIONS_PREFIX = "gamegate:agent_sessions:"  # + {agent_id}


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _session_key(session_id: UUID | str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def save_session(*, r: redis.Redis, session: SessionRecord) -> None:
    session.last_updated_at = _now()
    r.set(_session_key(session.session_id), session.model_dump_json())
    r.sadd(f"{AGENT_SESSIONS_PREFIX}{session.agent_id}", str(session.session_id))


def get_session(*, r: redis.Redis, session_id: UUID | str) -> SessionRecord | None:
    raw = r.get(_session_key(session_id))
    if not raw:
        return None
    return SessionRecord.model_validate_json(raw)


def require_session(*, r: redis.Redis, session_id: UUID | str) -> SessionRecord:
    session = get_session(r=r, session_id=session_id)
    if session is None:
        raise SessionNotFound("Session not found")
    return session


def list_agent_sessions(*, r: redis.Redis, agent_id: str) -> list[SessionRecord]:
    out: list[SessionRecord] = []
    for sid in sorted(r.smembers(f"{AGENT_SESSIONS_PREFIX}{agent_id}")):
        session = get_session(r=r, session_id=sid)
        if session is not None:
            out.append(session)
    out.sort(key=lambda s: s.created_at, reverse=True)
    return out
