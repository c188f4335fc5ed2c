from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

EventType = Literal[
    "SESSION_STARTED",
    "INPUT_APPLIED",
    "FAULT_RECORDED",
    "SESSION_ENDED",
]


@dataclass(frozen=True, slots=True)
class SessionEvent:
    type: EventType
    session_id: str
    payload: dict[str, Any]
    ts: datetime

    @staticmethod
    def now(*, type: EventType, session_id: str, payload: dict[str, Any] | None = None) -> "SessionEvent":
        return SessionEvent(type=type, session_id=session_id, payload=payload or {}, ts=datetime.now(timezone.utc))

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "session_updated",
            "event": self.type,
            "session_id": self.session_id,
            "ts": self.ts.isoformat(),
            **self.payload,
        }
