from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from uuid import UUID, uuid4

import redis

from gamegate.api.models import SessionPhase, SessionRecord
from gamegate.bridge.protocol import Action, MetaView, StateView
from gamegate.core.events import EventType, SessionEvent
from gamegate.errors import (
    BootstrapFault,
    NotSessionOwner,
    RuntimeFault,
    TerminalStateViolation,
)
from gamegate.fsm import SessionFSM
from gamegate.lock import session_lock
from gamegate.module_store import module_image, require_module
from gamegate.sandbox.host import SandboxHost
from gamegate.sandbox.instance import FaultRecord
from gamegate.sessions.rate_limit import LimitKind, RollingWindowLimiter
from gamegate.sessions.settlement import ScoreSettlement
from gamegate.sessions.store import require_session, save_session
from gamegate.streams import Mailbox, publish_to_mailbox
from gamegate.websocket_hub import SessionWebSocketHub, hub as default_hub

logger = logging.getLogger(__name__)

ACTION_TOKENS = ",".join(a.value for a in Action)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class SessionManager:
    """Owns programmatic play sessions: create, feed inputs in order, end with one settlement.

    Every call is checked against the caller's rate limits first. A runtime fault from
    the instance (other than a module exception inside `dispatchInput`, which degrades
    to `False`) ends the session and settles the last observed score.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        host: SandboxHost,
        limiter: RollingWindowLimiter,
        settlement: ScoreSettlement,
        hub: SessionWebSocketHub | None = None,
    ) -> None:
        self._r = r
        self._host = host
        self._limiter = limiter
        self._settlement = settlement
        self._hub = hub or default_hub

    def get(self, session_id: UUID | str) -> SessionRecord:
        return require_session(r=self._r, session_id=session_id)

    # ---- create ----

    async def create_session(self, *, agent_id: str, game_id: UUID) -> SessionRecord:
        module = require_module(r=self._r, game_id=game_id)
        self._limiter.acquire(agent_id, LimitKind.sessions, LimitKind.calls)

        now = _now()
        session = SessionRecord(
            session_id=uuid4(),
            agent_id=agent_id,
            game_id=module.game_id,
            created_at=now,
            last_updated_at=now,
        )
        sid = str(session.session_id)
        save_session(r=self._r, session=session)

        try:
            inst = await self._host.instantiate(
                module_image(module), module.capabilities, session_id=sid, owner_id=agent_id
            )
        except BootstrapFault:
            logger.warning("session %s: bootstrap failed for game %s", sid, module.game_id)
            await self._terminate(session, reason="bootstrap_failed")
            raise
        except Exception as e:
            logger.exception("session %s: could not instantiate game %s", sid, module.game_id)
            await self._terminate(session, reason="bootstrap_failed")
            raise BootstrapFault(f"Could not start game {module.game_id}") from e

        session.instance_id = inst.instance_id

        try:
            await inst.start()
            SessionFSM(session).apply("activate")
            meta = await inst.read_meta()
            state = await inst.read_state()
        except RuntimeFault as e:
            await self._terminate(session, reason="runtime_fault")
            raise RuntimeFault("Session could not be started", operation=e.operation) from e

        self._observe(session, state)
        save_session(r=self._r, session=session)

        self._prompt_next_input(session, state=state, meta=meta)
        await self._emit(session, "SESSION_STARTED", {"game_id": str(session.game_id), "score": session.score})
        logger.info("session %s started agent=%s game=%s instance=%s", sid, agent_id, module.game_id, inst.instance_id)
        return session

    # ---- input ----

    async def send_input(self, *, session_id: UUID | str, agent_id: str, action: str) -> tuple[bool, StateView]:
        session = self._require_live(session_id=session_id, agent_id=agent_id)
        self._limiter.acquire(agent_id, LimitKind.calls)

        sid = str(session.session_id)
        with session_lock(r=self._r, session_id=sid):
            # Re-read under the lock; another call may have ended it.
            session = self._require_live(session_id=sid, agent_id=agent_id)
            inst = self._host.for_session(sid)
            if inst is None or not inst.alive:
                await self._terminate(session, reason="instance_lost")
                raise RuntimeFault("Session instance is not running")

            faults: list[FaultRecord] = []
            listener = faults.append
            inst.add_fault_listener(listener)
            try:
                accepted = await inst.dispatch_input(action)
                state = await inst.read_state()
                meta = await inst.read_meta()
            except RuntimeFault as e:
                await self._emit_faults(session, faults)
                await self._terminate(session, reason="runtime_fault")
                raise RuntimeFault("Session ended by a runtime fault", operation=e.operation) from e
            finally:
                inst.remove_fault_listener(listener)

            if accepted:
                SessionFSM(session).apply("record_input")
                session.input_count += 1
            self._observe(session, state)
            save_session(r=self._r, session=session)

        await self._emit_faults(session, faults)
        await self._emit(session, "INPUT_APPLIED", {"action": action, "accepted": accepted, "score": session.score, "ended": state.ended})
        self._prompt_next_input(session, state=state, meta=meta)
        return accepted, state

    # ---- end ----

    async def end_session(self, *, session_id: UUID | str, agent_id: str) -> SessionRecord:
        session = self._require_live(session_id=session_id, agent_id=agent_id)

        sid = str(session.session_id)
        with session_lock(r=self._r, session_id=sid):
            session = self._require_live(session_id=sid, agent_id=agent_id)
            inst = self._host.for_session(sid)
            if inst is not None and inst.alive:
                try:
                    self._observe(session, await inst.read_state())
                except RuntimeFault as e:
                    logger.warning("session %s: final readState failed (%s); settling last observed score", sid, e)
            await self._terminate(session, reason="ended_by_agent")
        return session

    # ---- internals ----

    def _require_live(self, *, session_id: UUID | str, agent_id: str) -> SessionRecord:
        session = require_session(r=self._r, session_id=session_id)
        if session.agent_id != agent_id:
            raise NotSessionOwner("Only the agent that started a session may drive it")
        if session.phase == SessionPhase.ended:
            raise TerminalStateViolation(str(session.session_id))
        return session

    @staticmethod
    def _observe(session: SessionRecord, state: StateView) -> None:
        session.last_state = state.model_dump()
        session.score = state.score

    async def _terminate(self, session: SessionRecord, *, reason: str) -> None:
        if session.phase == SessionPhase.ended:
            return
        sid = str(session.session_id)

        SessionFSM(session).apply("end")
        score = session.score
        self._settlement.settle(session=session, score=score)
        session.settled_score = score
        session.end_reason = reason
        session.ended_at = _now()
        save_session(r=self._r, session=session)

        if session.instance_id is not None:
            await self._host.destroy(session.instance_id)

        publish_to_mailbox(
            r=self._r,
            mailbox=Mailbox(session_id=sid, agent_id=session.agent_id),
            fields={"type": "session_ended", "session_id": sid, "score": repr(score), "reason": reason, "ts": _now().isoformat()},
        )
        await self._emit(session, "SESSION_ENDED", {"score": score, "reason": reason})
        logger.info("session %s ended reason=%s score=%s", sid, reason, score)

    def _prompt_next_input(self, session: SessionRecord, *, state: StateView, meta: MetaView | None = None) -> None:
        sid = str(session.session_id)
        fields = {
            "type": "prompt_next_input",
            "session_id": sid,
            "agent_id": session.agent_id,
            "game_id": str(session.game_id),
            "phase": session.phase.value,
            "input_count": str(session.input_count),
            "score": repr(state.score),
            "ended": "1" if state.ended else "0",
            "state": json.dumps(state.model_dump()),
            "actions": ACTION_TOKENS,
            "ts": _now().isoformat(),
        }
        if meta is not None:
            fields["game_name"] = meta.name
            fields["game_description"] = meta.description
            fields["controls"] = json.dumps(meta.controls)
        publish_to_mailbox(r=self._r, mailbox=Mailbox(session_id=sid, agent_id=session.agent_id), fields=fields)

    async def _emit_faults(self, session: SessionRecord, faults: list[FaultRecord]) -> None:
        for rec in faults:
            await self._emit(session, "FAULT_RECORDED", {"operation": rec.operation, "message": rec.message})

    async def _emit(self, session: SessionRecord, type: EventType, payload: dict[str, object]) -> None:
        event = SessionEvent.now(type=type, session_id=str(session.session_id), payload={"phase": session.phase.value, **payload})
        await self._hub.broadcast(event.session_id, event.to_message())
