from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import redis

from gamegate.api.models import SessionPhase, SessionRecord
from gamegate.errors import SessionBusy, TerminalStateViolation
from gamegate.sessions.manager import SessionManager
from gamegate.sessions.store import get_session
from gamegate.streams import Mailbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentRunnerConfig:
    # How long to block waiting for a mailbox message; 0 means don't block.
    block_ms: int = 250
    # Max messages to read per iteration.
    count: int = 10


def _group_name_for(*, session_id: str) -> str:
    return f"agents:{session_id}"


def _consumer_name_for(*, agent_id: str) -> str:
    return f"agent:{agent_id}"


def ensure_mailbox_group(*, r: redis.Redis, stream_key: str, group: str) -> None:
    """Create the consumer group (and the stream, via MKSTREAM) if missing."""

    try:
        r.xgroup_create(stream_key, group, id="0", mkstream=True)
    except redis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


async def handle_mailbox_entry(
    *,
    r: redis.Redis,
    manager: SessionManager,
    session_id: str,
    agent_id: str,
    fields: dict[str, str],
) -> bool:
    """Act on one mailbox message. Returns True if an input was sent."""

    if fields.get("type") != "prompt_next_input":
        return False

    session = get_session(r=r, session_id=session_id)
    if session is None or session.phase != SessionPhase.active:
        return False

    # Stale prompt: the session has moved on since this was published.
    if fields.get("input_count") != str(session.input_count):
        return False
    if fields.get("ended") == "1":
        return False

    action = await decide_next_input_via_llm(session=session, fields=fields)

    try:
        await manager.send_input(session_id=session_id, agent_id=agent_id, action=action)
    except (SessionBusy, TerminalStateViolation) as e:
        logger.info("agent %s skipped input on session %s: %s", agent_id, session_id, e)
        return False
    return True


async def run_session_agent_once(
    *,
    r: redis.Redis,
    manager: SessionManager,
    session_id: str,
    config: AgentRunnerConfig | None = None,
) -> bool:
    """Poll the session's agent mailbox once and act on at most ONE prompt.

    Every message read is acked; the mailbox is an append-only history.
    """

    session = get_session(r=r, session_id=session_id)
    if session is None or session.phase != SessionPhase.active:
        return False

    cfg = config or AgentRunnerConfig()
    agent_id = session.agent_id
    stream_key = Mailbox(session_id=session_id, agent_id=agent_id).key
    group = _group_name_for(session_id=session_id)
    consumer = _consumer_name_for(agent_id=agent_id)

    ensure_mailbox_group(r=r, stream_key=stream_key, group=group)

    # BLOCK 0 would wait forever; omit it instead.
    resp = r.xreadgroup(group, consumer, {stream_key: ">"}, count=cfg.count, block=cfg.block_ms or None)
    if not resp:
        return False

    handled = False
    for _stream, messages in resp:
        for msg_id, fields in messages:
            if not handled:
                handled = await handle_mailbox_entry(
                    r=r, manager=manager, session_id=session_id, agent_id=agent_id, fields=fields
                )
            r.xack(stream_key, group, msg_id)
    return handled


# ---- LLM decision helper (kept separate so tests can monkeypatch it) ----

from gamegate.agents.factory import create_default_agent
from gamegate.agents.input_picker import pick_input_with_agent
from gamegate.core.context import AgentProfile, GameBrief, compose_context
from gamegate.prompts import make_base_agent_context


async def decide_next_input_via_llm(*, session: SessionRecord, fields: dict[str, str]) -> str:
    """Ask the default LLM agent for the next action token."""

    try:
        controls = json.loads(fields.get("controls") or "{}")
    except json.JSONDecodeError:
        controls = {}
    try:
        state = json.loads(fields.get("state") or "{}")
    except json.JSONDecodeError:
        state = {}

    game = GameBrief(
        name=fields.get("game_name") or str(session.game_id),
        description=fields.get("game_description") or "",
        controls=controls if isinstance(controls, (dict, list)) else {},
    )
    agent_profile = AgentProfile(
        agent_id=session.agent_id,
        display_name=f"Player {session.agent_id}",
        prompt=f"You have made {session.input_count} accepted input(s) so far.",
    )
    ctx = compose_context(base=make_base_agent_context(), agent=agent_profile, game=game)

    agent = create_default_agent(name=f"player-{session.agent_id}")
    picked = await pick_input_with_agent(agent=agent, ctx=ctx, state=state)
    return picked.action.value
