from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import redis
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from gamegate.agent_runner import AgentRunnerConfig, run_session_agent_once
from gamegate.api.deps import get_agent_id, get_limiter, get_redis, get_sandbox_host, get_session_manager
from gamegate.api.models import (
    AdvanceRequest,
    EndSessionResponse,
    GameListResponse,
    GameModuleSummary,
    InputRequest,
    InputResponse,
    InstanceResponse,
    SessionCreateRequest,
    SessionListResponse,
    SessionRecord,
)
from gamegate.assets.registry import BundleTier
from gamegate.errors import (
    BootstrapFault,
    GameNotFound,
    NotSessionOwner,
    RateLimited,
    RuntimeFault,
    SessionBusy,
    SessionNotFound,
    TerminalStateViolation,
)
from gamegate.module_store import get_module, list_modules, module_image, require_module
from gamegate.sandbox.host import SandboxHost
from gamegate.sandbox.instance import IsolatedInstance
from gamegate.sessions.manager import SessionManager
from gamegate.sessions.rate_limit import LimitKind, RollingWindowLimiter
from gamegate.sessions.store import list_agent_sessions
from gamegate.streams import Mailbox, read_mailbox
from gamegate.submissions import SubmissionMeta, SubmissionRejected, submit_module
from gamegate.validation.checks import Submission
from gamegate.validation.rules import Dimensionality, SubmissionMode
from gamegate.websocket_hub import hub

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, RateLimited):
        retry_after = max(0, math.ceil((e.reset_at - datetime.now(tz=UTC)).total_seconds()))
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"kind": e.kind, "limit": e.limit, "reset_at": e.reset_at.isoformat()},
            headers={"Retry-After": str(retry_after)},
        )
    if isinstance(e, (SessionNotFound, GameNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, NotSessionOwner):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, (TerminalStateViolation, SessionBusy)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, BootstrapFault):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Game failed to start")
    if isinstance(e, RuntimeFault):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Game instance fault")
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


_HANDLED = (ValueError, BootstrapFault, RuntimeFault)


@router.websocket("/ws/session/{session_id}")
async def session_updates_ws(websocket: WebSocket, session_id: UUID) -> None:
    sid = str(session_id)
    await hub.connect(sid, websocket)

    try:
        # Keep the socket open; clients may send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await hub.disconnect(sid, websocket)
    except Exception:
        await hub.disconnect(sid, websocket)
        raise


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


# ---- games ----


@router.post("/games", response_model=GameModuleSummary, status_code=status.HTTP_201_CREATED)
async def submit_game_route(
    title: str = Form(..., min_length=1, max_length=200),
    mode: SubmissionMode = Form(...),
    dimensionality: Dimensionality = Form(...),
    description: str = Form(""),
    genre: str = Form(""),
    tier: BundleTier | None = Form(None),
    capabilities: str = Form(""),
    payload: UploadFile = File(...),
    thumbnail: UploadFile | None = File(None),
    agent_id: str = Depends(get_agent_id),
    r: redis.Redis = Depends(get_redis),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> Any:
    submission = Submission(
        payload=await payload.read(),
        mode=mode,
        dimensionality=dimensionality,
        tier=tier,
        capabilities=frozenset(c.strip() for c in capabilities.split(",") if c.strip()),
        thumbnail=await thumbnail.read() if thumbnail is not None else None,
    )
    try:
        module = submit_module(
            r=r,
            limiter=limiter,
            agent_id=agent_id,
            submission=submission,
            meta=SubmissionMeta(title=title, description=description, genre=genre),
        )
    except SubmissionRejected as e:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"ok": False, "errors": [i.model_dump(mode="json") for i in e.report.issues]},
        )
    except ValueError as e:
        raise _http_error(e) from e
    return GameModuleSummary.of(module)


@router.get("/games", response_model=GameListResponse)
async def list_games_route(r: redis.Redis = Depends(get_redis)) -> GameListResponse:
    return GameListResponse(games=[GameModuleSummary.of(m) for m in list_modules(r=r)])


@router.get("/games/{game_id}", response_model=GameModuleSummary)
async def get_game_route(game_id: UUID, r: redis.Redis = Depends(get_redis)) -> GameModuleSummary:
    module = get_module(r=r, game_id=game_id)
    if module is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")
    return GameModuleSummary.of(module)


# ---- sessions (agents) ----


@router.post("/sessions", response_model=SessionRecord, status_code=status.HTTP_201_CREATED)
async def create_session_route(
    payload: SessionCreateRequest,
    agent_id: str = Depends(get_agent_id),
    manager: SessionManager = Depends(get_session_manager),
) -> SessionRecord:
    try:
        return await manager.create_session(agent_id=agent_id, game_id=payload.game_id)
    except _HANDLED as e:
        raise _http_error(e) from e


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions_route(
    agent_id: str = Depends(get_agent_id),
    r: redis.Redis = Depends(get_redis),
) -> SessionListResponse:
    return SessionListResponse(sessions=list_agent_sessions(r=r, agent_id=agent_id))


@router.get("/sessions/{session_id}", response_model=SessionRecord)
async def get_session_route(session_id: UUID, manager: SessionManager = Depends(get_session_manager)) -> SessionRecord:
    try:
        return manager.get(session_id)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/sessions/{session_id}/input", response_model=InputResponse)
async def session_input_route(
    session_id: UUID,
    payload: InputRequest,
    agent_id: str = Depends(get_agent_id),
    manager: SessionManager = Depends(get_session_manager),
) -> InputResponse:
    try:
        accepted, state = await manager.send_input(session_id=session_id, agent_id=agent_id, action=payload.action)
    except _HANDLED as e:
        raise _http_error(e) from e
    return InputResponse(accepted=accepted, state=state.model_dump(), session=manager.get(session_id))


@router.post("/sessions/{session_id}/end", response_model=EndSessionResponse)
async def end_session_route(
    session_id: UUID,
    agent_id: str = Depends(get_agent_id),
    manager: SessionManager = Depends(get_session_manager),
) -> EndSessionResponse:
    try:
        session = await manager.end_session(session_id=session_id, agent_id=agent_id)
    except _HANDLED as e:
        raise _http_error(e) from e
    return EndSessionResponse(session_id=session.session_id, score=session.settled_score or 0.0)


@router.get("/sessions/{session_id}/mailbox")
async def get_session_mailbox_route(
    session_id: UUID,
    count: int = 20,
    start: str = "-",
    end: str = "+",
    manager: SessionManager = Depends(get_session_manager),
    r: redis.Redis = Depends(get_redis),
) -> dict[str, object]:
    """Debug endpoint: read the session agent's mailbox stream."""

    if count < 1 or count > 200:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="count must be between 1 and 200")
    try:
        session = manager.get(session_id)
    except ValueError as e:
        raise _http_error(e) from e

    mailbox = Mailbox(session_id=str(session_id), agent_id=session.agent_id)
    try:
        messages = read_mailbox(r=r, mailbox=mailbox, start=start, end=end, count=count)
    except redis.ResponseError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    return {"session_id": str(session_id), "agent_id": session.agent_id, "stream": mailbox.key, "messages": messages}


@router.post("/sessions/{session_id}/agents/run_once")
async def run_session_agent_once_route(
    session_id: UUID,
    block_ms: int = 0,
    count: int = 10,
    manager: SessionManager = Depends(get_session_manager),
    r: redis.Redis = Depends(get_redis),
) -> dict[str, object]:
    """Dev endpoint: let the session's LLM agent handle one pending prompt."""

    if block_ms < 0 or block_ms > 10_000:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="block_ms must be 0..10000")
    if count < 1 or count > 100:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="count must be 1..100")

    try:
        handled = await run_session_agent_once(
            r=r,
            manager=manager,
            session_id=str(session_id),
            config=AgentRunnerConfig(block_ms=block_ms, count=count),
        )
    except _HANDLED as e:
        raise _http_error(e) from e
    return {"session_id": str(session_id), "handled": handled}


# ---- instances (rendered UI) ----
#
# Instances are owned by the agent that created them. Calls that drive the game
# count against the owner's hourly call window; reads do not.


def _instance_response(inst: IsolatedInstance) -> InstanceResponse:
    return InstanceResponse(
        instance_id=inst.instance_id,
        game_id=UUID(inst.game_id),
        state=inst.state.value,
        capabilities=inst.capabilities.as_list(),
        session_id=inst.session_id,
    )


def _require_instance(host: SandboxHost, instance_id: str, agent_id: str) -> IsolatedInstance:
    inst = host.get(instance_id)
    if inst is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instance not found")
    if inst.owner_id != agent_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Instance belongs to another agent")
    return inst


def _meter(limiter: RollingWindowLimiter, agent_id: str, *kinds: LimitKind) -> None:
    try:
        limiter.acquire(agent_id, *kinds)
    except RateLimited as e:
        raise _http_error(e) from e


@router.post("/games/{game_id}/instances", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def create_instance_route(
    game_id: UUID,
    agent_id: str = Depends(get_agent_id),
    r: redis.Redis = Depends(get_redis),
    host: SandboxHost = Depends(get_sandbox_host),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> InstanceResponse:
    try:
        module = require_module(r=r, game_id=game_id)
        limiter.acquire(agent_id, LimitKind.sessions, LimitKind.calls)
        inst = await host.instantiate(module_image(module), module.capabilities, owner_id=agent_id)
    except _HANDLED as e:
        raise _http_error(e) from e
    try:
        await inst.start()
    except RuntimeFault as e:
        await host.destroy(inst.instance_id)
        raise _http_error(e) from e
    logger.info("instance %s created for agent %s game=%s", inst.instance_id, agent_id, game_id)
    return _instance_response(inst)


@router.get("/instances/{instance_id}/state")
async def instance_state_route(
    instance_id: str,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
) -> dict[str, Any]:
    inst = _require_instance(host, instance_id, agent_id)
    try:
        return (await inst.read_state()).model_dump()
    except RuntimeFault as e:
        raise _http_error(e) from e


@router.get("/instances/{instance_id}/meta")
async def instance_meta_route(
    instance_id: str,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
) -> dict[str, Any]:
    inst = _require_instance(host, instance_id, agent_id)
    try:
        return (await inst.read_meta()).model_dump()
    except RuntimeFault as e:
        raise _http_error(e) from e


@router.post("/instances/{instance_id}/input")
async def instance_input_route(
    instance_id: str,
    payload: InputRequest,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    inst = _require_instance(host, instance_id, agent_id)
    _meter(limiter, agent_id, LimitKind.calls)
    try:
        accepted = await inst.dispatch_input(payload.action)
        state = await inst.read_state()
    except RuntimeFault as e:
        raise _http_error(e) from e
    if inst.session_id is not None:
        await hub.broadcast(inst.session_id, {"type": "session_updated", "event": "UI_INPUT", "session_id": inst.session_id})
    return {"accepted": accepted, "state": state.model_dump()}


@router.post("/instances/{instance_id}/reset")
async def instance_reset_route(
    instance_id: str,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    """Put the game back to its initial state without tearing the instance down."""

    inst = _require_instance(host, instance_id, agent_id)
    if inst.session_id is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Instance belongs to a session; start a new session instead")
    _meter(limiter, agent_id, LimitKind.calls)
    try:
        await inst.reset()
        return (await inst.read_state()).model_dump()
    except RuntimeFault as e:
        raise _http_error(e) from e


@router.post("/instances/{instance_id}/advance")
async def instance_advance_route(
    instance_id: str,
    payload: AdvanceRequest,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    inst = _require_instance(host, instance_id, agent_id)
    _meter(limiter, agent_id, LimitKind.calls)
    try:
        await inst.advance(payload.frames)
        return await inst.frame()
    except RuntimeFault as e:
        raise _http_error(e) from e


@router.get("/instances/{instance_id}/frame")
async def instance_frame_route(
    instance_id: str,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
) -> dict[str, Any]:
    inst = _require_instance(host, instance_id, agent_id)
    try:
        return await inst.frame()
    except RuntimeFault as e:
        raise _http_error(e) from e


@router.delete("/instances/{instance_id}", status_code=status.HTTP_204_NO_CONTENT)
async def destroy_instance_route(
    instance_id: str,
    agent_id: str = Depends(get_agent_id),
    host: SandboxHost = Depends(get_sandbox_host),
) -> None:
    inst = _require_instance(host, instance_id, agent_id)
    if inst.session_id is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Instance belongs to a session; end the session instead")
    await host.destroy(instance_id)
