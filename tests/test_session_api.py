from __future__ import annotations

from dataclasses import replace

import fakeredis
import pytest
from fastapi.testclient import TestClient

from gamegate.api.deps import get_settings
from gamegate.config import GateSettings, RateLimitSettings, SandboxSettings
from gamegate.main import app
from gamegate.sessions.settlement import SETTLEMENT_STREAM


def _headers(agent: str) -> dict[str, str]:
    return {"X-Agent-Id": agent}


def _publish(client: TestClient, source: str) -> str:
    resp = client.post(
        "/games",
        data={"title": "Game", "mode": "script", "dimensionality": "2d"},
        files={"payload": ("main.py", source.encode("utf-8"), "text/x-python")},
        headers=_headers("author"),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["game_id"]


def _start(client: TestClient, game_id: str, agent: str = "player-1") -> dict:
    resp = client.post("/sessions", json={"game_id": game_id}, headers=_headers(agent))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_session_lifecycle_settles_once(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, r = client_and_redis
    game_id = _publish(client, game_source("counter"))

    session = _start(client, game_id)
    sid = session["session_id"]
    assert session["phase"] == "active"
    assert session["score"] == 0
    assert session["instance_id"]

    for _ in range(3):
        resp = client.post(f"/sessions/{sid}/input", json={"action": "action"}, headers=_headers("player-1"))
        assert resp.status_code == 200, resp.text
        assert resp.json()["accepted"] is True
    body = resp.json()
    assert body["state"]["score"] == 3
    assert body["session"]["input_count"] == 3

    # Unknown tokens are answered, not errors, and are not counted.
    resp = client.post(f"/sessions/{sid}/input", json={"action": "fire"}, headers=_headers("player-1"))
    assert resp.status_code == 200
    assert resp.json()["accepted"] is False
    assert resp.json()["session"]["input_count"] == 3

    resp = client.post(f"/sessions/{sid}/end", headers=_headers("player-1"))
    assert resp.status_code == 200
    assert resp.json() == {"session_id": sid, "score": 3.0}

    record = client.get(f"/sessions/{sid}").json()
    assert record["phase"] == "ended"
    assert record["settled_score"] == 3.0
    assert record["end_reason"] == "ended_by_agent"

    settlements = r.xrange(SETTLEMENT_STREAM)
    assert len(settlements) == 1
    assert settlements[0][1]["session_id"] == sid

    # Ended is terminal.
    assert client.post(f"/sessions/{sid}/input", json={"action": "up"}, headers=_headers("player-1")).status_code == 409
    assert client.post(f"/sessions/{sid}/end", headers=_headers("player-1")).status_code == 409
    assert len(r.xrange(SETTLEMENT_STREAM)) == 1

    # The instance is gone.
    assert client.get(f"/instances/{session['instance_id']}/state", headers=_headers("player-1")).status_code == 404


def test_only_the_owner_may_drive_a_session(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    game_id = _publish(client, game_source("counter"))
    sid = _start(client, game_id)["session_id"]

    assert client.post(f"/sessions/{sid}/input", json={"action": "up"}, headers=_headers("intruder")).status_code == 403
    assert client.post(f"/sessions/{sid}/end", headers=_headers("intruder")).status_code == 403
    assert client.post(f"/sessions/{sid}/end", headers=_headers("player-1")).status_code == 200


def test_mailbox_prompts_follow_the_session(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, r = client_and_redis
    game_id = _publish(client, game_source("counter"))
    sid = _start(client, game_id)["session_id"]

    mbox = f"mailbox:{sid}:player-1"
    _, first = r.xrange(mbox)[-1]
    assert first["type"] == "prompt_next_input"
    assert first["input_count"] == "0"
    assert first["game_name"] == "Counter"
    assert first["actions"] == "up,down,left,right,action,jump,pause"

    client.post(f"/sessions/{sid}/input", json={"action": "right"}, headers=_headers("player-1"))
    _, second = r.xrange(mbox)[-1]
    assert second["input_count"] == "1"
    assert '"x": 1' in second["state"]

    client.post(f"/sessions/{sid}/end", headers=_headers("player-1"))
    _, last = r.xrange(mbox)[-1]
    assert last["type"] == "session_ended"
    assert last["reason"] == "ended_by_agent"

    debug = client.get(f"/sessions/{sid}/mailbox", params={"count": 50}).json()
    assert debug["stream"] == mbox
    assert len(debug["messages"]) == 3


def test_bootstrap_failure_ends_the_session_with_zero(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, r = client_and_redis
    game_id = _publish(client, game_source("broken_init"))

    resp = client.post("/sessions", json={"game_id": game_id}, headers=_headers("player-1"))
    assert resp.status_code == 502

    sessions = client.get("/sessions", headers=_headers("player-1")).json()["sessions"]
    assert len(sessions) == 1
    assert sessions[0]["phase"] == "ended"
    assert sessions[0]["settled_score"] == 0.0
    assert sessions[0]["end_reason"] == "bootstrap_failed"
    assert len(r.xrange(SETTLEMENT_STREAM)) == 1


def test_module_fault_in_dispatch_keeps_the_session_alive(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    source = game_source("faulty")
    game_id = _publish(client, source)
    sid = _start(client, game_id)["session_id"]

    resp = client.post(f"/sessions/{sid}/input", json={"action": "jump"}, headers=_headers("player-1"))
    assert resp.status_code == 200
    assert resp.json()["accepted"] is False

    resp = client.post(f"/sessions/{sid}/input", json={"action": "up"}, headers=_headers("player-1"))
    assert resp.json()["accepted"] is True
    assert resp.json()["state"]["score"] == 2
    assert resp.json()["session"]["phase"] == "active"


def test_session_rate_limit_returns_429(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    app.dependency_overrides[get_settings] = lambda: GateSettings(
        sandbox=SandboxSettings(),
        rate_limits=RateLimitSettings(sessions_per_hour=1),
    )
    game_id = _publish(client, game_source("counter"))

    sid = _start(client, game_id)["session_id"]
    resp = client.post("/sessions", json={"game_id": game_id}, headers=_headers("player-1"))
    assert resp.status_code == 429
    assert resp.json()["detail"]["kind"] == "sessions"
    assert "Retry-After" in resp.headers

    # Other agents and other counters are unaffected.
    _start(client, game_id, agent="player-2")
    assert client.post(f"/sessions/{sid}/input", json={"action": "up"}, headers=_headers("player-1")).status_code == 200


def test_unknown_session_and_game(client_and_redis: tuple[TestClient, fakeredis.FakeRedis]) -> None:
    client, _ = client_and_redis
    missing = "00000000-0000-0000-0000-000000000000"
    assert client.get(f"/sessions/{missing}").status_code == 404
    assert client.post("/sessions", json={"game_id": missing}, headers=_headers("p")).status_code == 404


def test_ui_instance_endpoints(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    game_id = _publish(client, game_source("counter"))
    viewer = _headers("viewer")

    resp = client.post(f"/games/{game_id}/instances", headers=viewer)
    assert resp.status_code == 201
    inst = resp.json()
    iid = inst["instance_id"]
    assert inst["state"] == "ready"
    assert "surface" in inst["capabilities"]

    assert client.get(f"/instances/{iid}/meta", headers=viewer).json()["name"] == "Counter"
    assert client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=viewer).json()["accepted"] is True

    frame = client.post(f"/instances/{iid}/advance", json={"frames": 3}, headers=viewer).json()
    assert frame["frame"] >= 3
    assert frame["commands"]

    assert client.get(f"/instances/{iid}/state", headers=viewer).json()["score"] == 1
    assert client.delete(f"/instances/{iid}", headers=viewer).status_code == 204
    assert client.get(f"/instances/{iid}/frame", headers=viewer).status_code == 404


def test_instance_routes_belong_to_the_creating_agent(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    game_id = _publish(client, game_source("counter"))

    assert client.post(f"/games/{game_id}/instances").status_code == 422
    iid = client.post(f"/games/{game_id}/instances", headers=_headers("viewer")).json()["instance_id"]

    assert client.get(f"/instances/{iid}/state").status_code == 422
    other = _headers("intruder")
    assert client.get(f"/instances/{iid}/state", headers=other).status_code == 403
    assert client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=other).status_code == 403
    assert client.post(f"/instances/{iid}/reset", headers=other).status_code == 403
    assert client.delete(f"/instances/{iid}", headers=other).status_code == 403
    assert client.get(f"/instances/{iid}/state", headers=_headers("viewer")).json()["score"] == 0


def test_instance_creation_and_input_are_rate_limited(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    app.dependency_overrides[get_settings] = lambda: GateSettings(
        sandbox=SandboxSettings(),
        rate_limits=RateLimitSettings(sessions_per_hour=1, calls_per_hour=3),
    )
    game_id = _publish(client, game_source("counter"))
    viewer = _headers("viewer")

    iid = client.post(f"/games/{game_id}/instances", headers=viewer).json()["instance_id"]
    resp = client.post(f"/games/{game_id}/instances", headers=viewer)
    assert resp.status_code == 429
    assert resp.json()["detail"]["kind"] == "sessions"

    assert client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=viewer).status_code == 200
    assert client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=viewer).status_code == 200
    resp = client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=viewer)
    assert resp.status_code == 429
    assert resp.json()["detail"]["kind"] == "calls"
    assert "Retry-After" in resp.headers
    # The rejected call never reached the game.
    assert client.get(f"/instances/{iid}/state", headers=viewer).json()["score"] == 2


def test_instance_reset_returns_the_initial_state(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    game_id = _publish(client, game_source("counter"))
    viewer = _headers("viewer")
    iid = client.post(f"/games/{game_id}/instances", headers=viewer).json()["instance_id"]

    client.post(f"/instances/{iid}/input", json={"action": "action"}, headers=viewer)
    client.post(f"/instances/{iid}/input", json={"action": "right"}, headers=viewer)
    assert client.get(f"/instances/{iid}/state", headers=viewer).json()["score"] == 1

    resp = client.post(f"/instances/{iid}/reset", headers=viewer)
    assert resp.status_code == 200
    assert resp.json()["score"] == 0
    assert resp.json()["x"] == 0
    assert client.get(f"/instances/{iid}/state", headers=viewer).json()["score"] == 0

    # Session instances are reset by starting a new session.
    session = _start(client, game_id)
    assert client.post(f"/instances/{session['instance_id']}/reset", headers=_headers("player-1")).status_code == 409


def test_bridge_timeout_during_input_ends_the_session_once(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    fresh_host,
    game_source,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, r = client_and_redis
    monkeypatch.setattr(fresh_host, "settings", replace(fresh_host.settings, call_timeout_s=1.0))
    game_id = _publish(client, game_source("slow"))
    session = _start(client, game_id)
    sid = session["session_id"]

    resp = client.post(f"/sessions/{sid}/input", json={"action": "pause"}, headers=_headers("player-1"))
    assert resp.status_code == 502

    record = client.get(f"/sessions/{sid}").json()
    assert record["phase"] == "ended"
    assert record["end_reason"] == "runtime_fault"
    assert fresh_host.get(session["instance_id"]) is None

    assert client.post(f"/sessions/{sid}/input", json={"action": "up"}, headers=_headers("player-1")).status_code == 409
    settlements = r.xrange(SETTLEMENT_STREAM)
    assert len(settlements) == 1
    assert settlements[0][1]["session_id"] == sid


def test_unexpected_instantiate_error_ends_the_session(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    fresh_host,
    game_source,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, r = client_and_redis
    game_id = _publish(client, game_source("counter"))

    async def _explode(*args: object, **kwargs: object) -> None:
        raise OSError("fork failed")

    monkeypatch.setattr(fresh_host, "instantiate", _explode)
    resp = client.post("/sessions", json={"game_id": game_id}, headers=_headers("player-1"))
    assert resp.status_code == 502

    sessions = client.get("/sessions", headers=_headers("player-1")).json()["sessions"]
    assert [s["phase"] for s in sessions] == ["ended"]
    assert sessions[0]["end_reason"] == "bootstrap_failed"
    assert len(r.xrange(SETTLEMENT_STREAM)) == 1


def test_session_instances_cannot_be_deleted_directly(
    client_and_redis: tuple[TestClient, fakeredis.FakeRedis],
    game_source,
) -> None:
    client, _ = client_and_redis
    game_id = _publish(client, game_source("counter"))
    session = _start(client, game_id)
    assert client.delete(f"/instances/{session['instance_id']}", headers=_headers("player-1")).status_code == 409
