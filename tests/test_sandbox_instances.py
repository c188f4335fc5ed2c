from __future__ import annotations

import asyncio
import time

import pytest

import gamegate.sandbox.host as host_mod
from gamegate.bridge.protocol import Action
from gamegate.config import SandboxSettings
from gamegate.errors import BootstrapFault, CancellationFault
from gamegate.sandbox.host import ModuleImage, SandboxHost, resolve_wrapper
from gamegate.sandbox.instance import InstanceState, IsolatedInstance
from gamegate.sandbox.runner import audit_guard, forbidden_names


def _host(**overrides: object) -> SandboxHost:
    settings = {"call_timeout_s": 5.0, "boot_timeout_s": 15.0, "wrapper": "none", **overrides}
    return SandboxHost(SandboxSettings(**settings))  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_read_state_is_idempotent_between_mutations(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        await inst.start()

        first = await inst.read_state()
        second = await inst.read_state()
        assert first == second
        assert first.score == 0
        assert first.ended is False

        assert await inst.dispatch_input("action") is True
        third = await inst.read_state()
        assert third.score == 1
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_dispatch_input_answers_a_bool_for_every_action(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        await inst.start()

        results = {}
        for action in Action:
            if action == Action.pause:
                continue
            results[action] = await inst.dispatch_input(action)
        assert all(isinstance(v, bool) for v in results.values())
        assert results[Action.jump] is False
        assert results[Action.up] is True
        assert results[Action.action] is True

        # Pause toggles, and blocks movement while paused.
        assert await inst.dispatch_input("pause") is True
        assert await inst.dispatch_input("left") is False
        assert await inst.dispatch_input("pause") is True
        assert await inst.dispatch_input("left") is True
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_unknown_token_is_rejected_without_reaching_the_module(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        await inst.start()
        before = await inst.read_state()

        assert await inst.dispatch_input("fire") is False
        assert await inst.dispatch_input("UP") is False
        assert await inst.dispatch_input("") is False

        assert await inst.read_state() == before
        assert not inst.faults
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_module_exception_in_dispatch_input_degrades_to_false_and_is_recorded(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="faulty", source=game_source("faulty")))
        seen = []
        inst.add_fault_listener(seen.append)
        await inst.start()

        assert await inst.dispatch_input("jump") is False
        assert len(seen) == 1
        assert seen[0].operation == "dispatchInput"
        assert "jump is broken" in seen[0].message

        # Non-bool answers are treated the same way.
        assert await inst.dispatch_input("action") is False
        assert len(inst.faults) == 2

        # The instance keeps working afterwards.
        assert inst.alive
        assert await inst.dispatch_input("up") is True
        assert (await inst.read_state()).score == 2
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_failing_init_is_a_bootstrap_fault_and_marks_the_instance_failed(game_source) -> None:
    host = _host()
    try:
        with pytest.raises(BootstrapFault):
            await host.instantiate(ModuleImage(game_id="broken", source=game_source("broken_init")))
        assert host.active_count == 0
        failed = list(host._failed)
        assert len(failed) == 1
        assert host.state_of(failed[0].instance_id) == InstanceState.failed
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_module_without_anchor_never_boots() -> None:
    host = _host()
    try:
        with pytest.raises(BootstrapFault):
            await host.instantiate(ModuleImage(game_id="empty", source="x = 1\n"))
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_destroy_resolves_in_flight_call_with_cancellation(game_source) -> None:
    host = _host(call_timeout_s=20.0)
    try:
        inst = await host.instantiate(ModuleImage(game_id="slow", source=game_source("slow")))
        await inst.start()

        pending = asyncio.create_task(inst.dispatch_input("pause"))
        await asyncio.sleep(0.3)
        assert await host.destroy(inst.instance_id) is True

        with pytest.raises(CancellationFault):
            await asyncio.wait_for(pending, timeout=5.0)
        assert inst.state == InstanceState.destroyed
        assert host.get(inst.instance_id) is None
        with pytest.raises(CancellationFault):
            await inst.read_state()
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_read_meta_is_stable_for_the_instance_lifetime(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        await inst.start()
        meta1 = await inst.read_meta()
        await inst.dispatch_input("action")
        await inst.reset()
        meta2 = await inst.read_meta()
        assert meta1 == meta2
        assert meta1.name == "Counter"
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_module_cannot_import_system_modules_or_open_files(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="escape", source=game_source("escape")))
        state = await inst.read_state()
        found = state.model_dump()["found"]
        assert found == {"os": False, "sys": False, "subprocess": False, "socket": False, "open": False, "dunder": False}
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_advance_pumps_frames_and_frame_snapshots_the_surface(game_source) -> None:
    host = _host()
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        await inst.start()
        await inst.advance(5)

        state = await inst.read_state()
        assert state.model_dump()["ticks"] == 5

        snap = await inst.frame()
        assert snap["frame"] == 5
        assert "commands" in snap
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_one_instance_per_session(game_source) -> None:
    host = _host()
    try:
        image = ModuleImage(game_id="counter", source=game_source("counter"))
        first = await host.instantiate(image, session_id="s-1")
        with pytest.raises(ValueError):
            await host.instantiate(image, session_id="s-1")
        assert host.for_session("s-1") is first

        await host.destroy(first.instance_id)
        assert host.for_session("s-1") is None
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_unknown_capability_request_is_refused(game_source) -> None:
    host = _host()
    try:
        with pytest.raises(ValueError):
            await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")), ["network"])
    finally:
        await host.shutdown()


WALKER = """\
class Walker:
    def init(self):
        pass

    def start(self):
        pass

    def reset(self):
        pass

    def readState(self):
        return {"score": len(().__class__.__base__.__subclasses__()), "ended": False}

    def dispatchInput(self, action):
        return False

    def readMeta(self):
        return {"name": "Walker", "description": "", "controls": {}}


host.game = Walker()
"""


@pytest.mark.asyncio
async def test_object_graph_walk_never_boots() -> None:
    host = _host()
    try:
        with pytest.raises(BootstrapFault) as exc:
            await host.instantiate(ModuleImage(game_id="walker", source=WALKER))
        assert "__class__" in str(exc.value)
        assert host.active_count == 0
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_frame_walk_never_boots(game_source) -> None:
    source = game_source("counter") + "\ndef gen():\n    yield 1\n\nleak = gen().gi_frame\n"
    host = _host()
    try:
        with pytest.raises(BootstrapFault) as exc:
            await host.instantiate(ModuleImage(game_id="frames", source=source))
        assert "gi_frame" in str(exc.value)
    finally:
        await host.shutdown()


def test_forbidden_names_lists_private_and_frame_attributes() -> None:
    source = (
        "x = ().__class__\n"
        "y = obj._secret\n"
        "z = g.gi_frame.f_globals\n"
        "w = __builtins__\n"
        "from math import _private\n"
        "_local = 1\n"
        "ok = _local + obj.public\n"
    )
    assert sorted(forbidden_names(source)) == [
        (1, "__class__"),
        (2, "_secret"),
        (3, "f_globals"),
        (3, "gi_frame"),
        (4, "__builtins__"),
        (5, "_private"),
    ]


@pytest.mark.parametrize(
    "event",
    ["os.system", "os.listdir", "socket.__new__", "socket.connect", "subprocess.Popen", "open", "ctypes.dlopen", "sys.addaudithook"],
)
def test_audit_guard_refuses_system_access(event: str) -> None:
    with pytest.raises(PermissionError):
        audit_guard(event, ())


@pytest.mark.parametrize("event", ["exec", "compile", "import", "time.sleep"])
def test_audit_guard_lets_interpreter_events_through(event: str) -> None:
    assert audit_guard(event, ()) is None


def test_default_wrapper_insists_on_network_isolation() -> None:
    assert SandboxSettings().wrapper == "auto"


def _no_isolation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(host_mod.shutil, "which", lambda name: None)
    monkeypatch.delattr(host_mod.os, "unshare", raising=False)


def test_wrapper_resolution_fails_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    _no_isolation(monkeypatch)
    for requested in ("auto", "bwrap", "netns"):
        with pytest.raises(BootstrapFault):
            resolve_wrapper(requested)
    assert resolve_wrapper("none") == "none"
    with pytest.raises(BootstrapFault):
        resolve_wrapper("chroot")


def test_wrapper_resolution_prefers_bwrap_then_netns(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(host_mod.shutil, "which", lambda name: "/usr/bin/bwrap")
    monkeypatch.setattr(host_mod.os, "unshare", lambda flags: None, raising=False)
    monkeypatch.setattr(host_mod.os, "CLONE_NEWNET", 0x40000000, raising=False)
    assert resolve_wrapper("auto") == "bwrap"
    assert resolve_wrapper("netns") == "netns"

    monkeypatch.setattr(host_mod.shutil, "which", lambda name: None)
    assert resolve_wrapper("auto") == "netns"
    with pytest.raises(BootstrapFault):
        resolve_wrapper("bwrap")


@pytest.mark.asyncio
async def test_host_refuses_to_start_a_child_it_cannot_isolate(monkeypatch: pytest.MonkeyPatch, game_source) -> None:
    _no_isolation(monkeypatch)
    host = SandboxHost(SandboxSettings())
    try:
        with pytest.raises(BootstrapFault):
            await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        assert host.active_count == 0
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_idle_ui_instances_are_reaped_but_session_instances_are_not(game_source) -> None:
    host = _host(instance_idle_s=60.0)
    try:
        image = ModuleImage(game_id="counter", source=game_source("counter"))
        ui = await host.instantiate(image, owner_id="a")
        bound = await host.instantiate(image, session_id="s-1", owner_id="a")

        assert await host.reap_idle() == 0
        assert await host.reap_idle(now=time.monotonic() + 61) == 1
        assert host.get(ui.instance_id) is None
        assert ui.state == InstanceState.destroyed
        assert host.get(bound.instance_id) is bound
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_calls_keep_an_instance_from_being_reaped(game_source) -> None:
    host = _host(instance_idle_s=60.0)
    try:
        inst = await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")), owner_id="a")
        inst.last_used -= 120
        await inst.start()
        assert await host.reap_idle() == 0
        assert host.get(inst.instance_id) is inst
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_full_host_reaps_idle_instances_before_refusing(game_source) -> None:
    image = ModuleImage(game_id="counter", source=game_source("counter"))

    host = _host(max_instances=1, instance_idle_s=0.0)
    try:
        first = await host.instantiate(image, owner_id="a")
        second = await host.instantiate(image, owner_id="b")
        assert host.get(first.instance_id) is None
        assert host.get(second.instance_id) is second
    finally:
        await host.shutdown()

    host = _host(max_instances=1, instance_idle_s=0.0)
    try:
        await host.instantiate(image, session_id="s-1", owner_id="a")
        with pytest.raises(BootstrapFault):
            await host.instantiate(image, owner_id="b")
    finally:
        await host.shutdown()


@pytest.mark.asyncio
async def test_unexpected_bootstrap_error_releases_the_instance(monkeypatch: pytest.MonkeyPatch, game_source) -> None:
    async def _explode(self: IsolatedInstance, boot_args: dict, *, timeout_s: float) -> None:
        raise OSError("pipe closed")

    monkeypatch.setattr(IsolatedInstance, "bootstrap", _explode)
    host = _host()
    try:
        with pytest.raises(BootstrapFault):
            await host.instantiate(ModuleImage(game_id="counter", source=game_source("counter")))
        assert host.active_count == 0
        assert len(host._failed) == 1
    finally:
        await host.shutdown()
