"""Child-side entrypoint: `python -m gamegate.sandbox.runner`.

Reads one JSON request per line from stdin and answers with one JSON response per line.
The original stdout descriptor is claimed for the channel and fd 1 is pointed at
/dev/null, so nothing the module does can write into the protocol stream.

Module code is held in by three layers. Its source may not name private or frame
attributes, its namespace only carries the restricted builtins and allowlisted module
views, and an audit hook installed before the first request refuses file, process and
socket access for the rest of the process lifetime.
"""

from __future__ import annotations

import ast
import builtins
import importlib
import json
import os
import random
import sys
import types
from collections.abc import Callable
from typing import Any, BinaryIO

try:
    import resource
except ImportError:  # not POSIX
    resource = None

from gamegate.sandbox.runtime import (
    AssetShelf,
    AudioMixer,
    Exports,
    FrameScheduler,
    SceneGraph,
    Surface,
    Timers,
    VirtualClock,
    decode_media,
)

# Wire name, then snake_case alias.
_OPERATIONS: tuple[tuple[str, str], ...] = (
    ("init", "init"),
    ("start", "start"),
    ("reset", "reset"),
    ("readState", "read_state"),
    ("dispatchInput", "dispatch_input"),
    ("readMeta", "read_meta"),
)
_MUTATING = frozenset({"init", "start", "reset", "dispatchInput"})
_ACTIONS = frozenset({"up", "down", "left", "right", "action", "jump", "pause"})

_BLOCKED_BUILTINS = frozenset(
    {
        "open",
        "exec",
        "eval",
        "compile",
        "input",
        "breakpoint",
        "exit",
        "quit",
        "help",
        "globals",
        "locals",
        "vars",
        "memoryview",
        "copyright",
        "credits",
        "license",
    }
)

ALLOWED_MODULES = frozenset(
    {
        "math",
        "cmath",
        "random",
        "time",
        "json",
        "dataclasses",
        "enum",
        "functools",
        "itertools",
        "collections",
        "collections.abc",
        "typing",
        "string",
        "heapq",
        "bisect",
        "copy",
        "operator",
        "statistics",
        "fractions",
        "decimal",
    }
)

# Public members that resolve attribute paths or evaluate strings against real builtins.
_HIDDEN_MEMBERS: dict[str, frozenset[str]] = {
    "string": frozenset({"Formatter"}),
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "typing": frozenset({"get_type_hints", "ForwardRef", "evaluate_forward_ref"}),
}

# Attributes that hand out frames, code objects or globals without a leading underscore.
_INTROSPECTION_ATTRS = frozenset(
    {
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "cr_origin",
        "ag_frame",
        "ag_code",
        "ag_await",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "f_trace",
        "tb_frame",
        "tb_next",
    }
)

_DENIED_EVENTS = frozenset(
    {
        "open",
        "sys.addaudithook",
        "sys.settrace",
        "sys.setprofile",
        "sys._current_frames",
        "gc.get_objects",
        "gc.get_referrers",
        "gc.get_referents",
    }
)
_DENIED_EVENT_PREFIXES = (
    "os.",
    "subprocess.",
    "socket.",
    "shutil.",
    "ctypes.",
    "sqlite3.",
    "urllib.",
    "http.",
    "ftplib.",
    "smtplib.",
    "poplib.",
    "imaplib.",
    "nntplib.",
    "telnetlib.",
    "webbrowser.",
    "pty.",
    "glob.",
    "mmap.",
    "resource.",
    "syslog.",
)

_DETAIL_MAX = 500


def hidden_attribute(name: object) -> bool:
    return isinstance(name, str) and (name.startswith("_") or name in _INTROSPECTION_ATTRS)


def forbidden_names(source: str) -> list[tuple[int, str]]:
    """(line, name) for every private, dunder or frame-walking name the module spells out.

    Attributes and imported names may not start with `_`. Bare names may not start with
    `__`: a single-underscore global can only resolve to something the module defined.
    """

    found: list[tuple[int, str]] = []
    for node in ast.walk(ast.parse(source, "<game>")):
        if isinstance(node, ast.Attribute) and hidden_attribute(node.attr):
            found.append((node.lineno, node.attr))
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            found.append((node.lineno, node.id))
        elif isinstance(node, ast.ImportFrom):
            found.extend((node.lineno, a.name) for a in node.names if a.name.startswith("_"))
        elif isinstance(node, ast.MatchClass):
            found.extend((node.lineno, k) for k in node.kwd_attrs if hidden_attribute(k))
    return found


def audit_guard(event: str, args: tuple[Any, ...]) -> None:
    if event in _DENIED_EVENTS or event.startswith(_DENIED_EVENT_PREFIXES):
        raise PermissionError(f"{event} is not available inside the sandbox")


class ModuleView:
    """Read-only view of an allowlisted module. Private names and other submodules stay hidden."""

    __slots__ = ("_module",)

    def __init__(self, module: types.ModuleType) -> None:
        object.__setattr__(self, "_module", module)

    def __getattr__(self, attr: str) -> Any:
        if attr.startswith("_") or attr in _HIDDEN_MEMBERS.get(self._module.__name__, ()):
            raise AttributeError(attr)
        value = getattr(self._module, attr)
        if isinstance(value, types.ModuleType):
            if f"{self._module.__name__}.{attr}" in ALLOWED_MODULES:
                return ModuleView(value)
            raise AttributeError(attr)
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("module views are read-only")

    def __repr__(self) -> str:
        return f"<module {self._module.__name__!r}>"


def guarded_import(name: str, globals=None, locals=None, fromlist=(), level: int = 0) -> ModuleView:
    if level != 0 or name not in ALLOWED_MODULES:
        raise ImportError(f"import of {name!r} is not permitted")
    module = importlib.import_module(name)
    if fromlist:
        return ModuleView(module)
    return ModuleView(importlib.import_module(name.partition(".")[0]))


def safe_getattr(obj: Any, name: str, *default: Any) -> Any:
    if hidden_attribute(name):
        if default:
            return default[0]
        raise AttributeError(name)
    return getattr(obj, name, *default)


def safe_hasattr(obj: Any, name: str) -> bool:
    return not hidden_attribute(name) and hasattr(obj, name)


def safe_setattr(obj: Any, name: str, value: Any) -> None:
    if hidden_attribute(name):
        raise AttributeError(name)
    setattr(obj, name, value)


def safe_delattr(obj: Any, name: str) -> None:
    if hidden_attribute(name):
        raise AttributeError(name)
    delattr(obj, name)


def restricted_builtins() -> dict[str, Any]:
    safe = {
        k: getattr(builtins, k)
        for k in dir(builtins)
        if k not in _BLOCKED_BUILTINS and (not k.startswith("_") or k == "__build_class__")
    }
    safe["__import__"] = guarded_import
    safe["print"] = lambda *a, **kw: None
    safe["getattr"] = safe_getattr
    safe["hasattr"] = safe_hasattr
    safe["setattr"] = safe_setattr
    safe["delattr"] = safe_delattr
    return safe


def _describe(e: BaseException) -> str:
    text = f"{type(e).__name__}: {e}"
    return text if len(text) <= _DETAIL_MAX else text[: _DETAIL_MAX - 3] + "..."


def _error(kind: str, detail: str) -> dict[str, Any]:
    return {"ok": False, "errorKind": kind, "detail": detail}


def _ok(result: Any = None) -> dict[str, Any]:
    return {"ok": True, "result": result}


def _lookup(game: Any, name: str) -> Any:
    if isinstance(game, dict):
        return game.get(name)
    return getattr(game, name, None)


class ModuleRuntime:
    """One module, one namespace, one virtual clock."""

    def __init__(self) -> None:
        self._ops: dict[str, Callable[..., Any]] = {}
        self._epoch = 0
        self._state_cache: tuple[int, str] | None = None
        self._frames_per_input = 1
        self._surface: Surface | None = None
        self._scene: SceneGraph | None = None
        self._mixer: AudioMixer | None = None
        self._clock = VirtualClock()
        self._timers = Timers(self._clock)
        self._scheduler = FrameScheduler(self._clock, self._timers)

    @property
    def booted(self) -> bool:
        return bool(self._ops)

    def handle(self, operation: str, args: dict[str, Any]) -> dict[str, Any]:
        if operation == "boot":
            if self.booted:
                return _error("BadRequest", "already booted")
            return self._boot(args)
        if operation == "shutdown":
            return _ok()
        if not self.booted:
            return _error("BadRequest", "module is not booted")
        if operation in self._ops:
            return self._operation(operation, args)
        if operation == "advance":
            return self._advance(args)
        if operation == "frame":
            return self._frame()
        return _error("UnknownOperation", f"unknown operation {operation!r}")

    # ---- boot ----

    def _namespace(self, args: dict[str, Any], exports: Exports) -> dict[str, Any]:
        caps = set(args.get("capabilities") or ())
        ns: dict[str, Any] = {"__builtins__": restricted_builtins(), "__name__": "game_module", "host": exports}
        if "surface" in caps:
            self._surface = Surface(width=int(args.get("width", 800)), height=int(args.get("height", 600)))
            ns["surface"] = self._surface
        if "frames" in caps:
            ns["request_frame"] = self._scheduler.request_frame
            ns["cancel_frame"] = self._scheduler.cancel_frame
        if "clock" in caps:
            ns["clock"] = self._clock
        if "random" in caps:
            ns["rng"] = random.Random(args.get("seed"))
        if "timers" in caps:
            ns["set_timeout"] = self._timers.set_timeout
            ns["set_interval"] = self._timers.set_interval
            ns["clear_timer"] = self._timers.clear_timer
        if "media" in caps:
            ns["decode_media"] = decode_media
        if "scene3d" in caps:
            self._scene = SceneGraph()
            ns["scene"] = self._scene
        if "audio" in caps:
            self._mixer = AudioMixer()
            ns["mixer"] = self._mixer
        if "assets" in caps:
            assets = args.get("assets") or {}
            ns["assets"] = AssetShelf(assets.get("loaded") or {}, list(assets.get("missing") or ()))
        return ns

    def _boot(self, args: dict[str, Any]) -> dict[str, Any]:
        source = args.get("source")
        if not isinstance(source, str):
            return _error("BootstrapFault", "boot requires module source")
        self._frames_per_input = max(0, int(args.get("framesPerInput", 1)))

        try:
            found = forbidden_names(source)
        except SyntaxError as e:
            return _error("BootstrapFault", _describe(e))
        if found:
            listed = ", ".join(f"{name} (line {line})" for line, name in found[:10])
            return _error("BootstrapFault", f"module uses names that are not available: {listed}")

        exports = Exports()
        try:
            ns = self._namespace(args, exports)
            code = compile(source, "<game>", "exec")
            exec(code, ns)
        except BaseException as e:  # noqa: BLE001 - module top level may raise anything
            return _error("BootstrapFault", _describe(e))

        game = exports.get("game")
        if game is None:
            return _error("BootstrapFault", "module did not bind host.game")

        ops: dict[str, Callable[..., Any]] = {}
        for wire, alias in _OPERATIONS:
            fn = _lookup(game, wire) or _lookup(game, alias)
            if not callable(fn):
                return _error("BootstrapFault", f"host.game has no callable {wire}")
            ops[wire] = fn
        self._ops = ops
        return _ok()

    # ---- the six operations ----

    def _operation(self, operation: str, args: dict[str, Any]) -> dict[str, Any]:
        if operation == "readState" and self._state_cache is not None and self._state_cache[0] == self._epoch:
            return _ok(json.loads(self._state_cache[1]))

        if operation == "dispatchInput":
            action = args.get("action")
            if action not in _ACTIONS:
                return _ok(False)
            call_args: tuple[Any, ...] = (action,)
        else:
            call_args = ()

        try:
            result = self._ops[operation](*call_args)
            if operation in _MUTATING:
                self._epoch += 1
            if operation == "dispatchInput":
                self._scheduler.pump(self._frames_per_input)
        except BaseException as e:  # noqa: BLE001 - module code may raise anything
            self._epoch += 1
            return _error("ModuleError", _describe(e))

        if operation in {"init", "start", "reset"}:
            return _ok()
        try:
            encoded = json.dumps(result, allow_nan=False)
        except (TypeError, ValueError) as e:
            return _error("InvalidResult", f"{operation} result is not JSON: {e}")
        if operation == "readState":
            self._state_cache = (self._epoch, encoded)
        return _ok(json.loads(encoded))

    # ---- control ----

    def _advance(self, args: dict[str, Any]) -> dict[str, Any]:
        frames = int(args.get("frames", 1))
        try:
            self._scheduler.pump(max(0, frames))
        except BaseException as e:  # noqa: BLE001
            return _error("ModuleError", _describe(e))
        finally:
            self._epoch += 1
        return _ok({"frame": self._clock.frame, "now": self._clock.now()})

    def _frame(self) -> dict[str, Any]:
        snap: dict[str, Any] = {"frame": self._clock.frame, "now": self._clock.now()}
        if self._surface is not None:
            snap.update(self._surface.snapshot())
        if self._scene is not None:
            snap["scene"] = self._scene.snapshot()
        if self._mixer is not None:
            snap["sounds"] = self._mixer.drain()
        return _ok(snap)


def _claim_channel() -> BinaryIO:
    out_fd = os.dup(1)
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, 1)
    os.close(devnull)
    sys.stdout = open(os.devnull, "w")
    return os.fdopen(out_fd, "wb", buffering=0)


def _send(channel: BinaryIO, response: dict[str, Any]) -> None:
    channel.write(json.dumps(response).encode("utf-8") + b"\n")


def _lock_down() -> None:
    # Everything a module may import is loaded now; the audit hook refuses file opens later.
    for name in sorted(ALLOWED_MODULES):
        importlib.import_module(name)
    if resource is not None:
        # Covers wrappers that had to fork before the host could set this.
        try:
            resource.setrlimit(resource.RLIMIT_NPROC, (0, 0))
        except (ValueError, OSError):
            pass  # macOS refuses a zero process cap
    sys.addaudithook(audit_guard)


def main() -> int:
    channel = _claim_channel()
    _lock_down()
    runtime = ModuleRuntime()
    for raw in sys.stdin.buffer:
        try:
            msg = json.loads(raw)
            cid = str(msg["correlationId"])
            operation = str(msg["operation"])
            args = msg.get("args") or {}
        except (ValueError, KeyError, TypeError) as e:
            _send(channel, {"correlationId": "", **_error("BadRequest", _describe(e))})
            continue

        response = runtime.handle(operation, args)
        _send(channel, {"correlationId": cid, **response})
        if operation == "shutdown":
            break
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
