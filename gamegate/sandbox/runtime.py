"""Capability objects handed to a module inside its sandbox child.

These only record what the module asks for (draw commands, scene nodes, sound cues);
rendering and playback belong to whatever client consumes the `frame` snapshot.
Nothing here touches files, sockets, or the environment.
"""

from __future__ import annotations

import base64
import heapq
import itertools
from collections.abc import Callable
from typing import Any

from gamegate.assets.decoders import Resource, decode, decode_data_uri

FRAME_MS = 1000.0 / 60.0
MAX_COMMANDS = 10_000
MAX_AUDIO_EVENTS = 256


def _num(v: Any) -> float:
    return float(v)


def _plain(value: Any) -> Any:
    """Coerce to JSON-safe primitives (recorders must never hold module objects)."""

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if value == value and abs(value) != float("inf") else 0.0
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return str(value)


class Exports:
    """The anchor owner: modules bind their game object as `host.game` or `host["game"]`."""

    __slots__ = ("_values",)

    def __init__(self) -> None:
        object.__setattr__(self, "_values", {})

    def __setattr__(self, name: str, value: Any) -> None:
        self._values[name] = value

    def __getattr__(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setitem__(self, key: str, value: Any) -> None:
        self._values[str(key)] = value

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)


class Surface:
    """Drawing surface reference. Commands accumulate until the next `clear()`."""

    def __init__(self, *, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self._commands: list[list[Any]] = []
        self._dropped = 0

    def _push(self, *cmd: Any) -> None:
        if len(self._commands) >= MAX_COMMANDS:
            self._dropped += 1
            return
        self._commands.append([_plain(c) for c in cmd])

    def clear(self, color: str = "#000000") -> None:
        self._commands = []
        self._dropped = 0
        self._push("clear", str(color))

    def fill_rect(self, x: float, y: float, w: float, h: float, color: str = "#ffffff") -> None:
        self._push("fill_rect", _num(x), _num(y), _num(w), _num(h), str(color))

    def stroke_rect(self, x: float, y: float, w: float, h: float, color: str = "#ffffff", width: float = 1) -> None:
        self._push("stroke_rect", _num(x), _num(y), _num(w), _num(h), str(color), _num(width))

    def circle(self, x: float, y: float, radius: float, color: str = "#ffffff", fill: bool = True) -> None:
        self._push("circle", _num(x), _num(y), _num(radius), str(color), bool(fill))

    def line(self, x1: float, y1: float, x2: float, y2: float, color: str = "#ffffff", width: float = 1) -> None:
        self._push("line", _num(x1), _num(y1), _num(x2), _num(y2), str(color), _num(width))

    def text(self, x: float, y: float, value: object, color: str = "#ffffff", size: int = 16) -> None:
        self._push("text", _num(x), _num(y), str(value), str(color), int(size))

    def image(self, name: str, x: float, y: float, w: float | None = None, h: float | None = None) -> None:
        self._push("image", str(name), _num(x), _num(y), None if w is None else _num(w), None if h is None else _num(h))

    def snapshot(self) -> dict[str, Any]:
        return {"width": self.width, "height": self.height, "commands": list(self._commands), "dropped": self._dropped}


class VirtualClock:
    """Frame-driven clock. `now()` only moves when frames are pumped."""

    def __init__(self) -> None:
        self._now_ms = 0.0
        self.frame = 0

    def now(self) -> float:
        return self._now_ms

    def tick(self) -> None:
        self.frame += 1
        self._now_ms += FRAME_MS


class Timers:
    def __init__(self, clock: VirtualClock) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._heap: list[tuple[float, int]] = []
        self._entries: dict[int, tuple[Callable[[], Any], float | None]] = {}

    def set_timeout(self, callback: Callable[[], Any], delay_ms: float = 0) -> int:
        return self._schedule(callback, max(0.0, _num(delay_ms)), None)

    def set_interval(self, callback: Callable[[], Any], interval_ms: float) -> int:
        interval = max(FRAME_MS, _num(interval_ms))
        return self._schedule(callback, interval, interval)

    def clear_timer(self, timer_id: int) -> None:
        self._entries.pop(timer_id, None)

    def _schedule(self, callback: Callable[[], Any], delay: float, interval: float | None) -> int:
        if not callable(callback):
            raise TypeError("timer callback must be callable")
        tid = next(self._ids)
        self._entries[tid] = (callback, interval)
        heapq.heappush(self._heap, (self._clock.now() + delay, tid))
        return tid

    def fire_due(self) -> None:
        now = self._clock.now()
        while self._heap and self._heap[0][0] <= now:
            due, tid = heapq.heappop(self._heap)
            entry = self._entries.get(tid)
            if entry is None:
                continue
            callback, interval = entry
            if interval is None:
                del self._entries[tid]
            else:
                heapq.heappush(self._heap, (due + interval, tid))
            callback()


class FrameScheduler:
    """The single frame-scheduling primitive. Callbacks requested during a frame run on the next one."""

    def __init__(self, clock: VirtualClock, timers: Timers) -> None:
        self._clock = clock
        self._timers = timers
        self._ids = itertools.count(1)
        self._queue: dict[int, Callable[[float], Any]] = {}

    def request_frame(self, callback: Callable[[float], Any]) -> int:
        if not callable(callback):
            raise TypeError("frame callback must be callable")
        handle = next(self._ids)
        self._queue[handle] = callback
        return handle

    def cancel_frame(self, handle: int) -> None:
        self._queue.pop(handle, None)

    def pump(self, frames: int) -> None:
        for _ in range(frames):
            self._clock.tick()
            self._timers.fire_due()
            due, self._queue = self._queue, {}
            for callback in due.values():
                callback(self._clock.now())


class SceneGraph:
    """Shared `scene3d` capability: a node table a 3D client can render."""

    def __init__(self) -> None:
        self._nodes: dict[str, dict[str, Any]] = {}

    def add(self, node_id: str, kind: str, **props: Any) -> None:
        self._nodes[str(node_id)] = {"kind": str(kind), **_plain(props)}

    def update(self, node_id: str, **props: Any) -> None:
        node = self._nodes.get(str(node_id))
        if node is None:
            raise KeyError(node_id)
        node.update(_plain(props))

    def remove(self, node_id: str) -> None:
        self._nodes.pop(str(node_id), None)

    def get(self, node_id: str) -> dict[str, Any] | None:
        node = self._nodes.get(str(node_id))
        return dict(node) if node is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._nodes.items()}


class AudioMixer:
    """Shared `audio` capability: records cues; the client plays them."""

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []

    def play(self, name: str, volume: float = 1.0, loop: bool = False) -> None:
        self._record({"cue": "play", "name": str(name), "volume": max(0.0, min(1.0, _num(volume))), "loop": bool(loop)})

    def stop(self, name: str) -> None:
        self._record({"cue": "stop", "name": str(name)})

    def _record(self, event: dict[str, Any]) -> None:
        if len(self._events) < MAX_AUDIO_EVENTS:
            self._events.append(event)

    def drain(self) -> list[dict[str, Any]]:
        out, self._events = self._events, []
        return out


class AssetShelf:
    """Bundle resources the host managed to load. Failed ones read as None."""

    def __init__(self, shipped: dict[str, dict[str, str]], missing: list[str]) -> None:
        self._resources: dict[str, Resource] = {}
        self.missing: tuple[str, ...] = tuple(missing)
        for path, item in shipped.items():
            self._resources[path] = decode(item["category"], base64.b64decode(item["data"]), path=path)

    def get(self, path: str) -> Resource | None:
        return self._resources.get(path)

    def paths(self) -> list[str]:
        return sorted(self._resources)


def decode_media(uri: str) -> Resource:
    return decode_data_uri(str(uri))
