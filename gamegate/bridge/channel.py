from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Protocol

from pydantic import ValidationError

from gamegate.bridge.protocol import BridgeRequest, BridgeResponse
from gamegate.errors import CancellationFault, RuntimeFault

logger = logging.getLogger(__name__)


class LineWriter(Protocol):
    def write(self, data: bytes) -> None:  # pragma: no cover
        ...

    async def drain(self) -> None:  # pragma: no cover
        ...


class BridgeChannel:
    """Request/response over a newline-delimited JSON byte stream.

    Each request is tagged with a correlation id; the caller awaits a future from a dict
    keyed by that id (O(1) per call). Every call is bounded by a timeout, and every
    pending call is failed rather than left hanging when the stream ends or the channel
    is closed.
    """

    def __init__(self, *, reader: asyncio.StreamReader, writer: LineWriter, name: str, timeout_s: float) -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._timeout_s = timeout_s
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[BridgeResponse]] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed_with: RuntimeFault | None = None

    @property
    def closed(self) -> bool:
        return self._closed_with is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(), name=f"bridge-reader:{self._name}")

    async def request(self, operation: str, args: dict[str, Any] | None = None, *, timeout_s: float | None = None) -> BridgeResponse:
        if self._closed_with is not None:
            raise type(self._closed_with)(str(self._closed_with), operation=operation)

        cid = f"{self._name}:{next(self._ids)}"
        fut: asyncio.Future[BridgeResponse] = asyncio.get_running_loop().create_future()
        self._pending[cid] = fut

        req = BridgeRequest(correlation_id=cid, operation=operation, args=args or {})
        line = req.model_dump_json(by_alias=True).encode("utf-8") + b"\n"

        try:
            async with self._write_lock:
                self._writer.write(line)
                await self._writer.drain()
        except (ConnectionError, RuntimeError) as e:
            self._pending.pop(cid, None)
            raise RuntimeFault(f"Instance channel is gone: {e}", operation=operation) from e

        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout=timeout_s or self._timeout_s)
        except asyncio.TimeoutError as e:
            raise RuntimeFault(f"{operation} timed out", operation=operation) from e
        finally:
            self._pending.pop(cid, None)

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._reader.readline()
                if not raw:
                    break
                self._deliver(raw)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError, ConnectionError) as e:
            logger.warning("bridge channel %s read failed: %s", self._name, e)
        if self._closed_with is None:
            self.fail_all(RuntimeFault("Instance exited"))

    def _deliver(self, raw: bytes) -> None:
        try:
            resp = BridgeResponse.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
            logger.warning("bridge channel %s dropped malformed frame (%d bytes)", self._name, len(raw))
            return

        fut = self._pending.get(resp.correlation_id)
        if fut is None:
            # Late answer for a call that already timed out.
            logger.debug("bridge channel %s: no waiter for %s", self._name, resp.correlation_id)
            return
        if not fut.done():
            fut.set_result(resp)

    def fail_all(self, fault: RuntimeFault) -> None:
        self._closed_with = fault
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(type(fault)(str(fault)))

    async def close(self) -> None:
        """Tear down: in-flight calls resolve with a cancellation fault."""

        if self._closed_with is None:
            self.fail_all(CancellationFault("Instance was destroyed"))
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
