from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from gamegate.bridge.channel import BridgeChannel
from gamegate.bridge.client import GameBridge
from gamegate.bridge.protocol import Action, MetaView, StateView
from gamegate.errors import BootstrapFault, CancellationFault, ModuleError, RuntimeFault
from gamegate.sandbox.capabilities import CapabilitySet

logger = logging.getLogger(__name__)


class InstanceState(StrEnum):
    starting = "starting"
    ready = "ready"
    failed = "failed"
    destroyed = "destroyed"


@dataclass(frozen=True, slots=True)
class FaultRecord:
    message: str
    operation: str | None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


FaultListener = Callable[[FaultRecord], None]


class IsolatedInstance:
    """One module running in one child process, reachable only through its bridge."""

    def __init__(
        self,
        *,
        instance_id: str,
        game_id: str,
        capabilities: CapabilitySet,
        process: asyncio.subprocess.Process,
        channel: BridgeChannel,
        workdir: Path,
        session_id: str | None = None,
        owner_id: str | None = None,
        max_faults: int = 50,
    ) -> None:
        self.instance_id = instance_id
        self.game_id = game_id
        self.capabilities = capabilities
        self.session_id = session_id
        self.owner_id = owner_id
        self.last_used = time.monotonic()
        self.state = InstanceState.starting
        self.faults: deque[FaultRecord] = deque(maxlen=max_faults)
        self._process = process
        self._channel = channel
        self._workdir = workdir
        self._listeners: list[FaultListener] = []
        self._meta: MetaView | None = None
        self._torn_down = False
        self.bridge = GameBridge(channel, on_fault=self._record_fault)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def alive(self) -> bool:
        return self.state == InstanceState.ready

    def add_fault_listener(self, listener: FaultListener) -> None:
        self._listeners.append(listener)

    def remove_fault_listener(self, listener: FaultListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _record_fault(self, fault: RuntimeFault) -> None:
        rec = FaultRecord(message=str(fault), operation=fault.operation)
        self.faults.append(rec)
        for listener in list(self._listeners):
            listener(rec)

    def _require_ready(self, operation: str) -> None:
        if self.state == InstanceState.destroyed:
            raise CancellationFault("Instance was destroyed", operation=operation)
        if self.state != InstanceState.ready:
            raise RuntimeFault(f"Instance is {self.state}", operation=operation)

    async def _guard(self, operation: str, call: Callable[[], Any]) -> Any:
        self._require_ready(operation)
        self.last_used = time.monotonic()
        try:
            return await call()
        except CancellationFault:
            raise
        except RuntimeFault as e:
            self._record_fault(e)
            if self._channel.closed and self.state == InstanceState.ready:
                self.state = InstanceState.failed
                logger.warning("instance %s died during %s", self.instance_id, operation)
            raise

    async def bootstrap(self, boot_args: dict[str, Any], *, timeout_s: float) -> None:
        try:
            await self.bridge.boot(boot_args, timeout_s=timeout_s)
            await self.bridge.init()
        except (ModuleError, RuntimeFault) as e:
            self.state = InstanceState.failed
            raise BootstrapFault(f"Module {self.game_id} failed to start: {e}") from e
        self.state = InstanceState.ready

    # ---- the six operations (init ran during bootstrap) ----

    async def start(self) -> None:
        await self._guard("start", self.bridge.start)

    async def reset(self) -> None:
        await self._guard("reset", self.bridge.reset)

    async def read_state(self) -> StateView:
        return await self._guard("readState", self.bridge.read_state)

    async def dispatch_input(self, token: Action | str) -> bool:
        return await self._guard("dispatchInput", lambda: self.bridge.dispatch_input(token))

    async def read_meta(self) -> MetaView:
        if self._meta is None:
            self._meta = await self._guard("readMeta", self.bridge.read_meta)
        return self._meta

    # ---- control ----

    async def advance(self, frames: int) -> None:
        await self._guard("advance", lambda: self.bridge.advance(frames))

    async def frame(self) -> dict[str, Any]:
        return await self._guard("frame", self.bridge.frame)

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        # A failed instance stays failed; anything else ends destroyed.
        if self.state != InstanceState.failed:
            self.state = InstanceState.destroyed
        await self._channel.close()
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        await self._process.wait()
        shutil.rmtree(self._workdir, ignore_errors=True)
        logger.info("instance %s destroyed", self.instance_id)
