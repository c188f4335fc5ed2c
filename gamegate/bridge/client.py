from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from gamegate.bridge.channel import BridgeChannel
from gamegate.bridge.protocol import (
    Action,
    BridgeResponse,
    ControlOp,
    MetaView,
    Operation,
    RunnerErrorKind,
    StateView,
    parse_action,
)
from gamegate.errors import ModuleError, RuntimeFault

logger = logging.getLogger(__name__)

FaultSink = Callable[[RuntimeFault], None]


def _raise_for(resp: BridgeResponse, operation: str) -> None:
    if resp.ok:
        return
    detail = resp.detail or "unknown error"
    if resp.error_kind == RunnerErrorKind.module:
        raise ModuleError(detail, operation=operation)
    raise RuntimeFault(f"{operation} failed: {resp.error_kind or 'error'}: {detail}", operation=operation)


class GameBridge:
    """The six-operation contract, as seen from the host.

    Every call looks synchronous to the caller (it awaits one correlated response).
    Module exceptions and malformed results surface as `RuntimeFault`, except for
    `dispatch_input`, which degrades a module exception to `False` and reports the
    fault to `on_fault`.
    """

    def __init__(self, channel: BridgeChannel, *, on_fault: FaultSink | None = None) -> None:
        self._channel = channel
        self._on_fault = on_fault

    async def _call(self, operation: str, args: dict[str, Any] | None = None, *, timeout_s: float | None = None) -> Any:
        resp = await self._channel.request(operation, args, timeout_s=timeout_s)
        _raise_for(resp, operation)
        return resp.result

    async def _call_void(self, op: Operation) -> None:
        try:
            await self._call(op.value)
        except ModuleError as e:
            raise RuntimeFault(f"{op.value} raised: {e}", operation=op.value) from e

    async def init(self) -> None:
        await self._call_void(Operation.init)

    async def start(self) -> None:
        await self._call_void(Operation.start)

    async def reset(self) -> None:
        await self._call_void(Operation.reset)

    async def read_state(self) -> StateView:
        try:
            result = await self._call(Operation.read_state.value)
        except ModuleError as e:
            raise RuntimeFault(f"readState raised: {e}", operation=Operation.read_state.value) from e
        try:
            return StateView.model_validate(result)
        except ValidationError as e:
            raise RuntimeFault(
                f"readState returned an invalid shape: {e.error_count()} error(s)",
                operation=Operation.read_state.value,
            ) from e

    async def dispatch_input(self, token: Action | str) -> bool:
        action = parse_action(token)
        if action is None:
            # Outside the closed token domain: never forwarded to the module.
            return False
        try:
            result = await self._call(Operation.dispatch_input.value, {"action": action.value})
        except ModuleError as e:
            fault = RuntimeFault(f"dispatchInput({action.value}) raised: {e}", operation=Operation.dispatch_input.value)
            logger.warning("module fault degraded to False: %s", fault)
            if self._on_fault is not None:
                self._on_fault(fault)
            return False
        if not isinstance(result, bool):
            fault = RuntimeFault(
                f"dispatchInput({action.value}) returned {type(result).__name__}, not bool",
                operation=Operation.dispatch_input.value,
            )
            if self._on_fault is not None:
                self._on_fault(fault)
            return False
        return result

    async def read_meta(self) -> MetaView:
        try:
            result = await self._call(Operation.read_meta.value)
        except ModuleError as e:
            raise RuntimeFault(f"readMeta raised: {e}", operation=Operation.read_meta.value) from e
        try:
            return MetaView.model_validate(result)
        except ValidationError as e:
            raise RuntimeFault(
                f"readMeta returned an invalid shape: {e.error_count()} error(s)",
                operation=Operation.read_meta.value,
            ) from e

    # ---- control operations (not part of the six-operation contract) ----

    async def boot(self, args: dict[str, Any], *, timeout_s: float) -> None:
        await self._call(ControlOp.boot.value, args, timeout_s=timeout_s)

    async def advance(self, frames: int) -> None:
        try:
            await self._call(ControlOp.advance.value, {"frames": frames})
        except ModuleError as e:
            raise RuntimeFault(f"frame callback raised: {e}", operation=ControlOp.advance.value) from e

    async def frame(self) -> dict[str, Any]:
        result = await self._call(ControlOp.frame.value)
        if not isinstance(result, dict):
            raise RuntimeFault("frame returned an invalid shape", operation=ControlOp.frame.value)
        return result
