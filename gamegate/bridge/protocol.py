from __future__ import annotations

import math
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Operation(StrEnum):
    init = "init"
    start = "start"
    reset = "reset"
    read_state = "readState"
    dispatch_input = "dispatchInput"
    read_meta = "readMeta"


class ControlOp(StrEnum):
    boot = "boot"
    advance = "advance"
    frame = "frame"
    shutdown = "shutdown"


class Action(StrEnum):
    up = "up"
    down = "down"
    left = "left"
    right = "right"
    action = "action"
    jump = "jump"
    pause = "pause"


def parse_action(token: object) -> Action | None:
    if not isinstance(token, str):
        return None
    try:
        return Action(token)
    except ValueError:
        return None


class RunnerErrorKind(StrEnum):
    """Error kinds a runner reports back in a response envelope."""

    bootstrap = "BootstrapFault"
    module = "ModuleError"
    invalid_result = "InvalidResult"
    unknown_operation = "UnknownOperation"
    bad_request = "BadRequest"


class BridgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(alias="correlationId")
    operation: str
    args: dict[str, Any] = Field(default_factory=dict)


class BridgeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(alias="correlationId")
    ok: bool
    result: Any = None
    error_kind: RunnerErrorKind | None = Field(default=None, alias="errorKind")
    detail: str | None = None


class StateView(BaseModel):
    """Required shape of a readState() result; extra keys are kept."""

    model_config = ConfigDict(extra="allow")

    score: float = Field(ge=0)
    ended: bool

    @field_validator("score", mode="before")
    @classmethod
    def _numeric_score(cls, v: object) -> object:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("score must be a number")
        if not math.isfinite(v):
            raise ValueError("score must be finite")
        return v

    @field_validator("ended", mode="before")
    @classmethod
    def _strict_ended(cls, v: object) -> object:
        if not isinstance(v, bool):
            raise ValueError("ended must be a boolean")
        return v


class MetaView(BaseModel):
    """Required shape of a readMeta() result; extra keys are kept."""

    model_config = ConfigDict(extra="allow")

    name: str
    description: str
    controls: dict[str, Any] | list[Any]
