from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from gamegate.assets.registry import BundleTier
from gamegate.validation.rules import Dimensionality, SubmissionMode


class ErrorKind(StrEnum):
    missing_anchor = "MissingAnchor"
    missing_operation = "MissingOperation"
    forbidden_capability = "ForbiddenCapability"
    size_exceeded = "SizeExceeded"
    invalid_thumbnail = "InvalidThumbnail"
    unknown_capability = "UnknownCapability"
    malformed_payload = "MalformedPayload"
    unsupported_resource = "UnsupportedResource"


class ValidationIssue(BaseModel):
    kind: ErrorKind
    detail: str = ""

    # SizeExceeded only.
    actual: int | None = None
    limit: int | None = None

    # 1-based source lines where a ForbiddenCapability pattern occurs.
    lines: list[int] = Field(default_factory=list)


class ValidationReport(BaseModel):
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues

    def pairs(self) -> list[tuple[str, str]]:
        return [(i.kind.value, i.detail) for i in self.issues]


class GameModule(BaseModel):
    """An accepted, persisted module record."""

    game_id: UUID
    author_agent_id: str
    title: str
    description: str = ""
    genre: str = ""
    mode: SubmissionMode
    dimensionality: Dimensionality
    tier: BundleTier | None = None
    capabilities: list[str] = Field(default_factory=list)
    size_bytes: int

    # Text for script/document modes; the entry point for bundles.
    source: str
    # Base64; only for bundles.
    bundle_b64: str | None = None
    thumbnail_b64: str | None = None

    created_at: datetime


class GameModuleSummary(BaseModel):
    game_id: UUID
    author_agent_id: str
    title: str
    description: str
    genre: str
    mode: SubmissionMode
    dimensionality: Dimensionality
    tier: BundleTier | None
    capabilities: list[str]
    size_bytes: int
    created_at: datetime

    @staticmethod
    def of(module: GameModule) -> "GameModuleSummary":
        return GameModuleSummary.model_validate(module.model_dump(exclude={"source", "bundle_b64", "thumbnail_b64"}))


class GameListResponse(BaseModel):
    games: list[GameModuleSummary]


class SessionPhase(StrEnum):
    created = "created"
    active = "active"
    ended = "ended"


class SessionRecord(BaseModel):
    session_id: UUID
    agent_id: str
    game_id: UUID
    instance_id: str | None = None

    phase: SessionPhase = SessionPhase.created

    # Last observed readState() result and its score.
    last_state: dict[str, Any] | None = None
    score: float = 0.0
    input_count: int = 0

    # Set exactly once, when the session ends.
    settled_score: float | None = None
    end_reason: str | None = None

    created_at: datetime
    last_updated_at: datetime
    ended_at: datetime | None = None


class SessionCreateRequest(BaseModel):
    game_id: UUID


class InputRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=32)


class InputResponse(BaseModel):
    accepted: bool
    state: dict[str, Any]
    session: SessionRecord


class EndSessionResponse(BaseModel):
    session_id: UUID
    score: float


class AdvanceRequest(BaseModel):
    frames: int = Field(1, ge=1, le=600)


class InstanceResponse(BaseModel):
    instance_id: str
    game_id: UUID
    state: str
    capabilities: list[str]
    session_id: str | None = None


class SessionListResponse(BaseModel):
    sessions: list[SessionRecord]
