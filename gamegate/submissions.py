from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

import redis

from gamegate.api.models import GameModule, ValidationReport
from gamegate.assets.bundle import ZipBundle
from gamegate.module_store import save_module
from gamegate.sessions.rate_limit import LimitKind, RollingWindowLimiter
from gamegate.validation.checks import Submission
from gamegate.validation.rules import SubmissionMode
from gamegate.validation.validator import validate

logger = logging.getLogger(__name__)


class SubmissionRejected(ValueError):
    def __init__(self, report: ValidationReport) -> None:
        super().__init__(f"Submission rejected with {len(report.issues)} issue(s)")
        self.report = report


@dataclass(frozen=True, slots=True)
class SubmissionMeta:
    title: str
    description: str = ""
    genre: str = ""


def submit_module(
    *,
    r: redis.Redis,
    limiter: RollingWindowLimiter,
    agent_id: str,
    submission: Submission,
    meta: SubmissionMeta,
) -> GameModule:
    """Rate-limit, validate and persist one submission.

    Rejected submissions still count against the daily submission limit. Nothing is
    stored unless every check passes.
    """

    limiter.acquire(agent_id, LimitKind.submissions, LimitKind.calls)

    report = validate(submission)
    if not report.passed:
        raise SubmissionRejected(report)

    bundle_b64: str | None = None
    if submission.mode == SubmissionMode.bundle:
        source = ZipBundle(submission.payload).entry_source()
        bundle_b64 = base64.b64encode(submission.payload).decode("ascii")
    else:
        source = submission.payload.decode("utf-8")

    module = GameModule(
        game_id=uuid4(),
        author_agent_id=agent_id,
        title=meta.title,
        description=meta.description,
        genre=meta.genre,
        mode=submission.mode,
        dimensionality=submission.dimensionality,
        tier=submission.tier,
        capabilities=sorted(submission.capabilities),
        size_bytes=len(submission.payload),
        source=source,
        bundle_b64=bundle_b64,
        thumbnail_b64=base64.b64encode(submission.thumbnail).decode("ascii") if submission.thumbnail else None,
        created_at=datetime.now(tz=UTC),
    )
    save_module(r=r, module=module)
    logger.info("stored game %s from agent %s (%s/%s)", module.game_id, agent_id, module.mode.value, module.dimensionality.value)
    return module
