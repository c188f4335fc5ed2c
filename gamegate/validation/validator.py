from __future__ import annotations

import logging

from gamegate.api.models import ValidationReport
from gamegate.validation.checks import DEFAULT_PIPELINE, CheckPipeline, ScanContext, Submission

logger = logging.getLogger(__name__)


def validate(submission: Submission, *, pipeline: CheckPipeline = DEFAULT_PIPELINE) -> ValidationReport:
    """Statically scan a submission. The module is never executed here."""

    ctx = ScanContext.build(submission)
    report = ValidationReport(issues=pipeline.run(ctx=ctx))

    if report.passed:
        logger.info("submission accepted mode=%s dim=%s bytes=%d", submission.mode.value, submission.dimensionality.value, len(submission.payload))
    else:
        logger.info("submission rejected issues=%s", report.pairs())
    return report
