from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from gamegate.api.models import ErrorKind, ValidationIssue
from gamegate.assets.bundle import ZipBundle
from gamegate.assets.decoders import sniff_image
from gamegate.assets.registry import ENTRY_POINT, TIER_CEILINGS, AssetLoadError, BundleManifest, BundleTier
from gamegate.validation.rules import (
    ANCHOR_SPELLINGS,
    REQUIRED_OPERATIONS,
    SHARED_CAPABILITIES,
    SIZE_CEILINGS,
    THUMBNAIL_MAX_BYTES,
    Dimensionality,
    SubmissionMode,
    compiled_denylist,
    operation_patterns,
    source_ceiling,
)
from gamegate.validation.scanner import line_of, strip_comments


@dataclass(frozen=True, slots=True)
class Submission:
    payload: bytes
    mode: SubmissionMode
    dimensionality: Dimensionality
    tier: BundleTier | None = None
    capabilities: frozenset[str] = frozenset()
    thumbnail: bytes | None = None


@dataclass(slots=True)
class ScanContext:
    """Everything the checks look at, derived once from a submission.

    `source` is None when no text could be recovered (undecodable payload, broken bundle)
    or when the text is over its ceiling. Sizes are compared before anything is inflated
    or decoded, so an oversized entry point is never read.
    """

    submission: Submission
    source: str | None = None
    stripped: str | None = None
    entry_size: int | None = None
    bundle: ZipBundle | None = None
    manifest: BundleManifest | None = None
    payload_issues: list[ValidationIssue] = field(default_factory=list)

    @staticmethod
    def build(submission: Submission) -> "ScanContext":
        ctx = ScanContext(submission=submission)

        if submission.mode == SubmissionMode.bundle:
            try:
                ctx.bundle = ZipBundle(submission.payload)
                ctx.manifest = BundleManifest.from_source(ctx.bundle)
                ctx.entry_size = ctx.bundle.entry_size()
                if ctx.entry_size <= source_ceiling(submission.mode, submission.dimensionality):
                    ctx.source = ctx.bundle.entry_source()
            except AssetLoadError as e:
                ctx.payload_issues.append(ValidationIssue(kind=ErrorKind.malformed_payload, detail=str(e)))
        elif len(submission.payload) <= SIZE_CEILINGS[(submission.mode, submission.dimensionality)]:
            try:
                ctx.source = submission.payload.decode("utf-8")
            except UnicodeDecodeError as e:
                ctx.payload_issues.append(
                    ValidationIssue(kind=ErrorKind.malformed_payload, detail=f"Source is not UTF-8: {e.reason}")
                )

        if ctx.source is not None:
            ctx.stripped = strip_comments(ctx.source)
        return ctx


class SubmissionCheck(ABC):
    """One independent rule. Returns every violation it finds; never raises for bad input."""

    @abstractmethod
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class PayloadCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        return list(ctx.payload_issues)


@dataclass(frozen=True, slots=True)
class SizeCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        sub = ctx.submission
        actual = len(sub.payload)

        if sub.mode != SubmissionMode.bundle:
            limit = SIZE_CEILINGS[(sub.mode, sub.dimensionality)]
            if actual > limit:
                return [_size_issue(actual=actual, limit=limit, detail=f"{sub.mode.value}/{sub.dimensionality.value}")]
            return []

        issues: list[ValidationIssue] = []
        if sub.tier is None:
            issues.append(ValidationIssue(kind=ErrorKind.malformed_payload, detail="Bundle submissions must declare a tier"))
        else:
            limit = TIER_CEILINGS[sub.tier]
            if actual > limit:
                issues.append(_size_issue(actual=actual, limit=limit, detail=f"bundle/{sub.tier.value}"))

        if ctx.entry_size is not None:
            entry_limit = source_ceiling(sub.mode, sub.dimensionality)
            if ctx.entry_size > entry_limit:
                issues.append(_size_issue(actual=ctx.entry_size, limit=entry_limit, detail=ENTRY_POINT))

        if ctx.manifest is not None:
            for entry in ctx.manifest.oversized():
                issues.append(_size_issue(actual=entry.size, limit=entry.ceiling or 0, detail=entry.path))
            for entry in ctx.manifest.unsupported():
                issues.append(ValidationIssue(kind=ErrorKind.unsupported_resource, detail=entry.path))
        return issues


def _size_issue(*, actual: int, limit: int, detail: str) -> ValidationIssue:
    return ValidationIssue(kind=ErrorKind.size_exceeded, detail=detail, actual=actual, limit=limit)


@dataclass(frozen=True, slots=True)
class AnchorCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        if ctx.stripped is None:
            return []
        if any(rx.search(ctx.stripped) for rx in ANCHOR_SPELLINGS):
            return []
        return [ValidationIssue(kind=ErrorKind.missing_anchor, detail="host.game")]


@dataclass(frozen=True, slots=True)
class OperationCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        if ctx.stripped is None:
            return []
        issues: list[ValidationIssue] = []
        for op in REQUIRED_OPERATIONS:
            if not any(rx.search(ctx.stripped) for rx in operation_patterns(op)):
                issues.append(ValidationIssue(kind=ErrorKind.missing_operation, detail=op.name))
        return issues


@dataclass(frozen=True, slots=True)
class DenylistCheck(SubmissionCheck):
    """Reports each matched pattern once, with every line it occurs on."""

    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        if ctx.stripped is None:
            return []
        issues: list[ValidationIssue] = []
        for pattern, rx in compiled_denylist():
            lines = sorted({line_of(ctx.stripped, m.start()) for m in rx.finditer(ctx.stripped)})
            if lines:
                issues.append(ValidationIssue(kind=ErrorKind.forbidden_capability, detail=pattern.pattern, lines=lines))
        return issues


@dataclass(frozen=True, slots=True)
class CapabilityRequestCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        unknown = sorted(set(ctx.submission.capabilities) - SHARED_CAPABILITIES)
        return [ValidationIssue(kind=ErrorKind.unknown_capability, detail=name) for name in unknown]


@dataclass(frozen=True, slots=True)
class ThumbnailCheck(SubmissionCheck):
    def check(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        thumb = ctx.submission.thumbnail
        if thumb is None:
            return []
        if not thumb:
            return [ValidationIssue(kind=ErrorKind.invalid_thumbnail, detail="Thumbnail is empty")]
        if len(thumb) > THUMBNAIL_MAX_BYTES:
            return [
                ValidationIssue(
                    kind=ErrorKind.invalid_thumbnail,
                    detail=f"Thumbnail is {len(thumb)} bytes; ceiling is {THUMBNAIL_MAX_BYTES}",
                )
            ]
        try:
            image = sniff_image(thumb)
        except AssetLoadError as e:
            return [ValidationIssue(kind=ErrorKind.invalid_thumbnail, detail=str(e))]
        if image.width == 0 or image.height == 0:
            return [ValidationIssue(kind=ErrorKind.invalid_thumbnail, detail="Thumbnail has zero area")]
        return []


@dataclass(frozen=True, slots=True)
class CheckPipeline:
    checks: tuple[SubmissionCheck, ...]

    def run(self, *, ctx: ScanContext) -> list[ValidationIssue]:
        # Never short-circuit: a rejected submission gets the full list of fixes.
        issues: list[ValidationIssue] = []
        for c in self.checks:
            issues.extend(c.check(ctx=ctx))
        return issues


DEFAULT_PIPELINE = CheckPipeline(
    checks=(
        PayloadCheck(),
        SizeCheck(),
        AnchorCheck(),
        OperationCheck(),
        DenylistCheck(),
        CapabilityRequestCheck(),
        ThumbnailCheck(),
    )
)
