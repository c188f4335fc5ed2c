from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from gamegate.assets.decoders import Resource, decode
from gamegate.assets.registry import (
    CATEGORY_CEILINGS,
    AssetCategory,
    AssetDecodeError,
    AssetLoadError,
    AssetTooLarge,
    BundleSource,
    category_for_path,
    normalize_path,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LoadedAsset:
    path: str
    category: AssetCategory
    resource: Resource
    # Raw bytes, kept so the host can hand them across the isolation boundary.
    raw: bytes


@dataclass(frozen=True, slots=True)
class PreloadOutcome:
    path: str
    asset: LoadedAsset | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.asset is not None


class AssetLoader:
    """Resolves bundle paths to decoded resources under per-category ceilings.

    The ceiling is checked against the stored size before any bytes are read or decoded,
    so an oversized resource is rejected rather than truncated.
    """

    def __init__(self, source: BundleSource, *, ceilings: Mapping[AssetCategory, int] = CATEGORY_CEILINGS) -> None:
        self._source = source
        self._ceilings = ceilings

    async def load(self, category: AssetCategory | str, path: str) -> LoadedAsset:
        cat = AssetCategory(category)
        norm = normalize_path(path)

        size = self._source.size(norm)
        limit = self._ceilings[cat]
        if size > limit:
            raise AssetTooLarge(path=norm, size=size, limit=limit)

        raw = await asyncio.to_thread(self._source.read, norm)
        if len(raw) > limit:
            # Archive directory lied about the size.
            raise AssetTooLarge(path=norm, size=len(raw), limit=limit)

        resource = await asyncio.to_thread(decode, cat, raw, path=norm)
        return LoadedAsset(path=norm, category=cat, resource=resource, raw=raw)

    async def _load_by_extension(self, path: str) -> LoadedAsset:
        cat = category_for_path(path)
        if cat is None:
            raise AssetDecodeError(f"Unsupported resource type: {path}")
        return await self.load(cat, path)

    async def preload(self, paths: Sequence[str]) -> list[PreloadOutcome]:
        """Load every path concurrently; one failure never aborts the others."""

        results = await asyncio.gather(*(self._load_by_extension(p) for p in paths), return_exceptions=True)

        outcomes: list[PreloadOutcome] = []
        for path, res in zip(paths, results):
            if isinstance(res, LoadedAsset):
                outcomes.append(PreloadOutcome(path=res.path, asset=res))
            elif isinstance(res, AssetLoadError):
                logger.info("asset preload failed path=%s err=%s", path, res)
                outcomes.append(PreloadOutcome(path=path, error=str(res)))
            elif isinstance(res, Exception):
                logger.warning("asset preload crashed path=%s", path, exc_info=res)
                outcomes.append(PreloadOutcome(path=path, error=f"{type(res).__name__}: {res}"))
            else:
                # CancelledError and friends.
                raise res
        return outcomes
