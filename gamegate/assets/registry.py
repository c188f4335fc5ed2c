from __future__ import annotations

import posixpath
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping, Protocol

KIB = 1024
MIB = 1024 * KIB


class AssetCategory(StrEnum):
    image = "image"
    audio = "audio"
    model = "model"
    font = "font"
    data = "data"


class BundleTier(StrEnum):
    small = "small"
    medium = "medium"
    large = "large"
    xlarge = "xlarge"


# Shared, read-only at runtime.
CATEGORY_CEILINGS: Mapping[AssetCategory, int] = MappingProxyType(
    {
        AssetCategory.image: 2 * MIB,
        AssetCategory.audio: 5 * MIB,
        AssetCategory.model: 10 * MIB,
        AssetCategory.font: 1 * MIB,
        AssetCategory.data: 1 * MIB,
    }
)

TIER_CEILINGS: Mapping[BundleTier, int] = MappingProxyType(
    {
        BundleTier.small: 5 * MIB,
        BundleTier.medium: 10 * MIB,
        BundleTier.large: 25 * MIB,
        BundleTier.xlarge: 50 * MIB,
    }
)

EXTENSION_CATEGORIES: Mapping[str, AssetCategory] = MappingProxyType(
    {
        ".png": AssetCategory.image,
        ".jpg": AssetCategory.image,
        ".jpeg": AssetCategory.image,
        ".gif": AssetCategory.image,
        ".webp": AssetCategory.image,
        ".wav": AssetCategory.audio,
        ".ogg": AssetCategory.audio,
        ".mp3": AssetCategory.audio,
        ".gltf": AssetCategory.model,
        ".glb": AssetCategory.model,
        ".ttf": AssetCategory.font,
        ".otf": AssetCategory.font,
        ".woff": AssetCategory.font,
        ".woff2": AssetCategory.font,
        ".json": AssetCategory.data,
        ".csv": AssetCategory.data,
    }
)

# Bundle files that are not resources.
ENTRY_POINT = "main.py"
MANIFEST_FILE = "manifest.json"


class AssetLoadError(RuntimeError):
    pass


class AssetTooLarge(AssetLoadError):
    def __init__(self, *, path: str, size: int, limit: int) -> None:
        super().__init__(f"{path} is {size} bytes; ceiling is {limit}")
        self.path = path
        self.size = size
        self.limit = limit


class AssetDecodeError(AssetLoadError):
    pass


def normalize_path(path: str) -> str:
    """Canonical bundle-relative path; rejects anything escaping the bundle root."""

    p = posixpath.normpath(path.replace("\\", "/")).lstrip("/")
    if p in {"", "."} or p.startswith("../") or p == "..":
        raise AssetLoadError(f"Invalid bundle path: {path!r}")
    return p


def category_for_path(path: str) -> AssetCategory | None:
    _, ext = posixpath.splitext(path.casefold())
    return EXTENSION_CATEGORIES.get(ext)


class BundleSource(Protocol):
    def paths(self) -> list[str]:  # pragma: no cover
        ...

    def size(self, path: str) -> int:  # pragma: no cover
        ...

    def read(self, path: str) -> bytes:  # pragma: no cover
        ...


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    path: str
    category: AssetCategory | None
    size: int

    @property
    def ceiling(self) -> int | None:
        return CATEGORY_CEILINGS.get(self.category) if self.category is not None else None


@dataclass(frozen=True, slots=True)
class BundleManifest:
    """Resource inventory of a packaged bundle.

    Sizes come from the archive directory (uncompressed), so nothing is inflated to build it.
    """

    entries: tuple[ManifestEntry, ...]

    @staticmethod
    def from_source(source: BundleSource) -> "BundleManifest":
        entries: list[ManifestEntry] = []
        for path in sorted(source.paths()):
            if path in {ENTRY_POINT, MANIFEST_FILE}:
                continue
            entries.append(ManifestEntry(path=path, category=category_for_path(path), size=source.size(path)))
        return BundleManifest(entries=tuple(entries))

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries)

    @property
    def resource_paths(self) -> tuple[str, ...]:
        return tuple(e.path for e in self.entries if e.category is not None)

    def oversized(self) -> list[ManifestEntry]:
        out: list[ManifestEntry] = []
        for e in self.entries:
            limit = e.ceiling
            if limit is not None and e.size > limit:
                out.append(e)
        return out

    def unsupported(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.category is None]
