from __future__ import annotations

import io
import zipfile
import zlib
from pathlib import Path

from gamegate.assets.registry import ENTRY_POINT, AssetLoadError, normalize_path


class BundleFormatError(AssetLoadError):
    pass


class ZipBundle:
    """Packaged bundle held in memory as a zip archive.

    Member sizes are read from the central directory; bytes are only inflated on `read`.
    """

    def __init__(self, payload: bytes) -> None:
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(payload))
        except (zipfile.BadZipFile, ValueError, EOFError, OSError) as e:
            raise BundleFormatError(f"Not a zip archive: {e}") from e

        self._infos: dict[str, zipfile.ZipInfo] = {}
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            try:
                path = normalize_path(info.filename)
            except AssetLoadError as e:
                raise BundleFormatError(str(e)) from e
            if info.flag_bits & 0x1:
                raise BundleFormatError(f"Encrypted bundle member: {path}")
            if path in self._infos:
                raise BundleFormatError(f"Duplicate bundle member: {path}")
            self._infos[path] = info

    def paths(self) -> list[str]:
        return list(self._infos)

    def size(self, path: str) -> int:
        return self._info(path).file_size

    def read(self, path: str) -> bytes:
        info = self._info(path)
        try:
            return self._zip.read(info)
        except (zipfile.BadZipFile, OSError, RuntimeError, NotImplementedError, EOFError, zlib.error) as e:
            # Corrupt streams, unsupported methods and encrypted members all surface here.
            raise BundleFormatError(f"Failed to read {path}: {e}") from e

    def entry_size(self) -> int:
        """Declared size of the entry point; inflating it never yields more than this."""

        if ENTRY_POINT not in self._infos:
            raise BundleFormatError(f"Bundle has no {ENTRY_POINT}")
        return self._infos[ENTRY_POINT].file_size

    def entry_source(self) -> str:
        if ENTRY_POINT not in self._infos:
            raise BundleFormatError(f"Bundle has no {ENTRY_POINT}")
        try:
            return self.read(ENTRY_POINT).decode("utf-8")
        except UnicodeDecodeError as e:
            raise BundleFormatError(f"{ENTRY_POINT} is not UTF-8: {e}") from e

    def _info(self, path: str) -> zipfile.ZipInfo:
        info = self._infos.get(normalize_path(path))
        if info is None:
            raise AssetLoadError(f"Asset not found in bundle: {path}")
        return info


class DirectoryBundle:
    """Unpacked bundle rooted at a directory (dev tooling and tests)."""

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()
        if not self._root.is_dir():
            raise BundleFormatError(f"Bundle directory not found: {root}")

    def paths(self) -> list[str]:
        return sorted(p.relative_to(self._root).as_posix() for p in self._root.rglob("*") if p.is_file())

    def size(self, path: str) -> int:
        return self._file(path).stat().st_size

    def read(self, path: str) -> bytes:
        return self._file(path).read_bytes()

    def entry_source(self) -> str:
        return self._file(ENTRY_POINT).read_text(encoding="utf-8")

    def _file(self, path: str) -> Path:
        p = (self._root / normalize_path(path)).resolve()
        if self._root not in p.parents or not p.is_file():
            raise AssetLoadError(f"Asset not found in bundle: {path}")
        return p
