"""Byte-level decoders for bundle resources and inline media.

Only headers are inspected for binary media; nothing here renders or plays anything.
This module is imported inside sandbox children, so it sticks to the standard library.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import struct
import wave
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote_to_bytes

from gamegate.assets.registry import AssetCategory, AssetDecodeError, category_for_path


@dataclass(frozen=True, slots=True)
class ImageResource:
    format: str
    width: int
    height: int
    data: bytes


@dataclass(frozen=True, slots=True)
class AudioBuffer:
    format: str
    data: bytes
    # Only known for uncompressed formats.
    channels: int | None = None
    sample_rate: int | None = None
    frames: int | None = None

    @property
    def duration_s(self) -> float | None:
        if not self.sample_rate or self.frames is None:
            return None
        return self.frames / self.sample_rate


@dataclass(frozen=True, slots=True)
class FontResource:
    format: str
    data: bytes


@dataclass(frozen=True, slots=True)
class ModelResource:
    format: str
    data: bytes


@dataclass(frozen=True, slots=True)
class DataResource:
    format: str
    value: Any


Resource = ImageResource | AudioBuffer | FontResource | ModelResource | DataResource


def sniff_image(data: bytes) -> ImageResource:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        if len(data) < 24 or data[12:16] != b"IHDR":
            raise AssetDecodeError("Truncated PNG header")
        width, height = struct.unpack(">II", data[16:24])
        return ImageResource(format="png", width=width, height=height, data=data)

    if data[:6] in (b"GIF87a", b"GIF89a"):
        if len(data) < 10:
            raise AssetDecodeError("Truncated GIF header")
        width, height = struct.unpack("<HH", data[6:10])
        return ImageResource(format="gif", width=width, height=height, data=data)

    if data.startswith(b"\xff\xd8"):
        width, height = _jpeg_dimensions(data)
        return ImageResource(format="jpeg", width=width, height=height, data=data)

    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        width, height = _webp_dimensions(data)
        return ImageResource(format="webp", width=width, height=height, data=data)

    raise AssetDecodeError("Unrecognized image format")


def _jpeg_dimensions(data: bytes) -> tuple[int, int]:
    i = 2
    n = len(data)
    while i + 4 <= n:
        if data[i] != 0xFF:
            i += 1
            continue
        marker = data[i + 1]
        if marker in (0xD8, 0x01) or 0xD0 <= marker <= 0xD7 or marker == 0xFF:
            i += 1 if marker == 0xFF else 2
            continue
        (seg_len,) = struct.unpack(">H", data[i + 2 : i + 4])
        # SOFn, excluding DHT (C4), JPG (C8) and DAC (CC).
        if 0xC0 <= marker <= 0xCF and marker not in (0xC4, 0xC8, 0xCC):
            if i + 9 > n:
                break
            height, width = struct.unpack(">HH", data[i + 5 : i + 9])
            return width, height
        i += 2 + seg_len
    raise AssetDecodeError("JPEG has no frame header")


def _webp_dimensions(data: bytes) -> tuple[int, int]:
    chunk = data[12:16]
    if chunk == b"VP8 " and len(data) >= 30:
        w, h = struct.unpack("<HH", data[26:30])
        return w & 0x3FFF, h & 0x3FFF
    if chunk == b"VP8L" and len(data) >= 25:
        bits = int.from_bytes(data[21:25], "little")
        return (bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1
    if chunk == b"VP8X" and len(data) >= 30:
        return 1 + int.from_bytes(data[24:27], "little"), 1 + int.from_bytes(data[27:30], "little")
    raise AssetDecodeError("Unrecognized WebP chunk")


def decode_audio(data: bytes) -> AudioBuffer:
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        try:
            with wave.open(io.BytesIO(data), "rb") as w:
                return AudioBuffer(
                    format="wav",
                    data=data,
                    channels=w.getnchannels(),
                    sample_rate=w.getframerate(),
                    frames=w.getnframes(),
                )
        except (wave.Error, EOFError) as e:
            raise AssetDecodeError(f"Invalid WAV: {e}") from e
    if data.startswith(b"OggS"):
        return AudioBuffer(format="ogg", data=data)
    if data.startswith(b"ID3") or (len(data) > 1 and data[0] == 0xFF and data[1] & 0xE0 == 0xE0):
        return AudioBuffer(format="mp3", data=data)
    raise AssetDecodeError("Unrecognized audio format")


_FONT_SIGNATURES = {
    b"\x00\x01\x00\x00": "ttf",
    b"true": "ttf",
    b"OTTO": "otf",
    b"wOFF": "woff",
    b"wOF2": "woff2",
}


def decode_font(data: bytes) -> FontResource:
    fmt = _FONT_SIGNATURES.get(data[:4])
    if fmt is None:
        raise AssetDecodeError("Unrecognized font format")
    return FontResource(format=fmt, data=data)


def decode_model(data: bytes) -> ModelResource:
    if data[:4] == b"glTF":
        if len(data) < 12:
            raise AssetDecodeError("Truncated GLB header")
        return ModelResource(format="glb", data=data)
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AssetDecodeError(f"Invalid glTF: {e}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("asset"), dict):
        raise AssetDecodeError("glTF document has no 'asset' object")
    return ModelResource(format="gltf", data=data)


def decode_data(data: bytes, *, path: str = "") -> DataResource:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise AssetDecodeError(f"Data file is not UTF-8: {e}") from e

    if path.casefold().endswith(".csv"):
        rows = [[c.strip() for c in row] for row in csv.reader(text.splitlines())]
        return DataResource(format="csv", value=[row for row in rows if any(row)])

    try:
        return DataResource(format="json", value=json.loads(text))
    except json.JSONDecodeError as e:
        raise AssetDecodeError(f"Invalid JSON: {e}") from e


def decode(category: AssetCategory | str, data: bytes, *, path: str = "") -> Resource:
    cat = AssetCategory(category)
    if cat == AssetCategory.image:
        return sniff_image(data)
    if cat == AssetCategory.audio:
        return decode_audio(data)
    if cat == AssetCategory.font:
        return decode_font(data)
    if cat == AssetCategory.model:
        return decode_model(data)
    return decode_data(data, path=path)


_MIME_PREFIXES: tuple[tuple[str, AssetCategory], ...] = (
    ("image/", AssetCategory.image),
    ("audio/", AssetCategory.audio),
    ("font/", AssetCategory.font),
    ("model/", AssetCategory.model),
    ("application/json", AssetCategory.data),
    ("text/csv", AssetCategory.data),
)


def decode_data_uri(uri: str) -> Resource:
    """Decode an embedded `data:` URI (no fetching of any kind)."""

    if not uri.startswith("data:") or "," not in uri:
        raise AssetDecodeError("Not a data: URI")

    header, _, body = uri[5:].partition(",")
    parts = header.split(";")
    mime = (parts[0] or "text/plain").casefold()
    is_b64 = "base64" in parts[1:]

    try:
        data = base64.b64decode(body, validate=True) if is_b64 else unquote_to_bytes(body)
    except (binascii.Error, ValueError) as e:
        raise AssetDecodeError(f"Invalid data: URI payload: {e}") from e

    for prefix, cat in _MIME_PREFIXES:
        if mime.startswith(prefix):
            return decode(cat, data, path=".csv" if mime == "text/csv" else "")
    raise AssetDecodeError(f"Unsupported media type: {mime}")
