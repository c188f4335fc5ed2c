from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping

from gamegate.assets.registry import KIB


class SubmissionMode(StrEnum):
    script = "script"
    document = "document"
    bundle = "bundle"


class Dimensionality(StrEnum):
    d2 = "2d"
    d3 = "3d"


SIZE_CEILINGS: Mapping[tuple[SubmissionMode, Dimensionality], int] = MappingProxyType(
    {
        (SubmissionMode.script, Dimensionality.d2): 50 * KIB,
        (SubmissionMode.script, Dimensionality.d3): 200 * KIB,
        (SubmissionMode.document, Dimensionality.d2): 100 * KIB,
        (SubmissionMode.document, Dimensionality.d3): 300 * KIB,
    }
)

THUMBNAIL_MAX_BYTES = 512 * KIB


def source_ceiling(mode: SubmissionMode, dimensionality: Dimensionality) -> int:
    # A bundle's entry point is held to the document ceiling.
    key_mode = SubmissionMode.document if mode == SubmissionMode.bundle else mode
    return SIZE_CEILINGS[(key_mode, dimensionality)]


# ---- contract ----

ANCHOR_OWNER = "host"
ANCHOR_NAME = "game"

ANCHOR_SPELLINGS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(?<![\w.]){ANCHOR_OWNER}\s*\.\s*{ANCHOR_NAME}\s*=(?!=)"),
    re.compile(rf"(?<![\w.]){ANCHOR_OWNER}\s*\[\s*\"{ANCHOR_NAME}\"\s*\]\s*=(?!=)"),
    re.compile(rf"(?<![\w.]){ANCHOR_OWNER}\s*\[\s*'{ANCHOR_NAME}'\s*\]\s*=(?!=)"),
)


@dataclass(frozen=True, slots=True)
class ContractOperation:
    name: str
    alias: str

    @property
    def spellings(self) -> tuple[str, ...]:
        return (self.name,) if self.alias == self.name else (self.name, self.alias)


REQUIRED_OPERATIONS: tuple[ContractOperation, ...] = (
    ContractOperation("init", "init"),
    ContractOperation("start", "start"),
    ContractOperation("reset", "reset"),
    ContractOperation("readState", "read_state"),
    ContractOperation("dispatchInput", "dispatch_input"),
    ContractOperation("readMeta", "read_meta"),
)

# `{}` is replaced with the escaped operation spelling.
OPERATION_TEMPLATES: tuple[str, ...] = (
    r"(?<![\w])def\s+{}\s*\(",
    r"(?<![\w])async\s+def\s+{}\s*\(",
    r"(?<![\w.]){}\s*=\s*lambda\b",
    r"\.\s*{}\s*=(?!=)",
    r"[\"']{}[\"']\s*:",
)


def operation_patterns(op: ContractOperation) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(t.format(re.escape(s))) for s in op.spellings for t in OPERATION_TEMPLATES)


# ---- denylist ----


class CapabilityCategory(StrEnum):
    persistent_storage = "persistent_storage"
    network = "network"
    navigation = "navigation"
    cross_context_messaging = "cross_context_messaging"
    dynamic_evaluation = "dynamic_evaluation"
    dynamic_module_loading = "dynamic_module_loading"
    device_sensors = "device_sensors"


@dataclass(frozen=True, slots=True)
class DenylistPattern:
    pattern: str
    category: CapabilityCategory

    @property
    def regex(self) -> re.Pattern[str]:
        return _compiled(self.pattern)


def _compiled(pattern: str) -> re.Pattern[str]:
    rx = re.escape(pattern)
    if pattern[0].isalnum() or pattern[0] == "_":
        rx = r"(?<![\w])" + rx
    if pattern[-1].isalnum() or pattern[-1] == "_":
        rx = rx + r"(?![\w])"
    return re.compile(rx)


_C = CapabilityCategory

DENYLIST: tuple[DenylistPattern, ...] = (
    DenylistPattern("open(", _C.persistent_storage),
    DenylistPattern("shelve", _C.persistent_storage),
    DenylistPattern("sqlite3", _C.persistent_storage),
    DenylistPattern("pickle", _C.persistent_storage),
    DenylistPattern("socket", _C.network),
    DenylistPattern("urllib", _C.network),
    DenylistPattern("http.client", _C.network),
    DenylistPattern("requests", _C.network),
    DenylistPattern("webbrowser", _C.navigation),
    DenylistPattern("subprocess", _C.navigation),
    DenylistPattern("os.system(", _C.navigation),
    DenylistPattern("sys.stdout", _C.cross_context_messaging),
    DenylistPattern("sys.stdin", _C.cross_context_messaging),
    DenylistPattern("multiprocessing", _C.cross_context_messaging),
    DenylistPattern("eval(", _C.dynamic_evaluation),
    DenylistPattern("exec(", _C.dynamic_evaluation),
    DenylistPattern("compile(", _C.dynamic_evaluation),
    # Object-graph walks that lead from a literal back to the interpreter.
    DenylistPattern("__class__", _C.dynamic_evaluation),
    DenylistPattern("__base__", _C.dynamic_evaluation),
    DenylistPattern("__bases__", _C.dynamic_evaluation),
    DenylistPattern("__mro__", _C.dynamic_evaluation),
    DenylistPattern("__subclasses__", _C.dynamic_evaluation),
    DenylistPattern("__globals__", _C.dynamic_evaluation),
    DenylistPattern("__builtins__", _C.dynamic_evaluation),
    DenylistPattern("__code__", _C.dynamic_evaluation),
    DenylistPattern("__getattribute__", _C.dynamic_evaluation),
    DenylistPattern("gi_frame", _C.dynamic_evaluation),
    DenylistPattern("f_globals", _C.dynamic_evaluation),
    DenylistPattern("f_back", _C.dynamic_evaluation),
    DenylistPattern("tb_frame", _C.dynamic_evaluation),
    DenylistPattern("__import__", _C.dynamic_module_loading),
    DenylistPattern("importlib", _C.dynamic_module_loading),
    DenylistPattern("os.environ", _C.device_sensors),
    DenylistPattern("platform.", _C.device_sensors),
    DenylistPattern("ctypes", _C.device_sensors),
)

_DENYLIST_REGEX: tuple[tuple[DenylistPattern, re.Pattern[str]], ...] = tuple((p, p.regex) for p in DENYLIST)


def compiled_denylist() -> tuple[tuple[DenylistPattern, re.Pattern[str]], ...]:
    return _DENYLIST_REGEX


# ---- shared capabilities a submission may request ----

SHARED_CAPABILITIES: frozenset[str] = frozenset({"scene3d", "audio"})
