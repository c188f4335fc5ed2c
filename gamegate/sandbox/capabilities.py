from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from gamegate.validation.rules import SHARED_CAPABILITIES

# Granted to every instance.
BASE_CAPABILITIES: frozenset[str] = frozenset({"surface", "frames", "clock", "random", "timers", "media"})

# Granted only to packaged bundles.
BUNDLE_CAPABILITY = "assets"


@dataclass(frozen=True, slots=True)
class CapabilitySet:
    """The allowlist snapshot of one instance. Immutable once built."""

    granted: frozenset[str]

    @staticmethod
    def build(*, requested: Iterable[str] = (), bundle: bool = False) -> "CapabilitySet":
        extra = frozenset(requested)
        unknown = extra - SHARED_CAPABILITIES
        if unknown:
            raise ValueError(f"Unknown shared capabilities: {','.join(sorted(unknown))}")
        granted = BASE_CAPABILITIES | extra
        if bundle:
            granted |= {BUNDLE_CAPABILITY}
        return CapabilitySet(granted=granted)

    def __contains__(self, name: object) -> bool:
        return name in self.granted

    def as_list(self) -> list[str]:
        return sorted(self.granted)
