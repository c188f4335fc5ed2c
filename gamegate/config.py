from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True, slots=True)
class SandboxSettings:
    # Per-call bound for the six bridge operations.
    call_timeout_s: float = 2.0
    # Module top-level execution + init.
    boot_timeout_s: float = 10.0
    frames_per_input: int = 1
    max_instances: int = 64
    # "auto", "bwrap", "netns" or "none". Anything but "none" refuses to start a child
    # it cannot cut off from the network.
    wrapper: str = "auto"
    memory_limit_mb: int = 512
    cpu_limit_s: int = 600
    # Sessionless (UI) instances untouched for this long are reaped.
    instance_idle_s: float = 900.0


@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    submissions_per_day: int = 10
    calls_per_hour: int = 1000
    sessions_per_hour: int = 10


@dataclass(frozen=True, slots=True)
class GateSettings:
    sandbox: SandboxSettings
    rate_limits: RateLimitSettings


def settings_from_env() -> GateSettings:
    return GateSettings(
        sandbox=SandboxSettings(
            call_timeout_s=_env_float("GAMEGATE_CALL_TIMEOUT_S", 2.0),
            boot_timeout_s=_env_float("GAMEGATE_BOOT_TIMEOUT_S", 10.0),
            frames_per_input=_env_int("GAMEGATE_FRAMES_PER_INPUT", 1),
            max_instances=_env_int("GAMEGATE_MAX_INSTANCES", 64),
            wrapper=os.environ.get("GAMEGATE_SANDBOX_WRAPPER", "auto").strip().lower() or "auto",
            memory_limit_mb=_env_int("GAMEGATE_MEMORY_LIMIT_MB", 512),
            cpu_limit_s=_env_int("GAMEGATE_CPU_LIMIT_S", 600),
            instance_idle_s=_env_float("GAMEGATE_INSTANCE_IDLE_S", 900.0),
        ),
        rate_limits=RateLimitSettings(
            submissions_per_day=_env_int("GAMEGATE_SUBMISSIONS_PER_DAY", 10),
            calls_per_hour=_env_int("GAMEGATE_CALLS_PER_HOUR", 1000),
            sessions_per_hour=_env_int("GAMEGATE_SESSIONS_PER_HOUR", 10),
        ),
    )
