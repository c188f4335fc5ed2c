from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

import redis
from fastapi import Depends, Header

from gamegate.config import GateSettings, settings_from_env
from gamegate.infra.redis_client import create_redis
from gamegate.sandbox.host import SandboxHost, get_host
from gamegate.sessions.manager import SessionManager
from gamegate.sessions.rate_limit import RollingWindowLimiter
from gamegate.sessions.settlement import StreamScoreSettlement


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        client.close()


@lru_cache(maxsize=1)
def get_settings() -> GateSettings:
    return settings_from_env()


def get_sandbox_host() -> SandboxHost:
    return get_host()


def get_limiter(r: redis.Redis = Depends(get_redis), settings: GateSettings = Depends(get_settings)) -> RollingWindowLimiter:
    return RollingWindowLimiter(r, settings.rate_limits)


def get_session_manager(
    r: redis.Redis = Depends(get_redis),
    host: SandboxHost = Depends(get_sandbox_host),
    limiter: RollingWindowLimiter = Depends(get_limiter),
) -> SessionManager:
    return SessionManager(r=r, host=host, limiter=limiter, settlement=StreamScoreSettlement(r))


def get_agent_id(x_agent_id: str = Header(..., alias="X-Agent-Id", min_length=1, max_length=128)) -> str:
    return x_agent_id.strip()
