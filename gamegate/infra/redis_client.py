from __future__ import annotations

import os
from functools import lru_cache

import redis


def get_redis_url() -> str:
    return os.environ.get("GAMEGATE_REDIS_URL") or os.environ.get("REDIS_URL", "redis://localhost:6379/0")


@lru_cache(maxsize=4)
def _pool_for(url: str) -> redis.ConnectionPool:
    # decode_responses=True => strings in/out instead of bytes; binary payloads are stored base64.
    return redis.ConnectionPool.from_url(url, decode_responses=True)


def create_redis() -> redis.Redis:
    return redis.Redis(connection_pool=_pool_for(get_redis_url()))
