from __future__ import annotations

import uuid
from contextlib import contextmanager

import redis

from gamegate.errors import SessionBusy

# Delete only while the key still holds our token.
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


@contextmanager
def session_lock(*, r: redis.Redis, session_id: str, ttl_ms: int = 10_000):
    """Per-session lock so inputs against one session apply strictly in order.

    A second caller does not wait: it gets `SessionBusy` and may retry.
    """

    key = f"lock:session:{session_id}"
    token = uuid.uuid4().hex
    if not r.set(key, token, nx=True, px=ttl_ms):
        raise SessionBusy(f"Session {session_id} is busy")
    try:
        yield
    finally:
        r.eval(_RELEASE_LUA, 1, key, token)
