from __future__ import annotations

import base64
from uuid import UUID

import redis

from gamegate.api.models import GameModule
from gamegate.assets.bundle import ZipBundle
from gamegate.errors import GameNotFound
from gamegate.sandbox.host import ModuleImage

GAMES_SET_KEY = "gamegate:games"
GAME_KEY_PREFIX = "gamegate:game:"  # + {uuid}


def _game_key(game_id: UUID | str) -> str:
    return f"{GAME_KEY_PREFIX}{game_id}"


def save_module(*, r: redis.Redis, module: GameModule) -> None:
    r.set(_game_key(module.game_id), module.model_dump_json())
    r.sadd(GAMES_SET_KEY, str(module.game_id))


def get_module(*, r: redis.Redis, game_id: UUID | str) -> GameModule | None:
    raw = r.get(_game_key(game_id))
    if not raw:
        return None
    return GameModule.model_validate_json(raw)


def require_module(*, r: redis.Redis, game_id: UUID | str) -> GameModule:
    module = get_module(r=r, game_id=game_id)
    if module is None:
        raise GameNotFound("Game not found")
    return module


def list_modules(*, r: redis.Redis) -> list[GameModule]:
    out: list[GameModule] = []
    for sid in sorted(r.smembers(GAMES_SET_KEY)):
        try:
            gid = UUID(sid)
        except ValueError:
            continue
        module = get_module(r=r, game_id=gid)
        if module is not None:
            out.append(module)
    out.sort(key=lambda m: m.created_at, reverse=True)
    return out


def module_image(module: GameModule) -> ModuleImage:
    bundle = ZipBundle(base64.b64decode(module.bundle_b64)) if module.bundle_b64 else None
    return ModuleImage(game_id=str(module.game_id), source=module.source, bundle=bundle)
