from __future__ import annotations

import os
from pathlib import Path

import pytest

MODULES_DIR = Path(__file__).resolve().parent / "modules"


def module_source(name: str) -> str:
    """Source text of one of the sample game modules in `tests/modules/`."""

    return (MODULES_DIR / f"{name}.py").read_text(encoding="utf-8")


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs.

    This makes OPENAI_BASE_URL / OPENAI_MODEL available to tests without needing
    to manually export them in your shell. In CI it stays off unless opted in with
    GAMEGATE_LOAD_DOTENV_FOR_TESTS=1.
    """

    if os.environ.get("CI") and os.environ.get("GAMEGATE_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)

    if os.environ.get("OPENAI_BASE_URL") and not os.environ.get("OPENAI_API_KEY"):
        os.environ["OPENAI_API_KEY"] = "ollama"


@pytest.fixture()
def fresh_host(monkeypatch: pytest.MonkeyPatch):
    """Give each test its own sandbox host (the app's singleton is swapped out)."""

    import gamegate.sandbox.host as host_mod
    from gamegate.config import SandboxSettings

    # No bwrap or user namespaces on CI runners; isolation has its own tests.
    host = host_mod.SandboxHost(SandboxSettings(call_timeout_s=5.0, boot_timeout_s=15.0, wrapper="none"))
    monkeypatch.setattr(host_mod, "_host", host)
    return host


@pytest.fixture()
def client_and_redis(fresh_host):
    """FastAPI TestClient wired to fakeredis and a per-test sandbox host."""

    from collections.abc import Generator

    import fakeredis
    from fastapi.testclient import TestClient

    from gamegate.api.deps import get_redis
    from gamegate.main import app

    r = fakeredis.FakeRedis(decode_responses=True)

    def _override() -> Generator[fakeredis.FakeRedis, None, None]:
        yield r

    app.dependency_overrides[get_redis] = _override
    with TestClient(app) as c:
        yield c, r
    app.dependency_overrides.clear()


@pytest.fixture()
def game_source():
    return module_source
