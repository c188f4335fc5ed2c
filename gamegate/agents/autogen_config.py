from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from autogen import LLMConfig

DEFAULT_PLAYER_MODEL = "gpt-4o-mini"


@dataclass(frozen=True, slots=True)
class OpenAICompatibleSettings:
    model: str
    base_url: str | None
    api_key: str | None

    @property
    def configured(self) -> bool:
        return bool(self.api_key or self.base_url)


def settings_from_env(*, default_model: str = DEFAULT_PLAYER_MODEL) -> OpenAICompatibleSettings:
    return OpenAICompatibleSettings(
        model=os.environ.get("OPENAI_MODEL", default_model),
        # Local OpenAI-compatible servers, e.g. http://127.0.0.1:11434/v1
        base_url=os.environ.get("OPENAI_BASE_URL"),
        api_key=os.environ.get("OPENAI_API_KEY"),
    )


def llm_config_from_env(*, default_model: str = DEFAULT_PLAYER_MODEL) -> LLMConfig:
    s = settings_from_env(default_model=default_model)
    if not s.configured:
        raise RuntimeError("No LLM endpoint configured: set OPENAI_API_KEY or OPENAI_BASE_URL")

    # Local servers ignore the key but the client insists on one.
    entry: dict[str, Any] = {"model": s.model, "api_key": s.api_key or "local"}
    if s.base_url:
        entry["base_url"] = s.base_url
    return LLMConfig(config_list=[entry])
