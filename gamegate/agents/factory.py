from __future__ import annotations

from typing import cast

from gamegate.agents.ag2_backend import Ag2ChatAgent
from gamegate.agents.autogen_config import settings_from_env
from gamegate.agents.base import Agent


def create_default_agent(*, name: str) -> Agent:
    """The default LLM-backed player (AG2, model from OPENAI_MODEL)."""

    return cast(Agent, Ag2ChatAgent(name=name, model=settings_from_env().model))
