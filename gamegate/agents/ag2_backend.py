from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any

from autogen import ConversableAgent

from gamegate.agents.autogen_config import llm_config_from_env
from gamegate.agents.base import AgentAction
from gamegate.agents.json_schema import JsonSchema
from gamegate.core.context import RenderedContext

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def reply_text(messages: object) -> str:
    """Newest non-empty message body, with a surrounding code fence removed."""

    if not isinstance(messages, list):
        return ""
    for msg in reversed(messages):
        content = msg.get("content") if isinstance(msg, dict) else None
        if isinstance(content, str) and content.strip():
            text = content.strip()
            m = _FENCE.match(text)
            return m.group(1) if m else text
    return ""


@dataclass(slots=True)
class Ag2ChatAgent:
    """Single-turn AG2 player.

    We build the system prompt (RenderedContext); AG2 owns transport and model config.
    Reads OPENAI_MODEL, OPENAI_API_KEY and OPENAI_BASE_URL.
    """

    name: str
    model: str

    def _run(self, prompt: str, ctx: RenderedContext, structured_output: JsonSchema | None) -> AgentAction:
        player = ConversableAgent(
            name=self.name,
            system_message=ctx.system_prompt,
            llm_config=llm_config_from_env(default_model=self.model),
            human_input_mode="NEVER",
        )
        kwargs: dict[str, Any] = {"max_turns": 1}
        if structured_output is not None:
            kwargs["response_format"] = structured_output.response_format()

        response = player.run(message=prompt, **kwargs)
        response.process()

        content = reply_text(list(response.messages))
        if not content and isinstance(response.summary, str):
            content = response.summary.strip()
        return AgentAction(
            kind="chat",
            content=content,
            metadata={"model": self.model, "structured": structured_output is not None},
        )

    async def propose_action(
        self,
        *,
        prompt: str,
        ctx: RenderedContext,
        structured_output: JsonSchema | None = None,
    ) -> AgentAction:
        # run/process block; keep them off the event loop.
        return await asyncio.to_thread(self._run, prompt, ctx, structured_output)
