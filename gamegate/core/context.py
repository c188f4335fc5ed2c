from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class BaseAgentContext:
    """Global, shared instructions for all playing agents."""

    system_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AgentProfile:
    agent_id: str
    display_name: str
    prompt: str = ""


@dataclass(frozen=True, slots=True)
class GameBrief:
    """What the agent is told about the game it is playing (from readMeta)."""

    name: str
    description: str = ""
    controls: dict[str, Any] | list[Any] = field(default_factory=dict)

    def controls_text(self) -> str:
        if isinstance(self.controls, dict):
            return "\n".join(f"- {k}: {v}" for k, v in self.controls.items())
        return "\n".join(f"- {json.dumps(c) if not isinstance(c, str) else c}" for c in self.controls)


@dataclass(frozen=True, slots=True)
class RenderedContext:
    """Final, merged context passed into the LLM agent."""

    system_prompt: str

    def as_messages(self) -> list[dict[str, str]]:
        return [{"role": "system", "content": self.system_prompt}]


def compose_context(*, base: BaseAgentContext, agent: AgentProfile, game: GameBrief) -> RenderedContext:
    parts: list[str] = [base.system_prompt.strip()]

    parts.append(
        "\n".join(
            [
                "AGENT CONTEXT:",
                f"- agent_id: {agent.agent_id}",
                f"- display_name: {agent.display_name}",
                agent.prompt.strip(),
            ]
        ).strip()
    )

    game_lines = ["GAME CONTEXT:", f"- name: {game.name}"]
    if game.description.strip():
        game_lines.append(f"- description: {game.description.strip()}")
    controls = game.controls_text()
    if controls:
        game_lines.extend(["- controls:", controls])
    parts.append("\n".join(game_lines))

    system_prompt = "\n\n".join([p for p in parts if p.strip()]).strip()
    return RenderedContext(system_prompt=system_prompt)
