from __future__ import annotations

from pathlib import Path

from gamegate.core.context import BaseAgentContext


class PromptLoadError(RuntimeError):
    pass


def prompts_dir() -> Path:
    return Path(__file__).resolve().parent / "data" / "prompts"


def load_prompt(name: str) -> str:
    """Load a prompt text file shipped in `gamegate/data/prompts/`.

    Example:
        load_prompt("base_agent.txt")
    """

    path = prompts_dir() / name
    try:
        return path.read_text(encoding="utf-8").strip() + "\n"
    except FileNotFoundError as e:
        raise PromptLoadError(f"Prompt not found: {path}") from e


def make_base_agent_context(*, system_prefix: str = "") -> BaseAgentContext:
    parts: list[str] = []
    if system_prefix.strip():
        parts.append(system_prefix.strip())
    parts.append(load_prompt("base_agent.txt").strip())
    return BaseAgentContext(system_prompt="\n\n".join(parts).strip())
