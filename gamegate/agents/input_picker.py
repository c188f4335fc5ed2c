from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from gamegate.agents.base import Agent
from gamegate.agents.json_schema import JsonSchema
from gamegate.bridge.protocol import Action
from gamegate.core.context import RenderedContext


@dataclass(frozen=True, slots=True)
class PickedInput:
    action: Action
    reason: str = ""


class InputPickError(RuntimeError):
    pass


def parse_picked_input(text: str) -> PickedInput:
    """Parse the model output for one input pick.

    Expects a strict JSON object: {"action": "<token>"} with an optional "reason".
    "input" is accepted as an alias for "action". Anything that is not JSON is rejected.
    """

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InputPickError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InputPickError("Expected a JSON object")

    raw = data.get("action")
    if raw is None:
        raw = data.get("input")
    if not isinstance(raw, str) or not raw.strip():
        raise InputPickError("Missing/invalid 'action' field")

    try:
        action = Action(raw.strip().casefold())
    except ValueError as e:
        raise InputPickError(f"Unknown action {raw!r}") from e

    reason = data.get("reason")
    return PickedInput(action=action, reason=reason.strip() if isinstance(reason, str) else "")


def _schema_for(allowed: list[Action]) -> JsonSchema:
    return JsonSchema(
        name="pick_input",
        schema={
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "action": {"type": "string", "enum": [a.value for a in allowed]},
                "reason": {"type": "string"},
            },
            "required": ["action", "reason"],
        },
        strict=True,
    )


async def pick_input_with_agent(
    *,
    agent: Agent,
    ctx: RenderedContext,
    state: dict[str, Any],
    allowed: list[Action] | None = None,
    max_attempts: int = 3,
) -> PickedInput:
    """Ask an agent for the next input, retrying on unparseable or out-of-range answers."""

    choices = allowed or list(Action)
    prompt = (
        "Current game state (JSON):\n"
        f"{json.dumps(state, sort_keys=True)}\n\n"
        "Choose exactly ONE input from the allowed actions below.\n"
        "Return ONLY JSON matching the required schema. No explanation outside the JSON.\n\n"
        f"Allowed actions: {[a.value for a in choices]}\n"
    )
    schema = _schema_for(choices)

    last_err: Exception | None = None
    for _ in range(max_attempts):
        propose = getattr(agent, "propose_action")
        try:
            action = await propose(prompt=prompt, ctx=ctx, structured_output=schema)  # type: ignore[arg-type]
        except TypeError:
            action = await propose(prompt=prompt, ctx=ctx)  # type: ignore[misc]

        try:
            picked = parse_picked_input(action.content)
        except InputPickError as e:
            last_err = e
            continue

        if picked.action not in choices:
            last_err = InputPickError(f"{picked.action.value} is not an allowed action")
            continue
        return picked

    raise InputPickError(f"Failed to pick a valid input after {max_attempts} attempts: {last_err}")
