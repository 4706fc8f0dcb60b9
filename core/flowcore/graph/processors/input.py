"""INPUT and TRIGGER nodes: admit the invocation payload into the graph."""

import json
from typing import Any

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput


def _coerce(name: str, value: Any, field_type: str) -> Any:
    match field_type:
        case "number":
            if isinstance(value, bool):
                raise NodeExecutionError(f"Input field '{name}' must be a number")
            if isinstance(value, int | float):
                return value
            try:
                number = float(str(value).strip())
            except ValueError as e:
                raise NodeExecutionError(f"Input field '{name}' must be a number") from e
            return int(number) if number.is_integer() else number
        case "boolean":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in ("true", "1", "yes", "on"):
                return True
            if text in ("false", "0", "no", "off"):
                return False
            raise NodeExecutionError(f"Input field '{name}' must be a boolean")
        case "json" | "object" | "array":
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except ValueError as e:
                    raise NodeExecutionError(f"Input field '{name}' must be valid JSON") from e
            return value
        case "string" | "text":
            if isinstance(value, dict | list):
                return json.dumps(value, ensure_ascii=False)
            return value if isinstance(value, str) else str(value)
        case _:
            return value


def validate_input(fields: list[dict[str, Any]], payload: dict[str, Any]) -> dict[str, Any]:
    """
    Validate ``payload`` against declared input fields.

    Declared fields are coerced to their ``type``; a missing field falls
    back to its ``default``/``value`` and is an error when ``required``.
    Undeclared payload keys pass through unchanged.

    Raises:
        NodeExecutionError: listing every missing or invalid field
    """
    data = dict(payload)
    problems: list[str] = []

    for spec in fields:
        name = spec.get("name")
        if not name:
            continue
        present = name in payload and payload[name] not in (None, "")
        if present:
            value = payload[name]
        elif spec.get("default") not in (None, ""):
            value = spec["default"]
        elif spec.get("value") not in (None, ""):
            value = spec["value"]
        elif spec.get("required"):
            problems.append(f"Missing required input field '{name}'")
            continue
        else:
            continue

        try:
            data[name] = _coerce(name, value, str(spec.get("type", "")).lower())
        except NodeExecutionError as e:
            problems.append(str(e))

    if problems:
        raise NodeExecutionError("; ".join(problems))
    return data


async def run_input(ctx: NodeContext) -> NodeOutput:
    return NodeOutput(data=validate_input(ctx.config.get("fields") or [], ctx.initial_input))


async def run_trigger(ctx: NodeContext) -> NodeOutput:
    return NodeOutput(data=dict(ctx.initial_input))
