"""Tool registry protocol and the dispatcher that turns tool calls into text."""

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Tool(Protocol):
    """Anything with a name, description, JSON schema and execute() is a tool.

    execute() returns text (or a JSON-serializable value) and raises on
    failure.
    """

    name: str
    description: str
    parameters: dict

    def execute(self, args: dict) -> Any: ...


@dataclass
class FunctionTool:
    """Adapt a plain callable taking keyword arguments into a Tool."""

    name: str
    description: str
    fn: Callable[..., Any]
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def execute(self, args: dict) -> Any:
        return self.fn(**args)


def tool_schemas(tools: Sequence[Tool]) -> list[dict]:
    """Render tools as OpenAI function-tool schemas."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
            },
        }
        for t in tools
    ]


def dispatch(name: str, arguments: str, tools: Sequence[Tool]) -> str:
    """Run one tool call and return its output text.

    Never raises: an unknown tool, undecodable arguments or a failing tool
    all come back as ``error: ...`` text so the model can react to them.
    """
    tool = next((t for t in tools if t.name == name), None)
    if tool is None:
        return f"error: unknown tool {name}"

    try:
        args = json.loads(arguments) if arguments.strip() else {}
    except json.JSONDecodeError as e:
        return f"error: failed to parse arguments: {e}"
    if not isinstance(args, dict):
        return f"error: failed to parse arguments: expected a JSON object, got {type(args).__name__}"

    try:
        result = tool.execute(args)
    except Exception as e:
        logger.debug("tool %s failed: %s", name, e)
        return f"error: {e}"

    if isinstance(result, str):
        return result
    try:
        return json.dumps(result)
    except (TypeError, ValueError) as e:
        return f"error: tool returned a non-serializable result: {e}"
