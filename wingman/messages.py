"""Conversation history: the four message kinds, the History container,
and the token estimator shared by the compaction trigger and cut search."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class UserText:
    text: str


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResult:
    id: str
    name: str
    output: str


Message = UserText | AssistantText | ToolCall | ToolResult


class History:
    """Ordered, append-only message list owned by a single Agent.

    No validation happens on append; the turn loop is responsible for
    keeping every ToolCall paired with its ToolResult.
    """

    def __init__(self, messages: Iterable[Message] = ()):
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def all(self) -> list[Message]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def replace(self, messages: Iterable[Message]) -> None:
        """Swap the whole history in one step (compaction rewrite)."""
        self._messages = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))


def message_payload(message: Message) -> str:
    """Return the text a message contributes to the prompt."""
    match message:
        case UserText(text=text) | AssistantText(text=text):
            return text
        case ToolCall(name=name, arguments=arguments):
            return name + arguments
        case ToolResult(name=name, output=output):
            return name + output
    raise TypeError(f"not a message: {message!r}")


def estimate_tokens(message: Message) -> int:
    """Approximate token cost: payload length divided by 4, truncated.

    Coarse and tokenizer-free. The compaction trigger and the cut-point
    search must both use this function.
    """
    return len(message_payload(message)) // 4


def estimate_history_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_tokens(m) for m in messages)


def to_chat_messages(messages: Iterable[Message], instructions: str = "") -> list[dict]:
    """Convert history into OpenAI chat-completions input messages."""
    out: list[dict] = []
    if instructions:
        out.append({"role": "system", "content": instructions})
    for m in messages:
        match m:
            case UserText(text=text):
                out.append({"role": "user", "content": text})
            case AssistantText(text=text):
                out.append({"role": "assistant", "content": text})
            case ToolCall(id=call_id, name=name, arguments=arguments):
                out.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": call_id,
                                "type": "function",
                                "function": {"name": name, "arguments": arguments},
                            }
                        ],
                    }
                )
            case ToolResult(id=call_id, output=output):
                out.append({"role": "tool", "tool_call_id": call_id, "content": output})
    return out
