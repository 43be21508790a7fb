"""Events yielded by Agent.send(), in the order they happen."""

from dataclasses import dataclass


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResultReady:
    id: str
    name: str
    output: str


@dataclass(frozen=True)
class CompactionStarted:
    from_tokens: int


@dataclass(frozen=True)
class CompactionFinished:
    from_tokens: int
    to_tokens: int


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class TurnError:
    """Terminal: the completion service failed. History keeps only committed messages."""

    error: Exception


@dataclass(frozen=True)
class TurnCancelled:
    """Terminal: the caller's cancel signal stopped the turn."""


Event = (
    TextDelta
    | ToolCallStarted
    | ToolResultReady
    | CompactionStarted
    | CompactionFinished
    | UsageReport
    | TurnError
    | TurnCancelled
)
