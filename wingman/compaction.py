"""Context compaction: summarize the oldest part of the history so the rest
fits the model's context window, without splitting tool call/result pairs."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .completion import CompletionService
from .messages import (
    AssistantText,
    History,
    Message,
    ToolCall,
    ToolResult,
    UserText,
    estimate_history_tokens,
    estimate_tokens,
)
from .report import CompactionError, ConfigError

logger = logging.getLogger(__name__)

COMPACTION_PROMPT_FILE = Path(__file__).parent / "compaction_prompt.txt"
MAX_RESULT_CHARS = 2000

DEFAULT_RESERVE_TOKENS = 16384
DEFAULT_KEEP_RECENT_TOKENS = 20000


@dataclass(frozen=True)
class Budgets:
    """Compaction budgets in estimated-token units.

    max_context_tokens = 0 disables compaction entirely.
    """

    max_context_tokens: int = 0
    reserve_tokens: int = DEFAULT_RESERVE_TOKENS
    keep_recent_tokens: int = DEFAULT_KEEP_RECENT_TOKENS

    def __post_init__(self):
        for name in ("max_context_tokens", "reserve_tokens", "keep_recent_tokens"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        # reserve >= max compacts on every request
        if self.max_context_tokens and self.reserve_tokens >= self.max_context_tokens:
            raise ConfigError(
                f"reserve_tokens ({self.reserve_tokens}) must be smaller than "
                f"max_context_tokens ({self.max_context_tokens})"
            )


def build_transcript(messages: Sequence[Message]) -> str:
    """Render messages as the plain-text transcript sent for summarization."""
    blocks = []
    for m in messages:
        match m:
            case UserText(text=text):
                blocks.append(f"user: {text}")
            case AssistantText(text=text):
                blocks.append(f"assistant: {text}")
            case ToolCall(name=name, arguments=arguments):
                blocks.append(f"tool_call: {name}({arguments})")
            case ToolResult(output=output):
                if len(output) > MAX_RESULT_CHARS:
                    output = output[:MAX_RESULT_CHARS] + "[truncated]"
                blocks.append(f"tool_result: {output}")
    return "\n\n".join(blocks)


def _adjust_cut_point(messages: Sequence[Message], idx: int) -> int:
    """Move idx forward past tool calls/results; len(messages) if none remain."""
    for i in range(idx, len(messages)):
        if not isinstance(messages[i], (ToolCall, ToolResult)):
            return i
    return len(messages)


def find_cut_point(messages: Sequence[Message], keep_recent_tokens: int) -> int:
    """Return the index splitting summarized prefix from kept suffix, or 0.

    The tentative cut is the first index, scanning from the newest message
    backward, where the suffix reaches keep_recent_tokens. It is then pushed
    forward past any tool calls/results so a pair is never split.
    """
    if len(messages) < 2:
        return 0

    accumulated = 0
    cut = None
    for i in range(len(messages) - 1, -1, -1):
        accumulated += estimate_tokens(messages[i])
        if accumulated >= keep_recent_tokens:
            cut = i
            break
    if cut is None:
        return 0

    cut = _adjust_cut_point(messages, cut)
    if cut <= 0 or cut >= len(messages):
        return 0
    return cut


class Compactor:
    def __init__(
        self,
        service: CompletionService,
        model: str,
        budgets: Budgets,
        prompt: str | None = None,
    ):
        self.service = service
        self.model = model
        self.budgets = budgets
        self.prompt = (
            prompt
            if prompt is not None
            else COMPACTION_PROMPT_FILE.read_text(encoding="utf-8")
        )

    def should_compact(self, estimated_input_tokens: int) -> bool:
        b = self.budgets
        if b.max_context_tokens <= 0:
            return False
        return estimated_input_tokens > b.max_context_tokens - b.reserve_tokens

    def summarize(self, messages: Sequence[Message]) -> str:
        transcript = build_transcript(messages)
        try:
            summary = self.service.complete(self.model, self.prompt, transcript)
        except Exception as e:
            raise CompactionError(f"summarization failed: {e}") from e
        if not isinstance(summary, str) or not summary.strip():
            raise CompactionError("summarization returned an empty summary")
        return summary

    def compact(self, history: History) -> int | None:
        """Replace the old prefix of history with a single summary message.

        Returns the new estimated token total, or None when no safe cut
        exists. Raises CompactionError if summarization fails; history is
        untouched in that case.
        """
        messages = history.all()
        cut = find_cut_point(messages, self.budgets.keep_recent_tokens)
        if cut == 0:
            logger.debug("no safe cut point in %d messages", len(messages))
            return None

        summary = self.summarize(messages[:cut])
        kept = messages[cut:]
        history.replace([UserText(summary), *kept])

        new_total = estimate_history_tokens(history.all())
        logger.debug(
            "compacted %d messages into a summary, kept %d (~%d tokens)",
            cut,
            len(kept),
            new_total,
        )
        return new_total
