"""The conversation engine: one Agent per conversation, driven by send()."""

import logging
import threading
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from .compaction import Budgets, Compactor
from .completion import (
    CompletedToolCall,
    CompletionService,
    StreamUsage,
    TextChunk,
)
from .dispatch import Tool, dispatch, tool_schemas
from .events import (
    CompactionFinished,
    CompactionStarted,
    Event,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnCancelled,
    TurnError,
    UsageReport,
)
from .messages import (
    AssistantText,
    History,
    Message,
    ToolCall,
    ToolResult,
    UserText,
    estimate_history_tokens,
)
from .report import (
    AgentError,
    CompactionError,
    CompletionError,
    ReportCollector,
    TurnCancelledError,
)

logger = logging.getLogger(__name__)

CANCELLED_TOOL_OUTPUT = "error: tool call cancelled"


@dataclass(frozen=True)
class AgentConfig:
    model: str
    instructions: str = ""
    budgets: Budgets = field(default_factory=Budgets)


def _is_set(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


class Agent:
    """Owns one conversation history and runs the tool-calling loop over it.

    The tool registry in ``tools`` is re-read on every completion request,
    so callers may change it between turns.
    """

    def __init__(
        self,
        service: CompletionService,
        config: AgentConfig,
        tools: Sequence[Tool] | None = None,
        *,
        report: ReportCollector | None = None,
        compactor: Compactor | None = None,
    ):
        self.service = service
        self.config = config
        self.tools: list[Tool] = list(tools or [])
        self.report = report
        self.compactor = compactor or Compactor(service, config.model, config.budgets)
        self._history = History()
        self._busy = threading.Lock()

    def messages(self) -> list[Message]:
        return self._history.all()

    def clear(self) -> None:
        self._history.clear()

    def estimate_tokens(self) -> int:
        return estimate_history_tokens(self._history.all())

    def compact(self) -> int | None:
        """Run one compaction round now, regardless of the budget trigger.

        Returns the new token estimate, or None if there was nothing to cut.
        Raises CompactionError if summarization fails.
        """
        if not self._busy.acquire(blocking=False):
            raise AgentError("cannot compact while a turn is in progress")
        try:
            before = self.estimate_tokens()
            after = self.compactor.compact(self._history)
            if self.report:
                self.report.record_compaction(before, after)
            return after
        finally:
            self._busy.release()

    def send(
        self,
        query: str,
        tools: Sequence[Tool] | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[Event]:
        """Run one turn for ``query``, yielding events as they happen.

        The generator ends after the final answer, after a TurnError, or
        after TurnCancelled. Stopping iteration early leaves history valid:
        a tool call whose result was never recorded gets a cancellation
        result appended.

        ``cancel`` is polled before each request, between streamed chunks
        and before each tool dispatch. It is not passed to the service or
        to tools, so a stream that stops producing chunks, or a tool that
        is still running, only notices it once control comes back here.
        KeyboardInterrupt interrupts both immediately.
        """
        if not self._busy.acquire(blocking=False):
            raise AgentError("send() is already running on this agent")

        open_call: CompletedToolCall | None = None
        try:
            self._history.append(UserText(query))

            while True:
                if _is_set(cancel):
                    yield TurnCancelled()
                    return

                yield from self._maybe_compact()

                registry = list(self.tools if tools is None else tools)
                try:
                    text, calls, usage = yield from self._stream(registry, cancel)
                except TurnCancelledError:
                    yield TurnCancelled()
                    return
                except CompletionError as e:
                    logger.debug("completion failed: %s", e)
                    yield TurnError(e)
                    return

                if not calls:
                    if text:
                        self._history.append(AssistantText(text))
                    if usage is not None:
                        yield UsageReport(usage.input_tokens, usage.output_tokens)
                    return

                if usage is not None:
                    yield UsageReport(usage.input_tokens, usage.output_tokens)

                for call in calls:
                    if _is_set(cancel):
                        yield TurnCancelled()
                        return

                    self._history.append(ToolCall(call.id, call.name, call.arguments))
                    open_call = call
                    yield ToolCallStarted(call.id, call.name, call.arguments)

                    output = self._run_tool(call, registry)
                    self._history.append(ToolResult(call.id, call.name, output))
                    open_call = None
                    yield ToolResultReady(call.id, call.name, output)
        finally:
            if open_call is not None:
                self._history.append(
                    ToolResult(open_call.id, open_call.name, CANCELLED_TOOL_OUTPUT)
                )
            self._busy.release()

    def _maybe_compact(self) -> Iterator[Event]:
        before = self.estimate_tokens()
        if not self.compactor.should_compact(before):
            return

        yield CompactionStarted(before)
        try:
            after = self.compactor.compact(self._history)
        except CompactionError as e:
            logger.warning("compaction skipped: %s", e)
            after = None
        if self.report:
            self.report.record_compaction(before, after)
        yield CompactionFinished(before, before if after is None else after)

    def _stream(self, registry: list[Tool], cancel: threading.Event | None):
        """Consume one streamed completion, yielding TextDelta events.

        Returns (text, tool_calls, usage). Nothing is committed to history
        here; the caller decides what to keep.
        """
        chunks: list[str] = []
        calls: list[CompletedToolCall] = []
        usage: StreamUsage | None = None
        token_est = self.estimate_tokens()

        t0 = time.monotonic()
        outcome = "interrupted"
        stream = None
        try:
            stream = self.service.stream(
                self.config.model,
                self.config.instructions,
                self._history.all(),
                tool_schemas(registry),
            )
            for event in stream:
                if _is_set(cancel):
                    outcome = "cancelled"
                    raise TurnCancelledError("turn cancelled")
                match event:
                    case TextChunk(text=text):
                        chunks.append(text)
                        yield TextDelta(text)
                    case CompletedToolCall():
                        calls.append(event)
                    case StreamUsage():
                        usage = event
            outcome = "tool_calls" if calls else "stop"
        except (CompletionError, TurnCancelledError):
            if outcome != "cancelled":
                outcome = "error"
            raise
        except Exception as e:
            outcome = "error"
            raise CompletionError(f"LLM call failed: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
            if self.report:
                self.report.record_llm_call(
                    time.monotonic() - t0,
                    token_est,
                    outcome,
                    input_tokens=usage.input_tokens if usage else None,
                    output_tokens=usage.output_tokens if usage else None,
                )

        return "".join(chunks), calls, usage

    def _run_tool(self, call: CompletedToolCall, registry: list[Tool]) -> str:
        logger.debug("dispatching %s (%s)", call.name, call.id)
        t0 = time.monotonic()
        output = dispatch(call.name, call.arguments, registry)
        elapsed = time.monotonic() - t0

        succeeded = not output.startswith("error:")
        if self.report:
            self.report.record_tool_call(
                call.name,
                succeeded,
                elapsed,
                len(output),
                error=None if succeeded else output,
            )
        return output
