"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone

REPORT_VERSION = 1


class AgentError(Exception):
    """Base class for failures a turn or a CLI run can report."""


class ConfigError(AgentError):
    """Bad settings: unknown provider, missing model, malformed config file."""


class CompletionError(AgentError):
    """The completion service could not be reached or its stream broke."""


class ContextOverflowError(CompletionError):
    """The provider refused the request because the prompt is too long."""


class CompactionError(AgentError):
    """The summarization request of a compaction round failed."""


class TurnCancelledError(AgentError):
    """The caller's cancel signal was observed inside the turn loop."""


def _seconds(value: float) -> float:
    return round(value, 3)


class ReportCollector:
    """Collects per-call timings and counts while a turn runs.

    The agent feeds it through the record_* hooks; the CLI and Session
    turn it into a JSON document with finalize() and write().
    """

    def __init__(self):
        self.timeline: list[dict] = []
        self.calls_by_tool: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.skipped_compactions = 0
        self.llm_calls = 0
        self.llm_seconds = 0.0
        self.tool_seconds = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self._report: dict | None = None

    def record_llm_call(
        self,
        duration: float,
        token_est: int,
        outcome: str,
        *,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ):
        self.llm_calls += 1
        self.llm_seconds += duration
        entry = {
            "type": "llm_call",
            "duration_s": _seconds(duration),
            "prompt_tokens_est": token_est,
            "outcome": outcome,
        }
        # Usage only arrives when the provider honours include_usage.
        if input_tokens is not None:
            self.input_tokens += input_tokens
            entry["input_tokens"] = input_tokens
        if output_tokens is not None:
            self.output_tokens += output_tokens
            entry["output_tokens"] = output_tokens
        self.timeline.append(entry)

    def record_tool_call(
        self,
        name: str,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.tool_seconds += duration
        counts = self.calls_by_tool.setdefault(name, {"succeeded": 0, "failed": 0})
        counts["succeeded" if succeeded else "failed"] += 1
        entry: dict = {
            "type": "tool_call",
            "name": name,
            "succeeded": succeeded,
            "duration_s": _seconds(duration),
            "result_length": result_length,
        }
        if error is not None:
            entry["error"] = error
        self.timeline.append(entry)

    def record_compaction(self, tokens_before: int, tokens_after: int | None):
        """tokens_after is None when the round was skipped or failed."""
        if tokens_after is None:
            self.skipped_compactions += 1
        else:
            self.compactions += 1
        self.timeline.append(
            {"type": "compaction", "tokens_before": tokens_before, "tokens_after": tokens_after}
        )

    def _stats(self) -> dict:
        ok = failed = 0
        for counts in self.calls_by_tool.values():
            ok += counts["succeeded"]
            failed += counts["failed"]
        return {
            "tool_calls_total": ok + failed,
            "tool_calls_succeeded": ok,
            "tool_calls_failed": failed,
            "tool_calls_by_name": {k: dict(v) for k, v in self.calls_by_tool.items()},
            "compactions": self.compactions,
            "skipped_compactions": self.skipped_compactions,
            "llm_calls": self.llm_calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_llm_time_s": _seconds(self.llm_seconds),
            "total_tool_time_s": _seconds(self.tool_seconds),
        }

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message
        return {
            "version": REPORT_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": self._stats(),
            "timeline": list(self.timeline),
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._report = self.build_report(**kwargs)
        return self._report

    def write(self, path: str):
        if self._report is None:
            raise AgentError("report was not finalized before write()")
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(self._report, indent=2) + "\n")
