"""Tests for the turn loop: event order, history commits, tool dispatch,
cancellation, compaction events, and single-flight send()."""

import threading

import pytest

from wingman.agent import CANCELLED_TOOL_OUTPUT, Agent, AgentConfig
from wingman.compaction import Budgets
from wingman.completion import CompletedToolCall, StreamUsage, TextChunk
from wingman.dispatch import FunctionTool
from wingman.events import (
    CompactionFinished,
    CompactionStarted,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnCancelled,
    TurnError,
    UsageReport,
)
from wingman.messages import AssistantText, ToolCall, ToolResult, UserText
from wingman.report import AgentError, CompletionError, ReportCollector


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeService:
    """Scripted completion service.

    Each entry in `responses` is the list of stream events for one request;
    an Exception in the list is raised at that point in the stream.
    """

    def __init__(self, responses=(), summaries=()):
        self.responses = list(responses)
        self.summaries = list(summaries)
        self.stream_calls = []
        self.complete_calls = []
        self.closed = 0

    def stream(self, model, instructions, messages, tools):
        self.stream_calls.append(
            {
                "model": model,
                "instructions": instructions,
                "messages": list(messages),
                "tools": [t["function"]["name"] for t in tools],
            }
        )
        events = self.responses.pop(0)
        try:
            for event in events:
                if isinstance(event, Exception):
                    raise event
                yield event
        finally:
            self.closed += 1

    def complete(self, model, instructions, input_text):
        self.complete_calls.append(input_text)
        summary = self.summaries.pop(0)
        if isinstance(summary, Exception):
            raise summary
        return summary


def _text(*chunks):
    return [TextChunk(c) for c in chunks]


def _calls(*specs):
    return [CompletedToolCall(call_id, name, args) for call_id, name, args in specs]


def _echo_tool():
    return FunctionTool("echo", "Echo text.", lambda text="": f"echo: {text}")


def _failing_tool():
    def boom(**kwargs):
        raise RuntimeError("always broken")

    return FunctionTool("broken", "Always fails.", boom)


def _agent(service, tools=None, budgets=None, report=None, instructions="sys"):
    config = AgentConfig(
        model="test-model",
        instructions=instructions,
        budgets=budgets or Budgets(),
    )
    return Agent(service, config, tools or [_echo_tool()], report=report)


def _assert_paired(messages):
    """Every ToolCall is immediately followed by its ToolResult."""
    for i, m in enumerate(messages):
        if isinstance(m, ToolCall):
            assert i + 1 < len(messages), f"dangling call {m.id}"
            nxt = messages[i + 1]
            assert isinstance(nxt, ToolResult) and nxt.id == m.id
        if isinstance(m, ToolResult):
            assert i > 0 and isinstance(messages[i - 1], ToolCall)
            assert messages[i - 1].id == m.id


# ---------------------------------------------------------------------------
# Plain answers
# ---------------------------------------------------------------------------


class TestPlainAnswer:
    def test_text_only_response_ends_the_turn(self):
        service = FakeService([_text("Hel", "lo")])
        agent = _agent(service)

        events = list(agent.send("hi"))

        assert events == [TextDelta("Hel"), TextDelta("lo")]
        assert agent.messages() == [UserText("hi"), AssistantText("Hello")]
        assert len(service.stream_calls) == 1

    def test_empty_response_commits_nothing(self):
        agent = _agent(FakeService([[]]))
        assert list(agent.send("hi")) == []
        assert agent.messages() == [UserText("hi")]

    def test_usage_reported_after_text(self):
        service = FakeService([_text("ok") + [StreamUsage(12, 3)]])
        events = list(_agent(service).send("hi"))
        assert events == [TextDelta("ok"), UsageReport(12, 3)]

    def test_model_instructions_and_tools_passed(self):
        service = FakeService([_text("ok")])
        list(_agent(service, instructions="be terse").send("hi"))
        call = service.stream_calls[0]
        assert call["model"] == "test-model"
        assert call["instructions"] == "be terse"
        assert call["messages"] == [UserText("hi")]
        assert call["tools"] == ["echo"]

    def test_context_carries_across_turns(self):
        service = FakeService([_text("one"), _text("two")])
        agent = _agent(service)
        list(agent.send("first"))
        list(agent.send("second"))
        assert service.stream_calls[1]["messages"] == [
            UserText("first"),
            AssistantText("one"),
            UserText("second"),
        ]


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_call_then_answer(self):
        service = FakeService(
            [
                _calls(("c1", "echo", '{"text": "x"}')),
                _text("done"),
            ]
        )
        agent = _agent(service)

        events = list(agent.send("go"))

        assert events == [
            ToolCallStarted("c1", "echo", '{"text": "x"}'),
            ToolResultReady("c1", "echo", "echo: x"),
            TextDelta("done"),
        ]
        assert agent.messages() == [
            UserText("go"),
            ToolCall("c1", "echo", '{"text": "x"}'),
            ToolResult("c1", "echo", "echo: x"),
            AssistantText("done"),
        ]
        assert service.stream_calls[1]["messages"] == agent.messages()[:3]

    def test_several_calls_dispatched_in_order(self):
        service = FakeService(
            [
                _calls(("a", "echo", '{"text": "1"}'), ("b", "echo", '{"text": "2"}')),
                _text("ok"),
            ]
        )
        agent = _agent(service)
        events = list(agent.send("go"))

        started = [e.id for e in events if isinstance(e, ToolCallStarted)]
        finished = [e.id for e in events if isinstance(e, ToolResultReady)]
        assert started == ["a", "b"]
        assert finished == ["a", "b"]
        _assert_paired(agent.messages())

    def test_failing_tool_does_not_end_the_turn(self):
        service = FakeService(
            [
                _calls(("c1", "broken", "{}")),
                _calls(("c2", "broken", "{}")),
                _text("gave up"),
            ]
        )
        agent = _agent(service, tools=[_failing_tool()])

        events = list(agent.send("go"))

        results = [e for e in events if isinstance(e, ToolResultReady)]
        assert [r.output for r in results] == ["error: always broken"] * 2
        assert len(service.stream_calls) == 3
        assert agent.messages()[-1] == AssistantText("gave up")
        assert not any(isinstance(e, TurnError) for e in events)

    def test_unknown_tool_becomes_result_text(self):
        service = FakeService([_calls(("c1", "frobnicate", "{}")), _text("sorry")])
        agent = _agent(service)

        events = list(agent.send("go"))

        assert ToolResultReady("c1", "frobnicate", "error: unknown tool frobnicate") in events
        assert ToolResult("c1", "frobnicate", "error: unknown tool frobnicate") in agent.messages()
        assert len(service.stream_calls) == 2

    def test_text_alongside_calls_is_streamed_not_committed(self):
        service = FakeService(
            [
                _text("let me look") + _calls(("c1", "echo", "{}")),
                _text("found it"),
            ]
        )
        agent = _agent(service)
        events = list(agent.send("go"))

        assert events[0] == TextDelta("let me look")
        assert AssistantText("let me look") not in agent.messages()
        assert agent.messages()[-1] == AssistantText("found it")

    def test_registry_reread_each_request(self):
        service = FakeService([_calls(("c1", "echo", "{}")), _text("ok")])
        agent = _agent(service)
        extra = FunctionTool("late", "Added mid-turn.", lambda: "late")

        events = agent.send("go")
        next(events)  # ToolCallStarted
        agent.tools.append(extra)
        list(events)

        assert service.stream_calls[0]["tools"] == ["echo"]
        assert service.stream_calls[1]["tools"] == ["echo", "late"]

    def test_per_send_tools_override(self):
        service = FakeService([_text("ok")])
        agent = _agent(service)
        list(agent.send("go", tools=[_failing_tool()]))
        assert service.stream_calls[0]["tools"] == ["broken"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestStreamErrors:
    def test_error_after_two_deltas(self):
        service = FakeService([_text("par", "tial") + [CompletionError("connection reset")]])
        agent = _agent(service)

        events = list(agent.send("hi"))

        assert events[:2] == [TextDelta("par"), TextDelta("tial")]
        assert isinstance(events[2], TurnError)
        assert "connection reset" in str(events[2].error)
        assert len(events) == 3
        assert agent.messages() == [UserText("hi")]

    def test_error_after_tool_round_keeps_pairs(self):
        service = FakeService(
            [_calls(("c1", "echo", "{}")), [CompletionError("gone")]]
        )
        agent = _agent(service)
        events = list(agent.send("go"))

        assert isinstance(events[-1], TurnError)
        _assert_paired(agent.messages())
        assert not any(isinstance(m, AssistantText) for m in agent.messages())

    def test_foreign_exception_mid_stream_is_a_turn_error(self):
        service = FakeService([_text("a") + [ConnectionError("reset")]])
        agent = _agent(service)

        events = list(agent.send("hi"))

        assert events[0] == TextDelta("a")
        assert isinstance(events[-1], TurnError)
        assert isinstance(events[-1].error, CompletionError)
        assert "reset" in str(events[-1].error)
        assert agent.messages() == [UserText("hi")]

    def test_stream_call_raising_is_a_turn_error(self):
        class Unreachable(FakeService):
            def stream(self, model, instructions, messages, tools):
                raise OSError("no route to host")

        report = ReportCollector()
        events = list(_agent(Unreachable(), report=report).send("hi"))

        assert len(events) == 1
        assert isinstance(events[0], TurnError)
        assert "no route to host" in str(events[0].error)
        assert report.timeline[0]["outcome"] == "error"

    def test_agent_usable_after_error(self):
        service = FakeService([[CompletionError("down")], _text("back")])
        agent = _agent(service)
        list(agent.send("one"))
        assert list(agent.send("two")) == [TextDelta("back")]


# ---------------------------------------------------------------------------
# Cancellation and early termination
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancelled_before_request(self):
        service = FakeService([_text("never")])
        cancel = threading.Event()
        cancel.set()

        events = list(_agent(service).send("hi", cancel=cancel))

        assert events == [TurnCancelled()]
        assert service.stream_calls == []

    def test_cancelled_mid_stream(self):
        service = FakeService([_text("a", "b", "c")])
        agent = _agent(service)
        cancel = threading.Event()

        events = []
        for event in agent.send("hi", cancel=cancel):
            events.append(event)
            if isinstance(event, TextDelta):
                cancel.set()

        assert events == [TextDelta("a"), TurnCancelled()]
        assert agent.messages() == [UserText("hi")]
        assert service.closed == 1

    def test_cancelled_between_tool_calls(self):
        service = FakeService(
            [_calls(("a", "echo", "{}"), ("b", "echo", "{}"))]
        )
        agent = _agent(service)
        cancel = threading.Event()

        events = []
        for event in agent.send("go", cancel=cancel):
            events.append(event)
            if isinstance(event, ToolResultReady):
                cancel.set()

        assert isinstance(events[-1], TurnCancelled)
        assert [m.id for m in agent.messages() if isinstance(m, ToolCall)] == ["a"]
        _assert_paired(agent.messages())

    def test_cancel_set_by_running_tool_stops_before_next_dispatch(self):
        cancel = threading.Event()
        ran = []

        def stop(**kwargs):
            ran.append("stop")
            cancel.set()
            return "stopping"

        tool = FunctionTool("stop", "Sets the cancel signal.", stop)
        service = FakeService([_calls(("a", "stop", "{}"), ("b", "stop", "{}"))])
        agent = _agent(service, tools=[tool])

        events = list(agent.send("go", cancel=cancel))

        assert ran == ["stop"]
        assert events[-2] == ToolResultReady("a", "stop", "stopping")
        assert events[-1] == TurnCancelled()
        _assert_paired(agent.messages())

    def test_cancellation_is_not_an_error(self):
        cancel = threading.Event()
        cancel.set()
        events = list(_agent(FakeService()).send("hi", cancel=cancel))
        assert not any(isinstance(e, TurnError) for e in events)

    def test_early_close_with_open_call(self):
        service = FakeService([_calls(("c1", "echo", "{}"))])
        agent = _agent(service)

        events = agent.send("go")
        assert isinstance(next(events), ToolCallStarted)
        events.close()

        assert agent.messages() == [
            UserText("go"),
            ToolCall("c1", "echo", "{}"),
            ToolResult("c1", "echo", CANCELLED_TOOL_OUTPUT),
        ]

    def test_early_close_mid_stream_commits_nothing(self):
        service = FakeService([_text("a", "b")])
        agent = _agent(service)

        events = agent.send("hi")
        next(events)
        events.close()

        assert agent.messages() == [UserText("hi")]
        assert service.closed == 1

    def test_agent_reusable_after_early_close(self):
        service = FakeService([_text("a", "b"), _text("again")])
        agent = _agent(service)
        events = agent.send("hi")
        next(events)
        events.close()

        assert list(agent.send("more")) == [TextDelta("again")]


class TestSingleFlight:
    def test_second_send_rejected_while_running(self):
        service = FakeService([_text("a", "b")])
        agent = _agent(service)

        first = agent.send("one")
        next(first)
        second = agent.send("two")
        with pytest.raises(AgentError, match="already running"):
            next(second)

        assert list(first) == [TextDelta("b")]
        assert UserText("two") not in agent.messages()

    def test_manual_compact_rejected_while_running(self):
        agent = _agent(FakeService([_text("a", "b")]))
        events = agent.send("one")
        next(events)
        with pytest.raises(AgentError, match="in progress"):
            agent.compact()
        list(events)


# ---------------------------------------------------------------------------
# Compaction inside a turn
# ---------------------------------------------------------------------------


def _big_history(n=6):
    return [UserText("u" * 400) for _ in range(n)]


def _compacting_agent(service, report=None):
    budgets = Budgets(max_context_tokens=500, reserve_tokens=0, keep_recent_tokens=100)
    agent = _agent(service, budgets=budgets, report=report)
    agent._history.replace(_big_history())
    return agent


class TestCompactionInTurn:
    def test_compaction_events_precede_request(self):
        service = FakeService([_text("ok")], summaries=["S"])
        agent = _compacting_agent(service)

        events = list(agent.send("q"))

        assert events[:2] == [CompactionStarted(600), CompactionFinished(600, 100)]
        assert events[2] == TextDelta("ok")
        sent = service.stream_calls[0]["messages"]
        assert sent == [UserText("S"), UserText("u" * 400), UserText("q")]

    def test_failed_compaction_is_absorbed(self):
        service = FakeService([_text("ok")], summaries=[CompletionError("no")])
        agent = _compacting_agent(service)

        events = list(agent.send("q"))

        assert events[:2] == [CompactionStarted(600), CompactionFinished(600, 600)]
        assert not any(isinstance(e, TurnError) for e in events)
        assert len(service.stream_calls[0]["messages"]) == 7
        assert agent.messages()[-1] == AssistantText("ok")

    def test_plain_exception_from_summarizer_is_absorbed(self):
        service = FakeService([_text("ok")], summaries=[ConnectionError("gateway down")])
        agent = _compacting_agent(service)

        events = list(agent.send("q"))

        assert events[:2] == [CompactionStarted(600), CompactionFinished(600, 600)]
        assert events[2:] == [TextDelta("ok")]
        assert agent.messages()[-1] == AssistantText("ok")

    def test_cancelled_turn_skips_compaction(self):
        service = FakeService([_text("never")], summaries=["S"])
        agent = _compacting_agent(service)
        cancel = threading.Event()
        cancel.set()

        events = list(agent.send("q", cancel=cancel))

        assert events == [TurnCancelled()]
        assert service.complete_calls == []
        assert service.stream_calls == []

    def test_no_compaction_below_threshold(self):
        service = FakeService([_text("ok")])
        budgets = Budgets(max_context_tokens=10_000, reserve_tokens=0, keep_recent_tokens=100)
        events = list(_agent(service, budgets=budgets).send("q"))
        assert not any(isinstance(e, CompactionStarted) for e in events)

    def test_disabled_by_default(self):
        service = FakeService([_text("ok")])
        agent = _agent(service)
        agent._history.replace(_big_history(100))
        events = list(agent.send("q"))
        assert events == [TextDelta("ok")]

    def test_manual_compact(self):
        service = FakeService(summaries=["S"])
        agent = _compacting_agent(service)
        assert agent.compact() == 100
        assert agent.messages()[0] == UserText("S")
        assert agent.estimate_tokens() == 100

    def test_report_counts_compactions(self):
        report = ReportCollector()
        service = FakeService([_text("ok")], summaries=["S"])
        list(_compacting_agent(service, report=report).send("q"))
        assert report.compactions == 1
        assert report.llm_calls == 1


class TestMisc:
    def test_clear(self):
        agent = _agent(FakeService([_text("ok")]))
        list(agent.send("hi"))
        agent.clear()
        assert agent.messages() == []

    def test_report_records_tools_and_calls(self):
        report = ReportCollector()
        service = FakeService(
            [_calls(("c1", "echo", "{}"), ("c2", "nope", "{}")), _text("ok") + [StreamUsage(7, 2)]]
        )
        list(_agent(service, report=report).send("go"))

        assert report.llm_calls == 2
        assert report.calls_by_tool["echo"] == {"succeeded": 1, "failed": 0}
        assert report.calls_by_tool["nope"] == {"succeeded": 0, "failed": 1}
        assert report.input_tokens == 7
        outcomes = [e["outcome"] for e in report.timeline if e["type"] == "llm_call"]
        assert outcomes == ["tool_calls", "stop"]
