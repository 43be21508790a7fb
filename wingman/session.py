"""Public library API for wingman: Session class and Result dataclass."""

from collections.abc import Sequence
from dataclasses import dataclass

from .agent import Agent, AgentConfig
from .compaction import DEFAULT_KEEP_RECENT_TOKENS, DEFAULT_RESERVE_TOKENS, Budgets
from .completion import CompletionService, LiteLLMCompletionService
from .dispatch import Tool
from .messages import Message
from .report import ReportCollector, TurnCancelledError


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    messages: list[Message]
    error: str | None
    report: dict | None


class Session:
    """Programmatic interface to the wingman agent.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        instructions: str | None = None,
        no_instructions: bool = False,
        max_context_tokens: int = 0,
        reserve_tokens: int = DEFAULT_RESERVE_TOKENS,
        keep_recent_tokens: int = DEFAULT_KEEP_RECENT_TOKENS,
        tools: Sequence[Tool] | None = None,
        service: CompletionService | None = None,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.instructions = instructions
        self.no_instructions = no_instructions
        self.max_context_tokens = max_context_tokens
        self.reserve_tokens = reserve_tokens
        self.keep_recent_tokens = keep_recent_tokens
        self.extra_tools = list(tools or [])
        self.verbose = verbose

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._service = service
        self._model_id: str | None = None
        self._tools: list[Tool] = []
        self._system_content = ""
        self._instructions_loaded: list[str] = []

        # Per-conversation agent (for ask() mode)
        self._agent: Agent | None = None

    def _setup(self) -> None:
        """Resolve provider, tools and system prompt once."""
        if self._setup_done:
            return

        from .cli import build_system_prompt
        from .config import resolve_provider
        from .tools import builtin_tools

        provider, self._model_id, api_key, base_url = resolve_provider(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
        )
        self.provider = provider
        if self._service is None:
            self._service = LiteLLMCompletionService(
                provider, api_base=base_url, api_key=api_key
            )

        self._tools = builtin_tools(self.base_dir) + self.extra_tools

        self._system_content, self._instructions_loaded = build_system_prompt(
            base_dir=self.base_dir,
            instructions=self.instructions,
            no_instructions=self.no_instructions,
            verbose=self.verbose,
        )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _make_agent(self, report: ReportCollector | None = None) -> Agent:
        config = AgentConfig(
            model=self._model_id,
            instructions=self._system_content,
            budgets=Budgets(
                max_context_tokens=self.max_context_tokens,
                reserve_tokens=self.reserve_tokens,
                keep_recent_tokens=self.keep_recent_tokens,
            ),
        )
        return Agent(self._service, config, self._tools, report=report)

    def _settings(self) -> dict:
        return {
            "max_context_tokens": self.max_context_tokens,
            "reserve_tokens": self.reserve_tokens,
            "keep_recent_tokens": self.keep_recent_tokens,
            "instructions_loaded": self._instructions_loaded,
        }

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with a fresh agent. Each call is independent."""
        self._setup()

        from .cli import run_turn

        collector = ReportCollector() if report else None
        agent = self._make_agent(report=collector)
        answer, error = run_turn(agent, question, verbose=self.verbose, stream_text=False)

        report_dict = None
        if collector:
            if error is None:
                outcome = "success"
            elif isinstance(error, TurnCancelledError):
                outcome = "cancelled"
            else:
                outcome = "error"
            report_dict = collector.build_report(
                task=question,
                model=self._model_id or "unknown",
                provider=self.provider or "unknown",
                settings=self._settings(),
                outcome=outcome,
                answer=answer,
                exit_code=0 if error is None else 1,
                error_message=None if error is None else str(error),
            )

        return Result(
            answer=answer,
            messages=agent.messages(),
            error=None if error is None else str(error),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        from .cli import run_turn

        if self._agent is None:
            self._agent = self._make_agent()

        answer, error = run_turn(
            self._agent, question, verbose=self.verbose, stream_text=False
        )
        return Result(
            answer=answer,
            messages=self._agent.messages(),
            error=None if error is None else str(error),
            report=None,
        )

    def reset(self) -> None:
        """Drop the conversation without invalidating setup. Next ask() starts fresh."""
        self._agent = None
