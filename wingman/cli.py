"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import logging
import os
import sys
import threading
from datetime import date
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import Agent, AgentConfig
from .compaction import Budgets
from .completion import PROVIDERS, LiteLLMCompletionService
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_provider,
)
from .events import (
    CompactionFinished,
    CompactionStarted,
    TextDelta,
    ToolCallStarted,
    ToolResultReady,
    TurnCancelled,
    TurnError,
    UsageReport,
)
from .report import AgentError, CompactionError, ReportCollector, TurnCancelledError
from .tools import builtin_tools

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_INSTRUCTIONS_CHARS = 10_000


def load_instructions(base_dir: str, verbose: bool) -> tuple[str, list[str]]:
    """Load AGENTS.md and/or WINGMAN.md from base_dir, if present.

    Returns (combined_text, filenames_loaded) where combined_text is
    XML-tagged sections (or "" if none found).
    """
    sections = []
    loaded: list[str] = []
    for filename, tag in [
        ("AGENTS.md", "agent-instructions"),
        ("WINGMAN.md", "project-instructions"),
    ]:
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            file_size = path.stat().st_size
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
        except OSError:
            continue
        if len(content) > MAX_INSTRUCTIONS_CHARS:
            content = (
                content[:MAX_INSTRUCTIONS_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_INSTRUCTIONS_CHARS} character limit]"
            )
        if verbose:
            fmt.info(f"Loaded {filename} ({file_size} bytes) from {path.parent}")
        sections.append(f"<{tag}>\n{content}\n</{tag}>")
        loaded.append(filename)
    return "\n\n".join(sections), loaded


def build_system_prompt(
    *,
    base_dir: str,
    instructions: str | None = None,
    no_instructions: bool = False,
    verbose: bool = False,
) -> tuple[str, list[str]]:
    """Assemble the system prompt: base prompt, project instructions, date."""
    if instructions is not None:
        base = instructions.strip()
    else:
        base = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()

    parts = [base] if base else []
    loaded: list[str] = []
    if not no_instructions:
        project_text, loaded = load_instructions(base_dir, verbose)
        if project_text:
            parts.append(project_text)
    parts.append(f"Current date: {date.today().isoformat()}")
    return "\n\n".join(parts), loaded


def run_turn(
    agent: Agent,
    query: str,
    *,
    verbose: bool = True,
    stream_text: bool = True,
    cancel: threading.Event | None = None,
) -> tuple[str | None, AgentError | None]:
    """Drive one agent turn, rendering its events.

    Returns (answer, error). The answer is the text streamed after the
    last tool call. Ctrl-C cancels the turn instead of propagating.
    """
    cancel = cancel or threading.Event()
    chunks: list[str] = []
    line_open = False

    def _close_line():
        nonlocal line_open
        if line_open:
            fmt.end_of_answer()
            line_open = False

    events = agent.send(query, cancel=cancel)
    try:
        for event in events:
            match event:
                case TextDelta(text=text):
                    chunks.append(text)
                    if stream_text:
                        fmt.text_delta(text)
                        line_open = True
                case ToolCallStarted(name=name, arguments=arguments):
                    # Text before a tool call is narration, not the answer
                    chunks.clear()
                    _close_line()
                    if verbose:
                        fmt.tool_call(name, arguments)
                case ToolResultReady(name=name, output=output):
                    if verbose:
                        if output.startswith("error:"):
                            fmt.tool_error(name, output)
                        else:
                            fmt.tool_result(name, output)
                case CompactionStarted(from_tokens=tokens):
                    _close_line()
                    if verbose:
                        fmt.compaction_started(tokens)
                case CompactionFinished(from_tokens=before, to_tokens=after):
                    if verbose:
                        fmt.compaction_finished(before, after)
                case UsageReport(input_tokens=input_tokens, output_tokens=output_tokens):
                    if verbose:
                        _close_line()
                        fmt.usage(input_tokens, output_tokens)
                case TurnError(error=error):
                    _close_line()
                    if isinstance(error, AgentError):
                        return None, error
                    return None, AgentError(str(error))
                case TurnCancelled():
                    _close_line()
                    return None, TurnCancelledError("turn cancelled")
    except KeyboardInterrupt:
        cancel.set()
        return None, TurnCancelledError("turn cancelled")
    finally:
        events.close()
        _close_line()

    answer = "".join(chunks)
    return (answer or None), None


def build_parser():
    """Build and return the argument parser.

    Options that may come from a config file default to _UNSET so that
    apply_config_to_args() can tell "not given" from "given".
    """
    parser = argparse.ArgumentParser(
        prog="wingman",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent with streaming output, tool calling and context compaction.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: picked from WINGMAN_URL / OPENAI_API_KEY).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: gpt-5.2-codex, or WINGMAN_MODEL / OPENAI_MODEL).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (overrides WINGMAN_URL / OPENAI_BASE_URL).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory the file tools operate in (default: current directory).",
    )
    parser.add_argument(
        "--instructions",
        default=_UNSET,
        help="Replace the built-in system prompt with this text.",
    )
    parser.add_argument(
        "--no-instructions",
        action="store_true",
        default=_UNSET,
        help="Don't load AGENTS.md / WINGMAN.md from the base directory.",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size in estimated tokens; 0 disables compaction (default: 0).",
    )
    parser.add_argument(
        "--reserve-tokens",
        type=int,
        default=_UNSET,
        help="Headroom kept free for the response (default: 16384).",
    )
    parser.add_argument(
        "--keep-recent-tokens",
        type=int,
        default=_UNSET,
        help="Recent history kept verbatim when compacting (default: 20000).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Only print the answer; no tool or compaction diagnostics.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        dest="debug",
        action="store_true",
        help="Enable debug logging.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("wingman")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(), end="")
        sys.exit(0)

    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.max_context_tokens and args.reserve_tokens >= args.max_context_tokens:
        parser.error("--reserve-tokens must be smaller than --max-context-tokens")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=getattr(args, "_resolved_model_id", args.model or "unknown"),
            provider=getattr(args, "_resolved_provider", args.provider or "unknown"),
            settings={
                "max_context_tokens": args.max_context_tokens,
                "reserve_tokens": args.reserve_tokens,
                "keep_recent_tokens": args.keep_recent_tokens,
                "instructions_loaded": getattr(args, "_resolved_instructions", []),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except TurnCancelledError as e:
        fmt.cancelled()
        _write_report("cancelled", exit_code=1, error_message=str(e))
        sys.exit(1)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _run_main(args, report, _write_report):
    provider, model_id, api_key, base_url = resolve_provider(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
    )
    args._resolved_provider = provider
    args._resolved_model_id = model_id
    if args.verbose:
        fmt.model_info(provider, model_id)

    service = LiteLLMCompletionService(provider, api_base=base_url, api_key=api_key)

    system_content, loaded = build_system_prompt(
        base_dir=args.base_dir,
        instructions=args.instructions,
        no_instructions=args.no_instructions,
        verbose=args.verbose,
    )
    args._resolved_instructions = loaded

    config = AgentConfig(
        model=model_id,
        instructions=system_content,
        budgets=Budgets(
            max_context_tokens=args.max_context_tokens,
            reserve_tokens=args.reserve_tokens,
            keep_recent_tokens=args.keep_recent_tokens,
        ),
    )
    agent = Agent(service, config, builtin_tools(args.base_dir), report=report)

    if args.repl:
        repl_loop(agent, base_dir=args.base_dir, verbose=args.verbose, question=args.question)
        return

    answer, error = run_turn(agent, args.question, verbose=args.verbose)
    if error is not None:
        raise error
    _write_report("success", answer=answer, exit_code=0)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation so far\n"
        "  /compact           Summarize older history now\n"
        "  /tokens            Show the estimated context size\n"
        "  /exit, /quit       Exit the REPL\n"
        "Ctrl-C cancels a running turn."
    )


def _repl_clear(agent: Agent) -> None:
    dropped = len(agent.messages())
    agent.clear()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compact(agent: Agent) -> None:
    """Manually compact conversation context."""
    before = agent.estimate_tokens()
    try:
        after = agent.compact()
    except CompactionError as e:
        fmt.warning(f"compaction failed: {e}")
        return
    if after is None:
        fmt.info(f"nothing to compact (~{before} tokens)")
        return
    fmt.info(f"compacted: {before} -> {after} tokens ({before - after} saved)")


def _repl_tokens(agent: Agent) -> None:
    fmt.context_stats(f"context ({len(agent.messages())} messages)", agent.estimate_tokens())


def _repl_ask(agent: Agent, line: str, verbose: bool) -> None:
    _, error = run_turn(agent, line, verbose=verbose)
    if isinstance(error, TurnCancelledError):
        fmt.cancelled()
    elif error is not None:
        fmt.error(str(error))


def repl_loop(
    agent: Agent,
    *,
    base_dir: str,
    verbose: bool,
    question: str | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".wingman", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "wingman> ")])

    if verbose:
        fmt.repl_banner()

    if question:
        _repl_ask(agent, question, verbose)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        elif cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            _repl_clear(agent)
        elif cmd == "/compact":
            _repl_compact(agent)
        elif cmd == "/tokens":
            _repl_tokens(agent)
        else:
            _repl_ask(agent, line, verbose)
