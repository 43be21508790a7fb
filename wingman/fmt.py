"""ANSI-formatted stderr output using Rich."""

import sys

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

PREVIEW_CHARS = 200


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Answer text -------------------------------------------------------------


def text_delta(text: str) -> None:
    """Stream answer text to stdout unformatted, so it can be piped."""
    sys.stdout.write(text)
    sys.stdout.flush()


def end_of_answer() -> None:
    sys.stdout.write("\n")
    sys.stdout.flush()


# -- Tool calls --------------------------------------------------------------


def _preview(text: str) -> str:
    first = text.strip().splitlines()[0] if text.strip() else ""
    if len(first) > PREVIEW_CHARS:
        first = first[:PREVIEW_CHARS] + "..."
    return first


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, output: str) -> None:
    _console.print(Text(f"  ✓ {name}", style="green"))
    preview = _preview(output)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {_preview(msg)}", style="red")
    _console.print(header)


# -- Compaction and usage ----------------------------------------------------


def compaction_started(tokens: int) -> None:
    _console.print(Rule(f"Compacting context (~{tokens} tokens)", style="cyan"))


def compaction_finished(before: int, after: int) -> None:
    if after < before:
        _console.print(
            Text(f"  Context compacted: ~{before} -> ~{after} tokens", style="dim")
        )
    else:
        _console.print(
            Text(f"  Context left as is (~{before} tokens)", style="yellow")
        )


def usage(input_tokens: int, output_tokens: int) -> None:
    _console.print(
        Text(f"  tokens: {input_tokens} in, {output_tokens} out", style="dim")
    )


# -- Diagnostics -------------------------------------------------------------


def model_info(provider: str, model: str) -> None:
    _console.print(Text(f"  {escape(provider)}: {escape(model)}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def cancelled() -> None:
    _console.print(Text("  Turn cancelled.", style="yellow"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
