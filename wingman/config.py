"""Configuration file loading and provider resolution for wingman.

Reads TOML config from ~/.config/wingman/config.toml (global) and
<base_dir>/wingman.toml (project). Precedence: CLI > project > global >
environment > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # argparse default meaning "flag not given"

DEFAULT_MODEL = "gpt-5.2-codex"

# Accepted keys and their TOML types
CONFIG_KEYS: dict[str, type] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "instructions": str,
    "no_instructions": bool,
    "max_context_tokens": int,
    "reserve_tokens": int,
    "keep_recent_tokens": int,
    "color": bool,
    "quiet": bool,
}

_NON_NEGATIVE_KEYS = {"max_context_tokens", "reserve_tokens", "keep_recent_tokens"}

# Values used when neither the command line nor a config file sets the option
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "base_url": None,
    "instructions": None,
    "no_instructions": False,
    "max_context_tokens": 0,
    "reserve_tokens": 16384,
    "keep_recent_tokens": 20000,
    "color": False,
    "no_color": False,
    "quiet": False,
}


def global_config_dir() -> Path:
    """~/.config/wingman, or $XDG_CONFIG_HOME/wingman when that is set."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "wingman"


def _validate_config(config: dict, source: str) -> None:
    """Reject unknown keys, wrongly typed values and negative budgets."""
    for key, value in config.items():
        expected = CONFIG_KEYS.get(key)
        if expected is None:
            raise ConfigError(f"{source}: unknown config key {key!r}")
        # TOML booleans would otherwise pass as ints
        actual = type(value).__name__
        if (isinstance(value, bool) and expected is not bool) or not isinstance(value, expected):
            raise ConfigError(f"{source}: {key!r} expected {expected.__name__}, got {actual}")
        if key in _NON_NEGATIVE_KEYS and value < 0:
            raise ConfigError(f"{source}: {key!r} must be >= 0, got {value}")


def _warn_tracked_api_key(config_path: Path) -> None:
    """Print a warning when the project config holding an api_key sits in a git checkout."""
    for directory in config_path.parents:
        if (directory / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                "can leak into a commit; set it through the environment instead.",
                file=sys.stderr,
            )
            return


def _read_toml(path: Path) -> dict:
    """Parse and validate one TOML file; a missing file yields {}."""
    if not path.is_file():
        return {}
    try:
        config = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    _validate_config(config, str(path))
    return config


def load_config(base_dir: Path) -> dict:
    """Merge the global config file with <base_dir>/wingman.toml.

    Only keys present in a file appear in the result; project values win.
    """
    merged = _read_toml(global_config_dir() / "config.toml")
    project_path = Path(base_dir).resolve() / "wingman.toml"
    project = _read_toml(project_path)
    if "api_key" in project:
        _warn_tracked_api_key(project_path)
    merged.update(project)
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Resolve every option still at _UNSET: config value first, then default."""

    def unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    for key, value in config.items():
        if key == "color":
            # One key drives both --color and --no-color.
            if unset("color") and unset("no_color"):
                args.color, args.no_color = value, not value
        elif unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Map config keys onto Session(...) keyword arguments."""
    kwargs = {k: v for k, v in config.items() if k not in ("color", "quiet")}
    if "quiet" in config:
        kwargs["verbose"] = not config["quiet"]
    return kwargs


def resolve_provider(
    provider: str | None = None,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[str, str, str | None, str | None]:
    """Fill provider settings from the environment.

    Returns (provider, model, api_key, base_url). Without an explicit
    provider, WINGMAN_URL selects the wingman gateway, OPENAI_API_KEY
    selects OpenAI, and otherwise a local OpenAI-compatible server on
    localhost:8080 is assumed.
    """
    env = os.environ

    if provider is None:
        if "WINGMAN_URL" in env:
            provider = "wingman"
        elif "OPENAI_API_KEY" in env:
            provider = "openai"
        else:
            provider = "wingman"
            base_url = base_url or "http://localhost:8080"

    if provider == "wingman":
        url = base_url or env.get("WINGMAN_URL")
        if not url:
            raise ConfigError("--base-url or WINGMAN_URL required for wingman provider")
        url = url.rstrip("/")
        base_url = url if url.endswith("/v1") else url + "/v1"
        api_key = api_key or env.get("WINGMAN_TOKEN") or "-"
        model = model or env.get("WINGMAN_MODEL") or DEFAULT_MODEL
    elif provider == "openai":
        api_key = api_key or env.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigError("--api-key or OPENAI_API_KEY env var required for openai provider")
        base_url = base_url or env.get("OPENAI_BASE_URL")
        model = model or env.get("OPENAI_MODEL") or DEFAULT_MODEL
    elif provider == "openrouter":
        api_key = api_key or env.get("OPENROUTER_API_KEY")
        if not api_key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )
        if not model:
            raise ConfigError("--model is required when --provider is openrouter")
    elif provider == "lmstudio":
        if not model:
            raise ConfigError("--model is required when --provider is lmstudio")
    else:
        raise ConfigError(f"unknown provider {provider!r}")

    return provider, model, api_key, base_url


def generate_config(project: bool = False) -> str:
    """Template for --init-config, every setting commented out."""
    lines = [
        "# wingman configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/wingman.toml' if project else '~/.config/wingman/config.toml'}",
        "#",
        "# Command-line flags take precedence over anything set here.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"          # "openai" | "wingman" | "lmstudio" | "openrouter"',
        '# model = "gpt-5.2-codex"',
        '# api_key = "sk-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Instructions ---",
        '# instructions = "You are a helpful assistant."',
        "# no_instructions = false     # skip AGENTS.md / WINGMAN.md",
        "",
        "# --- Context compaction (estimated tokens; 0 disables) ---",
        "# max_context_tokens = 200000",
        "# reserve_tokens = 16384",
        "# keep_recent_tokens = 20000",
        "",
        "# --- UI ---",
        "# color = true                 # omit to auto-detect a terminal",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
