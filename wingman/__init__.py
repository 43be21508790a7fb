"""wingman: a terminal coding agent with streaming output, tool calling and context compaction."""

from .agent import Agent, AgentConfig
from .compaction import Budgets
from .dispatch import FunctionTool, Tool
from .report import (
    AgentError,
    CompactionError,
    CompletionError,
    ConfigError,
    ContextOverflowError,
)
from .session import Result, Session

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentError",
    "Budgets",
    "CompactionError",
    "CompletionError",
    "ConfigError",
    "ContextOverflowError",
    "FunctionTool",
    "Result",
    "Session",
    "Tool",
]
