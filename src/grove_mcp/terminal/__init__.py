"""Terminal multiplexer and web-terminal bridge orchestration utilities."""

from .runner import (
    CommandResult,
    FakeTerminalRunner,
    TerminalRunner,
    TerminalToolError,
    TerminalToolNotFoundError,
)
from .state import ActivityState, StatePatterns, classify_scrollback, load_patterns

__all__ = [
    "ActivityState",
    "CommandResult",
    "FakeTerminalRunner",
    "StatePatterns",
    "TerminalRunner",
    "TerminalToolError",
    "TerminalToolNotFoundError",
    "classify_scrollback",
    "load_patterns",
]
