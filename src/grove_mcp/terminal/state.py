"""Infer agent activity from terminal scrollback.

The classifier is a pure function of the captured pane text and a pattern
table, so the table can be extended (or loaded from YAML) without touching the
session lifecycle code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import yaml

SCROLLBACK_TAIL = 30

DEFAULT_BUSY_MARKERS: tuple[str, ...] = (
    re.escape("esc to interrupt"),
    r"·\s+\S.*[.…]",
    re.escape("Running…"),
)

DEFAULT_WAITING_MARKERS: tuple[str, ...] = (
    "❯",
    re.escape("? for shortcuts"),
    r"✻ (Worked|Crunched) for",
    r"\b(Allow|Deny|Yes|No|allow|deny)\b",
)


class ActivityState(str, Enum):
    WAITING = "waiting"
    BUSY = "busy"
    IDLE = "idle"


class PatternLoadError(RuntimeError):
    """Raised when a state pattern file cannot be parsed or compiled."""


@dataclass(frozen=True, slots=True)
class StatePatterns:
    busy: tuple[re.Pattern[str], ...]
    waiting: tuple[re.Pattern[str], ...]

    @classmethod
    def compile(cls, busy: Iterable[str], waiting: Iterable[str]) -> "StatePatterns":
        try:
            return cls(
                busy=tuple(re.compile(expr) for expr in busy),
                waiting=tuple(re.compile(expr) for expr in waiting),
            )
        except re.error as exc:
            raise PatternLoadError(f"Invalid state pattern: {exc}") from exc


DEFAULT_PATTERNS = StatePatterns.compile(DEFAULT_BUSY_MARKERS, DEFAULT_WAITING_MARKERS)


def load_patterns(path: Path | None) -> StatePatterns:
    """Load ``busy``/``waiting`` regex lists from YAML; omitted keys keep the defaults."""

    if path is None:
        return DEFAULT_PATTERNS
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise PatternLoadError(f"Failed to read state patterns from {path}: {exc}") from exc

    if document is None:
        return DEFAULT_PATTERNS
    if not isinstance(document, dict):
        raise PatternLoadError(f"State pattern file {path} must be a mapping")

    busy = document.get("busy", DEFAULT_BUSY_MARKERS)
    waiting = document.get("waiting", DEFAULT_WAITING_MARKERS)
    if not isinstance(busy, (list, tuple)) or not isinstance(waiting, (list, tuple)):
        raise PatternLoadError("'busy' and 'waiting' must be lists of regular expressions")
    return StatePatterns.compile([str(item) for item in busy], [str(item) for item in waiting])


def scrollback_tail(text: str, limit: int = SCROLLBACK_TAIL) -> list[str]:
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-limit:]


def match_line(line: str, patterns: StatePatterns = DEFAULT_PATTERNS) -> ActivityState | None:
    """Return the state a single line points at, or None when it carries no marker."""

    if any(pattern.search(line) for pattern in patterns.busy):
        return ActivityState.BUSY
    if any(pattern.search(line) for pattern in patterns.waiting):
        return ActivityState.WAITING
    return None


def classify_scrollback(
    text: str,
    patterns: StatePatterns = DEFAULT_PATTERNS,
    *,
    tail: int = SCROLLBACK_TAIL,
) -> ActivityState:
    """Map captured scrollback to ``busy`` or ``waiting``.

    Only the busy markers decide the result: a busy marker anywhere in the
    tail wins, and everything else, including scrollback with no recognizable
    marker, is ``waiting`` so an ambiguous session surfaces as needing
    attention. The waiting markers are consulted by :func:`match_line` only.
    """

    for line in scrollback_tail(text, tail):
        if any(pattern.search(line) for pattern in patterns.busy):
            return ActivityState.BUSY
    return ActivityState.WAITING


__all__ = [
    "ActivityState",
    "DEFAULT_PATTERNS",
    "PatternLoadError",
    "SCROLLBACK_TAIL",
    "StatePatterns",
    "classify_scrollback",
    "load_patterns",
    "match_line",
    "scrollback_tail",
]
