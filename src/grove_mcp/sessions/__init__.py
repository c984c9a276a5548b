"""Session lifecycle management."""

from .manager import (
    RepoNotFoundError,
    SessionError,
    SessionManager,
    SessionWithStatus,
    SpawnFailedError,
    WorktreeNotFoundError,
)

__all__ = [
    "RepoNotFoundError",
    "SessionError",
    "SessionManager",
    "SessionWithStatus",
    "SpawnFailedError",
    "WorktreeNotFoundError",
]
