"""Setup pipeline loading and execution."""

from .loader import SetupConfigError, load_worktree_steps, resolve_steps
from .runner import SetupManager, StepState, StepStatus

__all__ = [
    "SetupConfigError",
    "SetupManager",
    "StepState",
    "StepStatus",
    "load_worktree_steps",
    "resolve_steps",
]
