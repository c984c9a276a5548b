"""Grove MCP: session and setup orchestration for worktree-bound agent terminals."""

__version__ = "0.3.0"

__all__ = ["__version__"]
