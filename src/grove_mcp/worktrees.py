"""Git worktree enumeration for registered repos."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .storage import Repo
from .terminal import TerminalRunner

logger = logging.getLogger(__name__)

_BRANCH_PREFIX = "branch refs/heads/"


@dataclass(slots=True, frozen=True)
class Worktree:
    path: str
    branch: str
    is_main: bool


def parse_worktree_porcelain(output: str, repo_path: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain``; detached heads are skipped."""

    main_path = str(Path(repo_path))
    worktrees: list[Worktree] = []
    current_path = ""
    current_branch = ""

    def _flush() -> None:
        if current_path and current_branch:
            worktrees.append(
                Worktree(
                    path=current_path,
                    branch=current_branch,
                    is_main=str(Path(current_path)) == main_path,
                )
            )

    for line in output.splitlines():
        if line.startswith("worktree "):
            current_path = line[len("worktree ") :]
        elif line.startswith(_BRANCH_PREFIX):
            current_branch = line[len(_BRANCH_PREFIX) :]
        elif not line.strip():
            _flush()
            current_path = ""
            current_branch = ""
    _flush()
    return worktrees


async def list_worktrees(runner: TerminalRunner, repo: Repo) -> list[Worktree]:
    result = await runner.git("-C", repo.path, "worktree", "list", "--porcelain")
    if not result.ok:
        logger.warning(
            "git worktree list failed",
            extra={"repo_id": repo.id, "returncode": result.returncode, "stderr": result.stderr.strip()},
        )
        return []
    return parse_worktree_porcelain(result.stdout, repo.path)


async def find_worktree(runner: TerminalRunner, repo: Repo, branch: str) -> Worktree | None:
    for worktree in await list_worktrees(runner, repo):
        if worktree.branch == branch:
            return worktree
    return None


__all__ = ["Worktree", "find_worktree", "list_worktrees", "parse_worktree_porcelain"]
