from __future__ import annotations

import asyncio

from grove_mcp.storage import Repo
from grove_mcp.terminal import FakeTerminalRunner
from grove_mcp.worktrees import Worktree, find_worktree, list_worktrees, parse_worktree_porcelain

PORCELAIN = """worktree /repos/app
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repos/app-feature
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/login

worktree /repos/app-detached
HEAD 3333333333333333333333333333333333333333
detached
"""


def test_parse_worktree_porcelain() -> None:
    worktrees = parse_worktree_porcelain(PORCELAIN, "/repos/app")

    assert worktrees == [
        Worktree(path="/repos/app", branch="main", is_main=True),
        Worktree(path="/repos/app-feature", branch="feature/login", is_main=False),
    ]


def test_parse_without_trailing_blank_line() -> None:
    output = "worktree /repos/app\nHEAD abc\nbranch refs/heads/main"

    assert parse_worktree_porcelain(output, "/repos/app")[0].branch == "main"


def test_list_and_find_use_git() -> None:
    runner = FakeTerminalRunner(worktree_output=PORCELAIN)
    repo = Repo(id="r1", path="/repos/app", name="app")

    listed = asyncio.run(list_worktrees(runner, repo))
    found = asyncio.run(find_worktree(runner, repo, "feature/login"))
    missing = asyncio.run(find_worktree(runner, repo, "nope"))

    assert len(listed) == 2
    assert found is not None and found.path == "/repos/app-feature"
    assert missing is None
    assert runner.invocations[0] == ("-C", "/repos/app", "worktree", "list", "--porcelain")
