from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from pathlib import Path

import pytest

from grove_mcp.terminal import FakeTerminalRunner, TerminalRunner, TerminalToolNotFoundError
from grove_mcp.terminal.utils import (
    TMUX_REQUIRED_LINES,
    ensure_tmux_config,
    multiplexer_session_name,
    sanitize_environment,
    signal_process_group,
)


def _write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture()
def runner(tmp_path: Path) -> TerminalRunner:
    tmux = _write_script(tmp_path / "tmux", 'echo "$@"')
    ttyd = _write_script(tmp_path / "ttyd", "exit 0")
    return TerminalRunner(tmux=tmux, ttyd=ttyd)


def test_tmux_invocation_passes_arguments(runner: TerminalRunner) -> None:
    result = asyncio.run(runner.capture_pane("grove-abc"))

    assert result.ok
    assert result.stdout.strip() == "capture-pane -t grove-abc -p -S -"


def test_failing_command_reports_returncode(tmp_path: Path) -> None:
    tmux = _write_script(tmp_path / "tmux", "echo \"no server\" >&2\nexit 1")
    ttyd = _write_script(tmp_path / "ttyd", "exit 0")
    runner = TerminalRunner(tmux=tmux, ttyd=ttyd)

    result = asyncio.run(runner.kill_session("grove-missing"))

    assert not result.ok
    assert result.returncode == 1
    assert "no server" in result.stderr


def test_missing_executable_returns_127(runner: TerminalRunner, tmp_path: Path) -> None:
    result = asyncio.run(runner.run(str(tmp_path / "does-not-exist")))

    assert result.returncode == 127
    assert not result.ok


def test_terminal_tool_not_found(tmp_path: Path) -> None:
    with pytest.raises(TerminalToolNotFoundError):
        TerminalRunner(tmux=tmp_path / "missing-tmux", ttyd=tmp_path / "missing-ttyd")


def test_bridge_command_layout(runner: TerminalRunner, tmp_path: Path) -> None:
    cmd = runner.bridge_command(
        port=7690,
        session_name="grove-abc",
        worktree="/repos/app-feature",
        command=["claude", "--dangerously-skip-permissions"],
        cert_file=tmp_path / "host.crt",
        key_file=tmp_path / "host.key",
    )

    assert cmd[0] == str(runner.ttyd_path)
    assert cmd[1:3] == ["-p", "7690"]
    assert "-S" in cmd and "-W" in cmd
    assert cmd[cmd.index("-C") + 1] == str(tmp_path / "host.crt")
    assert cmd[cmd.index("-K") + 1] == str(tmp_path / "host.key")
    assert cmd[cmd.index("-t") + 1] == "fontSize=30"
    tail = cmd[cmd.index(str(runner.tmux_path)) :]
    assert tail[1:] == [
        "new-session",
        "-A",
        "-s",
        "grove-abc",
        "-c",
        "/repos/app-feature",
        "claude",
        "--dangerously-skip-permissions",
    ]


def test_is_alive_probes_real_processes(runner: TerminalRunner) -> None:
    assert asyncio.run(runner.is_alive(os.getpid()))
    assert not asyncio.run(runner.is_alive(0))


def test_sanitize_environment_strips_python_vars(monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/tmp/elsewhere")
    monkeypatch.setenv("VIRTUAL_ENV", "/tmp/venv")

    env = sanitize_environment({"EXTRA": "1"})

    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_multiplexer_session_name_is_prefixed() -> None:
    assert multiplexer_session_name("abc123") == "grove-abc123"


def test_ensure_tmux_config_creates_and_completes(tmp_path: Path) -> None:
    conf = tmp_path / ".tmux.conf"

    assert ensure_tmux_config(conf) is True
    assert ensure_tmux_config(conf) is False
    for line in TMUX_REQUIRED_LINES:
        assert line in conf.read_text(encoding="utf-8")

    partial = tmp_path / "partial.conf"
    partial.write_text("set -g history-limit 5000\nset -g mouse on\n", encoding="utf-8")
    assert ensure_tmux_config(partial) is True
    content = partial.read_text(encoding="utf-8")
    assert content.startswith("set -g history-limit 5000")
    assert content.count("set -g mouse on") == 1
    assert "set -s extended-keys on" in content


def test_signal_process_group_terminates_leader() -> None:
    process = subprocess.Popen(["sleep", "30"], start_new_session=True)
    try:
        assert signal_process_group(process.pid) is True
        assert process.wait(timeout=5) == -signal.SIGTERM
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()

    assert signal_process_group(process.pid) is False


def test_fake_runner_records_invocations() -> None:
    fake = FakeTerminalRunner(panes={"grove-a": "❯ "})

    captured = asyncio.run(fake.capture_pane("grove-a"))
    missing = asyncio.run(fake.capture_pane("grove-b"))
    killed = asyncio.run(fake.kill_session("grove-a"))

    assert captured.stdout == "❯ "
    assert not missing.ok
    assert killed.ok
    assert "grove-a" not in fake.panes
    assert fake.invocations[0] == ("capture-pane", "-t", "grove-a", "-p", "-S", "-")
