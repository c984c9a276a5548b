"""Async adapters for the terminal multiplexer and web-terminal bridge CLIs."""

from __future__ import annotations

import asyncio
import itertools
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from .utils import sanitize_environment


class TerminalToolError(RuntimeError):
    """Base class for terminal tool errors."""


class TerminalToolNotFoundError(TerminalToolError):
    """Raised when the multiplexer or bridge executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TerminalRunner:
    """Drive tmux, ttyd and git asynchronously."""

    def __init__(self, *, tmux: Path | None = None, ttyd: Path | None = None) -> None:
        self._tmux_path = self._resolve_executable("tmux", tmux)
        self._ttyd_path = self._resolve_executable("ttyd", ttyd)

    @staticmethod
    def _resolve_executable(name: str, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise TerminalToolNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise TerminalToolNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def tmux_path(self) -> Path:
        return self._tmux_path

    @property
    def ttyd_path(self) -> Path:
        return self._ttyd_path

    async def run(self, *cmd: str) -> CommandResult:
        """Run a command to completion. Non-zero exits are reported, not raised."""

        return await self._invoke(*cmd)

    async def tmux(self, *args: str) -> CommandResult:
        return await self.run(str(self._tmux_path), *args)

    async def git(self, *args: str) -> CommandResult:
        return await self.run("git", *args)

    async def capture_pane(self, session_name: str) -> CommandResult:
        """Capture the full scrollback of a multiplexer session."""

        return await self.tmux("capture-pane", "-t", session_name, "-p", "-S", "-")

    async def kill_session(self, session_name: str) -> CommandResult:
        return await self.tmux("kill-session", "-t", session_name)

    async def set_option(self, session_name: str, option: str, value: str) -> CommandResult:
        return await self.tmux("set-option", "-t", session_name, option, value)

    def bridge_command(
        self,
        *,
        port: int,
        session_name: str,
        worktree: str,
        command: Sequence[str],
        cert_file: Path,
        key_file: Path,
    ) -> list[str]:
        return [
            str(self._ttyd_path),
            "-p",
            str(port),
            "-S",
            "-C",
            str(cert_file),
            "-K",
            str(key_file),
            "-W",
            "-t",
            "fontSize=30",
            str(self._tmux_path),
            "new-session",
            "-A",
            "-s",
            session_name,
            "-c",
            worktree,
            *command,
        ]

    async def spawn_bridge(
        self,
        *,
        port: int,
        session_name: str,
        worktree: str,
        command: Sequence[str],
        cert_file: Path,
        key_file: Path,
    ) -> asyncio.subprocess.Process:
        """Start the bridge process and return its handle without waiting for readiness."""

        cmd = self.bridge_command(
            port=port,
            session_name=session_name,
            worktree=worktree,
            command=command,
            cert_file=cert_file,
            key_file=key_file,
        )
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=sanitize_environment(),
        )

    async def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def signal_pid(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    async def _invoke(self, *cmd: str) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except OSError as exc:
            return CommandResult(args=tuple(cmd), returncode=127, stdout="", stderr=str(exc))
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeProcess:
    """Minimal stand-in for ``asyncio.subprocess.Process`` used by the fake runner."""

    def __init__(self, pid: int | None, runner: "FakeTerminalRunner") -> None:
        self.pid = pid
        self.returncode: int | None = None
        self._runner = runner

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def send_signal(self, sig: int) -> None:
        if self.pid is None or self.pid not in self._runner.alive:
            raise ProcessLookupError(self.pid)
        self._runner.alive.discard(self.pid)
        self._runner.signals.append((self.pid, sig))
        self.returncode = -sig


class FakeTerminalRunner(TerminalRunner):
    """Test double that simulates tmux/ttyd/git without spawning anything."""

    def __init__(  # type: ignore[override]
        self,
        *,
        panes: Mapping[str, str] | None = None,
        worktree_output: str = "",
        alive: Iterable[int] | None = None,
        spawn_delay: float = 0.0,
    ) -> None:
        self._tmux_path = Path("/tmp/fake-tmux")
        self._ttyd_path = Path("/tmp/fake-ttyd")
        self.panes: dict[str, str] = dict(panes or {})
        self.worktree_output = worktree_output
        self.alive: set[int] = set(alive or [])
        self.spawn_delay = spawn_delay
        self.fail_spawn = False
        self.spawns: list[dict[str, object]] = []
        self.signals: list[tuple[int, int]] = []
        self._invocations: list[tuple[str, ...]] = []
        self._pids = itertools.count(40000)

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    async def spawn_bridge(  # type: ignore[override]
        self,
        *,
        port: int,
        session_name: str,
        worktree: str,
        command: Sequence[str],
        cert_file: Path,
        key_file: Path,
    ) -> FakeProcess:
        if self.spawn_delay:
            await asyncio.sleep(self.spawn_delay)
        if self.fail_spawn:
            return FakeProcess(None, self)
        pid = next(self._pids)
        self.alive.add(pid)
        self.spawns.append(
            {"port": port, "session_name": session_name, "worktree": worktree, "command": list(command), "pid": pid}
        )
        return FakeProcess(pid, self)

    async def is_alive(self, pid: int) -> bool:  # type: ignore[override]
        return pid in self.alive

    def signal_pid(self, pid: int, sig: int = signal.SIGTERM) -> bool:  # type: ignore[override]
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        self.signals.append((pid, sig))
        return True

    async def _invoke(self, *cmd: str) -> CommandResult:  # type: ignore[override]
        args = tuple(cmd[1:])
        self._invocations.append(args)
        if args[:1] == ("capture-pane",):
            target = args[args.index("-t") + 1]
            if target not in self.panes:
                return CommandResult(args=args, returncode=1, stdout="", stderr="can't find session")
            return CommandResult(args=args, returncode=0, stdout=self.panes[target], stderr="")
        if args[:1] == ("kill-session",):
            target = args[args.index("-t") + 1]
            if self.panes.pop(target, None) is None:
                return CommandResult(args=args, returncode=1, stdout="", stderr="can't find session")
        if "worktree" in args:
            return CommandResult(args=args, returncode=0, stdout=self.worktree_output, stderr="")
        return CommandResult(args=args, returncode=0, stdout="", stderr="")


__all__ = [
    "CommandResult",
    "FakeProcess",
    "FakeTerminalRunner",
    "TerminalRunner",
    "TerminalToolError",
    "TerminalToolNotFoundError",
]
