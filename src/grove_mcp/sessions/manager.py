"""Session lifecycle: create, stop, reconcile and describe terminal sessions."""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol
from uuid import uuid4

from pydantic import BaseModel

from ..config import GroveSettings
from ..storage import ConfigStore, RegistryError, SessionRecord, SessionRegistry
from ..terminal import ActivityState, StatePatterns, TerminalRunner, classify_scrollback
from ..terminal.state import DEFAULT_PATTERNS
from ..terminal.utils import ensure_tmux_config, multiplexer_session_name
from ..worktrees import find_worktree

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for session lifecycle errors."""


class RepoNotFoundError(SessionError):
    """Raised when a create request names an unknown repo."""


class WorktreeNotFoundError(SessionError):
    """Raised when the repo has no worktree checked out on the requested branch."""


class SpawnFailedError(SessionError):
    """Raised when the bridge process never yields a usable process id."""


class SessionEvents(Protocol):
    def notify_sessions_changed(self) -> None:
        ...


class SessionWithStatus(BaseModel):
    """A session record as reported to clients: liveness and activity, no pid."""

    id: str
    repo_id: str
    repo_name: str
    worktree: str
    branch: str
    port: int
    terminal_url: str
    created_at: datetime
    skip_permissions: bool
    is_active: bool
    state: ActivityState

    @classmethod
    def from_record(
        cls,
        record: SessionRecord,
        *,
        is_active: bool,
        state: ActivityState,
        terminal_url: str,
    ) -> "SessionWithStatus":
        payload = record.model_dump(exclude={"pid"})
        payload["terminal_url"] = record.terminal_url or terminal_url
        return cls(**payload, is_active=is_active, state=state)


class SessionManager:
    """Owns the bridge/multiplexer pair of every session.

    The registry on disk is the source of truth. ``_processes`` only caches
    process handles created by this process for faster termination; it is
    empty after a restart and the persisted pid is used instead.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        config_store: ConfigStore,
        runner: TerminalRunner,
        settings: GroveSettings,
        *,
        patterns: StatePatterns = DEFAULT_PATTERNS,
        tmux_config: Path | None = None,
        mouse_delay: float = 1.0,
        events: SessionEvents | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._registry = registry
        self._config_store = config_store
        self._runner = runner
        self._settings = settings
        self._patterns = patterns
        self._tmux_config = tmux_config
        self._mouse_delay = mouse_delay
        self._id_factory = id_factory or (lambda: uuid4().hex[:8])
        self._lock = asyncio.Lock()
        self._processes: dict[str, Any] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._reconciler: asyncio.Task[None] | None = None
        self._tmux_config_checked = False
        self.events = events

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def process_for(self, session_id: str) -> Any | None:
        return self._processes.get(session_id)

    def _agent_command(self, skip_permissions: bool) -> list[str]:
        claude = self._settings.claude_path or shutil.which("claude") or "claude"
        command = [claude]
        if skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command

    def _ensure_tmux_config(self) -> None:
        if self._tmux_config is None or self._tmux_config_checked:
            return
        try:
            ensure_tmux_config(self._tmux_config)
        except OSError as exc:
            logger.warning("Could not update tmux config", extra={"error": str(exc)})
        self._tmux_config_checked = True

    def _notify(self) -> None:
        if self.events is not None:
            self.events.notify_sessions_changed()

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def create_session(
        self,
        repo_id: str,
        worktree_branch: str,
        skip_permissions: bool = False,
    ) -> SessionRecord:
        """Spawn a bridge for the worktree on ``worktree_branch`` and persist it.

        Port selection, spawn and persistence happen under one FIFO lock so no
        two concurrent creations can observe the same port.
        """

        logger.info("Creating session", extra={"repo_id": repo_id, "branch": worktree_branch})
        repo = self._config_store.get_repo(repo_id)
        if repo is None:
            raise RepoNotFoundError(f"Repo '{repo_id}' not found")

        worktree = await find_worktree(self._runner, repo, worktree_branch)
        if worktree is None:
            raise WorktreeNotFoundError(
                f"Worktree for branch '{worktree_branch}' not found in repo '{repo.name}'"
            )

        record = SessionRecord(
            id=self._id_factory(),
            repo_id=repo.id,
            repo_name=repo.name,
            worktree=worktree.path,
            branch=worktree.branch,
            created_at=datetime.now(timezone.utc),
            skip_permissions=skip_permissions,
        )
        session_name = multiplexer_session_name(record.id)

        async with self._lock:
            state = self._registry.load()
            port = state.next_port
            self._ensure_tmux_config()
            logger.info("Starting bridge", extra={"session_id": record.id, "port": port})
            try:
                process = await self._runner.spawn_bridge(
                    port=port,
                    session_name=session_name,
                    worktree=record.worktree,
                    command=self._agent_command(skip_permissions),
                    cert_file=self._settings.resolved_cert_file,
                    key_file=self._settings.resolved_key_file,
                )
            except OSError as exc:
                logger.error("Bridge spawn raised", extra={"session_id": record.id, "error": str(exc)})
                raise SpawnFailedError(f"Failed to start terminal bridge: {exc}") from exc

            pid = getattr(process, "pid", None)
            if not pid:
                logger.error("Bridge produced no pid", extra={"session_id": record.id, "port": port})
                raise SpawnFailedError("Failed to start terminal bridge: no process id")

            self._processes[record.id] = process
            record.port = port
            record.pid = pid
            record.terminal_url = self._settings.terminal_url(port)
            state.sessions.append(record)
            state.next_port = port + 1
            self._registry.save(state)

        logger.info("Session created", extra={"session_id": record.id, "port": port, "pid": pid})
        self._spawn_background(self._enable_mouse(session_name))
        self._notify()
        return record

    async def _enable_mouse(self, session_name: str) -> None:
        await asyncio.sleep(self._mouse_delay)
        result = await self._runner.set_option(session_name, "mouse", "on")
        if not result.ok:
            logger.debug("Could not enable mouse", extra={"session": session_name, "stderr": result.stderr.strip()})

    async def stop_session(self, session_id: str) -> bool:
        """Terminate the session's processes and drop its record.

        Returns False only when neither a record nor a process handle is known.
        """

        logger.info("Stopping session", extra={"session_id": session_id})
        record = self._registry.get(session_id)
        process = self._processes.pop(session_id, None)
        if record is None and process is None:
            logger.info("Session not found", extra={"session_id": session_id})
            return False

        if process is not None:
            try:
                process.terminate()
                logger.info("Terminated bridge process", extra={"session_id": session_id})
            except ProcessLookupError:
                logger.debug("Bridge process already gone", extra={"session_id": session_id})
        elif record is not None and record.pid:
            signalled = self._runner.signal_pid(record.pid)
            logger.info(
                "Signalled bridge by pid",
                extra={"session_id": session_id, "pid": record.pid, "delivered": signalled},
            )

        result = await self._runner.kill_session(multiplexer_session_name(session_id))
        if not result.ok:
            logger.debug(
                "Multiplexer session not killed",
                extra={"session_id": session_id, "stderr": result.stderr.strip()},
            )

        async with self._lock:
            state = self._registry.load()
            state.sessions = [entry for entry in state.sessions if entry.id != session_id]
            self._registry.save(state)

        self._notify()
        return True

    async def _probe(self, pid: int) -> bool:
        try:
            return await self._runner.is_alive(pid)
        except OSError as exc:
            logger.debug("Liveness probe failed", extra={"pid": pid, "error": str(exc)})
            return False

    async def reconcile_stale_sessions(self) -> list[str]:
        """Drop registry entries whose bridge is no longer running.

        Returns the ids that were removed.
        """

        async with self._lock:
            state = self._registry.load()
            probes = await asyncio.gather(*(self._probe(record.pid) for record in state.sessions))
            valid = [record for record, alive in zip(state.sessions, probes) if alive]
            stale = [record for record, alive in zip(state.sessions, probes) if not alive]

            for record in stale:
                logger.info("Removing stale session", extra={"session_id": record.id, "pid": record.pid})
                self._processes.pop(record.id, None)
                result = await self._runner.kill_session(multiplexer_session_name(record.id))
                if not result.ok:
                    logger.info(
                        "Stale multiplexer session could not be killed",
                        extra={"session_id": record.id, "stderr": result.stderr.strip()},
                    )

            if stale:
                state.sessions = valid
                self._registry.save(state)

        logger.info("Reconciliation complete", extra={"before": len(probes), "after": len(valid)})
        if stale:
            self._notify()
        return [record.id for record in stale]

    async def session_state(self, session_id: str) -> ActivityState:
        """Classify a live session from its scrollback; probe errors read as idle."""

        try:
            result = await self._runner.capture_pane(multiplexer_session_name(session_id))
        except OSError as exc:
            logger.debug("Pane capture failed", extra={"session_id": session_id, "error": str(exc)})
            return ActivityState.IDLE
        if not result.ok:
            return ActivityState.IDLE
        return classify_scrollback(result.stdout, self._patterns)

    async def _describe(self, record: SessionRecord) -> SessionWithStatus:
        is_active = await self._probe(record.pid)
        state = await self.session_state(record.id) if is_active else ActivityState.IDLE
        return SessionWithStatus.from_record(
            record,
            is_active=is_active,
            state=state,
            terminal_url=self._settings.terminal_url(record.port),
        )

    async def list_sessions(self) -> list[SessionWithStatus]:
        records = self._registry.load().sessions
        logger.debug("Listing sessions", extra={"count": len(records)})
        return list(await asyncio.gather(*(self._describe(record) for record in records)))

    def start_reconciler(self, interval: float | None = None) -> asyncio.Task[None]:
        if self._reconciler is None or self._reconciler.done():
            period = interval or self._settings.reconcile_interval
            self._reconciler = asyncio.create_task(self._reconcile_forever(period))
        return self._reconciler

    async def _reconcile_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_stale_sessions()
            except RegistryError as exc:
                logger.error("Periodic reconciliation failed", extra={"error": str(exc)})

    async def aclose(self) -> None:
        tasks = list(self._background)
        if self._reconciler is not None:
            tasks.append(self._reconciler)
            self._reconciler = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "RepoNotFoundError",
    "SessionError",
    "SessionEvents",
    "SessionManager",
    "SessionWithStatus",
    "SpawnFailedError",
    "WorktreeNotFoundError",
]
