"""Per-session setup pipelines.

A pipeline is an ordered list of shell steps run in the session's worktree.
Foreground steps run one at a time and a non-zero exit halts the pipeline.
Background steps are started, handed to a watcher task, and the pipeline moves
on immediately. Every step runs as its own process-group leader so
cancellation can take down anything the step spawned.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol

from ..storage import SetupStep
from ..terminal.utils import sanitize_environment, signal_process_group
from .loader import resolve_steps

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"


class ProgressPublisher(Protocol):
    def __call__(
        self,
        session_id: str,
        step: int,
        status: str,
        output: str | None = None,
        *,
        name: str | None = None,
    ) -> None:
        ...


@dataclass(slots=True)
class StepState:
    name: str
    run: str
    background: bool = False
    status: StepStatus = StepStatus.PENDING
    output: str = ""

    @classmethod
    def from_step(cls, step: SetupStep) -> "StepState":
        return cls(name=step.name, run=step.run, background=step.background)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "run": self.run,
            "background": self.background,
            "status": self.status.value,
            "output": self.output,
        }


@dataclass(slots=True)
class ActiveSetup:
    session_id: str
    worktree_path: str
    steps: list[StepState]
    cancelled: bool = False
    processes: dict[int, asyncio.subprocess.Process] = field(default_factory=dict)
    watchers: dict[int, asyncio.Task[None]] = field(default_factory=dict)
    pipeline: asyncio.Task[None] | None = None


class SetupManager:
    """Run, cancel, retry and inspect setup pipelines keyed by session id."""

    def __init__(
        self,
        publish: ProgressPublisher | None = None,
        *,
        shell: str = "/bin/sh",
        chunk_size: int = 4096,
        output_limit: int = 65536,
    ) -> None:
        self._publish_fn = publish
        self._shell = shell
        self._chunk_size = chunk_size
        self._output_limit = output_limit
        self._setups: dict[str, ActiveSetup] = {}

    def set_publisher(self, publish: ProgressPublisher | None) -> None:
        self._publish_fn = publish

    def _publish(self, setup: ActiveSetup, index: int, output: str | None = None) -> None:
        if self._publish_fn is None:
            return
        step = setup.steps[index]
        self._publish_fn(setup.session_id, index, step.status.value, output, name=step.name)

    def _set_status(self, setup: ActiveSetup, index: int, status: StepStatus) -> None:
        step = setup.steps[index]
        step.status = status
        logger.info(
            "Setup step %s",
            status.value,
            extra={"session_id": setup.session_id, "step": index, "step_name": step.name},
        )
        self._publish(setup, index)

    @staticmethod
    def _owns(setup: ActiveSetup, index: int, process: Any) -> bool:
        return setup.processes.get(index) is process

    @staticmethod
    def _terminate(process: Any) -> None:
        if process.returncode is None and process.pid:
            signal_process_group(process.pid)

    async def _spawn(self, setup: ActiveSetup, step: StepState) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self._shell,
            "-c",
            step.run,
            cwd=setup.worktree_path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            env=sanitize_environment(),
        )

    async def _stream(self, setup: ActiveSetup, index: int, process: asyncio.subprocess.Process) -> int:
        """Pump combined output into the step buffer until EOF, then reap the process.

        Subscribers see every chunk; the stored buffer keeps only the newest
        ``output_limit`` characters.
        """

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        step = setup.steps[index]
        stdout = process.stdout
        if stdout is None:
            raise RuntimeError(f"Setup step {index} was spawned without an output pipe")
        while True:
            chunk = await stdout.read(self._chunk_size)
            text = decoder.decode(chunk, final=not chunk)
            if text and self._owns(setup, index, process):
                step.output = (step.output + text)[-self._output_limit :]
                self._publish(setup, index, text)
            if not chunk:
                break
        return await process.wait()

    async def _start_process(self, setup: ActiveSetup, index: int) -> asyncio.subprocess.Process | None:
        step = setup.steps[index]
        step.output = ""
        self._set_status(setup, index, StepStatus.RUNNING)
        try:
            process = await self._spawn(setup, step)
        except OSError as exc:
            step.output = str(exc)
            logger.error(
                "Setup step failed to spawn",
                extra={"session_id": setup.session_id, "step": index, "error": str(exc)},
            )
            self._set_status(setup, index, StepStatus.FAILED)
            return None
        setup.processes[index] = process
        return process

    def _watch(self, setup: ActiveSetup, index: int, process: asyncio.subprocess.Process) -> None:
        setup.watchers[index] = asyncio.create_task(self._watch_background(setup, index, process))

    async def _watch_background(
        self,
        setup: ActiveSetup,
        index: int,
        process: asyncio.subprocess.Process,
    ) -> None:
        returncode = await self._stream(setup, index, process)
        # A stop or restart in the meantime replaced or removed our process.
        if not self._owns(setup, index, process) or setup.steps[index].status is not StepStatus.RUNNING:
            return
        setup.processes.pop(index, None)
        self._set_status(setup, index, StepStatus.DONE if returncode == 0 else StepStatus.FAILED)

    async def _run_steps(self, setup: ActiveSetup, from_index: int) -> None:
        for index in range(from_index, len(setup.steps)):
            if setup.cancelled:
                return

            step = setup.steps[index]
            process = await self._start_process(setup, index)
            if process is None:
                if step.background:
                    continue
                return
            if setup.cancelled:
                setup.processes.pop(index, None)
                self._terminate(process)
                return

            if step.background:
                self._watch(setup, index, process)
                continue

            returncode = await self._stream(setup, index, process)
            if setup.cancelled or not self._owns(setup, index, process):
                return
            setup.processes.pop(index, None)
            if returncode != 0:
                logger.warning(
                    "Setup halted on failed step",
                    extra={"session_id": setup.session_id, "step": index, "returncode": returncode},
                )
                self._set_status(setup, index, StepStatus.FAILED)
                return
            self._set_status(setup, index, StepStatus.DONE)

    async def start_setup(
        self,
        session_id: str,
        worktree_path: Path | str,
        default_steps: Iterable[SetupStep] | None = None,
    ) -> bool:
        """Begin provisioning a session. Returns False when there is nothing to run."""

        steps = resolve_steps(worktree_path, default_steps)
        if not steps:
            logger.debug("No setup steps for session", extra={"session_id": session_id})
            return False

        if session_id in self._setups:
            self.cleanup_setup(session_id)

        setup = ActiveSetup(
            session_id=session_id,
            worktree_path=str(worktree_path),
            steps=[StepState.from_step(step) for step in steps],
        )
        self._setups[session_id] = setup
        logger.info("Starting setup", extra={"session_id": session_id, "steps": len(setup.steps)})
        setup.pipeline = asyncio.create_task(self._run_steps(setup, 0))
        return True

    async def retry_setup(self, session_id: str) -> str | None:
        """Resume from the first failed step (or, failing that, the first stopped one)."""

        setup = self._setups.get(session_id)
        if setup is None:
            return f"No setup found for session '{session_id}'"
        if setup.pipeline is not None and not setup.pipeline.done():
            return "Setup is still running"

        statuses = [step.status for step in setup.steps]
        if StepStatus.FAILED in statuses:
            start = statuses.index(StepStatus.FAILED)
        elif StepStatus.STOPPED in statuses:
            start = statuses.index(StepStatus.STOPPED)
        else:
            return "No failed step to retry"

        for index in range(start, len(setup.steps)):
            process = setup.processes.pop(index, None)
            if process is not None:
                self._terminate(process)
            setup.steps[index].output = ""
            self._set_status(setup, index, StepStatus.PENDING)

        setup.cancelled = False
        logger.info("Retrying setup", extra={"session_id": session_id, "from_step": start})
        setup.pipeline = asyncio.create_task(self._run_steps(setup, start))
        return None

    def cancel_setup(self, session_id: str) -> str | None:
        setup = self._setups.get(session_id)
        if setup is None:
            return f"No setup found for session '{session_id}'"

        setup.cancelled = True
        for index, process in list(setup.processes.items()):
            logger.info(
                "Killing setup process group",
                extra={"session_id": session_id, "step": index, "pid": process.pid},
            )
            self._terminate(process)
        setup.processes.clear()

        for index, step in enumerate(setup.steps):
            if step.status is StepStatus.RUNNING:
                self._set_status(setup, index, StepStatus.STOPPED)
        logger.info("Cancelled setup", extra={"session_id": session_id})
        return None

    def _validate_step(self, session_id: str, index: int) -> tuple[ActiveSetup | None, str | None]:
        setup = self._setups.get(session_id)
        if setup is None:
            return None, f"No setup found for session '{session_id}'"
        if not 0 <= index < len(setup.steps):
            return None, f"Step {index} does not exist"
        return setup, None

    def stop_step(self, session_id: str, index: int) -> str | None:
        setup, error = self._validate_step(session_id, index)
        if setup is None:
            return error
        if setup.steps[index].status is not StepStatus.RUNNING:
            return f"Step {index} is not running"

        process = setup.processes.pop(index, None)
        if process is not None:
            self._terminate(process)
        self._set_status(setup, index, StepStatus.STOPPED)
        return None

    async def start_step(self, session_id: str, index: int) -> str | None:
        """Re-run one stopped or failed step; it is always supervised in the background."""

        setup, error = self._validate_step(session_id, index)
        if setup is None:
            return error
        if setup.steps[index].status not in (StepStatus.STOPPED, StepStatus.FAILED):
            return f"Step {index} is not stopped or failed"

        process = await self._start_process(setup, index)
        if process is None:
            return f"Failed to start step {index}: {setup.steps[index].output}"
        self._watch(setup, index, process)
        return None

    def cleanup_setup(self, session_id: str) -> None:
        setup = self._setups.get(session_id)
        if setup is None:
            return
        self.cancel_setup(session_id)
        del self._setups[session_id]
        tasks = list(setup.watchers.values())
        if setup.pipeline is not None:
            tasks.append(setup.pipeline)
        for task in tasks:
            task.cancel()

    def get_setup_state(self, session_id: str) -> list[dict[str, Any]] | None:
        setup = self._setups.get(session_id)
        if setup is None:
            return None
        return [step.to_dict() for step in setup.steps]

    def publish_all_setup_states(self) -> None:
        for setup in self._setups.values():
            for index, step in enumerate(setup.steps):
                if step.status is StepStatus.PENDING:
                    continue
                self._publish(setup, index, step.output or None)

    async def wait_for_setup(self, session_id: str, *, include_background: bool = False) -> None:
        setup = self._setups.get(session_id)
        if setup is None:
            return
        if setup.pipeline is not None:
            await asyncio.gather(setup.pipeline, return_exceptions=True)
        if include_background:
            await asyncio.gather(*setup.watchers.values(), return_exceptions=True)

    async def aclose(self) -> None:
        tasks: list[asyncio.Task[None]] = []
        for session_id in list(self._setups):
            setup = self._setups[session_id]
            tasks.extend(setup.watchers.values())
            if setup.pipeline is not None:
                tasks.append(setup.pipeline)
            self.cleanup_setup(session_id)
        await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["ActiveSetup", "ProgressPublisher", "SetupManager", "StepState", "StepStatus"]
