"""Lock, launch, wait, unlock: the orchestration state machine."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from withlock.command import ChildCommand, build_child_command
from withlock.config import Settings
from withlock.launcher import exit_status, launch_guarded, wait
from withlock.lockfile import LockFile

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    """Stages of one invocation, in the only order they may be entered."""

    START = "start"
    LOCK_ACQUIRED = "lock_acquired"
    COMMAND_BUILT = "command_built"
    PROCESS_SPAWNED = "process_spawned"
    GROUP_BOUND = "group_bound"
    RUNNING = "running"
    EXITED = "exited"
    LOCK_RELEASED = "lock_released"
    DONE = "done"
    FAILED = "failed"


_HAPPY_PATH: tuple[OrchestratorState, ...] = (
    OrchestratorState.START,
    OrchestratorState.LOCK_ACQUIRED,
    OrchestratorState.COMMAND_BUILT,
    OrchestratorState.PROCESS_SPAWNED,
    OrchestratorState.GROUP_BOUND,
    OrchestratorState.RUNNING,
    OrchestratorState.EXITED,
    OrchestratorState.LOCK_RELEASED,
    OrchestratorState.DONE,
)

_LAUNCH_STEP_STATES: dict[str, OrchestratorState] = {
    "spawned": OrchestratorState.PROCESS_SPAWNED,
    "group-bound": OrchestratorState.GROUP_BOUND,
    "running": OrchestratorState.RUNNING,
}


@dataclass(slots=True)
class RunOutcome:
    """Result of a completed invocation."""

    state: OrchestratorState
    exit_code: int
    command: ChildCommand
    history: list[OrchestratorState] = field(default_factory=list)


class Orchestrator:
    """Runs one child command inside the exclusive lock region.

    On failure the state becomes ``FAILED``, the stage that was current is kept
    in ``failed_stage`` and the error propagates. The lock is not unwound;
    ending the process releases it.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.state = OrchestratorState.START
        self.history: list[OrchestratorState] = [OrchestratorState.START]
        self.failed_stage: OrchestratorState | None = None

    def run(self, lock_path: Path, command: str, args: Sequence[str]) -> RunOutcome:
        if self.state is not OrchestratorState.START:
            raise RuntimeError(f"Orchestrator already used (state={self.state.value}).")
        try:
            return self._run(lock_path, command, args)
        except Exception:
            self.failed_stage = self.state
            self._transition(OrchestratorState.FAILED)
            raise

    def _run(self, lock_path: Path, command: str, args: Sequence[str]) -> RunOutcome:
        lock = LockFile.open(lock_path, self.settings.lock)
        lock.acquire_exclusive()
        self._transition(OrchestratorState.LOCK_ACQUIRED)

        child = build_child_command(command, args)
        self._transition(OrchestratorState.COMMAND_BUILT)
        logger.info("Launching: %s", child.command_line)

        guarded = launch_guarded(child, self.settings.launch, on_step=self._on_launch_step)
        # Closing the group kills any straggler before the lock is released.
        with guarded.group:
            wait(guarded.process)
            exit_code = exit_status(guarded.process)
        self._transition(OrchestratorState.EXITED)
        logger.info("Child %d exited with code %d", guarded.process.pid, exit_code)

        lock.release()
        self._transition(OrchestratorState.LOCK_RELEASED)
        lock.close()
        self._transition(OrchestratorState.DONE)

        return RunOutcome(
            state=self.state,
            exit_code=exit_code,
            command=child,
            history=list(self.history),
        )

    def _on_launch_step(self, step: str) -> None:
        self._transition(_LAUNCH_STEP_STATES[step])

    def _transition(self, target: OrchestratorState) -> None:
        if target is not OrchestratorState.FAILED:
            expected = _HAPPY_PATH[_HAPPY_PATH.index(self.state) + 1]
            if target is not expected:
                raise RuntimeError(
                    f"Illegal transition {self.state.value} -> {target.value}",
                )
        logger.debug("State %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)
