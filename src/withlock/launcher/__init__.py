"""Guarded launch of the child: suspended spawn, kill-group binding, resume."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from withlock.command import ChildCommand
from withlock.config import LaunchSettings
from withlock.launcher.killgroup import KillGroup, attach, bind_group_limits, create_kill_group
from withlock.launcher.process import (
    ChildProcess,
    ProcessState,
    discard,
    exit_status,
    resume,
    spawn_suspended,
    wait,
)

__all__ = [
    "ChildProcess",
    "GuardedProcess",
    "KillGroup",
    "ProcessState",
    "exit_status",
    "launch_guarded",
    "wait",
]


@dataclass(slots=True)
class GuardedProcess:
    """Running child together with the kill-group bounding its lifetime."""

    process: ChildProcess
    group: KillGroup


def launch_guarded(
    command: ChildCommand,
    settings: LaunchSettings | None = None,
    *,
    on_step: Callable[[str], None] | None = None,
) -> GuardedProcess:
    """Start ``command`` so that it cannot run, or fork, outside its kill-group.

    The order is fixed: spawn suspended, create the group, bind its
    kill-on-close limit, attach the child, resume. ``on_step`` is called with
    ``"spawned"``, ``"group-bound"`` and ``"running"`` as each stage completes.
    A child that never got resumed is killed before the error propagates.
    """

    launch = settings or LaunchSettings()
    process = spawn_suspended(command)
    _notify(on_step, "spawned")

    try:
        group = create_kill_group(launch)
    except BaseException:
        discard(process)
        raise

    try:
        bind_group_limits(group)
        attach(group, process)
        _notify(on_step, "group-bound")
        resume(process, hand_over_terminal=launch.hand_over_terminal)
    except BaseException:
        group.close()
        discard(process)
        raise
    _notify(on_step, "running")
    return GuardedProcess(process=process, group=group)


def _notify(on_step: Callable[[str], None] | None, step: str) -> None:
    if on_step is not None:
        on_step(step)
