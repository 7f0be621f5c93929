from __future__ import annotations

import errno
import os
import signal
import sys
import threading
import time
from pathlib import Path

import allure
import pytest
from conftest import process_gone, read_pid, wait_for

from withlock.command import ChildCommand, build_child_command
from withlock.config import LaunchSettings
from withlock.errors import GroupError, SpawnError, StatusError
from withlock.launcher import ProcessState, exit_status, launch_guarded, wait
from withlock.launcher.killgroup import attach, bind_group_limits, create_kill_group
from withlock.launcher.process import ChildProcess, discard, resume, spawn_suspended

pytestmark = [
    allure.epic("Locked Execution"),
    allure.feature("Process Launcher"),
]

_LAUNCH = LaunchSettings(hand_over_terminal=False)


def _sh(script: str) -> ChildCommand:
    return build_child_command("sh", ["-c", script])


def test_spawned_child_stays_suspended_until_resumed(tmp_path: Path) -> None:
    marker = tmp_path / "started"
    process = spawn_suspended(_sh(f"touch {marker}"))
    try:
        assert process.state is ProcessState.SUSPENDED
        assert os.getpgid(process.pid) == process.pid
        time.sleep(0.3)
        assert not marker.exists()

        resume(process, hand_over_terminal=False)
        wait(process)
    finally:
        discard(process)

    assert marker.exists()
    assert exit_status(process) == 0


def test_discarded_child_never_runs(tmp_path: Path) -> None:
    marker = tmp_path / "started"
    process = spawn_suspended(_sh(f"touch {marker}"))

    discard(process)

    assert process.state is ProcessState.EXITED
    assert not marker.exists()


def test_launch_guarded_reports_steps_in_order() -> None:
    steps: list[str] = []
    guarded = launch_guarded(_sh("exit 0"), _LAUNCH, on_step=steps.append)
    with guarded.group:
        wait(guarded.process)

    assert steps == ["spawned", "group-bound", "running"]
    assert guarded.group.limits_bound is True
    assert guarded.group.watched == [guarded.process.pid]


@pytest.mark.parametrize("code", [0, 1, 7, 255])
def test_exit_status_is_child_exit_code(code: int) -> None:
    guarded = launch_guarded(_sh(f"exit {code}"), _LAUNCH)
    with guarded.group:
        wait(guarded.process)

    assert guarded.process.state is ProcessState.EXITED
    assert exit_status(guarded.process) == code


def test_exit_status_of_signalled_child_is_128_plus_signal() -> None:
    guarded = launch_guarded(_sh("kill -TERM $$"), _LAUNCH)
    with guarded.group:
        wait(guarded.process)

    assert exit_status(guarded.process) == 128 + signal.SIGTERM


def test_exit_status_before_wait_is_status_error() -> None:
    with pytest.raises(StatusError) as excinfo:
        exit_status(ChildProcess(pid=1))
    assert excinfo.value.error_code == errno.ECHILD


def test_exec_failure_surfaces_as_spawn_error(tmp_path: Path) -> None:
    missing = str(tmp_path / "vanished")
    command = ChildCommand(executable=missing, args=(), command_line=missing)

    with pytest.raises(SpawnError) as excinfo:
        launch_guarded(command, _LAUNCH)

    assert excinfo.value.operation == "execv"
    assert excinfo.value.error_code == errno.ENOENT


def test_closing_group_kills_descendants(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"
    guarded = launch_guarded(_sh(f"sleep 60 & echo $! > {pid_file}; wait"), _LAUNCH)
    try:
        assert wait_for(lambda: read_pid(pid_file) is not None)
        grandchild = read_pid(pid_file)
        assert grandchild is not None
    finally:
        guarded.group.close()

    wait(guarded.process)
    assert exit_status(guarded.process) == 128 + signal.SIGKILL
    assert wait_for(lambda: process_gone(grandchild))


def test_attach_tolerates_access_denied(
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    process = spawn_suspended(_sh("exit 0"))
    group = create_kill_group(_LAUNCH)
    try:
        bind_group_limits(group)

        def _denied(pid: int, pgid: int) -> None:
            raise PermissionError(errno.EACCES, os.strerror(errno.EACCES))

        monkeypatch.setattr(os, "setpgid", _denied)
        with caplog.at_level("INFO", logger="withlock.launcher.killgroup"):
            attach(group, process)
        monkeypatch.undo()

        assert "ignored" in caplog.text
        assert group.watched == [process.pid]
    finally:
        group.close()
        discard(process)


def test_attach_other_failures_are_group_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    process = spawn_suspended(_sh("exit 0"))
    group = create_kill_group(_LAUNCH)
    try:
        bind_group_limits(group)

        def _refused(pid: int, pgid: int) -> None:
            raise PermissionError(errno.EPERM, os.strerror(errno.EPERM))

        monkeypatch.setattr(os, "setpgid", _refused)
        with pytest.raises(GroupError) as excinfo:
            attach(group, process)
        monkeypatch.undo()

        assert excinfo.value.operation == "setpgid"
        assert excinfo.value.error_code == errno.EPERM
        assert group.watched == []
    finally:
        group.close()
        discard(process)


def test_bind_failure_destroys_the_group() -> None:
    group = create_kill_group(_LAUNCH)
    group.guardian.kill()
    group.guardian.wait()

    with pytest.raises(GroupError) as excinfo:
        bind_group_limits(group)

    assert excinfo.value.operation == "bind-limits"
    assert group.closed is True
    assert group.limits_bound is False


def test_group_creation_failure_kills_suspended_child(tmp_path: Path) -> None:
    marker = tmp_path / "started"
    launch = LaunchSettings(
        python_executable=str(tmp_path / "no-python"),
        hand_over_terminal=False,
    )

    with pytest.raises(GroupError) as excinfo:
        launch_guarded(_sh(f"touch {marker}"), launch)

    assert excinfo.value.operation == "create-group"
    assert excinfo.value.error_code == errno.ENOENT
    time.sleep(0.2)
    assert not marker.exists()


def test_stopped_child_is_waited_through_without_terminal() -> None:
    guarded = launch_guarded(_sh("kill -STOP $$; exit 3"), _LAUNCH)
    timer = threading.Timer(0.5, os.kill, (guarded.process.pid, signal.SIGCONT))
    timer.start()
    try:
        with guarded.group:
            wait(guarded.process)
    finally:
        timer.cancel()

    assert exit_status(guarded.process) == 3


def test_hangup_kills_child_still_suspended(tmp_path: Path) -> None:
    marker = tmp_path / "started"
    previous = signal.signal(signal.SIGHUP, signal.SIG_IGN)
    try:
        process = spawn_suspended(_sh(f"touch {marker}"))
    finally:
        signal.signal(signal.SIGHUP, previous)

    # What the kernel sends to a stopped group whose parent has died.
    os.kill(process.pid, signal.SIGHUP)
    os.kill(process.pid, signal.SIGCONT)
    try:
        wait(process)
    finally:
        if process.exec_error_fd is not None:
            os.close(process.exec_error_fd)

    assert exit_status(process) == 128 + signal.SIGHUP
    assert not marker.exists()


def test_ignored_hangup_is_kept_for_the_program() -> None:
    script = (
        "import signal, sys; "
        "sys.exit(0 if signal.getsignal(signal.SIGHUP) == signal.SIG_IGN else 1)"
    )
    previous = signal.signal(signal.SIGHUP, signal.SIG_IGN)
    try:
        guarded = launch_guarded(build_child_command(sys.executable, ["-c", script]), _LAUNCH)
    finally:
        signal.signal(signal.SIGHUP, previous)
    with guarded.group:
        wait(guarded.process)

    assert exit_status(guarded.process) == 0
