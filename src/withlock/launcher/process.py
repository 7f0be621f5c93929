"""Suspended creation, resumption and reaping of the child process."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn

from withlock.command import ChildCommand
from withlock.errors import SpawnError, StatusError, WaitError

logger = logging.getLogger(__name__)

_EXEC_FAILURE_EXIT = 127
_STDIN_FILENO = 0
# Dispositions set to SIG_IGN survive execv; the child gets the defaults back.
_RESET_SIGNALS: tuple[signal.Signals, ...] = tuple(
    getattr(signal, name) for name in ("SIGPIPE", "SIGXFSZ") if hasattr(signal, name)
)


class ProcessState(str, Enum):
    """Lifecycle of the child process."""

    SUSPENDED = "suspended"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(slots=True)
class ChildProcess:
    """Handle on the forked child; the pid doubles as its process group id."""

    pid: int
    exec_error_fd: int | None = None
    state: ProcessState = ProcessState.SUSPENDED
    wait_status: int | None = None
    terminal_fd: int | None = None
    job_control: bool = False

    @property
    def pgid(self) -> int:
        return self.pid


def spawn_suspended(command: ChildCommand) -> ChildProcess:
    """Fork a child that stops itself in its own process group before ``execv``.

    Standard streams are inherited as they are. Returns once the child is
    observed stopped, so no code of ``command`` has run yet.
    """

    read_fd, write_fd = os.pipe()
    try:
        pid = os.fork()
    except OSError as error:
        os.close(read_fd)
        os.close(write_fd)
        raise SpawnError.from_os_error("fork", error) from error

    if pid == 0:
        _exec_stopped_child(command, read_fd, write_fd)

    os.close(write_fd)
    process = ChildProcess(pid=pid, exec_error_fd=read_fd)
    try:
        _, status = os.waitpid(pid, os.WUNTRACED)
    except OSError as error:
        _close_exec_error_fd(process)
        raise SpawnError.from_os_error("waitpid", error) from error

    if not os.WIFSTOPPED(status):
        process.state = ProcessState.EXITED
        process.wait_status = status
        reported = _read_exec_error(process)
        raise SpawnError("fork", reported or errno.ECHILD)

    logger.debug("Child %d created suspended: %s", pid, command.command_line)
    return process


def resume(process: ChildProcess, *, hand_over_terminal: bool = True) -> None:
    """Let the stopped child continue into ``execv`` and confirm the program started."""

    if hand_over_terminal:
        process.terminal_fd = _hand_over_terminal(process.pgid)
        process.job_control = process.terminal_fd is not None
    try:
        os.kill(process.pid, signal.SIGCONT)
    except OSError as error:
        _reclaim_terminal(process)
        raise SpawnError.from_os_error("kill(SIGCONT)", error) from error
    process.state = ProcessState.RUNNING

    exec_errno = _read_exec_error(process)
    if exec_errno is None:
        return

    _reclaim_terminal(process)
    with contextlib.suppress(ChildProcessError):
        _, process.wait_status = os.waitpid(process.pid, 0)
    process.state = ProcessState.EXITED
    raise SpawnError("execv", exec_errno)


def wait(process: ChildProcess) -> None:
    """Block until the child exits. There is no timeout.

    When the child owns the terminal, a stop of the child (Ctrl-Z) stops
    withlock as well, so the calling shell gets its terminal back. Once
    withlock is continued the child is continued too.
    """

    try:
        while True:
            _, status = os.waitpid(process.pid, os.WUNTRACED)
            if not os.WIFSTOPPED(status):
                break
            if process.job_control:
                _stop_along_with_child(process, os.WSTOPSIG(status))
    except OSError as error:
        raise WaitError.from_os_error("waitpid", error) from error
    finally:
        _reclaim_terminal(process)
    process.wait_status = status
    process.state = ProcessState.EXITED


def exit_status(process: ChildProcess) -> int:
    """Exit code of a waited-for child; death by signal ``N`` reads as ``128 + N``."""

    if process.wait_status is None:
        raise StatusError("exit-status", errno.ECHILD)
    try:
        code = os.waitstatus_to_exitcode(process.wait_status)
    except ValueError as error:
        raise StatusError("exit-status", None, message=str(error)) from error
    if code < 0:
        return 128 - code
    return code


def discard(process: ChildProcess) -> None:
    """Kill and reap a child that will never be resumed."""

    if process.state is ProcessState.EXITED:
        return
    _close_exec_error_fd(process)
    with contextlib.suppress(ProcessLookupError):
        os.kill(process.pid, signal.SIGKILL)
    with contextlib.suppress(ChildProcessError):
        _, process.wait_status = os.waitpid(process.pid, 0)
    process.state = ProcessState.EXITED


def _exec_stopped_child(command: ChildCommand, read_fd: int, write_fd: int) -> NoReturn:
    # Runs in the forked child and must never return into the caller's stack.
    try:
        os.close(read_fd)
        with contextlib.suppress(OSError):
            os.setpgid(0, 0)
        for signum in _RESET_SIGNALS:
            signal.signal(signum, signal.SIG_DFL)
        # The kernel sends SIGHUP then SIGCONT to a stopped, orphaned group; the
        # child must die there if its parent died before grouping it.
        hangup = signal.signal(signal.SIGHUP, signal.SIG_DFL)
        os.kill(os.getpid(), signal.SIGSTOP)
        if hangup is not None:
            signal.signal(signal.SIGHUP, hangup)
        os.execv(command.executable, command.argv)
    except OSError as error:
        _report_exec_error(write_fd, error.errno or errno.EINVAL)
    except BaseException:  # noqa: BLE001
        _report_exec_error(write_fd, errno.EINVAL)
    finally:
        os._exit(_EXEC_FAILURE_EXIT)


def _report_exec_error(write_fd: int, code: int) -> None:
    with contextlib.suppress(OSError):
        os.write(write_fd, str(code).encode("ascii"))


def _read_exec_error(process: ChildProcess) -> int | None:
    """Read the errno the child reported before ``execv``; ``None`` once it exec'd."""

    fd = process.exec_error_fd
    if fd is None:
        return None
    chunks: list[bytes] = []
    try:
        while chunk := os.read(fd, 64):
            chunks.append(chunk)
    finally:
        _close_exec_error_fd(process)
    payload = b"".join(chunks).decode("ascii", errors="replace").strip()
    if not payload:
        return None
    try:
        return int(payload)
    except ValueError:
        return errno.EINVAL


def _close_exec_error_fd(process: ChildProcess) -> None:
    if process.exec_error_fd is not None:
        os.close(process.exec_error_fd)
        process.exec_error_fd = None


def _hand_over_terminal(pgid: int) -> int | None:
    """Make the child's group the terminal foreground if the tool currently owns it."""

    try:
        if not os.isatty(_STDIN_FILENO) or os.tcgetpgrp(_STDIN_FILENO) != os.getpgrp():
            return None
        os.tcsetpgrp(_STDIN_FILENO, pgid)
    except OSError as error:
        logger.debug("Terminal foreground not handed over: %s", error)
        return None
    return _STDIN_FILENO


def _stop_along_with_child(process: ChildProcess, signum: int) -> None:
    logger.info("Child %d stopped by signal %d; stopping too", process.pid, signum)
    _reclaim_terminal(process)
    # Discarded when withlock's own group is orphaned; it then continues at once.
    os.kill(os.getpid(), signal.SIGTSTP)
    process.terminal_fd = _hand_over_terminal(process.pgid)
    with contextlib.suppress(ProcessLookupError):
        os.killpg(process.pgid, signal.SIGCONT)


def _reclaim_terminal(process: ChildProcess) -> None:
    fd = process.terminal_fd
    if fd is None:
        return
    process.terminal_fd = None
    # A background group calling tcsetpgrp gets SIGTTOU unless it is ignored.
    previous = signal.signal(signal.SIGTTOU, signal.SIG_IGN)
    try:
        os.tcsetpgrp(fd, os.getpgrp())
    except OSError as error:
        logger.debug("Terminal foreground not reclaimed: %s", error)
    finally:
        signal.signal(signal.SIGTTOU, previous)
