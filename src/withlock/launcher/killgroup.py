"""Kill-group: a process group whose members die when the group handle goes away."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import subprocess

from withlock.config import LaunchSettings
from withlock.errors import GroupError
from withlock.launcher.process import ChildProcess

logger = logging.getLogger(__name__)

GUARDIAN_MODULE = "withlock.launcher.guardian"


class KillGroup:
    """Handle on a guardian process that kills every watched group on EOF.

    The handle is the write end of the guardian's control pipe. The kernel
    closes it when this process dies for any reason, which is what makes the
    teardown unconditional.
    """

    def __init__(
        self,
        guardian: subprocess.Popen[str],
        *,
        reap_timeout_seconds: float,
    ) -> None:
        self.guardian = guardian
        self.reap_timeout_seconds = reap_timeout_seconds
        self.watched: list[int] = []
        self.limits_bound = False
        self.closed = False

    def request(self, line: str) -> None:
        """Send one request to the guardian; raise ``OSError`` unless it answers ``ok``."""

        if self.closed or self.guardian.stdin is None or self.guardian.stdout is None:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF))
        self.guardian.stdin.write(f"{line}\n")
        self.guardian.stdin.flush()
        reply = self.guardian.stdout.readline().strip()
        if reply == "ok":
            return
        verb, _, code = reply.partition(" ")
        if verb == "error" and code.isdigit():
            raise OSError(int(code), os.strerror(int(code)))
        raise OSError(errno.EPIPE, "kill-group guardian stopped responding")

    def close(self) -> None:
        """Destroy the group: the guardian kills all watched members and exits."""

        if self.closed:
            return
        self.closed = True
        if self.guardian.stdin is not None:
            with contextlib.suppress(BrokenPipeError):
                self.guardian.stdin.close()
        try:
            self.guardian.wait(timeout=self.reap_timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Kill-group guardian %d did not exit, killing it", self.guardian.pid)
            self.guardian.kill()
            self.guardian.wait()
        if self.guardian.stdout is not None:
            self.guardian.stdout.close()

    def __enter__(self) -> KillGroup:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_kill_group(settings: LaunchSettings | None = None) -> KillGroup:
    """Start an empty kill-group; its guardian runs in a session of its own."""

    launch = settings or LaunchSettings()
    log_level = str(logging.getLogger().getEffectiveLevel())
    try:
        guardian = subprocess.Popen(  # noqa: S603
            [launch.python_executable, "-m", GUARDIAN_MODULE, "--log-level", log_level],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as error:
        raise GroupError.from_os_error("create-group", error) from error
    logger.debug("Kill-group guardian started: pid=%d", guardian.pid)
    return KillGroup(guardian, reap_timeout_seconds=launch.guardian_reap_timeout_seconds)


def bind_group_limits(group: KillGroup) -> None:
    """Configure the group to kill its members once it is destroyed."""

    try:
        group.request("limit kill-on-close")
    except OSError as error:
        group.close()
        raise GroupError.from_os_error("bind-limits", error) from error
    group.limits_bound = True


def attach(group: KillGroup, process: ChildProcess) -> None:
    """Put the suspended child in its own process group and have the guardian watch it."""

    try:
        os.setpgid(process.pid, process.pgid)
    except OSError as error:
        # The child has already replaced its image after grouping itself.
        if error.errno != errno.EACCES:
            raise GroupError.from_os_error("setpgid", error) from error
        logger.info("setpgid(%d) access denied; ignored", process.pid)

    try:
        group.request(f"watch {process.pgid}")
    except OSError as error:
        raise GroupError.from_os_error("watch", error) from error
    group.watched.append(process.pgid)
