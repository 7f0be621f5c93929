"""Classified failures and their diagnostic rendering."""

from __future__ import annotations

import os
from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    """Failure classes, one per orchestration stage."""

    USAGE = "usage"
    RESOURCE = "resource"
    LOCK = "lock"
    RESOLUTION = "resolution"
    SPAWN = "spawn"
    GROUP = "group"
    WAIT = "wait"
    STATUS = "status"


class WithLockError(RuntimeError):
    """Failure of one named operation, carrying the OS error code when there is one.

    The code must be taken from the failing call itself (``OSError.errno``),
    never looked up after other calls have run.
    """

    kind: ClassVar[ErrorKind]

    def __init__(
        self,
        operation: str,
        error_code: int | None = None,
        *,
        message: str | None = None,
    ) -> None:
        self.operation = operation
        self.error_code = error_code
        self.message = message
        super().__init__(f"{operation} failed: {self.system_message}")

    @classmethod
    def from_os_error(cls, operation: str, error: OSError) -> WithLockError:
        return cls(operation, error.errno, message=error.strerror)

    @property
    def system_message(self) -> str:
        if self.message:
            return self.message.rstrip("\r\n")
        if self.error_code is not None:
            return os.strerror(self.error_code)
        return "unknown error"

    @property
    def exit_code(self) -> int:
        if self.error_code:
            return self.error_code
        return 1

    def render(self) -> str:
        """Single diagnostic line for standard error."""

        if self.error_code is None:
            return f"error: {self.operation} failed: {self.system_message}"
        return f"error: {self.operation} failed: {self.system_message} (code {self.error_code})"


class UsageError(WithLockError):
    """Bad command-line invocation; nothing was locked or spawned."""

    kind = ErrorKind.USAGE

    def __init__(self, message: str) -> None:
        super().__init__("usage", None, message=message)

    def render(self) -> str:
        return self.system_message


class ResourceError(WithLockError):
    """Opening, unlocking or closing the lock file failed."""

    kind = ErrorKind.RESOURCE


class LockError(WithLockError):
    """Exclusive lock could not be taken."""

    kind = ErrorKind.LOCK


class ResolutionError(WithLockError):
    """Executable could not be found or is not runnable."""

    kind = ErrorKind.RESOLUTION


class SpawnError(WithLockError):
    """Child could not be created, resumed or could not start its program."""

    kind = ErrorKind.SPAWN


class GroupError(WithLockError):
    """Kill-group creation, configuration or membership failed."""

    kind = ErrorKind.GROUP


class WaitError(WithLockError):
    """Waiting for the child failed."""

    kind = ErrorKind.WAIT


class StatusError(WithLockError):
    """Exit status of the child could not be determined."""

    kind = ErrorKind.STATUS


def render_unclassified(error: BaseException) -> str:
    """Diagnostic line for failures outside the classified taxonomy."""

    return f"error: {error}"
