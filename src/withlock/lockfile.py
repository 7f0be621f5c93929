"""Exclusive advisory lock held on a (possibly network-hosted) lock file."""

from __future__ import annotations

import fcntl
import logging
import os
from enum import Enum
from pathlib import Path

from withlock.config import LockSettings
from withlock.errors import LockError, ResourceError

logger = logging.getLogger(__name__)

_LOCK_FILE_MODE = 0o666


class LockState(str, Enum):
    """Acquisition state of a lock file handle."""

    UNLOCKED = "unlocked"
    LOCKED = "locked"
    CLOSED = "closed"


class LockFile:
    """Open handle on a lock file that is only ever used for its lock.

    The descriptor is opened read-write, since NFS clients emulate ``flock`` with
    a write lock, and close-on-exec, so the child never inherits the lock. The
    file is never read or written. Other processes may open the file
    concurrently; only the exclusive lock is contended.
    """

    def __init__(self, path: Path, fd: int, settings: LockSettings) -> None:
        self.path = path
        self.fd = fd
        self.settings = settings
        self.state = LockState.UNLOCKED

    @classmethod
    def open(cls, path: Path, settings: LockSettings | None = None) -> LockFile:
        """Open ``path``, creating it (mode 0666 less the umask) when absent."""

        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, _LOCK_FILE_MODE)
        except OSError as error:
            raise ResourceError.from_os_error("open", error) from error
        return cls(path, fd, settings or LockSettings())

    def acquire_exclusive(self) -> None:
        """Block until the exclusive lock is held.

        Only ``settings.transient_errno`` is retried, and at most
        ``settings.max_attempts`` times in total; it shows up every now and then
        on network shares with no identified cause.
        """

        transient_errno = self.settings.transient_errno
        attempt = 0
        while attempt < self.settings.max_attempts:
            attempt += 1
            try:
                fcntl.flock(self.fd, fcntl.LOCK_EX)
            except OSError as error:
                if error.errno != transient_errno:
                    raise LockError.from_os_error("flock", error) from error
                logger.warning(
                    "Transient lock failure on %s (attempt %d/%d): %s",
                    self.path,
                    attempt,
                    self.settings.max_attempts,
                    os.strerror(transient_errno),
                )
                continue

            self.state = LockState.LOCKED
            logger.info("Lock acquired: %s (attempt %d)", self.path, attempt)
            return

        raise LockError("flock", transient_errno)

    def release(self) -> None:
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        except OSError as error:
            raise ResourceError.from_os_error("flock(LOCK_UN)", error) from error
        self.state = LockState.UNLOCKED
        logger.info("Lock released: %s", self.path)

    def close(self) -> None:
        try:
            os.close(self.fd)
        except OSError as error:
            raise ResourceError.from_os_error("close", error) from error
        self.state = LockState.CLOSED
