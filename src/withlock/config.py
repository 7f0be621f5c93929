"""Runtime configuration for lock acquisition, launching and logging."""

from __future__ import annotations

import errno
import logging
import sys
from dataclasses import dataclass, field

_LOG_LEVELS: tuple[str, ...] = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class LockSettings:
    """Exclusive lock acquisition settings."""

    max_attempts: int = 3
    transient_errno: int = errno.ESTALE


@dataclass(slots=True)
class LaunchSettings:
    """Child launch and kill-group settings."""

    python_executable: str = sys.executable
    guardian_reap_timeout_seconds: float = 5.0
    hand_over_terminal: bool = True


@dataclass(slots=True)
class LoggingSettings:
    """Diagnostics logging settings."""

    level: str = "WARNING"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    lock: LockSettings = field(default_factory=LockSettings)
    launch: LaunchSettings = field(default_factory=LaunchSettings)
    log: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_options(cls, *, log_level: str | None = None) -> Settings:
        """Build settings from command-line options; the environment is not consulted."""

        return cls(
            log=LoggingSettings(level=(log_level or "WARNING").strip().upper()),
        )

    def validate(self) -> None:
        """Raise configuration error if a value is out of range."""

        if self.lock.max_attempts <= 0:
            raise ValueError("Lock max_attempts must be > 0.")
        if self.launch.guardian_reap_timeout_seconds < 0:
            raise ValueError("Guardian reap timeout must be >= 0.")
        if not self.launch.python_executable:
            raise ValueError("A Python executable is required to run the kill-group guardian.")
        if self.log.level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {self.log.level!r}. "
                f"Expected one of {', '.join(_LOG_LEVELS)}.",
            )

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log.level)
