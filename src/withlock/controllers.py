"""Controller behind the withlock CLI command."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from withlock.config import Settings
from withlock.errors import UsageError, WithLockError, render_unclassified
from withlock.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

USAGE = "usage: withlock <lockfile> <command> [args..]"


@dataclass(slots=True)
class RunCommand:
    """CLI input: lock file, command and its arguments, as typed."""

    arguments: tuple[str, ...]
    log_level: str | None = None


@dataclass(slots=True)
class RunResult:
    """Exit code plus the diagnostic lines to write to standard error."""

    exit_code: int
    lines: list[str] = field(default_factory=list)


class WithLockCliController:
    """Maps a CLI invocation onto one orchestrator run and its exit code."""

    def run(self, command: RunCommand) -> RunResult:
        try:
            settings = Settings.from_options(log_level=command.log_level)
            settings.validate()
            if len(command.arguments) < 2:
                raise UsageError(USAGE)
            lock_path, program, *args = command.arguments
            outcome = Orchestrator(settings).run(Path(lock_path), program, args)
        except WithLockError as error:
            logger.debug("Classified failure: kind=%s", error.kind.value, exc_info=True)
            return RunResult(exit_code=error.exit_code, lines=[error.render()])
        except Exception as error:
            logger.debug("Unclassified failure", exc_info=True)
            return RunResult(exit_code=1, lines=[render_unclassified(error)])
        return RunResult(exit_code=outcome.exit_code)
