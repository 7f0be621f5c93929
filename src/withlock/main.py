"""CLI entrypoint for withlock."""

import logging
import sys

import rich_click as click

from withlock import __version__
from withlock.config import Settings
from withlock.controllers import RunCommand, WithLockCliController

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WithLockCliController()
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@click.command(
    context_settings={"allow_interspersed_args": False},
)
@click.version_option(version=__version__, prog_name="withlock")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Diagnostics written to standard error at or above this level.",
)
@click.argument(
    "arguments",
    nargs=-1,
    type=click.UNPROCESSED,
    metavar="LOCKFILE COMMAND [ARGS]...",
)
@click.pass_context
def withlock(ctx: click.Context, log_level: str, arguments: tuple[str, ...]) -> None:
    """Run **COMMAND** while holding an exclusive lock on **LOCKFILE**.

    The lock file is created if missing. The command and every process it starts
    are killed if withlock dies. Exits with the command's own exit code.
    Options are only read before LOCKFILE; everything after it goes to COMMAND.
    """

    _configure_logging(Settings.from_options(log_level=log_level))
    result = CONTROLLER.run(RunCommand(arguments=arguments, log_level=log_level))
    _emit_lines(result.lines)
    ctx.exit(result.exit_code)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level_number,
        format="withlock: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line, err=True)


if __name__ == "__main__":  # pragma: no cover
    withlock()
