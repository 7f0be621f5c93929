"""Kill-group guardian.

Reads one request per line from standard input and answers each on standard
output. Once standard input reaches EOF (the owner closed the group or died),
every watched process group is killed if the kill-on-close limit was bound.

Requests: ``limit kill-on-close`` and ``watch <pgid>``. Replies: ``ok`` or
``error <errno>``.
"""

from __future__ import annotations

import argparse
import errno
import logging
import os
import signal
import sys

logger = logging.getLogger("withlock.guardian")


def main(argv: list[str] | None = None) -> int:
    """Serve requests until EOF, then enforce the kill-on-close limit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", type=int, default=logging.WARNING)
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="withlock-guardian: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, signal.SIG_IGN)

    kill_on_close = False
    watched: list[int] = []
    for line in sys.stdin:
        verb, _, argument = line.strip().partition(" ")
        if verb == "limit" and argument == "kill-on-close":
            kill_on_close = True
            _reply("ok")
        elif verb == "watch" and argument.isdigit():
            pgid = int(argument)
            try:
                os.killpg(pgid, 0)
            except OSError as error:
                _reply(f"error {error.errno}")
                continue
            watched.append(pgid)
            _reply("ok")
        else:
            _reply(f"error {errno.EINVAL}")

    if kill_on_close:
        for pgid in watched:
            _kill_group(pgid)
    return 0


def _reply(message: str) -> None:
    sys.stdout.write(f"{message}\n")
    sys.stdout.flush()


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError as error:
        logger.warning("Cannot kill process group %d: %s", pgid, error)
        return
    logger.info("Killed process group %d", pgid)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
