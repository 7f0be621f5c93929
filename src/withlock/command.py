"""Executable resolution and command-line composition for the child."""

from __future__ import annotations

import errno
import os
import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass

from withlock.errors import ResolutionError

EXECUTABLE_SUFFIX = ".exe" if os.name == "nt" else ""

_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True, slots=True)
class ChildCommand:
    """Resolved child program and its arguments."""

    executable: str
    args: tuple[str, ...]
    command_line: str

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.executable, *self.args)


def normalize_executable_name(raw: str, suffix: str = EXECUTABLE_SUFFIX) -> str:
    """Append the platform executable suffix unless ``raw`` already ends with it."""

    if not suffix or raw.lower().endswith(suffix.lower()):
        return raw
    return raw + suffix


def qualify(executable_name: str) -> str:
    """Resolve ``executable_name`` to an absolute path of a runnable file."""

    separators = tuple(sep for sep in (os.sep, os.altsep) if sep)
    if any(sep in executable_name for sep in separators):
        candidate = os.path.abspath(executable_name)
        if not os.path.isfile(candidate):
            raise ResolutionError("qualify", errno.ENOENT)
        if not os.access(candidate, os.X_OK):
            raise ResolutionError("qualify", errno.EACCES)
        return candidate

    found = shutil.which(executable_name)
    if found is None:
        raise ResolutionError("qualify", errno.ENOENT)
    return os.path.abspath(found)


def quote_argument(token: str) -> str:
    """Double-quote ``token`` if it contains whitespace; embedded quotes are left alone."""

    if _WHITESPACE.search(token):
        return f'"{token}"'
    return token


def build_command_line(executable_path: str, args: Sequence[str]) -> str:
    return " ".join(quote_argument(token) for token in (executable_path, *args))


def build_child_command(raw_command: str, args: Sequence[str]) -> ChildCommand:
    """Normalize, qualify and compose the child command."""

    executable = qualify(normalize_executable_name(raw_command))
    arguments = tuple(args)
    return ChildCommand(
        executable=executable,
        args=arguments,
        command_line=build_command_line(executable, arguments),
    )
