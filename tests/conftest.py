"""Shared test fixtures."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from withlock.config import LaunchSettings, Settings


@pytest.fixture()
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "build.lock"


@pytest.fixture()
def settings() -> Settings:
    """Settings for in-process runs; the terminal is never handed to the child."""

    return Settings(launch=LaunchSettings(hand_over_terminal=False))


def run_withlock(*args: str, timeout: float = 60) -> subprocess.CompletedProcess[str]:
    """Run the installed tool in a separate interpreter and wait for it."""

    return subprocess.run(  # noqa: S603
        [sys.executable, "-m", "withlock", *args],
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def start_withlock(*args: str) -> subprocess.Popen[str]:
    return subprocess.Popen(  # noqa: S603
        [sys.executable, "-m", "withlock", *args],
        stdin=subprocess.DEVNULL,
        text=True,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def read_pid(path: Path) -> int | None:
    try:
        text = path.read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    return int(text) if text.isdigit() else None


def process_gone(pid: int) -> bool:
    """True once ``pid`` no longer exists or is only a zombie awaiting its reaper."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text("utf-8")
    except OSError:
        return False
    return stat.rsplit(")", 1)[-1].split()[0] == "Z"
