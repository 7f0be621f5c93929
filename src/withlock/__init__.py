"""Run a command under an exclusive file lock, torn down as a process group."""

__version__ = "0.1.0"
