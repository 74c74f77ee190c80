"""Errors of outputbuddy itself. Each carries its reserved exit code.

Child exit codes pass through untouched, so the tool's own failures use a
small reserved block that ordinary programs rarely return.
"""

from __future__ import annotations

from typing import ClassVar

EXIT_USAGE = 120
EXIT_SINK_OPEN = 121
EXIT_PTY_ALLOCATION = 122
EXIT_SPAWN = 123

# Shell convention: a child killed by signal N reports 128 + N.
SIGNAL_EXIT_BASE = 128


class OutputBuddyError(Exception):
    """Base class for failures of outputbuddy itself (never of the child)."""

    exit_code: ClassVar[int] = EXIT_USAGE


class MappingError(OutputBuddyError):
    """A mapping token (or the argv layout) could not be understood."""

    exit_code: ClassVar[int] = EXIT_USAGE

    def __init__(self, message: str, token: str | None = None) -> None:
        self.token = token
        if token is not None:
            message = f"{message}: {token!r}"
        super().__init__(message)


class MalformedMappingError(MappingError):
    """Token does not follow ``<stream>(+<stream>)*[=<path>]``."""


class UnsupportedStreamError(MappingError):
    """Token names a stream other than 1 (stdout) or 2 (stderr)."""


class ConflictingMappingError(MappingError):
    """The same stream is routed to files by two different tokens."""


class SinkOpenError(OutputBuddyError):
    """A destination file could not be created or truncated."""

    exit_code: ClassVar[int] = EXIT_SINK_OPEN

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"cannot open {path}: {reason}")


class PtyAllocationError(OutputBuddyError):
    """The host has no pseudo-terminal available."""

    exit_code: ClassVar[int] = EXIT_PTY_ALLOCATION


class SpawnError(OutputBuddyError):
    """The child program is missing or not executable."""

    exit_code: ClassVar[int] = EXIT_SPAWN

    def __init__(self, program: str, reason: str) -> None:
        self.program = program
        self.reason = reason
        super().__init__(f"cannot run {program}: {reason}")
