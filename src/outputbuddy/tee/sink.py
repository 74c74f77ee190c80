"""Destinations that receive a copy of the child's output."""

from __future__ import annotations

import logging
import os
import stat
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO

from outputbuddy.errors import SinkOpenError
from outputbuddy.tee.ansi import AnsiLineCleaner

logger = logging.getLogger(__name__)


@dataclass
class SinkFailure:
    """A sink that stopped receiving output part-way through the run."""

    sink: str
    error: str


class Sink(ABC):
    """Base class for all sinks.

    Once a write fails the sink is marked failed and ignores further
    output; the tee engine keeps feeding every other sink.
    """

    name: str
    failure: SinkFailure | None = None

    @abstractmethod
    def write(self, data: bytes) -> None: ...

    @abstractmethod
    def flush(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    def is_file(self) -> bool:
        return False

    @property
    def healthy(self) -> bool:
        return self.failure is None

    def mark_failed(self, error: BaseException) -> SinkFailure:
        self.failure = SinkFailure(sink=self.name, error=str(error))
        return self.failure


class FileSink(Sink):
    """A destination file, truncated (or created) when opened."""

    def __init__(self, path: str, handle: BinaryIO, strip_ansi: bool = False) -> None:
        self.name = path
        self.path = path
        self._handle = handle
        self._cleaner = AnsiLineCleaner() if strip_ansi else None
        self._closed = False
        # Devices such as /dev/null reject fsync.
        self._durable = stat.S_ISREG(os.fstat(handle.fileno()).st_mode)

    @classmethod
    def open(cls, path: str, strip_ansi: bool = False) -> FileSink:
        try:
            handle = open(path, "wb")
        except OSError as e:
            raise SinkOpenError(path, e.strerror or str(e)) from e
        logger.debug("Opened sink %s", path)
        return cls(path, handle, strip_ansi=strip_ansi)

    @property
    def is_file(self) -> bool:
        return True

    def write(self, data: bytes) -> None:
        if self._cleaner is not None:
            data = self._cleaner.feed(data)
            if not data:
                return
        self._handle.write(data)
        self._handle.flush()

    def flush(self) -> None:
        if self._cleaner is not None and self.healthy:
            tail = self._cleaner.flush()
            if tail:
                self._handle.write(tail)
        self._handle.flush()
        if self._durable:
            os.fsync(self._handle.fileno())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.flush()
        finally:
            self._handle.close()


class TerminalSink(Sink):
    """The real stdout or stderr of outputbuddy. Flushed, never closed."""

    def __init__(self, name: str, stream: BinaryIO) -> None:
        self.name = name
        self._stream = stream

    def write(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    def flush(self) -> None:
        self._stream.flush()

    def close(self) -> None:
        self.flush()
