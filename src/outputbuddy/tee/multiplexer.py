"""Stream multiplexer — copies channel output to every bound sink."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from outputbuddy.tee.sink import Sink, SinkFailure

if TYPE_CHECKING:
    from outputbuddy.session.wire import Wire

logger = logging.getLogger(__name__)


class ChannelReader:
    """Non-blocking reader for a pty master or pipe, driven by the event loop.

    Chunks are queued in arrival order; ``None`` marks end of stream. When
    ``max_pending`` chunks are waiting the fd is taken off the loop, so a
    slow sink throttles the child instead of growing the queue.
    """

    def __init__(self, fd: int, chunk_size: int, max_pending: int) -> None:
        self.fd = fd
        self._chunk_size = chunk_size
        self._max_pending = max_pending
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watching = False
        self._done = False

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        os.set_blocking(self.fd, False)
        self._loop = loop
        self._watch()

    @property
    def done(self) -> bool:
        return self._done

    async def get(self) -> bytes | None:
        chunk = await self._queue.get()
        if (
            not self._done
            and not self._watching
            and self._queue.qsize() <= self._max_pending // 2
        ):
            self._watch()
        return chunk

    def stop(self) -> None:
        """End the stream now; chunks already queued are still delivered."""
        if not self._done:
            self._done = True
            self._unwatch()
            self._queue.put_nowait(None)

    def _watch(self) -> None:
        if self._loop is not None and not self._watching:
            self._loop.add_reader(self.fd, self._on_readable)
            self._watching = True

    def _unwatch(self) -> None:
        if self._loop is not None and self._watching:
            self._loop.remove_reader(self.fd)
            self._watching = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self.fd, self._chunk_size)
        except BlockingIOError:
            return
        except OSError as e:
            # Linux reports EIO on a pty master once the last slave is closed.
            if e.errno != errno.EIO:
                logger.warning("Read error on fd %d: %s", self.fd, e)
            data = b""

        if not data:
            self.stop()
            return

        self._queue.put_nowait(data)
        if self._queue.qsize() >= self._max_pending:
            self._unwatch()


@dataclass
class _Source:
    name: str
    reader: ChannelReader
    sinks: list[Sink]
    bytes_copied: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)


class StreamMultiplexer:
    """Tee engine: one reader and one pump task per channel.

    Every chunk goes to the channel's sinks in the order it was read, byte
    for byte. A sink that fails to write is reported once and skipped from
    then on; the remaining sinks keep receiving output.
    """

    def __init__(
        self,
        chunk_size: int = 32 * 1024,
        max_pending: int = 64,
        wire: Wire | None = None,
    ) -> None:
        self._chunk_size = chunk_size
        self._max_pending = max_pending
        self._wire = wire
        self._sources: list[_Source] = []
        self._failures: list[SinkFailure] = []
        self._closed = False

    def add_channel(self, name: str, fd: int, sinks: list[Sink]) -> None:
        reader = ChannelReader(fd, self._chunk_size, self._max_pending)
        self._sources.append(_Source(name=name, reader=reader, sinks=sinks))

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        for source in self._sources:
            source.reader.start(loop)
            source.task = asyncio.create_task(self._pump(source))
        logger.debug("Multiplexer started with %d channel(s)", len(self._sources))

    async def _pump(self, source: _Source) -> None:
        while True:
            chunk = await source.reader.get()
            if chunk is None:
                break
            source.bytes_copied += len(chunk)
            self._fan_out(source, chunk)
        logger.debug("Channel %s drained (%d bytes)", source.name, source.bytes_copied)

    def _fan_out(self, source: _Source, chunk: bytes) -> None:
        for sink in source.sinks:
            if not sink.healthy:
                continue
            try:
                sink.write(chunk)
            except (OSError, ValueError) as e:
                failure = sink.mark_failed(e)
                self._failures.append(failure)
                logger.error("Sink %s failed, continuing without it: %s", sink.name, e)
                if self._wire:
                    self._wire.send_sink_error(failure.sink, failure.error)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for every channel to reach end of stream.

        Channels still open after ``timeout`` (a background process kept
        the terminal open) are cut off. Returns True if all ended on their
        own.
        """
        tasks = [s.task for s in self._sources if s.task is not None]
        if not tasks:
            return True

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return True

        for source in self._sources:
            if source.task in pending:
                logger.warning(
                    "Channel %s still open %.1fs after exit, cutting it off",
                    source.name,
                    timeout,
                )
                source.reader.stop()
        await asyncio.gather(*pending)
        return False

    def stop(self) -> None:
        for source in self._sources:
            source.reader.stop()

    def close(self) -> None:
        """Flush and close every sink once: files first, then terminals."""
        if self._closed:
            return
        self._closed = True
        self.stop()

        sinks: list[Sink] = []
        for source in self._sources:
            for sink in source.sinks:
                if sink not in sinks:
                    sinks.append(sink)
        close_sinks(sinks, on_failure=self._record_close_failure)

    def _record_close_failure(self, sink: Sink, error: BaseException) -> None:
        if sink.failure is None:
            self._failures.append(sink.mark_failed(error))
            if self._wire:
                self._wire.send_sink_error(sink.name, str(error))

    @property
    def failures(self) -> list[SinkFailure]:
        return list(self._failures)

    def bytes_copied(self, name: str) -> int:
        for source in self._sources:
            if source.name == name:
                return source.bytes_copied
        raise KeyError(name)


def close_sinks(
    sinks: list[Sink],
    on_failure: Callable[[Sink, BaseException], None] | None = None,
) -> None:
    """Close files before terminals so logs are durable before any report."""
    for sink in sorted(sinks, key=lambda s: not s.is_file):
        try:
            sink.close()
        except (OSError, ValueError) as e:
            logger.error("Error closing sink %s: %s", sink.name, e)
            if on_failure is not None:
                on_failure(sink, e)
