"""Pseudo-terminal bridge — makes the child believe it writes to a terminal."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
import tty
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from outputbuddy.errors import PtyAllocationError

if TYPE_CHECKING:
    from outputbuddy.session.wire import Wire

logger = logging.getLogger(__name__)

DEFAULT_ROWS = 24
DEFAULT_COLS = 80


@dataclass
class PseudoTerminal:
    """A master/slave pair. The slave goes to the child, the master to us."""

    master_fd: int
    slave_fd: int
    _slave_open: bool = field(default=True, init=False)
    _master_open: bool = field(default=True, init=False)

    def close_slave(self) -> None:
        """Drop our copy of the slave so EOF arrives when the child exits."""
        if self._slave_open:
            self._slave_open = False
            try:
                os.close(self.slave_fd)
            except OSError:
                logger.debug("Slave fd %d already closed", self.slave_fd)

    def release(self) -> None:
        """Close both ends. Safe to call more than once."""
        self.close_slave()
        if self._master_open:
            self._master_open = False
            try:
                os.close(self.master_fd)
            except OSError:
                logger.debug("Master fd %d already closed", self.master_fd)

    @property
    def released(self) -> bool:
        return not self._master_open

    def set_window_size(self, rows: int, cols: int) -> None:
        fd = self.slave_fd if self._slave_open else self.master_fd
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def acquire() -> PseudoTerminal:
    """Allocate a pty pair configured for byte-exact capture.

    Raises:
        PtyAllocationError: the host has no pty left. Not retried.
    """
    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as e:
        raise PtyAllocationError(f"cannot allocate a pseudo-terminal: {e}") from e

    try:
        _configure_slave(slave_fd)
    except termios.error as e:
        os.close(master_fd)
        os.close(slave_fd)
        raise PtyAllocationError(f"cannot configure pseudo-terminal: {e}") from e

    logger.debug("Allocated pty master=%d slave=%d", master_fd, slave_fd)
    return PseudoTerminal(master_fd=master_fd, slave_fd=slave_fd)


def _configure_slave(fd: int) -> None:
    """No \\n -> \\r\\n translation and no echo: the master sees exactly what
    the child wrote, and nothing it was sent."""
    attrs = termios.tcgetattr(fd)
    attrs[1] &= ~termios.ONLCR
    attrs[3] &= ~(termios.ECHO | termios.ECHONL)
    termios.tcsetattr(fd, termios.TCSANOW, attrs)


def terminal_fd() -> int | None:
    """First of stdin/stdout/stderr attached to a real terminal, if any."""
    for fd in (0, 1, 2):
        try:
            if os.isatty(fd):
                return fd
        except OSError:
            continue
    return None


def window_size(fd: int | None) -> tuple[int, int]:
    """Rows and columns of the terminal on ``fd`` (24x80 if unknown)."""
    if fd is not None:
        try:
            packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * 8)
            rows, cols = struct.unpack_from("HH", packed)
            if rows > 0 and cols > 0:
                return rows, cols
        except OSError:
            pass
    return DEFAULT_ROWS, DEFAULT_COLS


def inherit_window_size(terminals: Sequence[PseudoTerminal], source_fd: int | None) -> None:
    rows, cols = window_size(source_fd)
    for term in terminals:
        if term.released:
            continue
        try:
            term.set_window_size(rows, cols)
        except OSError as e:
            logger.debug("Cannot size pty %d: %s", term.master_fd, e)


class ResizeForwarder:
    """Copies the real terminal's size to the ptys on every SIGWINCH.

    Everything here is best effort: a failed resize is logged and dropped.
    """

    def __init__(
        self,
        terminals: Sequence[PseudoTerminal],
        source_fd: int | None,
        wire: Wire | None = None,
    ) -> None:
        self._terminals = list(terminals)
        self._source_fd = source_fd
        self._wire = wire
        self._pgid: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach(self, pgid: int) -> None:
        self._pgid = pgid

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._source_fd is None:
            return
        try:
            loop.add_signal_handler(signal.SIGWINCH, self.sync)
            self._loop = loop
        except (RuntimeError, ValueError) as e:
            logger.debug("Cannot watch SIGWINCH: %s", e)

    def remove(self) -> None:
        if self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGWINCH)
            self._loop = None

    def sync(self) -> None:
        rows, cols = window_size(self._source_fd)
        try:
            for term in self._terminals:
                if not term.released:
                    term.set_window_size(rows, cols)
            if self._pgid is not None:
                os.killpg(self._pgid, signal.SIGWINCH)
        except OSError as e:
            logger.debug("Resize forward failed: %s", e)
            return
        logger.debug("Forwarded resize %dx%d", cols, rows)
        if self._wire:
            self._wire.send_resize(rows, cols)


class StdinForwarder:
    """Relays keystrokes from the real terminal to the child's pty.

    While installed, a terminal source is in raw mode so every key (``^C``
    included) reaches the child's line discipline unchanged. Output
    processing stays on: the child's bytes are written untranslated, and
    the real terminal still needs ``\\n`` turned into ``\\r\\n``.
    """

    def __init__(self, source_fd: int, terminal: PseudoTerminal) -> None:
        self._source_fd = source_fd
        self._terminal = terminal
        self._loop: asyncio.AbstractEventLoop | None = None
        self._saved_attrs: list | None = None

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        self._enter_raw_mode()
        loop.add_reader(self._source_fd, self._on_readable)
        self._loop = loop

    def remove(self) -> None:
        if self._loop is not None:
            self._loop.remove_reader(self._source_fd)
            self._loop = None
        self._restore_mode()

    @property
    def raw(self) -> bool:
        return self._saved_attrs is not None

    def _enter_raw_mode(self) -> None:
        if not os.isatty(self._source_fd):
            return
        try:
            saved = termios.tcgetattr(self._source_fd)
            tty.setraw(self._source_fd, termios.TCSANOW)
            attrs = termios.tcgetattr(self._source_fd)
            attrs[1] |= termios.OPOST | termios.ONLCR
            termios.tcsetattr(self._source_fd, termios.TCSANOW, attrs)
        except termios.error as e:
            logger.debug("Cannot put stdin in raw mode: %s", e)
            return
        self._saved_attrs = saved

    def _restore_mode(self) -> None:
        if self._saved_attrs is None:
            return
        saved, self._saved_attrs = self._saved_attrs, None
        try:
            termios.tcsetattr(self._source_fd, termios.TCSADRAIN, saved)
        except termios.error as e:
            logger.warning("Cannot restore terminal mode: %s", e)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._source_fd, 4096)
        except OSError as e:
            logger.debug("stdin read failed: %s", e)
            self.remove()
            return

        if self._terminal.released:
            self.remove()
            return

        try:
            if data:
                os.write(self._terminal.master_fd, data)
            else:
                # Our stdin hit EOF: hand the child an end-of-file too.
                os.write(self._terminal.master_fd, b"\x04")
                self.remove()
        except OSError as e:
            logger.debug("stdin forward failed: %s", e)
            self.remove()
