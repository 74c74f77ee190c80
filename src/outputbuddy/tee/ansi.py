"""Escape-sequence cleanup for log files written with ``--strip-ansi``.

Raw capture never goes through here: by default every byte the child wrote
reaches every sink untouched.
"""

from __future__ import annotations

import re

# CSI: ESC [ params intermediates final
_CSI_RE = re.compile(rb"\x1b\[[0-?]*[ -/]*[@-~]")
# OSC: ESC ] ... terminated by BEL or ST (ESC \)
_OSC_RE = re.compile(rb"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
# Any other escape: ESC intermediates final (charset selection, keypad modes)
_ESC_RE = re.compile(rb"\x1b[\x20-\x2f]*[\x30-\x7e]")
# Braille patterns U+2800..U+28FF, the usual spinner glyphs
_BRAILLE_RE = re.compile(rb"\xe2[\xa0-\xa3][\x80-\xbf]")


def strip_ansi(data: bytes) -> bytes:
    """Strip ANSI escape sequences from raw output."""
    data = _OSC_RE.sub(b"", data)
    data = _CSI_RE.sub(b"", data)
    return _ESC_RE.sub(b"", data)


def clean_line(line: bytes) -> bytes:
    """Escape sequences, stray carriage returns and spinner glyphs removed."""
    line = strip_ansi(line).replace(b"\r", b"")
    return _BRAILLE_RE.sub(b"", line)


class AnsiLineCleaner:
    """Turns a terminal byte stream into plain log lines.

    * ``\\r\\n`` and ``\\n`` end a line.
    * A lone ``\\r`` restarts the current line, so a progress bar that
      redraws itself is logged once, in its final state.
    * Lines that are blank after cleaning are dropped.

    Input may be split anywhere; a trailing ``\\r`` is held back until the
    next byte shows whether it starts a ``\\r\\n``.
    """

    def __init__(self) -> None:
        self._pending = bytearray()
        self._line = bytearray()

    def feed(self, data: bytes) -> bytes:
        """Consume ``data`` and return the completed, cleaned lines."""
        self._pending += data
        out = bytearray()

        while self._pending:
            nl = self._pending.find(b"\n")
            cr = self._pending.find(b"\r")

            if nl == -1 and cr == -1:
                self._line += self._pending
                self._pending.clear()
                break

            if cr != -1 and (nl == -1 or cr < nl):
                self._line += self._pending[:cr]
                if cr + 1 == len(self._pending):
                    del self._pending[:cr]
                    break
                if self._pending[cr + 1] == 0x0A:
                    del self._pending[: cr + 2]
                    out += self._emit()
                else:
                    del self._pending[: cr + 1]
                    self._line.clear()
                continue

            self._line += self._pending[:nl]
            del self._pending[: nl + 1]
            out += self._emit()

        return bytes(out)

    def flush(self) -> bytes:
        """Return the unterminated last line, if it has any content."""
        if self._pending == b"\r":
            self._line.clear()
        self._pending.clear()
        return self._emit()

    def _emit(self) -> bytes:
        line = clean_line(bytes(self._line))
        self._line.clear()
        if not line.strip():
            return b""
        return line + b"\n"
