"""Pseudo-terminal bridge — pty pairs for the child's output streams.

A child attached to a pty slave sees ``isatty()`` succeed and keeps its
colors; outputbuddy reads the raw bytes from the master side.
"""

from outputbuddy.pty.bridge import (
    PseudoTerminal,
    ResizeForwarder,
    StdinForwarder,
    acquire,
    inherit_window_size,
    terminal_fd,
    window_size,
)

__all__ = [
    "PseudoTerminal",
    "ResizeForwarder",
    "StdinForwarder",
    "acquire",
    "inherit_window_size",
    "terminal_fd",
    "window_size",
]
