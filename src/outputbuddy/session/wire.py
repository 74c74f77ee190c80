"""Wire protocol — status events of one outputbuddy run.

The supervisor and the tee engine publish events here; the CLI subscribes
and reports them on stderr. Nothing on the wire ever touches the child's
own output.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    STATE = "state"
    SPAWNED = "spawned"
    SINK_ERROR = "sink_error"
    SIGNAL = "signal"
    RESIZE = "resize"
    CHILD_EXIT = "child_exit"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: supervisor -> status subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_state(self, state: str) -> None:
        self.send(WireEvent(type=EventType.STATE, data={"state": state}))

    def send_spawned(self, pid: int, command: list[str]) -> None:
        self.send(
            WireEvent(type=EventType.SPAWNED, data={"pid": pid, "command": command})
        )

    def send_sink_error(self, sink: str, error: str) -> None:
        self.send(
            WireEvent(type=EventType.SINK_ERROR, data={"sink": sink, "error": error})
        )

    def send_signal(self, signum: int, action: str) -> None:
        """``action`` is ``"forwarded"`` or ``"killed"``."""
        self.send(
            WireEvent(type=EventType.SIGNAL, data={"signal": signum, "action": action})
        )

    def send_resize(self, rows: int, cols: int) -> None:
        self.send(WireEvent(type=EventType.RESIZE, data={"rows": rows, "cols": cols}))

    def send_child_exit(self, exit_code: int, signum: int | None = None) -> None:
        self.send(
            WireEvent(
                type=EventType.CHILD_EXIT,
                data={"exit_code": exit_code, "signal": signum},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        A late subscriber to a closed wire gets the closing sentinel at once.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        if self._closed:
            q.put_nowait(None)
            return q
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
