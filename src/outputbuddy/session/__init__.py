"""Run session — status events published while a child is supervised."""

from outputbuddy.session.wire import EventType, Wire, WireEvent

__all__ = ["EventType", "Wire", "WireEvent"]
