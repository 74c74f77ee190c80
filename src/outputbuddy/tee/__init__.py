"""Tee engine — fans the child's output out to files and the terminal."""

from outputbuddy.tee.ansi import AnsiLineCleaner, strip_ansi
from outputbuddy.tee.multiplexer import ChannelReader, StreamMultiplexer, close_sinks
from outputbuddy.tee.sink import FileSink, Sink, SinkFailure, TerminalSink

__all__ = [
    "AnsiLineCleaner",
    "ChannelReader",
    "FileSink",
    "Sink",
    "SinkFailure",
    "StreamMultiplexer",
    "TerminalSink",
    "close_sinks",
    "strip_ansi",
]
