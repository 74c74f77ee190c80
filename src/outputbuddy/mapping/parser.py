"""Mapping token grammar.

    token   := streams [ "=" path ]
    streams := stream ( "+" stream )*
    stream  := "1" | "2" | "stdout" | "stderr"

A token with a path sends the streams to that file. A bare token echoes the
streams to the terminal in addition to any file they are mapped to.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from outputbuddy.errors import (
    ConflictingMappingError,
    MalformedMappingError,
    UnsupportedStreamError,
)
from outputbuddy.mapping.plan import RedirectionPlan, RedirectionSpec, Stream, ordered

logger = logging.getLogger(__name__)

SEPARATOR = "--"

_STREAM_NAMES: dict[str, Stream] = {
    "1": Stream.STDOUT,
    "2": Stream.STDERR,
    "stdout": Stream.STDOUT,
    "stderr": Stream.STDERR,
}
_NUMERIC_RE = re.compile(r"^\d+$")


def split_command(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first ``--`` into (mapping tokens, child argv).

    The child argv is returned verbatim: no further parsing, no shell.
    """
    try:
        index = list(argv).index(SEPARATOR)
    except ValueError:
        raise MalformedMappingError("no -- separator found") from None

    command = list(argv[index + 1 :])
    if not command:
        raise MalformedMappingError("no command specified after --")
    return list(argv[:index]), command


def _parse_streams(part: str, token: str) -> frozenset[Stream]:
    if not part:
        raise MalformedMappingError("missing stream list", token)

    streams: list[Stream] = []
    for name in part.split("+"):
        key = name.strip().lower()
        if not key:
            raise MalformedMappingError("empty stream in", token)
        stream = _STREAM_NAMES.get(key)
        if stream is None:
            if _NUMERIC_RE.match(key):
                raise UnsupportedStreamError(
                    f"unsupported stream {name} (only 1=stdout and 2=stderr)", token
                )
            raise MalformedMappingError(f"unknown stream {name!r} in", token)
        if stream in streams:
            raise MalformedMappingError(f"stream {stream.label} repeated in", token)
        streams.append(stream)
    return frozenset(streams)


def parse_mapping(
    tokens: Iterable[str], default_log: str = "buddy.log"
) -> RedirectionPlan:
    """Parse mapping tokens into a ``RedirectionPlan``.

    With no tokens at all, both streams go to ``default_log`` and are also
    shown on the terminal. The filesystem is never touched here: files are
    created by the supervisor once the whole command line is known good.
    """
    tokens = list(tokens)
    if not tokens:
        both = frozenset((Stream.STDOUT, Stream.STDERR))
        return RedirectionPlan(
            specs=(RedirectionSpec(sources=both, destination=default_log),),
            echo=both,
        )

    specs: list[RedirectionSpec] = []
    claimed: dict[Stream, str] = {}
    echo: set[Stream] = set()

    for token in tokens:
        streams_part, has_path, path = token.partition("=")
        streams = _parse_streams(streams_part, token)

        if not has_path:
            echo.update(streams)
            continue

        if not path:
            raise MalformedMappingError("missing destination path", token)

        for stream in ordered(streams):
            previous = claimed.get(stream)
            if previous is not None:
                raise ConflictingMappingError(
                    f"{stream.label} already mapped by {previous!r}", token
                )
            claimed[stream] = token

        specs.append(RedirectionSpec(sources=streams, destination=path))

    plan = RedirectionPlan(specs=tuple(specs), echo=frozenset(echo))
    logger.debug("Parsed mapping %s -> %s", tokens, plan)
    return plan


def format_token(streams: Iterable[Stream], destination: str | None = None) -> str:
    """Render streams (and an optional path) as a mapping token."""
    text = "+".join(s.value for s in ordered(frozenset(streams)))
    if destination is not None:
        text = f"{text}={destination}"
    return text
