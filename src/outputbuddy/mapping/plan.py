"""Which stream goes where, and which streams share a pty."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Stream(enum.StrEnum):
    """Output streams of the child, valued by their mapping-token name."""

    STDOUT = "1"
    STDERR = "2"

    @property
    def fd(self) -> int:
        return int(self.value)

    @property
    def label(self) -> str:
        return self.name.lower()


# Canonical order used whenever streams are listed or serialized.
STREAM_ORDER: tuple[Stream, ...] = (Stream.STDOUT, Stream.STDERR)


def ordered(streams: frozenset[Stream] | set[Stream]) -> list[Stream]:
    return [s for s in STREAM_ORDER if s in streams]


@dataclass(frozen=True)
class RedirectionSpec:
    """One ``streams=path`` mapping: every stream in ``sources`` is written to
    ``destination``."""

    sources: frozenset[Stream]
    destination: str


@dataclass(frozen=True)
class Channel:
    """Streams that share one pty (or pipe) and therefore one byte stream.

    Streams land in the same channel only when their destinations are
    identical, so the interleaving a shared pty causes is never visible.
    """

    streams: frozenset[Stream]
    files: tuple[str, ...]
    terminal: bool

    @property
    def name(self) -> str:
        return "+".join(s.label for s in ordered(self.streams))


@dataclass(frozen=True)
class RedirectionPlan:
    """Ordered mapping specs plus terminal routing.

    A stream that no spec claims passes through to the real terminal. A
    stream listed in ``echo`` is also shown on the terminal even though a
    spec writes it to a file.
    """

    specs: tuple[RedirectionSpec, ...] = ()
    echo: frozenset[Stream] = field(default_factory=frozenset)

    def file_for(self, stream: Stream) -> str | None:
        for spec in self.specs:
            if stream in spec.sources:
                return spec.destination
        return None

    def destinations_for(self, stream: Stream) -> tuple[tuple[str, ...], bool]:
        """Effective destinations of ``stream`` as ``(files, terminal)``."""
        path = self.file_for(stream)
        if path is None:
            return (), True
        return (path,), stream in self.echo

    @property
    def destinations(self) -> list[str]:
        """Distinct destination paths in first-mention order."""
        seen: list[str] = []
        for spec in self.specs:
            if spec.destination not in seen:
                seen.append(spec.destination)
        return seen

    def channels(self) -> list[Channel]:
        """Group streams with identical destinations into shared channels."""
        groups: dict[tuple[tuple[str, ...], bool], set[Stream]] = {}
        for stream in STREAM_ORDER:
            groups.setdefault(self.destinations_for(stream), set()).add(stream)
        return [
            Channel(streams=frozenset(streams), files=files, terminal=terminal)
            for (files, terminal), streams in groups.items()
        ]

    def to_tokens(self) -> list[str]:
        """Serialize back to mapping tokens (inverse of ``parse_mapping``)."""
        from outputbuddy.mapping.parser import format_token

        tokens = [format_token(spec.sources, spec.destination) for spec in self.specs]
        if self.echo:
            tokens.append(format_token(self.echo))
        return tokens
