"""
Sink interface

A sink receives already-encoded telemetry frames. Each sink is opened once
with the full list of stream registrations, then receives messages for
those streams until it is closed. Sinks are driven by exactly one fan-out
task, so implementations need no locking of their own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from ..schemas import FrameKind, SchemaInfo


class SinkError(Exception):
    """A sink could not deliver or register a stream."""


@dataclass(frozen=True)
class SinkRegistration:
    """
    Binding of one telemetry stream to a sink channel.

    Attributes:
        kind: Which stream this is
        topic: Topic / channel name
        message_encoding: Content type of every payload ("protobuf")
        schema: Schema name, encoding and descriptor bytes
        latched: Late subscribers get the last message immediately
    """
    kind: FrameKind
    topic: str
    message_encoding: str
    schema: SchemaInfo
    latched: bool = False


@dataclass(frozen=True)
class SinkMessage:
    """
    One encoded frame addressed to one sink.

    ``sequence`` and ``publish_time_ns`` are assigned per sink by the fan-out;
    ``log_time_ns`` is the capture time shared by every sink.
    """
    kind: FrameKind
    payload: bytes
    log_time_ns: int
    publish_time_ns: int
    sequence: int


class Sink(ABC):
    """
    Consumer of encoded frames.

    ``queue_size`` bounds the frames the fan-out keeps pending for this sink.
    """

    queue_size = 32

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        """Create channels for every stream. Called once before any send."""
        ...

    @abstractmethod
    async def send(self, message: SinkMessage) -> None:
        """Deliver one frame. May raise; the caller logs and moves on."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush and release resources."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
