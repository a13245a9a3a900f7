"""In-memory sinks used by the fan-out and pipeline tests."""

import asyncio
from typing import List, Optional, Sequence

from lidar_bridge.sinks.base import Sink, SinkMessage, SinkRegistration


class RecordingSink(Sink):
    """Keeps every message; optionally fails on every send."""

    def __init__(self, name: str, fail: bool = False, gate: Optional[asyncio.Event] = None):
        super().__init__(name)
        self.fail = fail
        self.gate = gate
        self.registrations: List[SinkRegistration] = []
        self.messages: List[SinkMessage] = []
        self.opened = False
        self.closed = False

    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        self.registrations = list(registrations)
        self.opened = True

    async def send(self, message: SinkMessage) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    @property
    def payloads(self) -> List[bytes]:
        return [m.payload for m in self.messages]


class FailingOpenSink(RecordingSink):
    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        raise OSError("cannot create out.mcap")


class QueueStream:
    """Async iterator fed from an asyncio.Queue; None ends the stream."""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeSession:
    """Stands in for PubSubSession: per-topic queues instead of sockets."""

    def __init__(self):
        self.topics = {}
        self.published = []
        self.closed = False

    def subscribe(self, topic: str) -> QueueStream:
        queue = self.topics.setdefault(topic, asyncio.Queue())
        return QueueStream(queue)

    def inject(self, topic: str, payload: bytes) -> None:
        self.topics.setdefault(topic, asyncio.Queue()).put_nowait(payload)

    async def publish(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, payload))

    def close(self) -> None:
        self.closed = True
