"""
Fan-out
=======

Delivers every encoded frame to every sink, independently.

Each sink gets its own bounded queue and its own task. ``publish`` never
awaits: it appends to every queue and returns, so a slow or broken sink can
only hold up itself. When a sink's queue is full the oldest pending frame is
dropped with a warning.

Per sink and per stream the worker stamps:
    sequence         1, 2, 3, ... in delivery order
    publish_time_ns  wall clock when the frame is handed to the sink
The capture time travels with the frame unchanged.

A failed send is logged and counted, never retried.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .schemas import FrameKind
from .sinks.base import Sink, SinkMessage, SinkRegistration

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 32
DRAIN_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class EncodedFrame:
    kind: FrameKind
    payload: bytes
    capture_time_ns: int


class SinkWorker:
    """Queue, task and counters for one sink."""

    def __init__(self, sink: Sink, queue_size: int = DEFAULT_QUEUE_SIZE,
                 clock: Callable[[], int] = time.time_ns):
        self.sink = sink
        self.clock = clock
        self.queue_size = queue_size
        # unbounded so the end-of-stream marker always fits; offer() enforces the bound
        self.queue: "asyncio.Queue[Optional[EncodedFrame]]" = asyncio.Queue()
        self.sequences: Dict[FrameKind, int] = defaultdict(int)
        self.task: Optional[asyncio.Task] = None

        self.sent = 0
        self.failed = 0
        self.dropped = 0

    def offer(self, frame: EncodedFrame) -> None:
        if self.queue.qsize() >= self.queue_size:
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("Sink %s is falling behind, dropped oldest frame (%d dropped)",
                           self.sink.name, self.dropped)
        self.queue.put_nowait(frame)

    def next_message(self, frame: EncodedFrame) -> SinkMessage:
        self.sequences[frame.kind] += 1
        return SinkMessage(
            kind=frame.kind,
            payload=frame.payload,
            log_time_ns=frame.capture_time_ns,
            publish_time_ns=self.clock(),
            sequence=self.sequences[frame.kind],
        )

    async def deliver(self, frame: EncodedFrame) -> bool:
        message = self.next_message(frame)
        try:
            await self.sink.send(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed += 1
            logger.warning("Sink %s failed to send %s #%d: %s",
                           self.sink.name, frame.kind.value, message.sequence, exc)
            return False
        self.sent += 1
        return True

    async def run(self) -> None:
        """Deliver queued frames until the end-of-stream marker (None)."""
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            await self.deliver(frame)


class FanOut:
    """
    Args:
        sinks: Sinks in shutdown order
        registrations: Streams every sink is opened with
        clock: Nanosecond wall clock, replaceable in tests
    """

    def __init__(
        self,
        sinks: Sequence[Sink],
        registrations: Sequence[SinkRegistration],
        clock: Callable[[], int] = time.time_ns,
    ):
        self.sinks = list(sinks)
        self.registrations = list(registrations)
        self.clock = clock
        self.workers: List[SinkWorker] = []

    async def open(self) -> None:
        """
        Open every sink and start its worker.

        A sink that fails to open is fatal; sinks already opened are closed
        before the error propagates.
        """
        for sink in self.sinks:
            try:
                await sink.open(self.registrations)
            except BaseException:
                await self._close_sinks([w.sink for w in self.workers])
                self.workers = []
                raise
            worker = SinkWorker(sink, sink.queue_size, self.clock)
            worker.task = asyncio.create_task(worker.run(), name=f"sink-{sink.name}")
            self.workers.append(worker)
            logger.info("Opened sink %s", sink.name)

    def publish(self, kind: FrameKind, payload: bytes, capture_time_ns: int) -> None:
        frame = EncodedFrame(kind, payload, capture_time_ns)
        for worker in self.workers:
            worker.offer(frame)

    async def close(self, drain_timeout: float = DRAIN_TIMEOUT_S) -> None:
        """
        Let every worker finish its queue, then close the sinks in order.

        Workers still busy after ``drain_timeout`` are cancelled, abandoning
        their in-flight sends.
        """
        for worker in self.workers:
            worker.queue.put_nowait(None)

        tasks = [w.task for w in self.workers if w.task is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=drain_timeout)
            for task in pending:
                logger.warning("Abandoning in-flight sends on %s", task.get_name())
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        await self._close_sinks([w.sink for w in self.workers])
        for worker in self.workers:
            logger.info("Sink %s: sent=%d failed=%d dropped=%d",
                        worker.sink.name, worker.sent, worker.failed, worker.dropped)
        self.workers = []

    async def _close_sinks(self, sinks: Sequence[Sink]) -> None:
        for sink in sinks:
            try:
                await sink.close()
            except Exception as exc:
                logger.error("Failed to close sink %s: %s", sink.name, exc)
