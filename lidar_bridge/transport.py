"""
Pub/sub transport over ZeroMQ.

Messages are two-frame multiparts ``[topic, payload]``. A session owns at
most one PUB socket and one SUB socket; every ``subscribe`` adds a topic
filter to the shared SUB socket, and a single reader task routes incoming
messages to the matching ``Subscription`` queues.

ZeroMQ's own subscription filter is a byte prefix match, so routing
compares the full topic and drops anything that only shares a prefix
(``lidar_state`` must not match ``lidar_state_debug``).
"""

import asyncio
import logging
from typing import Dict, List, Optional

import zmq
import zmq.asyncio

from .config import PubSubConfig

logger = logging.getLogger(__name__)

SUBSCRIPTION_QUEUE_SIZE = 100


class Subscription:
    """
    Async iterator over the payloads published on one topic.

    Payloads wait in a bounded queue until consumed; when it is full the
    oldest one is dropped. Iteration ends when the session is closed, and
    raises if the shared subscriber socket fails.
    """

    def __init__(self, session: "PubSubSession", topic: str,
                 queue_size: int = SUBSCRIPTION_QUEUE_SIZE):
        self.session = session
        self.topic = topic
        self.queue_size = queue_size
        # unbounded so the end marker always fits; deliver() enforces the bound
        self.queue: asyncio.Queue = asyncio.Queue()
        self.dropped = 0
        self._finished = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._finished and self.queue.empty():
            raise StopAsyncIteration
        self.session.start_reader()
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def deliver(self, payload: bytes) -> None:
        if self._finished:
            return
        if self.queue.qsize() >= self.queue_size:
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("Subscriber to %s is falling behind (%d dropped)", self.topic, self.dropped)
        self.queue.put_nowait(payload)

    def finish(self, error: Optional[Exception] = None) -> None:
        """End iteration after the queued payloads, optionally with ``error``."""
        if not self._finished:
            self._finished = True
            self.queue.put_nowait(error)


class PubSubSession:
    """
    One ZeroMQ context with a lazily created publisher and subscriber.

    Args:
        config: Endpoints to bind and connect
        context: Existing asyncio context to share (default: a new one)
    """

    def __init__(self, config: PubSubConfig, context: Optional[zmq.asyncio.Context] = None):
        self.config = config
        self._owns_context = context is None
        self.context = context if context is not None else zmq.asyncio.Context()
        self._publisher: Optional[zmq.asyncio.Socket] = None
        self._subscriber: Optional[zmq.asyncio.Socket] = None
        self._subscriptions: Dict[bytes, List[Subscription]] = {}
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def publisher(self) -> zmq.asyncio.Socket:
        if self._publisher is None:
            socket = self.context.socket(zmq.PUB)
            self._publisher = socket
            for endpoint in self.config.listen:
                socket.bind(endpoint)
                logger.info("Publisher bound to %s", endpoint)
            for endpoint in self.config.publish_connect:
                socket.connect(endpoint)
                logger.info("Publisher connected to %s", endpoint)
        return self._publisher

    @property
    def subscriber(self) -> zmq.asyncio.Socket:
        if self._subscriber is None:
            socket = self.context.socket(zmq.SUB)
            self._subscriber = socket
            for endpoint in self.config.connect:
                socket.connect(endpoint)
                logger.info("Subscriber connected to %s", endpoint)
            for endpoint in self.config.subscribe_listen:
                socket.bind(endpoint)
                logger.info("Subscriber bound to %s", endpoint)
        return self._subscriber

    async def publish(self, topic: str, payload: bytes) -> None:
        await self.publisher.send_multipart([topic.encode("utf-8"), payload])

    def subscribe(self, topic: str) -> Subscription:
        key = topic.encode("utf-8")
        if key not in self._subscriptions:
            self.subscriber.setsockopt(zmq.SUBSCRIBE, key)
            logger.info("Subscribed to %s", topic)
        subscription = Subscription(self, topic)
        self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def start_reader(self) -> None:
        """Start routing messages to subscriptions. Needs a running loop."""
        if self._reader is None and self._subscriber is not None and not self._closed:
            self._reader = asyncio.ensure_future(self._read())

    async def _read(self) -> None:
        error: Optional[Exception] = None
        try:
            while True:
                frames = await self._subscriber.recv_multipart()
                if len(frames) != 2:
                    logger.warning("Dropping malformed message (%d frames)", len(frames))
                    continue
                topic, payload = frames
                for subscription in self._subscriptions.get(topic, ()):
                    subscription.deliver(payload)
        except zmq.ZMQError as exc:
            if not self._closed and exc.errno != zmq.ETERM:
                logger.error("Subscriber failed: %s", exc)
                error = exc
        finally:
            self._finish_all(error)

    def _finish_all(self, error: Optional[Exception] = None) -> None:
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.finish(error)

    def close(self) -> None:
        self._closed = True
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        self._finish_all()
        if self._subscriber is not None:
            self._subscriber.close(linger=0)
            self._subscriber = None
        if self._publisher is not None:
            self._publisher.close(linger=0)
            self._publisher = None
        if self._owns_context:
            self.context.term()
