"""
Foxglove visualization sink
===========================

Serves the bridge's streams to Foxglove over ``foxglove.websocket.v1`` using
the Foxglove SDK's WebSocket server. The SDK handles serverInfo, channel
advertisements, subscriptions and message-data frames; this module only maps
stream registrations to SDK channels.

Each sink owns an SDK ``Context``, so its channels are advertised by its own
server and by nothing else in the process.

Message-data frames are stamped with the sink's publish time.

Latched streams: the SDK has no notion of a latched channel, so
``LatchedReplay`` keeps the last payload of each latched channel and logs it
again as soon as a client subscribes. Clients that were already subscribed
receive that payload a second time.
"""

import asyncio
import logging
import threading
from typing import Dict, Optional, Sequence, Tuple

import foxglove
from foxglove.websocket import ChannelView, Client, ServerListener

from ..schemas import FrameKind
from .base import Sink, SinkError, SinkMessage, SinkRegistration

logger = logging.getLogger(__name__)


class LatchedReplay(ServerListener):
    """
    Server listener that replays the last message of latched channels.

    The SDK calls listeners from its own thread; the replay is scheduled on
    the event loop that drives the sink.
    """

    def __init__(self):
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._channels: Dict[str, foxglove.Channel] = {}
        self._last: Dict[str, Tuple[int, bytes]] = {}

    def watch(self, topic: str, channel: foxglove.Channel) -> None:
        with self._lock:
            self._channels[topic] = channel

    def remember(self, topic: str, log_time_ns: int, payload: bytes) -> None:
        with self._lock:
            if topic in self._channels:
                self._last[topic] = (log_time_ns, payload)

    def last(self, topic: str) -> Optional[Tuple[int, bytes]]:
        with self._lock:
            return self._last.get(topic)

    def on_subscribe(self, client: Client, channel: ChannelView) -> None:
        logger.debug("Foxglove client %s subscribed to %s", client.id, channel.topic)
        with self._lock:
            target = self._channels.get(channel.topic)
            last = self._last.get(channel.topic)
        if target is None or last is None or self.loop is None:
            return
        log_time_ns, payload = last
        self.loop.call_soon_threadsafe(self._replay, target, log_time_ns, payload)

    def on_unsubscribe(self, client: Client, channel: ChannelView) -> None:
        logger.debug("Foxglove client %s unsubscribed from %s", client.id, channel.topic)

    @staticmethod
    def _replay(channel: foxglove.Channel, log_time_ns: int, payload: bytes) -> None:
        channel.log(payload, log_time=log_time_ns)


class FoxgloveSink(Sink):
    """
    Streams frames to Foxglove clients.

    Args:
        name: Sink name used in logs
        host: Bind address
        port: Bind port (0 picks a free one)
        latched: Treat every stream as latched
        server_name: Name shown by clients
    """

    def __init__(
        self,
        name: str,
        host: str = "127.0.0.1",
        port: int = 8765,
        latched: bool = False,
        server_name: str = "lidar-bridge",
    ):
        super().__init__(name)
        self.host = host
        self.port = port
        self.latched = latched
        self.server_name = server_name
        self.replay = LatchedReplay()
        self.context: Optional[foxglove.Context] = None
        self.server = None
        self.channels: Dict[FrameKind, foxglove.Channel] = {}
        self.topics: Dict[FrameKind, str] = {}

    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        self.replay.loop = asyncio.get_running_loop()
        self.context = foxglove.Context()
        try:
            self.server = foxglove.start_server(
                name=self.server_name,
                host=self.host,
                port=self.port,
                server_listener=self.replay,
                context=self.context,
            )
        except Exception as exc:
            raise SinkError(f"cannot start Foxglove server on {self.host}:{self.port}: {exc}") from exc
        self.port = self.server.port
        logger.info("Foxglove server listening on ws://%s:%d", self.host, self.port)

        for registration in registrations:
            schema = foxglove.Schema(
                name=registration.schema.name,
                encoding=registration.schema.encoding,
                data=registration.schema.data,
            )
            channel = foxglove.Channel(
                registration.topic,
                schema=schema,
                message_encoding=registration.message_encoding,
                context=self.context,
            )
            self.channels[registration.kind] = channel
            self.topics[registration.kind] = registration.topic
            if registration.latched or self.latched:
                self.replay.watch(registration.topic, channel)
            logger.debug("Created Foxglove channel for %s", registration.topic)

    async def send(self, message: SinkMessage) -> None:
        self.channels[message.kind].log(message.payload, log_time=message.publish_time_ns)
        self.replay.remember(self.topics[message.kind], message.publish_time_ns, message.payload)

    async def close(self) -> None:
        for channel in self.channels.values():
            channel.close()
        self.channels = {}
        server, self.server = self.server, None
        if server is not None:
            await asyncio.get_running_loop().run_in_executor(None, server.stop)
            logger.info("Foxglove server stopped")
