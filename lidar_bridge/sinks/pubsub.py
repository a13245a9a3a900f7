"""Pub/sub sink: publishes each frame under its stream's topic."""

import logging
from typing import Dict, Sequence

from ..schemas import FrameKind
from ..transport import PubSubSession
from .base import Sink, SinkMessage, SinkRegistration

logger = logging.getLogger(__name__)


class PubSubSink(Sink):
    """
    Topics are registered implicitly by the first publish, so ``open`` only
    records the topic name per stream.
    """

    def __init__(self, name: str, session: PubSubSession):
        super().__init__(name)
        self.session = session
        self._topics: Dict[FrameKind, str] = {}

    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        self._topics = {r.kind: r.topic for r in registrations}
        logger.info("Publishing %s", ", ".join(self._topics.values()))

    async def send(self, message: SinkMessage) -> None:
        await self.session.publish(self._topics[message.kind], message.payload)

    async def close(self) -> None:
        # the session outlives the sink and is closed by its owner
        self._topics = {}
