"""
MCAP log sink

Appends every frame to an MCAP file. Each stream gets a schema record and a
channel record when the sink opens; every message is stamped with the
channel id, the capture time as log time, the sink's own publish time and
sequence number. The file is only valid once ``close`` has written the
summary and footer, so the pipeline always closes this sink on shutdown.
"""

import logging
from typing import BinaryIO, Dict, Optional, Sequence

from mcap.writer import Writer

from ..schemas import FrameKind
from .base import Sink, SinkMessage, SinkRegistration

logger = logging.getLogger(__name__)

LIBRARY = "lidar-bridge"


class McapSink(Sink):
    """
    Args:
        name: Sink name used in log lines
        path: Output file, truncated if it exists
    """

    def __init__(self, name: str, path: str):
        super().__init__(name)
        self.path = path
        self._stream: Optional[BinaryIO] = None
        self._writer: Optional[Writer] = None
        self._channels: Dict[FrameKind, int] = {}
        self.messages_written = 0

    async def open(self, registrations: Sequence[SinkRegistration]) -> None:
        # OSError here is fatal at startup
        self._stream = open(self.path, "wb")
        self._writer = Writer(self._stream)
        self._writer.start(profile="", library=LIBRARY)

        schema_ids: Dict[str, int] = {}
        for registration in registrations:
            schema = registration.schema
            if schema.name not in schema_ids:
                schema_ids[schema.name] = self._writer.register_schema(
                    name=schema.name,
                    encoding=schema.encoding,
                    data=schema.data,
                )
            self._channels[registration.kind] = self._writer.register_channel(
                topic=registration.topic,
                message_encoding=registration.message_encoding,
                schema_id=schema_ids[schema.name],
            )
        logger.info("Logging to %s", self.path)

    async def send(self, message: SinkMessage) -> None:
        if self._writer is None:
            raise RuntimeError(f"{self!r} is not open")
        self._writer.add_message(
            channel_id=self._channels[message.kind],
            log_time=message.log_time_ns,
            data=message.payload,
            publish_time=message.publish_time_ns,
            sequence=message.sequence & 0xFFFFFFFF,
        )
        self.messages_written += 1

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        stream, self._stream = self._stream, None
        if writer is None:
            return
        try:
            writer.finish()
        finally:
            stream.close()
        logger.info("Closed %s after %d messages", self.path, self.messages_written)
