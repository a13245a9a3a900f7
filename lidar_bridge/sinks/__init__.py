"""
Telemetry sinks and the declarative sink list.

    sinks = build_sinks(config.sinks, session)
    registrations = stream_registrations(config.topics, SchemaRegistry())
"""

from typing import List, Optional, Sequence

from ..config import ConfigError, SinkConfig, TopicConfig
from ..schemas import PROTOBUF_ENCODING, SchemaRegistry
from ..transport import PubSubSession
from .base import Sink, SinkError, SinkMessage, SinkRegistration
from .foxglove import FoxgloveSink, LatchedReplay
from .mcap_log import McapSink
from .pubsub import PubSubSink

__all__ = [
    "Sink",
    "SinkError",
    "SinkMessage",
    "SinkRegistration",
    "PubSubSink",
    "FoxgloveSink",
    "LatchedReplay",
    "McapSink",
    "build_sink",
    "build_sinks",
    "stream_registrations",
]


def stream_registrations(topics: TopicConfig, schemas: SchemaRegistry) -> List[SinkRegistration]:
    """One registration per frame kind, in registry order."""
    return [
        SinkRegistration(
            kind=kind,
            topic=topics.for_kind(kind),
            message_encoding=PROTOBUF_ENCODING,
            schema=schemas[kind],
        )
        for kind in schemas.kinds()
    ]


def build_sink(config: SinkConfig, session: Optional[PubSubSession] = None) -> Sink:
    if config.kind == "pubsub":
        if session is None:
            raise ConfigError(f"sink {config.name!r} needs a pub/sub session")
        sink = PubSubSink(config.name, session)
    elif config.kind == "foxglove":
        sink = FoxgloveSink(config.name, config.host, config.port, latched=config.latched)
    elif config.kind == "mcap":
        sink = McapSink(config.name, config.path)
    else:
        raise ConfigError(f"unknown sink kind {config.kind!r}")
    sink.queue_size = config.queue_size
    return sink


def build_sinks(configs: Sequence[SinkConfig], session: Optional[PubSubSession] = None) -> List[Sink]:
    return [build_sink(c, session) for c in configs]
