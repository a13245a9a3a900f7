"""
Tests for the MCAP log sink.

Run with:
    pytest tests/test_mcap.py -v
"""

import asyncio

import pytest
from mcap.reader import make_reader

from lidar_bridge.config import TopicConfig
from lidar_bridge.schemas import FrameKind, SchemaRegistry
from lidar_bridge.sinks import McapSink, stream_registrations
from lidar_bridge.sinks.base import SinkMessage


def read_log(path):
    with open(path, "rb") as stream:
        reader = make_reader(stream)
        return [(schema, channel, message) for schema, channel, message in reader.iter_messages()]


def write_log(path, messages, topics=None):
    async def scenario():
        sink = McapSink("mcap", str(path))
        await sink.open(stream_registrations(topics or TopicConfig(), SchemaRegistry()))
        for message in messages:
            await sink.send(message)
        await sink.close()
        return sink

    return asyncio.run(scenario())


class TestMcapSink:
    """Written files read back with the mcap reader."""

    def test_messages_round_trip(self, tmp_path):
        path = tmp_path / "out.mcap"
        sink = write_log(path, [
            SinkMessage(FrameKind.LASER_SCAN, b"scan-1", 100, 110, 1),
            SinkMessage(FrameKind.POINT_CLOUD, b"cloud-1", 101, 111, 1),
            SinkMessage(FrameKind.LASER_SCAN, b"scan-2", 200, 210, 2),
        ])

        records = read_log(path)
        assert sink.messages_written == 3
        assert [(c.topic, m.data, m.sequence, m.log_time, m.publish_time) for _, c, m in records] == [
            ("laser_scan", b"scan-1", 1, 100, 110),
            ("point_cloud", b"cloud-1", 1, 101, 111),
            ("laser_scan", b"scan-2", 2, 200, 210),
        ]

    def test_schemas_and_encodings(self, tmp_path):
        path = tmp_path / "out.mcap"
        write_log(path, [
            SinkMessage(FrameKind.LASER_SCAN, b"s", 1, 1, 1),
            SinkMessage(FrameKind.POINT_CLOUD, b"c", 1, 1, 1),
        ])
        registry = SchemaRegistry()

        for schema, channel, _ in read_log(path):
            assert channel.message_encoding == "protobuf"
            assert schema.encoding == "protobuf"
            kind = FrameKind(channel.topic)
            assert schema.name == registry[kind].name
            assert schema.data == registry[kind].data

    def test_prefixed_topics(self, tmp_path):
        path = tmp_path / "out.mcap"
        write_log(path, [SinkMessage(FrameKind.POINT_CLOUD, b"c", 1, 1, 1)], TopicConfig(prefix="rover"))
        assert [c.topic for _, c, _ in read_log(path)] == ["rover/point_cloud"]

    def test_empty_log_is_valid(self, tmp_path):
        path = tmp_path / "out.mcap"
        write_log(path, [])
        assert read_log(path) == []

    def test_unwritable_path_fails_on_open(self, tmp_path):
        sink = McapSink("mcap", str(tmp_path / "missing" / "out.mcap"))
        with pytest.raises(OSError):
            asyncio.run(sink.open([]))

    def test_send_before_open(self):
        sink = McapSink("mcap", "unused.mcap")
        with pytest.raises(RuntimeError):
            asyncio.run(sink.send(SinkMessage(FrameKind.LASER_SCAN, b"s", 1, 1, 1)))

    def test_close_without_open(self):
        asyncio.run(McapSink("mcap", "unused.mcap").close())
