"""
Tests for the Foxglove visualization sink.

Most tests replace the Foxglove SDK with mocks and check how the sink drives
it; one test talks to a real SDK server on a free local port.

Run with:
    pytest tests/test_foxglove.py -v
"""

import asyncio
import json
import struct
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from websockets.asyncio.client import connect

from lidar_bridge.config import SinkConfig, TopicConfig
from lidar_bridge.schemas import FrameKind, SchemaRegistry
from lidar_bridge.sinks import FoxgloveSink, SinkError, build_sink, stream_registrations
from lidar_bridge.sinks.base import SinkMessage

LS = FrameKind.LASER_SCAN
PC = FrameKind.POINT_CLOUD

SUBPROTOCOL = "foxglove.websocket.v1"


# =============================================================================
# FIXTURES AND FAKES
# =============================================================================

class FakeChannel:
    """Records what the sink logs on one SDK channel."""

    def __init__(self, topic, schema=None, message_encoding=None, context=None):
        self.topic = topic
        self.schema = schema
        self.message_encoding = message_encoding
        self.context = context
        self.logged = []
        self.closed = False

    def log(self, payload, log_time=None):
        self.logged.append((payload, log_time))

    def close(self):
        self.closed = True


def fake_sdk(port=9001):
    sdk = MagicMock()
    sdk.Channel.side_effect = FakeChannel
    sdk.start_server.return_value.port = port
    return sdk


def registrations(latched=False):
    regs = stream_registrations(TopicConfig(), SchemaRegistry())
    if latched:
        regs = [replace(r, latched=True) for r in regs]
    return regs


def message(kind, payload, publish_time, sequence=1):
    return SinkMessage(kind, payload, log_time_ns=1, publish_time_ns=publish_time, sequence=sequence)


def run_with_sdk(sdk, scenario):
    with patch("lidar_bridge.sinks.foxglove.foxglove", sdk):
        return asyncio.run(scenario())


def decode_frame(frame):
    opcode, sub_id, timestamp = struct.unpack_from("<BIQ", frame)
    return opcode, sub_id, timestamp, frame[13:]


# =============================================================================
# SINK OVER THE SDK
# =============================================================================

class TestFoxgloveSink:
    """Server, channels and logging through the SDK."""

    def test_open_starts_server_in_own_context(self):
        sdk = fake_sdk(port=9123)
        sink = FoxgloveSink("foxglove", host="0.0.0.0", port=0, server_name="rover")

        async def scenario():
            await sink.open(registrations())

        run_with_sdk(sdk, scenario)
        sdk.start_server.assert_called_once_with(
            name="rover",
            host="0.0.0.0",
            port=0,
            server_listener=sink.replay,
            context=sdk.Context.return_value,
        )
        assert sink.port == 9123

    def test_channel_per_stream_with_protobuf_schema(self):
        sdk = fake_sdk()
        schemas = SchemaRegistry()
        sink = FoxgloveSink("foxglove")

        async def scenario():
            await sink.open(registrations())

        run_with_sdk(sdk, scenario)
        schema_calls = [c.kwargs for c in sdk.Schema.call_args_list]
        assert schema_calls == [
            {"name": schemas[LS].name, "encoding": "protobuf", "data": schemas[LS].data},
            {"name": schemas[PC].name, "encoding": "protobuf", "data": schemas[PC].data},
        ]
        assert sink.channels[LS].topic == "laser_scan"
        assert sink.channels[PC].topic == "point_cloud"
        assert all(c.message_encoding == "protobuf" for c in sink.channels.values())
        assert all(c.context is sdk.Context.return_value for c in sink.channels.values())

    def test_send_logs_with_publish_time(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove")

        async def scenario():
            await sink.open(registrations())
            await sink.send(message(LS, b"scan", publish_time=42))
            await sink.send(message(PC, b"cloud", publish_time=43))
            return dict(sink.channels)

        channels = run_with_sdk(sdk, scenario)
        assert channels[LS].logged == [(b"scan", 42)]
        assert channels[PC].logged == [(b"cloud", 43)]

    def test_close_stops_server_and_closes_channels(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove")

        async def scenario():
            await sink.open(registrations())
            channels = list(sink.channels.values())
            await sink.close()
            return channels

        channels = run_with_sdk(sdk, scenario)
        assert all(c.closed for c in channels)
        sdk.start_server.return_value.stop.assert_called_once_with()
        assert sink.server is None
        assert sink.channels == {}

    def test_start_failure_raises_sink_error(self):
        sdk = fake_sdk()
        sdk.start_server.side_effect = RuntimeError("Address already in use")
        sink = FoxgloveSink("foxglove", port=8765)

        async def scenario():
            await sink.open(registrations())

        with pytest.raises(SinkError, match="8765"):
            run_with_sdk(sdk, scenario)

    def test_built_from_config(self):
        sink = build_sink(SinkConfig("foxglove", host="0.0.0.0", port=9000, latched=True, queue_size=4))
        assert isinstance(sink, FoxgloveSink)
        assert (sink.host, sink.port, sink.latched, sink.queue_size) == ("0.0.0.0", 9000, True, 4)


# =============================================================================
# LATCHED REPLAY
# =============================================================================

class TestLatchedReplay:
    """Late subscribers and the last value."""

    def subscribe_from_server_thread(self, sink, topic):
        """The SDK invokes listeners on its own thread."""
        client = SimpleNamespace(id=1)
        view = SimpleNamespace(id=1, topic=topic)

        async def subscribe():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, sink.replay.on_subscribe, client, view)
            for _ in range(3):
                await asyncio.sleep(0)

        return subscribe()

    def test_latched_stream_replays_last_message(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove", latched=True)

        async def scenario():
            await sink.open(registrations())
            await sink.send(message(LS, b"old", publish_time=10))
            await sink.send(message(LS, b"new", publish_time=11))
            await self.subscribe_from_server_thread(sink, "laser_scan")
            return sink.channels[LS]

        channel = run_with_sdk(sdk, scenario)
        assert channel.logged == [(b"old", 10), (b"new", 11), (b"new", 11)]

    def test_latched_registration(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove")

        async def scenario():
            await sink.open(registrations(latched=True))
            await sink.send(message(PC, b"cloud", publish_time=5))
            await self.subscribe_from_server_thread(sink, "point_cloud")
            return sink.channels[PC]

        channel = run_with_sdk(sdk, scenario)
        assert channel.logged == [(b"cloud", 5), (b"cloud", 5)]

    def test_plain_stream_does_not_replay(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove", latched=False)

        async def scenario():
            await sink.open(registrations())
            await sink.send(message(LS, b"old", publish_time=10))
            await self.subscribe_from_server_thread(sink, "laser_scan")
            return sink.channels[LS]

        channel = run_with_sdk(sdk, scenario)
        assert channel.logged == [(b"old", 10)]
        assert sink.replay.last("laser_scan") is None

    def test_nothing_to_replay_before_first_message(self):
        sdk = fake_sdk()
        sink = FoxgloveSink("foxglove", latched=True)

        async def scenario():
            await sink.open(registrations())
            await self.subscribe_from_server_thread(sink, "laser_scan")
            return sink.channels[LS]

        channel = run_with_sdk(sdk, scenario)
        assert channel.logged == []


# =============================================================================
# REAL SERVER
# =============================================================================

@pytest.mark.timeout(30)
class TestFoxgloveServer:
    """End to end through the SDK's websocket server."""

    def test_client_receives_frames(self):
        async def scenario():
            sink = FoxgloveSink("foxglove", "127.0.0.1", 0)
            await sink.open(registrations())
            try:
                async with connect(f"ws://127.0.0.1:{sink.port}", subprotocols=[SUBPROTOCOL]) as ws:
                    info, channels = None, {}
                    while len(channels) < 2:
                        text = json.loads(await asyncio.wait_for(ws.recv(), 5))
                        if text["op"] == "serverInfo":
                            info = text
                        elif text["op"] == "advertise":
                            channels.update({c["topic"]: c for c in text["channels"]})

                    subscription = {"id": 1, "channelId": channels["point_cloud"]["id"]}
                    await ws.send(json.dumps({"op": "subscribe", "subscriptions": [subscription]}))

                    # frames logged before the subscription lands are not delivered
                    for _ in range(100):
                        await sink.send(message(PC, b"pc", publish_time=3))
                        try:
                            frame = await asyncio.wait_for(ws.recv(), 0.05)
                        except asyncio.TimeoutError:
                            continue
                        if isinstance(frame, bytes):
                            return info, channels, decode_frame(frame)
                    raise AssertionError("no message data received")
            finally:
                await sink.close()

        info, channels, frame = asyncio.run(scenario())
        assert info["name"] == "lidar-bridge"
        assert set(channels) == {"laser_scan", "point_cloud"}
        assert channels["point_cloud"]["encoding"] == "protobuf"
        assert channels["point_cloud"]["schemaName"] == "foxglove.PointCloud"
        assert frame == (1, 1, 3, b"pc")
