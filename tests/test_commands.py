"""
Tests for remote control command parsing and the command listener.

Run with:
    pytest tests/test_commands.py -v
"""

import asyncio

import pytest

from lidar_bridge.commands import CommandListener, decode_command, parse_command
from lidar_bridge.controller import RunState


async def stream(*payloads):
    for payload in payloads:
        yield payload


# =============================================================================
# PARSING
# =============================================================================

class TestParseCommand:
    """Permissive 'ends with on' protocol."""

    @pytest.mark.parametrize("text", ["on", "ON", "turn on", "lights ON", "lidar On"])
    def test_run(self, text):
        assert parse_command(text) is True

    @pytest.mark.parametrize("text", ["off", "OFF", "garbage", "", "on please", "stop"])
    def test_stop(self, text):
        assert parse_command(text) is False

    def test_suffix_inside_word(self):
        """Only the ending counts, not word boundaries."""
        assert parse_command("button") is True


class TestDecodeCommand:
    """Raw payload decoding."""

    def test_utf8(self):
        assert decode_command(b"on") is True
        assert decode_command(b"off") is False

    def test_non_ascii_text(self):
        assert decode_command("démarrage on".encode("utf-8")) is True

    def test_invalid_utf8_ignored(self):
        assert decode_command(b"\xff\xfeon") is None


# =============================================================================
# LISTENER
# =============================================================================

class TestCommandListener:
    """Applying control messages to the run state."""

    def test_apply_sets_run_state(self):
        state = RunState(False)
        listener = CommandListener(stream(), state)
        listener.apply(b"ON")
        assert state.is_running() is True
        listener.apply(b"garbage")
        assert state.is_running() is False

    def test_malformed_message_leaves_state(self):
        state = RunState(True)
        listener = CommandListener(stream(), state)
        listener.apply(b"\x80\x81")
        assert state.is_running() is True
        assert listener.received == 1
        assert listener.ignored == 1

    def test_run_consumes_stream(self):
        state = RunState(False)
        listener = CommandListener(stream(b"on", b"\xff", b"turn on", b"off"), state)
        asyncio.run(listener.run())

        assert state.is_running() is False
        assert listener.received == 4
        assert listener.ignored == 1

    def test_last_command_wins(self):
        state = RunState(False)
        listener = CommandListener(stream(b"off", b"lights ON"), state)
        asyncio.run(listener.run())
        assert state.is_running() is True
