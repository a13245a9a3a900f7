"""
Remote Control Commands
=======================

The sensor motor is switched remotely by free-text messages on the control
topic (``lidar_state`` by default).

Protocol
--------
The payload is decoded as UTF-8 and lowercased. If it ends with ``"on"``
the sensor runs, anything else stops it:

    "on", "ON", "turn on", "lights ON"   -> run
    "off", "OFF", "stop", "garbage"      -> stop

Payloads that are not valid UTF-8 are logged and ignored, leaving the run
state untouched.
"""

import logging
from typing import AsyncIterable, Optional

from .controller import RunState

logger = logging.getLogger(__name__)

ON_SUFFIX = "on"


def parse_command(text: str) -> bool:
    """Return True if the command asks the sensor to run."""
    return text.lower().endswith(ON_SUFFIX)


def decode_command(payload: bytes) -> Optional[bool]:
    """
    Decode a raw control payload.

    Returns:
        Desired run state, or None if the payload is not text
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Ignoring control message that is not UTF-8 (%d bytes)", len(payload))
        return None
    return parse_command(text)


class CommandListener:
    """
    Applies control messages to the shared run state.

    Only writes ``RunState``; it never waits on the controller thread or on
    any sink, so a stalled sensor or sink cannot hold up commands.
    """

    def __init__(self, messages: AsyncIterable[bytes], run_state: RunState):
        self.messages = messages
        self.run_state = run_state
        self.received = 0
        self.ignored = 0

    def apply(self, payload: bytes) -> None:
        self.received += 1
        should_run = decode_command(payload)
        if should_run is None:
            self.ignored += 1
            return
        logger.info("Control message: %r", payload.decode("utf-8"))
        if should_run:
            logger.info("Starting scan")
        else:
            logger.info("Stopping scan")
        self.run_state.set(should_run)

    async def run(self) -> None:
        """Consume control messages until the stream ends or the task is cancelled."""
        async for payload in self.messages:
            self.apply(payload)
