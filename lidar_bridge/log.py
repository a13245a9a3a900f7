"""
Logging setup.

Every module logs through ``logging.getLogger(__name__)``; this module only
installs the process-wide handler, once, at startup. Lines are logfmt:

    ts=2024-05-01T12:00:00.123Z level=INFO target=lidar_bridge.controller msg="Starting lidar"

The level comes from ``--log-level``, else ``LIDAR_BRIDGE_LOG``, else INFO.
"""

import logging
import os
import sys
import time
from typing import Optional

ENV_VAR = "LIDAR_BRIDGE_LOG"
DEFAULT_LEVEL = "INFO"

_installed = False


class LogfmtFormatter(logging.Formatter):
    """Render records as ``key=value`` pairs."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%dT%H:%M:%S")
        message = record.getMessage().replace("\\", "\\\\").replace('"', '\\"')
        line = (
            f"ts={ts}.{int(record.msecs):03d}Z level={record.levelname} "
            f"target={record.name} msg=\"{message}\""
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def resolve_level(level: Optional[str] = None) -> int:
    name = (level or os.environ.get(ENV_VAR) or DEFAULT_LEVEL).upper()
    value = logging.getLevelName(name)
    if not isinstance(value, int):
        raise ValueError(f"unknown log level {name!r}")
    return value


def setup_logging(level: Optional[str] = None, stream=None) -> logging.Handler:
    """
    Install the logfmt handler on the root logger.

    Raises:
        RuntimeError: If logging was already set up in this process
        ValueError: If the level name is unknown
    """
    global _installed
    if _installed:
        raise RuntimeError("logging is already set up")

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(LogfmtFormatter())
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    root.addHandler(handler)
    _installed = True
    return handler
