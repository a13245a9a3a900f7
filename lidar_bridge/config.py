"""
Bridge configuration
====================

All settings live in one ``BridgeConfig`` object built at startup and
passed to the components that need them. It can be loaded from YAML:

    lidar:
      port: /dev/ttyUSB0
      run_at_startup: true
    frame_id: lidar
    topics:
      laser_scan: laser_scan
      point_cloud: point_cloud
      control: lidar_state
      prefix: robot1
    pubsub:
      listen: ["tcp://*:7447"]
      connect: ["tcp://127.0.0.1:7446"]
    sinks:
      - kind: pubsub
      - kind: foxglove
        host: 127.0.0.1
        port: 8765
      - kind: mcap
        path: out.mcap

Command line flags override values read from the file.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict, List, Optional

import yaml

from .base import LidarConfig
from .frames import Pose
from .schemas import FrameKind

SINK_KINDS = ("pubsub", "foxglove", "mcap")


class ConfigError(ValueError):
    """Invalid configuration. Fatal at startup."""


@dataclass
class TopicConfig:
    """Pub/sub and channel names. ``prefix`` is prepended as a path segment."""
    laser_scan: str = "laser_scan"
    point_cloud: str = "point_cloud"
    control: str = "lidar_state"
    prefix: str = ""

    def resolve(self, name: str) -> str:
        if not self.prefix:
            return name
        return f"{self.prefix.rstrip('/')}/{name}"

    def for_kind(self, kind: FrameKind) -> str:
        name = self.laser_scan if kind is FrameKind.LASER_SCAN else self.point_cloud
        return self.resolve(name)

    @property
    def control_topic(self) -> str:
        return self.resolve(self.control)


@dataclass
class PubSubConfig:
    """
    ZeroMQ endpoints.

    Attributes:
        listen: Endpoints the publisher binds (telemetry goes out here)
        connect: Endpoints subscribers connect to (commands and relayed
            telemetry come in here)
        publish_connect: Extra endpoints the publisher connects to, e.g. a proxy
        subscribe_listen: Extra endpoints subscribers bind
    """
    listen: List[str] = field(default_factory=lambda: ["tcp://*:7447"])
    connect: List[str] = field(default_factory=list)
    publish_connect: List[str] = field(default_factory=list)
    subscribe_listen: List[str] = field(default_factory=list)


@dataclass
class SinkConfig:
    """
    One entry of the declarative sink list.

    Options used per kind:
        pubsub:   (none, uses the session and topic names)
        foxglove: host, port, latched
        mcap:     path
    """
    kind: str
    name: str = ""
    host: str = "127.0.0.1"
    port: int = 8765
    latched: bool = False
    path: str = "out.mcap"
    queue_size: int = 32

    def __post_init__(self):
        if not self.name:
            self.name = self.kind


@dataclass
class BridgeConfig:
    lidar: LidarConfig = field(default_factory=LidarConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    pubsub: PubSubConfig = field(default_factory=PubSubConfig)
    sinks: List[SinkConfig] = field(default_factory=lambda: [SinkConfig("pubsub")])
    frame_id: str = "lidar"
    pose: Pose = field(default_factory=Pose)
    handoff_capacity: int = 10
    handoff_timeout: float = 1.0
    poll_interval: float = 0.5
    restart_backoff: float = 1.0
    relay_log_interval: int = 20

    def validate(self, relay: bool = False) -> "BridgeConfig":
        """
        Check the configuration for consistency.

        Args:
            relay: Validate for relay mode (no pubsub sink allowed)

        Raises:
            ConfigError: On the first problem found
        """
        if not self.sinks:
            raise ConfigError("at least one sink is required")
        names = set()
        for sink in self.sinks:
            if sink.kind not in SINK_KINDS:
                raise ConfigError(f"unknown sink kind {sink.kind!r}, expected one of {SINK_KINDS}")
            if sink.name in names:
                raise ConfigError(f"duplicate sink name {sink.name!r}")
            if sink.queue_size < 1:
                raise ConfigError(f"sink {sink.name!r}: queue_size must be positive")
            names.add(sink.name)
            if relay and sink.kind == "pubsub":
                raise ConfigError("relay mode cannot publish back to pub/sub")
        if self.handoff_capacity < 1:
            raise ConfigError("handoff_capacity must be positive")
        if self.handoff_timeout <= 0:
            raise ConfigError("handoff_timeout must be positive")
        if self.topics.laser_scan == self.topics.point_cloud:
            raise ConfigError("laser_scan and point_cloud topics must differ")
        return self


def _build(cls, data: Optional[Dict[str, Any]], section: str):
    """Instantiate a config dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"{section}: expected a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"{section}: unknown keys {sorted(unknown)}")
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigError(f"{section}: {exc}") from exc


def config_from_dict(data: Optional[Dict[str, Any]]) -> BridgeConfig:
    data = dict(data or {})
    nested = {
        "lidar": LidarConfig,
        "topics": TopicConfig,
        "pubsub": PubSubConfig,
        "pose": Pose,
    }
    kwargs: Dict[str, Any] = {}
    for key, cls in nested.items():
        if key in data:
            kwargs[key] = _build(cls, data.pop(key), key)
    if "sinks" in data:
        sinks = data.pop("sinks") or []
        if not isinstance(sinks, list):
            raise ConfigError("sinks: expected a list")
        kwargs["sinks"] = [_build(SinkConfig, s, f"sinks[{i}]") for i, s in enumerate(sinks)]

    top_level = {f.name for f in fields(BridgeConfig)} - set(nested) - {"sinks"}
    unknown = set(data) - top_level
    if unknown:
        raise ConfigError(f"unknown keys {sorted(unknown)}")
    kwargs.update(data)
    return BridgeConfig(**kwargs)


def load_config(path: str) -> BridgeConfig:
    """Load a YAML configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc
    return config_from_dict(data)


def to_dict(config) -> Dict[str, Any]:
    """Plain-dict view of a config object, for logging."""
    if is_dataclass(config):
        return {f.name: to_dict(getattr(config, f.name)) for f in fields(config)}
    if isinstance(config, list):
        return [to_dict(item) for item in config]
    return config
