"""
lidar-bridge - Spinning Lidar Acquisition and Distribution
==========================================================

Drives a spinning lidar on a dedicated thread, encodes every revolution as a
LaserScan and a PointCloud record and delivers both to a pub/sub bus, a
Foxglove WebSocket server and an MCAP log.

Example:
    >>> import asyncio
    >>> from lidar_bridge import BridgeConfig, DummyLidar, LidarBridge
    >>>
    >>> config = BridgeConfig()
    >>> bridge = LidarBridge(config, lambda: DummyLidar(config.lidar))
    >>> asyncio.run(bridge.run())
"""

from .base import (
    DummyLidar,
    LidarBase,
    LidarConfig,
    LidarDisconnected,
    LidarError,
    LidarOpenError,
    LidarTimeout,
    RawSample,
)
from .config import BridgeConfig, ConfigError, load_config
from .controller import DeviceController, RunState
from .frames import LaserScanFrame, PointCloudFrame, Pose, encode, unpack_points
from .geometry import ProjectedPoint, project
from .pipeline import LidarBridge, RelayBridge

__version__ = "0.1.0"
__all__ = [
    "DummyLidar",
    "LidarBase",
    "LidarConfig",
    "LidarDisconnected",
    "LidarError",
    "LidarOpenError",
    "LidarTimeout",
    "RawSample",
    "BridgeConfig",
    "ConfigError",
    "load_config",
    "DeviceController",
    "RunState",
    "LaserScanFrame",
    "PointCloudFrame",
    "Pose",
    "encode",
    "unpack_points",
    "ProjectedPoint",
    "project",
    "LidarBridge",
    "RelayBridge",
]
