"""
LiDAR Driver Implementations
============================

Available drivers:
- RPLidarDriver: For Slamtec RPLidar A1/A2/A3 sensors
- DummyLidar: Synthetic data, no hardware needed (lives in ``lidar_bridge.base``)

Add your own driver by implementing LidarBase.
"""

from ..base import DummyLidar
from .rplidar import RPLidarDriver

__all__ = [
    "RPLidarDriver",
    "DummyLidar",
]
