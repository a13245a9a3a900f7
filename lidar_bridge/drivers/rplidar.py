"""
RPLidar Driver Implementation
=============================

Implements the LidarBase interface for Slamtec RPLidar sensors on top of
the ``rplidar`` package (distributed as ``rplidar-roboticia``).

The package streams individual measurements as
``(new_scan, quality, angle_deg, distance_mm)``. This driver groups them
into revolutions: a revolution ends right before the next measurement
carrying the ``new_scan`` flag.

Usage
-----
>>> from lidar_bridge.base import LidarConfig
>>> from lidar_bridge.drivers.rplidar import RPLidarDriver
>>>
>>> with RPLidarDriver(LidarConfig(port="/dev/ttyUSB0")) as lidar:
...     lidar.start()
...     revolution = lidar.grab_scan()
...     print(f"Got {len(revolution)} samples")
"""

import logging
import math
from typing import Iterator, Optional, Tuple

from rplidar import RPLidar, RPLidarException
from serial import SerialException

from ..base import (
    LidarBase,
    LidarConfig,
    LidarDisconnected,
    LidarError,
    LidarOpenError,
    LidarTimeout,
    RawSample,
    Revolution,
)

# Raised by the rplidar package when a read returns fewer bytes than asked for
_SHORT_READ = "Wrong body size"

Measure = Tuple[bool, int, float, float]

logger = logging.getLogger(__name__)


def measure_to_sample(quality: int, angle_deg: float, distance_mm: float) -> RawSample:
    """Convert one rplidar measurement to SI units. Zero distance means no echo."""
    return RawSample(
        angle=math.radians(angle_deg),
        distance=distance_mm / 1000.0,
        quality=int(quality),
        valid=distance_mm > 0.0,
    )


class RPLidarDriver(LidarBase):
    """RPLidar driver wrapping the rplidar package."""

    def __init__(self, config: LidarConfig):
        super().__init__(config)
        self._lidar: Optional[RPLidar] = None
        self._measures: Optional[Iterator[Measure]] = None
        self._carry: Optional[RawSample] = None

    def initialize(self) -> None:
        try:
            self._lidar = RPLidar(
                self.config.port,
                baudrate=self.config.baudrate,
                timeout=self.config.timeout,
            )
        except (RPLidarException, SerialException) as exc:
            raise LidarOpenError(f"cannot open {self.config.port}: {exc}") from exc
        self._initialized = True

    def start(self) -> None:
        lidar = self._require_port()
        try:
            lidar.start_motor()
        except SerialException as exc:
            raise LidarDisconnected(str(exc)) from exc
        # iter_measures sends the scan request lazily, on the first next()
        self._measures = lidar.iter_measures(
            max_buf_meas=self.config.max_buffered_measures
        )
        self._carry = None
        self._running = True

    def stop(self) -> None:
        lidar = self._require_port()
        try:
            lidar.stop()
            lidar.stop_motor()
        except SerialException as exc:
            raise LidarDisconnected(str(exc)) from exc
        finally:
            self._measures = None
            self._carry = None
            self._running = False

    def grab_scan(self) -> Revolution:
        lidar = self._require_port()
        if self._measures is None:
            if not self._running:
                raise LidarError("grab_scan() called while stopped")
            self._measures = lidar.iter_measures(
                max_buf_meas=self.config.max_buffered_measures
            )

        revolution: Revolution = []
        if self._carry is not None:
            revolution.append(self._carry)
            self._carry = None

        try:
            for new_scan, quality, angle, distance in self._measures:
                sample = measure_to_sample(quality, angle, distance)
                if new_scan and revolution:
                    self._carry = sample
                    return revolution
                revolution.append(sample)
        except RPLidarException as exc:
            # The generator is dead after raising; a fresh one restarts the scan
            self._measures = None
            if _SHORT_READ in str(exc):
                raise LidarTimeout(str(exc)) from exc
            raise LidarError(str(exc)) from exc
        except SerialException as exc:
            self._measures = None
            raise LidarDisconnected(str(exc)) from exc

        self._measures = None
        raise LidarError("measurement stream ended")

    def shutdown(self) -> None:
        if self._lidar is not None:
            try:
                self._lidar.stop()
                self._lidar.stop_motor()
            except (RPLidarException, SerialException) as exc:
                logger.warning("Could not stop sensor on shutdown: %s", exc)
            finally:
                self._lidar.disconnect()
                self._lidar = None
        self._measures = None
        self._carry = None
        self._initialized = False
        self._running = False

    def _require_port(self) -> RPLidar:
        if self._lidar is None:
            raise LidarError("port is not open")
        return self._lidar
