"""
Abstract LiDAR Driver Interface
===============================

This module defines the boundary between the bridge and the sensor
transport. The bridge never talks to a serial port directly: it drives a
``LidarBase`` implementation through five operations.

1. ``initialize()`` opens the port
2. ``start()`` spins up the motor and starts scanning
3. ``stop()`` stops the motor
4. ``grab_scan()`` blocks until one full revolution is available
5. ``shutdown()`` releases the port

Example Implementation
----------------------
>>> class MyLidar(LidarBase):
...     def initialize(self) -> None:
...         self._device = MyLidarSDK(port=self.config.port)
...
...     def start(self) -> None:
...         self._device.motor_on()
...         self._device.start_scanning()
...
...     def stop(self) -> None:
...         self._device.motor_off()
...
...     def grab_scan(self) -> List[RawSample]:
...         return [RawSample(a, d, q, d > 0) for a, d, q in self._device.read()]
...
...     def shutdown(self) -> None:
...         self._device.close()
"""

import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List


class LidarError(Exception):
    """Non-fatal driver error raised during an active session."""


class LidarTimeout(LidarError):
    """The sensor did not deliver a revolution in time. Safe to retry."""


class LidarDisconnected(LidarError):
    """The link to the sensor broke. The session has to be reopened."""


class LidarOpenError(LidarError):
    """The sensor port could not be opened."""


@dataclass(frozen=True)
class RawSample:
    """
    One range reading as delivered by the driver.

    Attributes
    ----------
    angle : float
        Sensor-native angle (radians, increasing clockwise)
    distance : float
        Measured distance (meters), raw value even when invalid
    quality : int
        Signal quality, 0-255
    valid : bool
        False when the sensor reported no echo or an out-of-range reading
    """
    angle: float
    distance: float
    quality: int
    valid: bool = True


# One sensor rotation worth of samples
Revolution = List[RawSample]


def sort_revolution(samples: Iterable[RawSample]) -> Revolution:
    """Return the samples ordered by ascending angle (stable)."""
    return sorted(samples, key=lambda sample: sample.angle)


@dataclass
class LidarConfig:
    """
    Configuration for the sensor.

    Attributes
    ----------
    port : str
        Serial port or device path
    baudrate : int
        Serial baudrate
    timeout : float
        Serial read timeout in seconds
    max_buffered_measures : int
        Driver-side buffer limit before the input is flushed
    run_at_startup : bool
        Whether the motor should spin as soon as the bridge starts
    """
    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    timeout: float = 1.0
    max_buffered_measures: int = 3000
    run_at_startup: bool = True


class LidarBase(ABC):
    """
    Abstract base class for LiDAR drivers.

    Errors are reported with exceptions rather than return codes:
    ``LidarTimeout`` for recoverable read timeouts, ``LidarDisconnected``
    for broken links, ``LidarOpenError`` when the port cannot be opened and
    plain ``LidarError`` for anything else the driver reports.
    """

    def __init__(self, config: LidarConfig):
        """
        Initialize with configuration.

        Parameters
        ----------
        config : LidarConfig
            Sensor configuration
        """
        self.config = config
        self._initialized = False
        self._running = False

    @property
    def is_initialized(self) -> bool:
        """Check if the port is open."""
        return self._initialized

    @property
    def is_running(self) -> bool:
        """Check if the motor is spinning and the sensor is scanning."""
        return self._running

    @abstractmethod
    def initialize(self) -> None:
        """
        Open the connection to the hardware.

        Raises
        ------
        LidarOpenError
            If the port cannot be opened
        """

    @abstractmethod
    def start(self) -> None:
        """Start the motor, then start scanning."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the motor."""

    @abstractmethod
    def grab_scan(self) -> Revolution:
        """
        Block until one full revolution is available.

        Returns
        -------
        list of RawSample
            Samples in the order the sensor delivered them (not sorted)
        """

    @abstractmethod
    def shutdown(self) -> None:
        """Release the port."""

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


class DummyLidar(LidarBase):
    """
    Dummy LiDAR for testing without hardware.

    Generates a square room of 3 m sides around the sensor. A fraction of the
    samples is reported without echo so downstream filtering gets exercised.
    """

    def __init__(
        self,
        config: LidarConfig,
        samples_per_revolution: int = 360,
        invalid_ratio: float = 0.05,
        seed: int = 0,
    ):
        super().__init__(config)
        self.samples_per_revolution = samples_per_revolution
        self.invalid_ratio = invalid_ratio
        self._random = random.Random(seed)

    def initialize(self) -> None:
        self._initialized = True

    def start(self) -> None:
        if not self._initialized:
            raise LidarError("start() called before initialize()")
        self._running = True

    def stop(self) -> None:
        self._running = False

    def grab_scan(self) -> Revolution:
        if not self._running:
            raise LidarTimeout("motor is not spinning")

        samples = []
        step = 2 * math.pi / self.samples_per_revolution
        # Start somewhere mid-rotation, the way a real sensor does
        offset = self._random.randrange(self.samples_per_revolution)
        for i in range(self.samples_per_revolution):
            angle = ((i + offset) % self.samples_per_revolution) * step
            half_side = 1.5
            distance = half_side / max(abs(math.cos(angle)), abs(math.sin(angle)))
            distance += self._random.uniform(-0.01, 0.01)
            if self._random.random() < self.invalid_ratio:
                samples.append(RawSample(angle, 0.0, 0, False))
            else:
                quality = self._random.randint(10, 60)
                samples.append(RawSample(angle, distance, quality, True))
        return samples

    def shutdown(self) -> None:
        self._initialized = False
        self._running = False
