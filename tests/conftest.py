"""Shared fixtures and fakes for the lidar-bridge test suite."""

from typing import List

import pytest

from lidar_bridge.base import LidarConfig, LidarBase, LidarTimeout, RawSample, Revolution


class ScriptedLidar(LidarBase):
    """
    Driver double that records every call and replays a script of
    revolutions or exceptions from ``grab_scan``.
    """

    def __init__(self, config: LidarConfig = None, script=None, calls=None):
        super().__init__(config or LidarConfig(port="/dev/fake"))
        self.script = list(script or [])
        self.calls: List[str] = calls if calls is not None else []

    def initialize(self) -> None:
        self.calls.append("initialize")
        self._initialized = True

    def start(self) -> None:
        self.calls.append("start")
        self._running = True

    def stop(self) -> None:
        self.calls.append("stop")
        self._running = False

    def grab_scan(self) -> Revolution:
        self.calls.append("grab")
        if not self.script:
            raise LidarTimeout("script exhausted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def shutdown(self) -> None:
        self.calls.append("shutdown")
        self._initialized = False
        self._running = False


@pytest.fixture
def three_samples() -> Revolution:
    """The three-sample revolution used throughout the encoder tests, unsorted."""
    return [
        RawSample(angle=0.1, distance=1.0, quality=20, valid=True),
        RawSample(angle=0.05, distance=2.0, quality=0, valid=False),
        RawSample(angle=0.2, distance=0.5, quality=40, valid=True),
    ]
