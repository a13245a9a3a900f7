"""
Scan geometry

Projects polar sensor samples into the Cartesian frame used by the
visualization consumers. The sensor's native angle grows clockwise; the
projected frame is right-handed (counter-clockwise), so the angle sign is
flipped before projecting.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np

from .base import RawSample


@dataclass
class ProjectedPoint:
    """
    A valid sample in Cartesian coordinates.

    The polar values are kept alongside x/y so a consumer can recover the
    original reading. All float fields are stored as float32 and quality as
    uint8, the exact widths used on the wire.
    """
    x: float = 0.0
    y: float = 0.0
    distance: float = 0.0
    angle: float = 0.0
    quality: int = 0

    def __post_init__(self):
        """Ensure wire precision"""
        self.x = np.float32(self.x)
        self.y = np.float32(self.y)
        self.distance = np.float32(self.distance)
        self.angle = np.float32(self.angle)
        self.quality = np.uint8(self.quality)


def project(sample: RawSample) -> Optional[ProjectedPoint]:
    """
    Project one sample, or return None if the sensor flagged it invalid.

    Args:
        sample: Raw polar reading

    Returns:
        ProjectedPoint, or None for samples without a usable echo
    """
    if not sample.valid:
        return None
    x = sample.distance * math.cos(-sample.angle)
    y = sample.distance * math.sin(-sample.angle)
    return ProjectedPoint(x, y, sample.distance, sample.angle, sample.quality)


def project_all(samples: Iterable[RawSample]) -> List[ProjectedPoint]:
    """Project every sample, dropping the invalid ones. Order is preserved."""
    points = []
    for sample in samples:
        point = project(sample)
        if point is not None:
            points.append(point)
    return points
