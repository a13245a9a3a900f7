"""
Frame encoding

Turns one revolution into the two telemetry records published per
rotation:

- ``LaserScanFrame``: polar, one range and one intensity per sample,
  invalid samples included with their raw distance
- ``PointCloudFrame``: Cartesian, valid samples only, packed into a flat
  little-endian buffer described by a fixed list of field descriptors

Point record layout (no padding, stride 17 bytes):

    offset  field     type
    0       x         float32
    4       y         float32
    8       distance  float32
    12      angle     float32
    16      quality   uint8
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Sequence, Tuple

import numpy as np
from foxglove_schemas_protobuf.LaserScan_pb2 import LaserScan
from foxglove_schemas_protobuf.PointCloud_pb2 import PointCloud

from .base import RawSample, sort_revolution
from .geometry import ProjectedPoint, project_all


class NumericType(IntEnum):
    """Numeric type of a packed field (same values as foxglove.PackedElementField)"""
    UNKNOWN = 0
    UINT8 = 1
    INT8 = 2
    UINT16 = 3
    INT16 = 4
    UINT32 = 5
    INT32 = 6
    FLOAT32 = 7
    FLOAT64 = 8


# Little-endian numpy formats and byte widths per numeric type
NUMPY_FORMATS = {
    NumericType.UINT8: "u1",
    NumericType.INT8: "i1",
    NumericType.UINT16: "<u2",
    NumericType.INT16: "<i2",
    NumericType.UINT32: "<u4",
    NumericType.INT32: "<i4",
    NumericType.FLOAT32: "<f4",
    NumericType.FLOAT64: "<f8",
}


@dataclass(frozen=True)
class FieldDescriptor:
    """One field of a packed point record."""
    name: str
    offset: int
    type: NumericType

    @property
    def width(self) -> int:
        return np.dtype(NUMPY_FORMATS[self.type]).itemsize


POINT_FIELDS: Tuple[FieldDescriptor, ...] = (
    FieldDescriptor("x", 0, NumericType.FLOAT32),
    FieldDescriptor("y", 4, NumericType.FLOAT32),
    FieldDescriptor("distance", 8, NumericType.FLOAT32),
    FieldDescriptor("angle", 12, NumericType.FLOAT32),
    FieldDescriptor("quality", 16, NumericType.UINT8),
)

POINT_STRIDE = sum(f.width for f in POINT_FIELDS)


def record_dtype(fields: Sequence[FieldDescriptor], stride: int) -> np.dtype:
    """Build a packed numpy record type matching the field descriptors."""
    return np.dtype({
        "names": [f.name for f in fields],
        "formats": [NUMPY_FORMATS[f.type] for f in fields],
        "offsets": [f.offset for f in fields],
        "itemsize": stride,
    })


POINT_DTYPE = record_dtype(POINT_FIELDS, POINT_STRIDE)

assert POINT_DTYPE.itemsize == POINT_STRIDE == 17


@dataclass
class Pose:
    """Fixed reference pose of the sensor: position (m) and orientation quaternion."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    qx: float = 0.0
    qy: float = 0.0
    qz: float = 0.0
    qw: float = 1.0

    def copy_to(self, message) -> None:
        """Fill a foxglove.Pose message."""
        message.position.x = self.x
        message.position.y = self.y
        message.position.z = self.z
        message.orientation.x = self.qx
        message.orientation.y = self.qy
        message.orientation.z = self.qz
        message.orientation.w = self.qw


@dataclass
class LaserScanFrame:
    """
    Polar telemetry record for one revolution.

    ``ranges`` and ``intensities`` always hold one entry per sample of the
    source revolution, in ascending angle order.
    """
    timestamp_ns: int
    frame_id: str
    pose: Pose
    start_angle: float
    end_angle: float
    ranges: List[float] = field(default_factory=list)
    intensities: List[float] = field(default_factory=list)

    def to_proto(self) -> LaserScan:
        message = LaserScan()
        message.timestamp.FromNanoseconds(self.timestamp_ns)
        message.frame_id = self.frame_id
        self.pose.copy_to(message.pose)
        message.start_angle = self.start_angle
        message.end_angle = self.end_angle
        message.ranges.extend(self.ranges)
        message.intensities.extend(self.intensities)
        return message

    def serialize(self) -> bytes:
        return self.to_proto().SerializeToString()


@dataclass
class PointCloudFrame:
    """
    Cartesian telemetry record for one revolution.

    ``data`` holds ``len(data) // point_stride`` packed point records, one
    per valid sample.
    """
    timestamp_ns: int
    frame_id: str
    pose: Pose
    point_stride: int
    fields: Tuple[FieldDescriptor, ...]
    data: bytes = b""

    def __post_init__(self):
        assert len(self.data) % self.point_stride == 0, "partial point record"

    @property
    def point_count(self) -> int:
        return len(self.data) // self.point_stride

    def to_proto(self) -> PointCloud:
        message = PointCloud()
        message.timestamp.FromNanoseconds(self.timestamp_ns)
        message.frame_id = self.frame_id
        self.pose.copy_to(message.pose)
        message.point_stride = self.point_stride
        for descriptor in self.fields:
            message.fields.add(
                name=descriptor.name,
                offset=descriptor.offset,
                type=int(descriptor.type),
            )
        message.data = self.data
        return message

    def serialize(self) -> bytes:
        return self.to_proto().SerializeToString()


def pack_points(points: Sequence[ProjectedPoint]) -> bytes:
    """Pack projected points in field order, little-endian, no padding."""
    records = np.array(
        [(p.x, p.y, p.distance, p.angle, p.quality) for p in points],
        dtype=POINT_DTYPE,
    )
    return records.tobytes()


def unpack_points(frame: PointCloudFrame) -> np.ndarray:
    """
    Decode a point buffer through the frame's own field descriptors.

    Returns:
        Structured array with one record per point, fields named as declared
    """
    dtype = record_dtype(frame.fields, frame.point_stride)
    return np.frombuffer(frame.data, dtype=dtype)


def encode(
    revolution: Sequence[RawSample],
    capture_time_ns: int,
    frame_id: str,
    pose: Pose,
) -> Tuple[LaserScanFrame, PointCloudFrame]:
    """
    Build both telemetry records for one revolution.

    Args:
        revolution: Samples of one rotation, in any order
        capture_time_ns: Capture time, nanoseconds since the epoch
        frame_id: Coordinate frame name stamped on both records
        pose: Reference pose stamped on both records

    Returns:
        (LaserScanFrame, PointCloudFrame)
    """
    samples = sort_revolution(revolution)

    start_angle = samples[0].angle if samples else 0.0
    end_angle = samples[-1].angle if samples else 0.0
    laser_scan = LaserScanFrame(
        timestamp_ns=capture_time_ns,
        frame_id=frame_id,
        pose=pose,
        start_angle=float(start_angle),
        end_angle=float(end_angle),
        ranges=[float(s.distance) for s in samples],
        intensities=[float(s.quality) for s in samples],
    )

    point_cloud = PointCloudFrame(
        timestamp_ns=capture_time_ns,
        frame_id=frame_id,
        pose=pose,
        point_stride=POINT_STRIDE,
        fields=POINT_FIELDS,
        data=pack_points(project_all(samples)),
    )
    assert point_cloud.fields == POINT_FIELDS and point_cloud.point_stride == POINT_STRIDE

    return laser_scan, point_cloud
