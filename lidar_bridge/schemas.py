"""
Schema registry

Every stream is described to the visualization and log sinks by a protobuf
schema: the fully qualified message name plus a serialized
``FileDescriptorSet`` holding the message's .proto file and everything it
imports. The registry is built once at startup and only read afterwards.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Type

from foxglove_schemas_protobuf.LaserScan_pb2 import LaserScan
from foxglove_schemas_protobuf.PointCloud_pb2 import PointCloud
from google.protobuf.descriptor import FileDescriptor
from google.protobuf.descriptor_pb2 import FileDescriptorSet
from google.protobuf.message import Message

PROTOBUF_ENCODING = "protobuf"


class FrameKind(Enum):
    """Telemetry streams produced from one revolution."""
    LASER_SCAN = "laser_scan"
    POINT_CLOUD = "point_cloud"


MESSAGE_TYPES: Dict[FrameKind, Type[Message]] = {
    FrameKind.LASER_SCAN: LaserScan,
    FrameKind.POINT_CLOUD: PointCloud,
}


@dataclass(frozen=True)
class SchemaInfo:
    """Schema description handed to sinks at registration time."""
    name: str
    encoding: str
    data: bytes


def build_file_descriptor_set(message_class: Type[Message]) -> FileDescriptorSet:
    """
    Collect the .proto file of ``message_class`` and its transitive imports.

    Dependencies come before the files that import them, which is the order
    decoders expect when rebuilding the descriptor pool.
    """
    descriptor_set = FileDescriptorSet()
    seen = set()

    def append(file_descriptor: FileDescriptor) -> None:
        for dependency in file_descriptor.dependencies:
            if dependency.name not in seen:
                seen.add(dependency.name)
                append(dependency)
        file_descriptor.CopyToProto(descriptor_set.file.add())

    seen.add(message_class.DESCRIPTOR.file.name)
    append(message_class.DESCRIPTOR.file)
    return descriptor_set


def schema_for(message_class: Type[Message]) -> SchemaInfo:
    return SchemaInfo(
        name=message_class.DESCRIPTOR.full_name,
        encoding=PROTOBUF_ENCODING,
        data=build_file_descriptor_set(message_class).SerializeToString(),
    )


class SchemaRegistry:
    """Read-only table of schemas keyed by frame kind."""

    def __init__(self):
        self._schemas: Dict[FrameKind, SchemaInfo] = {
            kind: schema_for(message_class)
            for kind, message_class in MESSAGE_TYPES.items()
        }

    def __getitem__(self, kind: FrameKind) -> SchemaInfo:
        return self._schemas[kind]

    def __contains__(self, kind: FrameKind) -> bool:
        return kind in self._schemas

    def kinds(self):
        return list(self._schemas)
