"""Decoders for the key and value records of the consumer offsets topic."""

from __future__ import annotations

import io
import struct
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, BinaryIO

_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")


class DecodeError(ValueError):
    """A record could not be decoded; ``field`` names where decoding stopped."""

    def __init__(self, field: str, message: str | None = None, partial: Any = None):
        super().__init__(message or f"failed to decode {field}")
        self.field = field
        self.partial = partial


class _ShortRead(Exception):
    pass


@dataclass
class OffsetKey:
    group: str = ""
    topic: str = ""
    partition: int = 0


@dataclass
class OffsetValue:
    offset: int = 0
    timestamp: int = 0


@dataclass
class MetadataHeader:
    protocol_type: str = ""
    generation: int = 0
    protocol: str = ""
    leader: str = ""
    current_state_timestamp: int = 0


@dataclass
class MetadataMember:
    member_id: str = ""
    group_instance_id: str = ""
    client_id: str = ""
    client_host: str = ""
    rebalance_timeout: int = 0
    session_timeout: int = 0
    assignment: dict[str, list[int]] = field(default_factory=dict)


def _read_exact(buf: BinaryIO, size: int) -> bytes:
    data = buf.read(size)
    if len(data) != size:
        raise _ShortRead
    return data


def _int16(buf: BinaryIO) -> int:
    return _INT16.unpack(_read_exact(buf, 2))[0]


def _int32(buf: BinaryIO) -> int:
    return _INT32.unpack(_read_exact(buf, 4))[0]


def _int64(buf: BinaryIO) -> int:
    return _INT64.unpack(_read_exact(buf, 8))[0]


@contextmanager
def _field(name: str, partial: Any = None) -> Iterator[None]:
    try:
        yield
    except (_ShortRead, DecodeError) as exc:
        raise DecodeError(name, partial=partial) from exc


def read_string(buf: BinaryIO) -> str:
    """Read an int16-length-prefixed string; a length of -1 is the empty string."""
    try:
        length = _int16(buf)
    except _ShortRead:
        raise DecodeError("string", "string length underflow") from None
    if length == -1:
        return ""
    if length < 0:
        raise DecodeError("string", "negative string length")
    data = buf.read(length)
    if len(data) != length:
        raise DecodeError("string", "string underflow")
    return data.decode("utf-8", errors="replace")


def decode_offset_key_v0(buf: BinaryIO) -> OffsetKey:
    """Decode the key of an offset commit record (key versions 0 and 1)."""
    key = OffsetKey()
    with _field("group", key):
        key.group = read_string(buf)
    with _field("topic", key):
        key.topic = read_string(buf)
    with _field("partition", key):
        key.partition = _int32(buf)
    return key


def decode_offset_value_v0(buf: BinaryIO) -> OffsetValue:
    """Decode an offset commit value of version 0 or 1."""
    value = OffsetValue()
    with _field("offset", value):
        value.offset = _int64(buf)
    with _field("metadata", value):
        read_string(buf)
    with _field("timestamp", value):
        value.timestamp = _int64(buf)
    return value


def decode_offset_value_v3(buf: BinaryIO) -> OffsetValue:
    """Decode an offset commit value of version 3, which carries a leader epoch."""
    value = OffsetValue()
    with _field("offset", value):
        value.offset = _int64(buf)
    with _field("leaderEpoch", value):
        _int32(buf)
    with _field("metadata", value):
        read_string(buf)
    with _field("timestamp", value):
        value.timestamp = _int64(buf)
    return value


def _decode_header(buf: BinaryIO, with_timestamp: bool) -> MetadataHeader:
    header = MetadataHeader()
    with _field("protocol_type", header):
        header.protocol_type = read_string(buf)
    with _field("generation", header):
        header.generation = _int32(buf)
    with _field("protocol", header):
        header.protocol = read_string(buf)
    with _field("leader", header):
        header.leader = read_string(buf)
    if with_timestamp:
        with _field("current_state_timestamp", header):
            header.current_state_timestamp = _int64(buf)
    return header


def decode_metadata_value_header(buf: BinaryIO) -> MetadataHeader:
    """Decode a group metadata header of value version 0 or 1."""
    return _decode_header(buf, with_timestamp=False)


def decode_metadata_value_header_v2(buf: BinaryIO) -> MetadataHeader:
    """Decode a group metadata header of value version 2 or 3."""
    return _decode_header(buf, with_timestamp=True)


def decode_metadata_member(buf: BinaryIO, member_version: int) -> MetadataMember:
    """Decode one member entry of a group metadata value."""
    member = MetadataMember()
    with _field("member_id", member):
        member.member_id = read_string(buf)
    if member_version == 3:
        with _field("group_instance_id", member):
            member.group_instance_id = read_string(buf)
    with _field("client_id", member):
        member.client_id = read_string(buf)
    with _field("client_host", member):
        member.client_host = read_string(buf)
    if member_version >= 1:
        with _field("rebalance_timeout", member):
            member.rebalance_timeout = _int32(buf)
    with _field("session_timeout", member):
        member.session_timeout = _int32(buf)

    with _field("subscription_bytes", member):
        subscription_bytes = _int32(buf)
    if subscription_bytes > 0:
        buf.read(subscription_bytes)

    with _field("assignment_bytes", member):
        assignment_bytes = _int32(buf)
    if assignment_bytes > 0:
        assignment_buf = io.BytesIO(buf.read(assignment_bytes))
        with _field("consumer_protocol_version", member):
            protocol_version = _int16(assignment_buf)
        if protocol_version < 0:
            raise DecodeError("consumer_protocol_version", partial=member)
        try:
            member.assignment = decode_member_assignment_v0(assignment_buf)
        except DecodeError as exc:
            raise DecodeError("assignment", partial=member) from exc
    return member


def decode_member_assignment_v0(buf: BinaryIO) -> dict[str, list[int]]:
    """Decode a consumer protocol assignment into a topic to partitions mapping."""
    topics: dict[str, list[int]] = {}
    with _field("assignment_topic_count", topics):
        topic_count = _int32(buf)
    if topic_count < 0:
        raise DecodeError("assignment_topic_count", partial=topics)
    for _ in range(topic_count):
        with _field("topic_name", topics):
            topic = read_string(buf)
        with _field("assignment_partition_count", topics):
            partition_count = _int32(buf)
        if partition_count < 0:
            raise DecodeError("assignment_partition_count", partial=topics)
        partitions: list[int] = []
        topics[topic] = partitions
        for _ in range(partition_count):
            with _field("assignment_partition_id", topics):
                partitions.append(_int32(buf))
    with _field("user_bytes", topics):
        user_data_len = _int32(buf)
    if user_data_len > 0:
        buf.read(user_data_len)
    return topics