"""
Test packet framing.

Layout (big-endian):
    [0, 2)   sequence number, uint16
    [2, 10)  send timestamp, int64, milliseconds since epoch
    [10, N)  filler, never interpreted by the receiver
"""

import random
import struct
import time
from dataclasses import dataclass
from typing import Optional

from .errors import ProbeError

SEQUENCE_SIZE = 2
TIMESTAMP_SIZE = 8
HEADER_SIZE = SEQUENCE_SIZE + TIMESTAMP_SIZE

# The wire field holds 16 bits, the generator never goes past 1000.
MAX_SEQUENCE_NUMBER = 1000

_SEQUENCE = struct.Struct('!H')
_HEADER = struct.Struct('!Hq')


class PacketError(ProbeError, ValueError):
    pass


class InvalidSize(PacketError):
    pass


class InvalidSequenceNumber(PacketError):
    pass


class PacketTooSmall(PacketError):
    pass


class WrongType(PacketError, TypeError):
    pass


@dataclass(frozen=True)
class PacketFrame:
    sequence_number: int
    send_timestamp: int


def epoch_ms() -> int:
    return time.time_ns() // 1_000_000


def encode_packet(sequence_number: int, total_size: int, now_ms: Optional[int] = None) -> bytes:
    """Build one frame of exactly `total_size` bytes."""
    if total_size < HEADER_SIZE:
        raise InvalidSize(
            f"Total size must be at least {HEADER_SIZE} bytes (sequence number and timestamp), got {total_size}"
        )
    if sequence_number < 0 or sequence_number > MAX_SEQUENCE_NUMBER:
        raise InvalidSequenceNumber(
            f"Sequence number must be between 0 and {MAX_SEQUENCE_NUMBER}, got {sequence_number}"
        )
    if now_ms is None:
        now_ms = epoch_ms()

    header = _HEADER.pack(sequence_number, now_ms)
    return header + random.randbytes(total_size - HEADER_SIZE)


def _check_buffer(buffer, required: int):
    if not isinstance(buffer, (bytes, bytearray, memoryview)):
        raise WrongType(f"Input must be a bytes-like buffer, got {type(buffer).__name__}")
    if len(buffer) < required:
        raise PacketTooSmall(
            f"Received buffer is too small ({len(buffer)} bytes) to contain a {required}-byte header"
        )


def decode_sequence_number(buffer) -> int:
    _check_buffer(buffer, SEQUENCE_SIZE)
    return _SEQUENCE.unpack_from(buffer, 0)[0]


def decode_packet(buffer) -> PacketFrame:
    _check_buffer(buffer, HEADER_SIZE)
    sequence_number, send_timestamp = _HEADER.unpack_from(buffer, 0)
    return PacketFrame(sequence_number, send_timestamp)
