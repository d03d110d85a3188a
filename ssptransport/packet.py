"""Datagram packets: sequence numbers, direction, timestamps and port ranges."""

from __future__ import annotations

import enum
import itertools
import os
import re
import struct
import time
from dataclasses import dataclass, field

PROTOCOL_VERSION = 2
"""Version of the state-synchronisation protocol spoken by this package."""

DIRECTION_MASK = 1 << 63
SEQUENCE_MASK = ((1 << 64) - 1) ^ DIRECTION_MASK
TIMESTAMP_NONE = 0xFFFF
"""16-bit timestamp value meaning "no timestamp"."""

_TIMESTAMPS = struct.Struct(">HH")
_LONG_MAX = (1 << 63) - 1
_LONG_MIN = -(1 << 63)
_STRTOL = re.compile(r"\s*([+-]?\d+)")

_sequence = itertools.count()


def _unique() -> int:
    """Return the next sequence number for an outgoing packet."""
    return next(_sequence) & SEQUENCE_MASK


class NetworkError(Exception):
    """A network failure, naming the operation and the errno it failed with."""

    def __init__(self, function: str = "<none>", errno: int = 0) -> None:
        self.function = function
        self.errno = errno
        super().__init__(f"{function}: {os.strerror(errno)}")


class Direction(enum.IntEnum):
    """Which way a packet travels."""

    TO_SERVER = 0
    TO_CLIENT = 1


@dataclass(frozen=True)
class Message:
    """A nonce and the plaintext it accompanies."""

    nonce: int
    text: bytes


@dataclass
class Packet:
    """A transport packet: payload plus direction, sequence and timestamps."""

    direction: Direction
    timestamp: int
    timestamp_reply: int
    payload: bytes = b""
    seq: int = field(default_factory=_unique)

    def to_message(self) -> Message:
        """Encode the packet as a nonce and message text."""
        direction_seq = (int(self.direction == Direction.TO_CLIENT) << 63) | (
            self.seq & SEQUENCE_MASK
        )
        try:
            stamps = _TIMESTAMPS.pack(self.timestamp, self.timestamp_reply)
        except struct.error as exc:
            raise ValueError(f"timestamp out of range: {exc}") from exc
        return Message(direction_seq, stamps + bytes(self.payload))


def packet_from_message(message: Message) -> Packet:
    """Decode a packet; raise ValueError if the text is too short for its timestamps."""
    text = bytes(message.text)
    if len(text) < _TIMESTAMPS.size:
        raise ValueError("message too short to hold packet timestamps")
    stamp, stamp_reply = _TIMESTAMPS.unpack_from(text)
    direction = (
        Direction.TO_CLIENT if message.nonce & DIRECTION_MASK else Direction.TO_SERVER
    )
    return Packet(
        direction=direction,
        timestamp=stamp,
        timestamp_reply=stamp_reply,
        payload=text[_TIMESTAMPS.size:],
        seq=message.nonce & SEQUENCE_MASK,
    )


def timestamp() -> int:
    """Return a monotonic clock reading in milliseconds."""
    return time.monotonic_ns() // 1_000_000


def timestamp16() -> int:
    """Return the clock modulo 2**16, never the reserved value 0xFFFF."""
    ts = timestamp() % 65536
    if ts == TIMESTAMP_NONE:
        ts = 0
    return ts


def timestamp_diff(tsnew: int, tsold: int) -> int:
    """Return how far ``tsnew`` is ahead of ``tsold`` on the 16-bit clock."""
    return ((tsnew & 0xFFFF) - (tsold & 0xFFFF)) % 65536


def _strtol(text: str) -> tuple[int, str, bool]:
    """Parse a leading decimal integer; return (value, rest, overflowed)."""
    match = _STRTOL.match(text)
    if match is None:
        return 0, text, False
    value = int(match.group(1))
    rest = text[match.end():]
    if value > _LONG_MAX:
        return _LONG_MAX, rest, True
    if value < _LONG_MIN:
        return _LONG_MIN, rest, True
    return value, rest, False


def parse_portrange(desired_port: str) -> tuple[int, int]:
    """Parse "PORT" or "LOW:HIGH" into (low, high); raise ValueError if invalid."""
    value, rest, overflow = _strtol(desired_port)
    if overflow or (rest and not rest.startswith(":")):
        raise ValueError(f"Invalid (low) port number ({desired_port})")
    if not 0 <= value <= 65535:
        raise ValueError(f"(Low) port number {value} outside valid range [0..65535]")
    low = value
    if not rest:
        return low, low

    high_text = rest[1:]
    value, rest, overflow = _strtol(high_text)
    if overflow or rest:
        raise ValueError(f"Invalid high port number ({high_text})")
    if not 0 <= value <= 65535:
        raise ValueError(f"High port number {value} outside valid range [0..65535]")
    high = value
    if low > high:
        raise ValueError(f"Low port {low} greater than high port {high}")
    if low == 0:
        raise ValueError("Low port 0 incompatible with port ranges")
    return low, high