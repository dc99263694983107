"""
FrameLens Engine - Shared Discovery Models

Capture records and small value types shared by every analysis.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, Union

ByteSource = Union[bytes, bytearray, Sequence[int]]


class Endianness(str, Enum):
    """Byte order of a multi-byte value."""

    LITTLE = "little"
    BIG = "big"


@dataclass(frozen=True)
class Frame:
    """Immutable capture record supplied by a frame source."""

    id: int
    data: bytes
    timestamp_us: int = 0
    bus: int = 0

    def __post_init__(self):
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bus": self.bus,
            "timestamp_us": self.timestamp_us,
            "data": self.data.hex().upper(),
        }


@dataclass(frozen=True)
class TimestampedPayload:
    """One payload of a frame ID with its capture time in microseconds."""

    timestamp_us: int
    payload: bytes = field(default=b"")

    def __post_init__(self):
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, "payload", bytes(self.payload))


def as_payloads(payloads: Iterable[ByteSource]) -> List[bytes]:
    """Normalize payload inputs to a list of ``bytes``."""
    return [p if isinstance(p, bytes) else bytes(p) for p in payloads]


def format_hex(data: bytes) -> str:
    """Space separated upper-case hex rendering."""
    return " ".join(f"{b:02X}" for b in data)


def read_uint16(data: bytes, position: int, endianness: Endianness) -> int:
    """Read an unsigned 16-bit value at ``position``."""
    if endianness == Endianness.LITTLE:
        return data[position] | (data[position + 1] << 8)
    return (data[position] << 8) | data[position + 1]
