"""
FrameLens Engine - Checksum Primitive

This module provides the bit-exact checksum computation used by every checksum
analysis: the ordered algorithm registry, byte index helpers and an in-process,
table-driven CRC implementation with numpy-vectorized batch evaluation.

CRC polynomials are given in normal (MSB-first) form. ``reflect`` means
reflected input and reflected output, the usual refin == refout convention.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from ..core.constants import MODBUS_CRC_INIT, MODBUS_CRC_POLY, MODBUS_CRC_POLY_REFLECTED
from ..core.exceptions import ChecksumPrimitiveException

logger = logging.getLogger(__name__)


class ChecksumKind(str, Enum):
    """Family of a checksum candidate."""

    XOR = "xor"
    SUM8 = "sum8"
    CRC8 = "crc8"
    CRC16 = "crc16"


@dataclass(frozen=True)
class CrcParameters:
    """Rocksoft-style parameters of a CRC (refin == refout)."""

    width: int
    polynomial: int
    init: int = 0
    xor_out: int = 0
    reflect: bool = False


@dataclass(frozen=True)
class AlgorithmInfo:
    """Registry entry for a named checksum algorithm."""

    id: str
    name: str
    description: str
    output_bytes: int
    kind: ChecksumKind
    crc: Optional[CrcParameters] = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "output_bytes": self.output_bytes,
        }


CHECKSUM_ALGORITHMS: Tuple[AlgorithmInfo, ...] = (
    AlgorithmInfo("xor", "XOR", "XOR of all bytes (8-bit)", 1, ChecksumKind.XOR),
    AlgorithmInfo(
        "sum8", "Sum (8-bit)", "Simple sum of bytes modulo 256", 1, ChecksumKind.SUM8
    ),
    AlgorithmInfo(
        "crc8",
        "CRC-8",
        "CRC-8 polynomial 0x07 (ITU/SMBUS)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x07),
    ),
    AlgorithmInfo(
        "crc8_sae_j1850",
        "CRC-8 SAE-J1850",
        "CRC-8 polynomial 0x1D (automotive OBD-II)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x1D, init=0xFF, xor_out=0xFF),
    ),
    AlgorithmInfo(
        "crc8_autosar",
        "CRC-8 AUTOSAR",
        "CRC-8 polynomial 0x2F (AUTOSAR E2E)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x2F, init=0xFF, xor_out=0xFF),
    ),
    AlgorithmInfo(
        "crc8_maxim",
        "CRC-8 Maxim",
        "CRC-8 polynomial 0x31 (1-Wire devices)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x31, reflect=True),
    ),
    AlgorithmInfo(
        "crc8_cdma2000",
        "CRC-8 CDMA2000",
        "CRC-8 polynomial 0x9B (telecom)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x9B, init=0xFF),
    ),
    AlgorithmInfo(
        "crc8_dvb_s2",
        "CRC-8 DVB-S2",
        "CRC-8 polynomial 0xD5 (satellite)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0xD5),
    ),
    AlgorithmInfo(
        "crc8_nissan",
        "CRC-8 Nissan",
        "CRC-8 polynomial 0x85 (Nissan CAN)",
        1,
        ChecksumKind.CRC8,
        CrcParameters(8, 0x85),
    ),
    AlgorithmInfo(
        "crc16_modbus",
        "CRC-16 Modbus",
        "CRC-16 polynomial 0xA001 (Modbus)",
        2,
        ChecksumKind.CRC16,
        CrcParameters(16, 0x8005, init=0xFFFF, reflect=True),
    ),
    AlgorithmInfo(
        "crc16_ccitt",
        "CRC-16 CCITT",
        "CRC-16 polynomial 0x1021 (CCITT)",
        2,
        ChecksumKind.CRC16,
        CrcParameters(16, 0x1021, init=0xFFFF),
    ),
)

_ALGORITHMS_BY_ID: Dict[str, AlgorithmInfo] = {a.id: a for a in CHECKSUM_ALGORITHMS}


def get_algorithm_info(algorithm_id: str) -> Optional[AlgorithmInfo]:
    """Get algorithm info by ID."""
    return _ALGORITHMS_BY_ID.get(algorithm_id)


def get_algorithm_output_bytes(algorithm_id: str) -> int:
    """Expected output size in bytes for an algorithm (1 when unknown)."""
    info = get_algorithm_info(algorithm_id)
    return info.output_bytes if info else 1


def algorithm_order(algorithm_id: str) -> int:
    """Registry position of an algorithm, used as the final tie-break."""
    for index, info in enumerate(CHECKSUM_ALGORITHMS):
        if info.id == algorithm_id:
            return index
    return len(CHECKSUM_ALGORITHMS)


def resolve_byte_index(index: int, frame_length: int) -> int:
    """Resolve a byte index with Python-style negative indexing.

    Negative indices count from the end and clamp at 0:
    ``resolve_byte_index(-k, n) == max(0, n - k)``.
    """
    if index >= 0:
        return index
    return max(0, frame_length + index)


def format_byte_index(index: int, frame_length: Optional[int] = None) -> str:
    """Format a byte index for display."""
    if index >= 0:
        return f"{index}"
    if frame_length is not None:
        return f"{index} (byte {resolve_byte_index(index, frame_length)})"
    return f"{index} (from end)"


# =============================================================================
# CRC tables
# =============================================================================


def _mask(width: int) -> int:
    return (1 << width) - 1


def _reflect_bits(value: int, width: int) -> int:
    result = 0
    for i in range(width):
        if (value >> i) & 1:
            result |= 1 << (width - 1 - i)
    return result


def _check_crc_parameters(bit_width: int, polynomial: int) -> None:
    if bit_width not in (8, 16):
        raise ChecksumPrimitiveException(
            f"Unsupported CRC width: {bit_width}", bit_width=bit_width
        )
    if not 0 <= polynomial <= _mask(bit_width):
        raise ChecksumPrimitiveException(
            f"Polynomial out of range for {bit_width}-bit CRC",
            bit_width=bit_width,
            polynomial=polynomial,
        )


@lru_cache(maxsize=1024)
def _crc_table(bit_width: int, polynomial: int, reflect: bool) -> np.ndarray:
    """Build the 256-entry lookup table, vectorized over all byte values."""
    mask = _mask(bit_width)
    if reflect:
        poly = _reflect_bits(polynomial, bit_width)
        crc = np.arange(256, dtype=np.uint32)
        for _ in range(8):
            crc = np.where(crc & 1, (crc >> 1) ^ poly, crc >> 1)
    else:
        top = 1 << (bit_width - 1)
        crc = np.arange(256, dtype=np.uint32) << (bit_width - 8)
        for _ in range(8):
            crc = np.where(crc & top, ((crc << 1) ^ polynomial) & mask, (crc << 1) & mask)
    return crc.astype(np.uint32)


@lru_cache(maxsize=1024)
def _crc_table_list(bit_width: int, polynomial: int, reflect: bool) -> Tuple[int, ...]:
    return tuple(int(v) for v in _crc_table(bit_width, polynomial, reflect))


def crc_compute(
    data: bytes,
    bit_width: int,
    polynomial: int,
    init: int = 0,
    xor_out: int = 0,
    reflect: bool = False,
) -> int:
    """Compute a CRC over ``data`` with the given parameters."""
    _check_crc_parameters(bit_width, polynomial)
    mask = _mask(bit_width)
    table = _crc_table_list(bit_width, polynomial, reflect)

    if reflect:
        crc = _reflect_bits(init & mask, bit_width)
        for b in data:
            crc = table[(crc ^ b) & 0xFF] ^ (crc >> 8)
    else:
        crc = init & mask
        shift = bit_width - 8
        for b in data:
            crc = table[((crc >> shift) ^ b) & 0xFF] ^ ((crc << 8) & mask)
    return (crc ^ xor_out) & mask


def crc16_modbus(data: bytes) -> int:
    """CRC-16/MODBUS of ``data``; transmitted little-endian on the wire."""
    crc = MODBUS_CRC_INIT
    for b in data:
        crc ^= b
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ MODBUS_CRC_POLY_REFLECTED
            else:
                crc >>= 1
    return crc


def running_modbus_crc(data: bytes, start: int, stop: int) -> Iterator[int]:
    """Yield the Modbus CRC of data[start:k] for k = start + 1 .. stop."""
    table = _crc_table_list(16, MODBUS_CRC_POLY, True)
    crc = MODBUS_CRC_INIT
    for b in data[start:stop]:
        crc = table[(crc ^ b) & 0xFF] ^ (crc >> 8)
        yield crc


def append_modbus_crc(data: bytes) -> bytes:
    """Return ``data`` with its Modbus CRC trailer appended (low byte first)."""
    crc = crc16_modbus(data)
    return bytes(data) + bytes([crc & 0xFF, crc >> 8])


def validate_modbus_crc(frame: bytes) -> bool:
    """True when the last two bytes are the Modbus CRC of the rest."""
    if len(frame) < 3:
        return False
    expected = crc16_modbus(frame[:-2])
    return frame[-2] == (expected & 0xFF) and frame[-1] == (expected >> 8)


# =============================================================================
# Primitive interface
# =============================================================================


@dataclass(frozen=True)
class BatchTestResult:
    """Outcome of evaluating one CRC configuration over a payload batch."""

    match_count: int
    total_count: int


@dataclass(frozen=True)
class ChecksumValidationResult:
    """Result of checking an embedded checksum."""

    extracted: int
    calculated: int
    valid: bool

    def to_dict(self):
        return {
            "extracted": self.extracted,
            "calculated": self.calculated,
            "valid": self.valid,
        }


@dataclass
class PayloadBatch:
    """Parallel payload / expected-value arrays prepared for batch evaluation.

    Payloads are grouped by length once so that each CRC configuration can be
    evaluated column by column over every payload of the same length.
    """

    payloads: Tuple[bytes, ...]
    expected: Tuple[int, ...]
    groups: List[Tuple[np.ndarray, np.ndarray]] = field(default_factory=list)

    @classmethod
    def build(cls, payloads: Sequence[bytes], expected: Sequence[int]) -> "PayloadBatch":
        if len(payloads) != len(expected):
            raise ChecksumPrimitiveException(
                "Payload and expected arrays differ in length"
            )
        batch = cls(tuple(bytes(p) for p in payloads), tuple(int(e) for e in expected))

        by_length: Dict[int, List[int]] = {}
        for index, payload in enumerate(batch.payloads):
            by_length.setdefault(len(payload), []).append(index)

        for length in sorted(by_length):
            indices = by_length[length]
            if length:
                matrix = np.frombuffer(
                    b"".join(batch.payloads[i] for i in indices), dtype=np.uint8
                ).reshape(len(indices), length)
                # one contiguous row per byte column
                columns = np.ascontiguousarray(matrix.T.astype(np.uint32))
            else:
                columns = np.zeros((0, len(indices)), dtype=np.uint32)
            values = np.array([batch.expected[i] for i in indices], dtype=np.uint32)
            batch.groups.append((columns, values))
        return batch

    def __len__(self) -> int:
        return len(self.payloads)


class ChecksumPrimitive(ABC):
    """Bit-exact checksum computation boundary.

    Every call is an async suspension point. Implementations must be
    side-effect free.
    """

    @abstractmethod
    async def compute(
        self,
        algorithm_id: str,
        data: bytes,
        range_start: int = 0,
        range_end: Optional[int] = None,
    ) -> int:
        """Compute a registry algorithm over ``data[range_start:range_end]``."""

    @abstractmethod
    async def test_crc(
        self,
        payload: bytes,
        expected: int,
        bit_width: int,
        polynomial: int,
        init: int,
        xor_out: int,
        reflect: bool,
    ) -> bool:
        """True when the CRC of ``payload`` equals ``expected``."""

    @abstractmethod
    async def batch_test_crc(
        self,
        batch: PayloadBatch,
        bit_width: int,
        polynomial: int,
        init: int,
        xor_out: int,
        reflect: bool,
    ) -> BatchTestResult:
        """Evaluate one CRC configuration over a prepared batch."""

    def prepare_batch(
        self, payloads: Sequence[bytes], expected: Sequence[int]
    ) -> PayloadBatch:
        return PayloadBatch.build(payloads, expected)

    async def validate_checksum(
        self,
        algorithm_id: str,
        data: bytes,
        start_byte: int,
        byte_length: int,
        big_endian: bool,
        calc_start_byte: int = 0,
        calc_end_byte: Optional[int] = None,
    ) -> ChecksumValidationResult:
        """Compare the checksum stored in ``data`` against a fresh computation."""
        position = resolve_byte_index(start_byte, len(data))
        if byte_length not in (1, 2) or position + byte_length > len(data):
            raise ChecksumPrimitiveException(
                f"Checksum field {start_byte}+{byte_length} outside {len(data)}-byte frame",
                algorithm=algorithm_id,
            )

        field_bytes = data[position : position + byte_length]
        extracted = int.from_bytes(field_bytes, "big" if big_endian else "little")
        end = position if calc_end_byte is None else calc_end_byte
        calculated = await self.compute(algorithm_id, data, calc_start_byte, end)
        return ChecksumValidationResult(extracted, calculated, extracted == calculated)


class InProcessChecksumPrimitive(ChecksumPrimitive):
    """Table-driven checksum primitive running inside the event loop."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.combinations_tested = 0

    async def compute(
        self,
        algorithm_id: str,
        data: bytes,
        range_start: int = 0,
        range_end: Optional[int] = None,
    ) -> int:
        info = get_algorithm_info(algorithm_id)
        if info is None:
            raise ChecksumPrimitiveException(
                f"Unknown checksum algorithm: {algorithm_id}", algorithm=algorithm_id
            )

        start = resolve_byte_index(range_start, len(data))
        end = len(data) if range_end is None else resolve_byte_index(range_end, len(data))
        window = bytes(data[start:end])

        if info.kind == ChecksumKind.XOR:
            value = 0
            for b in window:
                value ^= b
            return value
        if info.kind == ChecksumKind.SUM8:
            return sum(window) & 0xFF

        crc = info.crc
        return crc_compute(
            window, crc.width, crc.polynomial, crc.init, crc.xor_out, crc.reflect
        )

    async def test_crc(
        self,
        payload: bytes,
        expected: int,
        bit_width: int,
        polynomial: int,
        init: int,
        xor_out: int,
        reflect: bool,
    ) -> bool:
        self.combinations_tested += 1
        return crc_compute(payload, bit_width, polynomial, init, xor_out, reflect) == expected

    async def batch_test_crc(
        self,
        batch: PayloadBatch,
        bit_width: int,
        polynomial: int,
        init: int,
        xor_out: int,
        reflect: bool,
    ) -> BatchTestResult:
        _check_crc_parameters(bit_width, polynomial)
        self.combinations_tested += 1

        mask = _mask(bit_width)
        table = _crc_table(bit_width, polynomial, reflect)
        shift = bit_width - 8
        start = _reflect_bits(init & mask, bit_width) if reflect else init & mask

        match_count = 0
        for columns, expected in batch.groups:
            crc = np.full(expected.shape, start, dtype=np.uint32)
            for column in columns:
                if reflect:
                    crc = table[(crc ^ column) & 0xFF] ^ (crc >> 8)
                else:
                    crc = table[((crc >> shift) ^ column) & 0xFF] ^ ((crc << 8) & mask)
            crc ^= xor_out & mask
            match_count += int(np.count_nonzero(crc == expected))

        return BatchTestResult(match_count=match_count, total_count=len(batch))
