"""
FrameLens Engine - Stream Framing Detection

This module infers how a raw serial byte stream is split into frames. Three
independent testers score SLIP (RFC 1055), Modbus RTU and fixed-delimiter
framing; candidates are ranked by confidence.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import Config, FramingConfig
from ..core.constants import (
    DELIMITER_CANDIDATES,
    PRINTABLE_CONTROL,
    PRINTABLE_MAX,
    PRINTABLE_MIN,
    SLIP_END,
    SLIP_ESC,
    SLIP_ESC_END,
    SLIP_ESC_ESC,
    TEXT_DELIMITERS,
)
from .checksum_primitive import running_modbus_crc
from .models import ByteSource

logger = logging.getLogger(__name__)


class FramingMode(str, Enum):
    SLIP = "slip"
    MODBUS_RTU = "modbus_rtu"
    DELIMITER = "delimiter"


@dataclass
class FramingCandidate:
    """One framing hypothesis with a 0-100 confidence score."""

    mode: FramingMode
    confidence: int
    estimated_frame_count: int
    avg_frame_length: int
    min_frame_length: int
    max_frame_length: int
    notes: List[str] = field(default_factory=list)
    delimiter: Optional[bytes] = None
    delimiter_name: Optional[str] = None

    @property
    def delimiter_hex(self) -> Optional[str]:
        if self.delimiter is None:
            return None
        return self.delimiter.hex().upper()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "mode": self.mode.value,
            "confidence": self.confidence,
            "estimated_frame_count": self.estimated_frame_count,
            "avg_frame_length": self.avg_frame_length,
            "min_frame_length": self.min_frame_length,
            "max_frame_length": self.max_frame_length,
            "notes": self.notes,
        }
        if self.delimiter is not None:
            result["delimiter"] = self.delimiter_name
            result["delimiter_hex"] = self.delimiter_hex
        return result


@dataclass
class FramingResult:
    byte_count: int
    candidates: List[FramingCandidate]
    best_candidate: Optional[FramingCandidate]
    notes: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "byte_count": self.byte_count,
            "candidates": [c.to_dict() for c in self.candidates],
            "best_candidate": self.best_candidate.to_dict() if self.best_candidate else None,
            "notes": self.notes,
        }


# =============================================================================
# Frame extraction
# =============================================================================


def slip_encode(data: ByteSource) -> bytes:
    """Encode one frame as SLIP with END markers on both sides."""
    encoded = bytearray([SLIP_END])
    for b in bytes(data):
        if b == SLIP_END:
            encoded += bytes([SLIP_ESC, SLIP_ESC_END])
        elif b == SLIP_ESC:
            encoded += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            encoded.append(b)
    encoded.append(SLIP_END)
    return bytes(encoded)


def decode_slip_frames(raw: bytes) -> List[bytes]:
    """Decode SLIP frames; empty frames between END markers are skipped.

    An invalid escape keeps both the ESC byte and the following byte.
    """
    frames: List[bytes] = []
    current = bytearray()
    in_escape = False

    for b in raw:
        if b == SLIP_END:
            if current:
                frames.append(bytes(current))
                current = bytearray()
            in_escape = False
        elif b == SLIP_ESC:
            in_escape = True
        elif in_escape:
            if b == SLIP_ESC_END:
                current.append(SLIP_END)
            elif b == SLIP_ESC_ESC:
                current.append(SLIP_ESC)
            else:
                current += bytes([SLIP_ESC, b])
            in_escape = False
        else:
            current.append(b)

    return frames


def find_modbus_frames(raw: bytes, settings: Optional[FramingConfig] = None) -> List[bytes]:
    """Greedy scan for windows ending in a valid CRC-16/MODBUS trailer.

    At each offset the shortest window with a matching CRC, a valid address
    and a valid function code wins; the scan resumes after it. Otherwise the
    scan moves on by one byte.
    """
    settings = settings or FramingConfig()
    frames: List[bytes] = []
    i = 0

    while i < len(raw) - 3:
        address = raw[i]
        function = raw[i + 1]
        if not (
            settings.modbus_min_address <= address <= settings.modbus_max_address
            and settings.modbus_min_function <= function <= settings.modbus_max_function
        ):
            i += 1
            continue

        max_length = min(settings.modbus_max_frame, len(raw) - i)
        found = 0
        # crc covers raw[i:i + length - 2]
        for consumed, crc in enumerate(running_modbus_crc(raw, i, i + max_length - 2), 1):
            length = consumed + 2
            if length < settings.modbus_min_frame:
                continue
            received = raw[i + length - 2] | (raw[i + length - 1] << 8)
            if crc == received:
                found = length
                break

        if found:
            frames.append(bytes(raw[i : i + found]))
            i += found
        else:
            i += 1

    return frames


def _find_occurrences(raw: bytes, delimiter: bytes) -> List[int]:
    positions = []
    start = raw.find(delimiter)
    while start != -1:
        positions.append(start)
        start = raw.find(delimiter, start + 1)
    return positions


def split_delimited(raw: bytes, delimiter: bytes) -> List[bytes]:
    """Frames terminated by ``delimiter``, counted from the stream start.

    Empty segments are dropped and trailing bytes after the final delimiter
    are an unterminated frame that is not returned.
    """
    frames = []
    previous_end = 0
    for position in _find_occurrences(raw, delimiter):
        if position < previous_end:
            continue
        if position > previous_end:
            frames.append(bytes(raw[previous_end:position]))
        previous_end = position + len(delimiter)
    return frames


def split_frames(
    raw: ByteSource, candidate: FramingCandidate, settings: Optional[FramingConfig] = None
) -> List[bytes]:
    """Extract the frames of ``raw`` under the framing of ``candidate``."""
    raw = bytes(raw)
    if candidate.mode == FramingMode.SLIP:
        return decode_slip_frames(raw)
    if candidate.mode == FramingMode.MODBUS_RTU:
        return find_modbus_frames(raw, settings)
    return split_delimited(raw, candidate.delimiter)


def _length_stats(lengths: Sequence[int]) -> Tuple[float, int, int]:
    return sum(lengths) / len(lengths), min(lengths), max(lengths)


def _round(value: float) -> int:
    return int(value + 0.5)


def _clamp(confidence: int) -> int:
    return min(100, max(0, confidence))


# =============================================================================
# Detection
# =============================================================================


class FramingDetector:
    """Ranks SLIP, Modbus RTU and delimiter framing for a raw byte stream."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> FramingConfig:
        return self.config.framing

    def detect(self, raw: ByteSource) -> FramingResult:
        raw = bytes(raw)
        if not raw:
            return FramingResult(
                byte_count=0,
                candidates=[],
                best_candidate=None,
                notes=["No bytes to analyze"],
            )

        notes = [f"Analyzing {len(raw):,} bytes"]
        candidates: List[FramingCandidate] = []

        slip = self.test_slip(raw)
        if slip is not None:
            candidates.append(slip)

        modbus = self.test_modbus_rtu(raw)
        if modbus is not None:
            candidates.append(modbus)

        candidates.extend(self.test_delimiters(raw))

        # Equal scores rank the longer delimiter first.
        candidates.sort(
            key=lambda c: (c.confidence, len(c.delimiter or b"")), reverse=True
        )

        if not candidates:
            notes.append("No clear framing pattern detected")
        else:
            best = candidates[0]
            mode = best.mode.value.upper()
            if best.confidence >= 80:
                notes.append(f"Strong {mode} framing detected ({best.confidence}% confidence)")
            elif best.confidence >= 50:
                notes.append(f"Possible {mode} framing detected ({best.confidence}% confidence)")
            else:
                notes.append(
                    f"Weak framing signal - {mode} is best guess ({best.confidence}% confidence)"
                )

        self.logger.info(
            f"Framing detection over {len(raw)} bytes produced {len(candidates)} candidates",
            extra={"byte_count": len(raw), "candidate_count": len(candidates)},
        )

        return FramingResult(
            byte_count=len(raw),
            candidates=candidates,
            best_candidate=candidates[0] if candidates else None,
            notes=notes,
        )

    def test_slip(self, raw: bytes) -> Optional[FramingCandidate]:
        end_count = raw.count(SLIP_END)
        esc_count = raw.count(SLIP_ESC)
        if end_count < 2:
            return None

        frames = decode_slip_frames(raw)
        if not frames:
            return None

        avg, shortest, longest = _length_stats([len(f) for f in frames])
        notes = []

        if len(frames) >= 50:
            confidence = 50
        elif len(frames) >= 10:
            confidence = 40
        elif len(frames) >= 3:
            confidence = 25
        else:
            confidence = 10

        if esc_count > 0:
            notes.append(f"Found {esc_count} SLIP escape sequences")
            confidence += 25

        if self.settings.reasonable_min_frame <= avg <= self.settings.reasonable_max_frame:
            confidence += 15

        if longest - shortest < avg * 0.5:
            confidence += 10
            notes.append("Consistent frame sizes")

        # one END before and after each frame
        end_ratio = end_count / (len(frames) * 2)
        if end_ratio > 2.0:
            confidence -= 20
            notes.append("0xC0 appears frequently within frames - may include data bytes")
        elif end_ratio <= 1.5:
            confidence += 15

        notes.append(f"{len(frames)} frames decoded")

        if confidence < 20:
            return None

        return FramingCandidate(
            mode=FramingMode.SLIP,
            confidence=_clamp(confidence),
            estimated_frame_count=len(frames),
            avg_frame_length=_round(avg),
            min_frame_length=shortest,
            max_frame_length=longest,
            notes=notes,
        )

    def test_modbus_rtu(self, raw: bytes) -> Optional[FramingCandidate]:
        if len(raw) < self.settings.modbus_min_frame:
            return None

        frames = find_modbus_frames(raw, self.settings)
        if len(frames) < 2:
            return None

        avg, shortest, longest = _length_stats([len(f) for f in frames])
        notes = []

        if len(frames) >= 10:
            confidence = 50
        elif len(frames) >= 5:
            confidence = 35
        else:
            confidence = 20

        coverage = sum(len(f) for f in frames) / len(raw)
        if coverage >= 0.8:
            confidence += 30
            notes.append(f"{coverage * 100:.0f}% of bytes in valid frames")
        elif coverage >= 0.5:
            confidence += 15

        addresses = {f[0] for f in frames}
        if len(addresses) <= 3:
            confidence += 10
            suffix = "es" if len(addresses) > 1 else ""
            notes.append(f"{len(addresses)} unique device address{suffix}")

        notes.append(f"{len(frames)} valid CRC frames found")

        if confidence < 30:
            return None

        return FramingCandidate(
            mode=FramingMode.MODBUS_RTU,
            confidence=_clamp(confidence),
            estimated_frame_count=len(frames),
            avg_frame_length=_round(avg),
            min_frame_length=shortest,
            max_frame_length=longest,
            notes=notes,
        )

    def test_delimiters(self, raw: bytes) -> List[FramingCandidate]:
        """Score every delimiter candidate, keeping each one that passes."""
        data = np.frombuffer(raw, dtype=np.uint8)
        printable = ((data >= PRINTABLE_MIN) & (data <= PRINTABLE_MAX)) | np.isin(
            data, sorted(PRINTABLE_CONTROL)
        )
        printable_ratio = float(printable.sum()) / len(raw)

        result: List[FramingCandidate] = []
        for delimiter, name in DELIMITER_CANDIDATES:
            positions = _find_occurrences(raw, delimiter)
            candidate = self._score_delimiter(raw, delimiter, name, positions, printable_ratio)
            if candidate is not None:
                result.append(candidate)
        return result

    def _score_delimiter(
        self,
        raw: bytes,
        delimiter: bytes,
        name: str,
        positions: List[int],
        printable_ratio: float,
    ) -> Optional[FramingCandidate]:
        s = self.settings
        if len(positions) < 2:
            return None

        lengths = [len(f) for f in split_delimited(raw, delimiter)]
        if not lengths:
            return None

        avg, shortest, longest = _length_stats(lengths)
        notes = []

        if len(lengths) >= 10:
            confidence = 35
        elif len(lengths) >= 3:
            confidence = 20
        else:
            confidence = 10

        if s.reasonable_min_frame <= avg <= s.reasonable_max_frame:
            confidence += 20
        elif 1 <= avg <= 1024:
            confidence += 10

        if len(lengths) >= 3 and longest - shortest < avg * 0.5:
            confidence += 15
            notes.append("Consistent frame sizes")

        if printable_ratio >= s.text_ratio and name in TEXT_DELIMITERS:
            confidence += 15
            notes.append("Data appears to be ASCII text")

        # delimiter bytes occurring inside frames suggest data, not framing
        expected_frames = int(len(raw) // avg)
        if len(positions) > expected_frames * 2:
            confidence -= 10

        notes.append(f"{name} delimiter: {len(lengths)} frames")

        if confidence < 25:
            return None

        return FramingCandidate(
            mode=FramingMode.DELIMITER,
            confidence=_clamp(confidence),
            estimated_frame_count=len(lengths),
            avg_frame_length=_round(avg),
            min_frame_length=shortest,
            max_frame_length=longest,
            notes=notes,
            delimiter=delimiter,
            delimiter_name=name,
        )
