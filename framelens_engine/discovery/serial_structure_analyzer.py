"""
FrameLens Engine - Serial Frame Structure Analysis

Scores candidate message ID bytes, source address bytes and checksum fields of
already framed serial payloads.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence

from ..core.config import Config, SerialStructureConfig
from .checksum_primitive import (
    CHECKSUM_ALGORITHMS,
    ChecksumPrimitive,
    InProcessChecksumPrimitive,
    get_algorithm_info,
    resolve_byte_index,
)
from .models import ByteSource, as_payloads

logger = logging.getLogger(__name__)

PROTOCOL_MARKERS = frozenset({0xFB, 0xFC, 0xFD, 0xFE})


@dataclass
class FieldCandidate:
    """A byte field that could hold a message ID or a source address."""

    start_byte: int
    length: int
    unique_values: List[int]
    sample_count: int
    confidence: float
    notes: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        if self.length == 1:
            return f"byte[{self.start_byte}]"
        return f"bytes[{self.start_byte}:{self.start_byte + self.length - 1}]"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_byte": self.start_byte,
            "length": self.length,
            "unique_values": self.unique_values,
            "sample_count": self.sample_count,
            "confidence": self.confidence,
            "notes": self.notes,
        }


@dataclass
class ChecksumFieldCandidate:
    position: int
    length: int
    algorithm: str
    calc_start_byte: int
    calc_end_byte: int
    match_rate: float
    match_count: int
    total_count: int
    confidence: float
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "length": self.length,
            "algorithm": self.algorithm,
            "calc_start_byte": self.calc_start_byte,
            "calc_end_byte": self.calc_end_byte,
            "match_rate": self.match_rate,
            "match_count": self.match_count,
            "total_count": self.total_count,
            "confidence": self.confidence,
            "notes": self.notes,
        }


@dataclass
class SerialStructureResult:
    frame_count: int
    min_length: int
    max_length: int
    has_varying_length: bool
    id_candidates: List[FieldCandidate]
    source_address_candidates: List[FieldCandidate]
    checksum_candidates: List[ChecksumFieldCandidate]
    notes: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_count": self.frame_count,
            "min_length": self.min_length,
            "max_length": self.max_length,
            "has_varying_length": self.has_varying_length,
            "id_candidates": [c.to_dict() for c in self.id_candidates],
            "source_address_candidates": [c.to_dict() for c in self.source_address_candidates],
            "checksum_candidates": [c.to_dict() for c in self.checksum_candidates],
            "notes": self.notes,
        }


def _value_counts(frames: Sequence[bytes], index: int, length: int) -> Counter:
    """Big-endian field values of the frames long enough to contain them."""
    counts: Counter = Counter()
    for frame in frames:
        if index + length - 1 < len(frame):
            counts[int.from_bytes(frame[index : index + length], "big")] += 1
    return counts


def _evenly_distributed(counts: Counter) -> bool:
    occurrences = list(counts.values())
    average = sum(occurrences) / len(occurrences)
    return min(occurrences) >= average * 0.1 and max(occurrences) <= average * 5


def format_field_candidate(candidate: FieldCandidate) -> str:
    return (
        f"{candidate.label}: {len(candidate.unique_values)} distinct values "
        f"({candidate.confidence:.0f}% confidence)"
    )


def format_checksum_candidate(
    candidate: ChecksumFieldCandidate, frame_length: Optional[int] = None
) -> str:
    position = f"byte {candidate.position}"
    if candidate.position < 0 and frame_length:
        position += f" (byte {resolve_byte_index(candidate.position, frame_length)})"
    info = get_algorithm_info(candidate.algorithm)
    name = info.name if info else candidate.algorithm
    return f"{name} at {position}, {candidate.match_rate:.0f}% match"


class SerialStructureAnalyzer:
    """Heuristic structure analysis of framed serial payloads."""

    def __init__(
        self,
        config: Optional[Config] = None,
        primitive: Optional[ChecksumPrimitive] = None,
    ):
        self.config = config or Config()
        self.primitive = primitive or InProcessChecksumPrimitive()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> SerialStructureConfig:
        return self.config.serial_structure

    async def analyze(self, frames: Sequence[ByteSource]) -> SerialStructureResult:
        frames = as_payloads(frames)
        if not frames:
            return SerialStructureResult(
                frame_count=0,
                min_length=0,
                max_length=0,
                has_varying_length=False,
                id_candidates=[],
                source_address_candidates=[],
                checksum_candidates=[],
                notes=["No frames to analyze"],
            )

        min_length = min(len(f) for f in frames)
        max_length = max(len(f) for f in frames)
        varying = min_length != max_length
        notes = [
            f"Varying length: {min_length}–{max_length} bytes"
            if varying
            else f"Fixed length: {min_length} bytes"
        ]

        id_candidates = self.find_id_candidates(frames, min_length)
        best_id = id_candidates[0] if id_candidates else None
        sources = self.find_source_address_candidates(frames, min_length, best_id)
        checksums = await self.find_checksum_candidates(frames, min_length)

        for kind, candidates in (("ID", id_candidates), ("source address", sources)):
            if candidates:
                best = candidates[0]
                plural = "s" if best.length > 1 else ""
                span = (
                    f"{best.start_byte}:{best.start_byte + best.length - 1}"
                    if best.length > 1
                    else f"{best.start_byte}"
                )
                notes.append(
                    f"Best {kind} candidate: byte{plural} [{span}] with "
                    f"{len(best.unique_values)} distinct values"
                )

        if checksums:
            best_checksum = checksums[0]
            notes.append(
                f"Best checksum candidate: {best_checksum.algorithm} at byte "
                f"{best_checksum.position} ({best_checksum.match_rate:.0f}% match rate)"
            )

        return SerialStructureResult(
            frame_count=len(frames),
            min_length=min_length,
            max_length=max_length,
            has_varying_length=varying,
            id_candidates=id_candidates,
            source_address_candidates=sources,
            checksum_candidates=checksums,
            notes=notes,
        )

    # =========================================================================
    # Message IDs
    # =========================================================================

    def find_id_candidates(self, frames: List[bytes], min_length: int) -> List[FieldCandidate]:
        candidates = []
        last_position = min(self.settings.max_id_position, min_length - 1)

        for start in range(0, last_position + 1):
            single = self._score_single_byte_id(frames, start)
            if single is not None:
                candidates.append(single)
            if start + 1 < min_length:
                double = self._score_two_byte_id(frames, start)
                if double is not None:
                    candidates.append(double)

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def _score_single_byte_id(self, frames: List[bytes], index: int) -> Optional[FieldCandidate]:
        counts = _value_counts(frames, index, 1)
        unique = sorted(counts)
        if len(unique) < 2 or len(unique) > 50:
            return None

        position_score = max(0, 100 - index * 20)
        value_count_score = 80 if 3 <= len(unique) <= 20 else 50
        notes = []
        bonus = 0

        if any(v in PROTOCOL_MARKERS for v in unique):
            notes.append("Contains common protocol markers (0xFB-0xFE)")
            bonus += 15

        if any(v <= 0x10 for v in unique) and len(unique) <= 16:
            notes.append("Contains small sequential values (likely command IDs)")
            bonus += 10

        confidence = min(100, (position_score + value_count_score + bonus) / 2)
        if confidence < self.settings.id_min_confidence:
            return None

        return FieldCandidate(index, 1, unique, len(frames), confidence, notes)

    def _score_two_byte_id(self, frames: List[bytes], index: int) -> Optional[FieldCandidate]:
        counts = _value_counts(frames, index, 2)
        unique = sorted(counts)
        if len(unique) < 2 or len(unique) > 100:
            return None

        notes = []
        bonus = 0
        first_bytes = {f[index] for f in frames if index < len(f)}
        # type byte + subtype byte
        if len(first_bytes) <= 5:
            notes.append(f"First byte has only {len(first_bytes)} values (type + subtype pattern)")
            bonus += 20

        position_score = max(0, 100 - index * 20)
        value_count_score = 70 if 5 <= len(unique) <= 50 else 40

        confidence = min(100, (position_score + value_count_score + bonus) / 2)
        if confidence < self.settings.id_two_byte_min_confidence:
            return None

        return FieldCandidate(index, 2, unique, len(frames), confidence, notes)

    # =========================================================================
    # Source addresses
    # =========================================================================

    def find_source_address_candidates(
        self,
        frames: List[bytes],
        min_length: int,
        best_id: Optional[FieldCandidate],
    ) -> List[FieldCandidate]:
        """Score address fields following the best ID candidate (or byte 0)."""
        candidates = []
        start = best_id.start_byte + best_id.length if best_id else 1
        last_position = min(start + self.settings.source_search_depth, min_length - 1)

        for index in range(start, last_position + 1):
            single = self._score_single_byte_source(frames, index)
            if single is not None:
                candidates.append(single)
            if index + 1 < min_length:
                double = self._score_two_byte_source(frames, index)
                if double is not None:
                    candidates.append(double)

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def _score_single_byte_source(
        self, frames: List[bytes], index: int
    ) -> Optional[FieldCandidate]:
        counts = _value_counts(frames, index, 1)
        unique = sorted(counts)
        if len(unique) < 2 or len(unique) > 30:
            return None

        notes = []
        if len(unique) <= 10:
            confidence = 40
            notes.append(f"{len(unique)} unique addresses (typical device count)")
        elif len(unique) <= 20:
            confidence = 25
            notes.append(f"{len(unique)} unique addresses")
        else:
            confidence = 10

        if _evenly_distributed(counts):
            confidence += 20
            notes.append("Even distribution across addresses")

        if all(v <= 0x20 for v in unique):
            confidence += 15
            notes.append("Small address values (0x00-0x20)")

        if 0 not in counts and len(unique) <= 10:
            confidence += 10
            notes.append("No zero address (typical for device IDs)")

        if confidence < self.settings.source_min_confidence:
            return None

        return FieldCandidate(index, 1, unique, len(frames), min(100, confidence), notes)

    def _score_two_byte_source(
        self, frames: List[bytes], index: int
    ) -> Optional[FieldCandidate]:
        counts = _value_counts(frames, index, 2)
        unique = sorted(counts)
        if len(unique) < 2 or len(unique) > 50:
            return None

        notes = []
        if len(unique) <= 10:
            confidence = 50
            notes.append(f"{len(unique)} unique 16-bit addresses (strong pattern)")
        elif len(unique) <= 20:
            confidence = 35
            notes.append(f"{len(unique)} unique 16-bit addresses")
        elif len(unique) <= 30:
            confidence = 20
        else:
            confidence = 10

        # values that fit one byte are better described by a single-byte field
        if unique[-1] <= 0x00FF:
            confidence -= 25
        elif unique[-1] <= 0x0FFF:
            confidence += 15
            notes.append("12-bit address range")

        if _evenly_distributed(counts):
            confidence += 20
            notes.append("Even distribution")

        if 0 not in counts and len(unique) <= 10:
            confidence += 10
            notes.append("No zero address")

        if confidence < self.settings.source_two_byte_min_confidence:
            return None

        return FieldCandidate(index, 2, unique, len(frames), min(100, confidence), notes)

    # =========================================================================
    # Checksums
    # =========================================================================

    async def find_checksum_candidates(
        self, frames: List[bytes], min_length: int
    ) -> List[ChecksumFieldCandidate]:
        """Test registry algorithms at the usual trailing checksum positions.

        Candidates are ranked by match rate; rates within the tie window are
        ranked by confidence. Only the best candidate per (position, length)
        is kept.
        """
        layouts = [(-1, 1, 0, -1), (-1, 1, 1, -1)]
        if min_length >= 4:
            layouts += [(-2, 2, 0, -2), (-2, 2, 1, -2)]
        if min_length >= 3:
            # padding byte after the checksum
            layouts += [(-2, 1, 0, -2), (-2, 1, 1, -2)]

        candidates = []
        for position, length, calc_start, calc_end in layouts:
            for algo in CHECKSUM_ALGORITHMS:
                if algo.output_bytes != length:
                    continue
                candidate = await self._test_checksum(
                    frames, position, length, algo.id, calc_start, calc_end
                )
                if (
                    candidate is not None
                    and candidate.match_rate >= self.settings.checksum_min_match_rate
                ):
                    candidates.append(candidate)

        window = self.settings.checksum_rate_tie_window

        def compare(a: ChecksumFieldCandidate, b: ChecksumFieldCandidate) -> float:
            if abs(a.match_rate - b.match_rate) > window:
                return b.match_rate - a.match_rate
            return b.confidence - a.confidence

        ranked = sorted(candidates, key=cmp_to_key(compare))

        seen = set()
        deduplicated = []
        for candidate in ranked:
            key = (candidate.position, candidate.length)
            if key not in seen:
                seen.add(key)
                deduplicated.append(candidate)
        return deduplicated

    async def _test_checksum(
        self,
        frames: List[bytes],
        position: int,
        length: int,
        algorithm: str,
        calc_start: int,
        calc_end: int,
    ) -> Optional[ChecksumFieldCandidate]:
        match_count = 0
        total_count = 0

        for frame in frames:
            resolved = resolve_byte_index(position, len(frame))
            start = resolve_byte_index(calc_start, len(frame))
            end = resolve_byte_index(calc_end, len(frame))
            if resolved + length > len(frame) or end > len(frame) or start >= end:
                continue

            total_count += 1
            stored = int.from_bytes(frame[resolved : resolved + length], "big")
            calculated = await self.primitive.compute(algorithm, frame, start, end)
            if stored == calculated:
                match_count += 1

        if total_count == 0:
            return None

        match_rate = (match_count / total_count) * 100
        confidence = match_rate
        if match_rate >= 95 and total_count >= 100:
            confidence = min(100, confidence + 10)
        elif match_rate >= 90 and total_count >= 50:
            confidence = min(100, confidence + 5)

        if total_count < 10:
            confidence *= 0.7
        elif total_count < 50:
            confidence *= 0.9

        notes = []
        info = get_algorithm_info(algorithm)
        if info:
            notes.append(f"{info.name}: {info.description}")
        if calc_start == 1:
            notes.append("Calculation skips first byte (type byte excluded)")
        if match_rate == 100:
            notes.append("Perfect match across all samples")
        elif match_rate >= 90:
            notes.append("High match rate - likely correct")

        return ChecksumFieldCandidate(
            position=position,
            length=length,
            algorithm=algorithm,
            calc_start_byte=calc_start,
            calc_end_byte=calc_end,
            match_rate=match_rate,
            match_count=match_count,
            total_count=total_count,
            confidence=confidence,
            notes=notes,
        )
