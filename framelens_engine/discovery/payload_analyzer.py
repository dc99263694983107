"""
FrameLens Engine - Payload Analysis

Per frame ID payload analysis: byte roles, multi-byte patterns, identical and
varying-length payload detection, and per-case analysis of multiplexed frames.
Findings are summarised as human readable notes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.config import Config
from .byte_pattern_classifier import (
    BytePatternClassifier,
    ByteRole,
    ByteStats,
    CounterDirection,
    MultiBytePattern,
    PatternKind,
    SensorTrend,
    ValueRange,
    infer_endianness,
)
from .models import ByteSource, as_payloads, format_hex
from .mux_detector import (
    MuxDetectionResult,
    MuxDetector,
    format_mux_info,
    format_mux_value,
    mux_payload_start_byte,
)

logger = logging.getLogger(__name__)

TREND_SYMBOLS = {
    SensorTrend.INCREASING: "↑",
    SensorTrend.DECREASING: "↓",
    SensorTrend.MIXED: "↕",
}

ENDIANNESS_LABELS = {
    "little": "Little-endian",
    "big": "Big-endian",
    "mixed": "Mixed endianness",
}


@dataclass
class MuxInfo:
    selector_byte: int
    selector_values: List[int]
    is_two_byte: bool

    @classmethod
    def from_detection(cls, result: MuxDetectionResult) -> "MuxInfo":
        return cls(
            selector_byte=result.selector_byte,
            selector_values=list(result.selector_values),
            is_two_byte=result.is_two_byte,
        )

    def to_dict(self):
        return {
            "selector_byte": self.selector_byte,
            "selector_values": self.selector_values,
            "is_two_byte": self.is_two_byte,
        }


@dataclass
class MuxCaseAnalysis:
    """Analysis of the payloads sharing one mux selector value."""

    mux_value: int
    sample_count: int
    byte_stats: List[ByteStats]
    multi_byte_patterns: List[MultiBytePattern]
    notes: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "mux_value": self.mux_value,
            "sample_count": self.sample_count,
            "byte_stats": [s.to_dict() for s in self.byte_stats],
            "multi_byte_patterns": [p.to_dict() for p in self.multi_byte_patterns],
            "notes": self.notes,
        }


@dataclass
class PayloadAnalysisResult:
    """Payload analysis of one frame ID."""

    frame_id: int
    sample_count: int
    byte_stats: List[ByteStats]
    multi_byte_patterns: List[MultiBytePattern]
    notes: List[str]
    analyzed_from_byte: int
    analyzed_to_byte: int
    is_burst_frame: bool = False
    is_mux_frame: bool = False
    mux_info: Optional[MuxInfo] = None
    mux_case_analyses: List[MuxCaseAnalysis] = field(default_factory=list)
    has_varying_length: bool = False
    length_range: Optional[ValueRange] = None
    is_identical: bool = False
    identical_payload: Optional[bytes] = None
    inferred_endianness: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "frame_id": self.frame_id,
            "sample_count": self.sample_count,
            "byte_stats": [s.to_dict() for s in self.byte_stats],
            "multi_byte_patterns": [p.to_dict() for p in self.multi_byte_patterns],
            "notes": self.notes,
            "analyzed_from_byte": self.analyzed_from_byte,
            "analyzed_to_byte": self.analyzed_to_byte,
            "is_burst_frame": self.is_burst_frame,
            "is_mux_frame": self.is_mux_frame,
            "has_varying_length": self.has_varying_length,
            "is_identical": self.is_identical,
            "inferred_endianness": self.inferred_endianness,
        }
        if self.mux_info is not None:
            result["mux_info"] = self.mux_info.to_dict()
            result["mux_case_analyses"] = [c.to_dict() for c in self.mux_case_analyses]
        if self.length_range is not None:
            result["length_range"] = self.length_range.to_dict()
        if self.identical_payload is not None:
            result["identical_payload"] = self.identical_payload.hex().upper()
        return result


def _percent(ratio: float) -> int:
    return int(ratio * 100 + 0.5)


def _static_list(stats: Iterable[ByteStats]) -> str:
    return ", ".join(f"byte[{s.byte_index}]=0x{s.static_value:02X}" for s in stats)


def _pattern_indices(patterns: Iterable[MultiBytePattern]) -> set:
    indices = set()
    for pattern in patterns:
        indices.update(pattern.byte_indices())
    return indices


def _identical_payload(payloads: List[bytes]) -> Optional[bytes]:
    if len(payloads) > 1 and all(p == payloads[0] for p in payloads[1:]):
        return payloads[0]
    return None


def _endianness_note(patterns: List[MultiBytePattern], endianness: str) -> str:
    with_order = sum(1 for p in patterns if p.endianness is not None)
    return (
        f"{ENDIANNESS_LABELS[endianness]} "
        f"(inferred from {with_order} multi-byte pattern(s))"
    )


def describe_findings(
    byte_stats: List[ByteStats], patterns: List[MultiBytePattern]
) -> List[str]:
    """Notes for a whole-frame analysis."""
    notes = []
    in_patterns = _pattern_indices(patterns)

    statics = [s for s in byte_stats if s.role == ByteRole.STATIC]
    counters = [
        s for s in byte_stats if s.role == ByteRole.COUNTER and s.byte_index not in in_patterns
    ]
    sensors = [
        s for s in byte_stats if s.role == ByteRole.SENSOR and s.byte_index not in in_patterns
    ]
    values = [
        s for s in byte_stats if s.role == ByteRole.VALUE and s.byte_index not in in_patterns
    ]

    if statics:
        notes.append(f"Static bytes: {_static_list(statics)}")

    for counter in counters:
        direction = (
            "incrementing" if counter.counter_direction == CounterDirection.UP else "decrementing"
        )
        if counter.is_looping_counter and counter.looping_range and counter.looping_modulo:
            notes.append(
                f"Looping counter at byte[{counter.byte_index}]: {direction}, "
                f"step={counter.counter_step}, range {counter.looping_range.min}–"
                f"{counter.looping_range.max} (mod {counter.looping_modulo})"
            )
        else:
            rollover = " (rollover detected)" if counter.rollover_detected else ""
            notes.append(
                f"Counter at byte[{counter.byte_index}]: {direction}, "
                f"step={counter.counter_step}{rollover}"
            )

    for sensor in sensors:
        strength = (
            f" ({_percent(sensor.trend_strength)}% trend)" if sensor.trend_strength else ""
        )
        notes.append(
            f"Sensor at byte[{sensor.byte_index}]: {TREND_SYMBOLS[sensor.sensor_trend]} "
            f"range {sensor.min}–{sensor.max}{strength}"
        )

    for pattern in patterns:
        value_range = (
            f", range {pattern.min_value}–{pattern.max_value}"
            if pattern.min_value is not None and pattern.max_value is not None
            else ""
        )
        endian = pattern.endianness.value if pattern.endianness else None
        if pattern.pattern in (PatternKind.COUNTER16, PatternKind.COUNTER32):
            bits = 16 if pattern.pattern == PatternKind.COUNTER16 else 32
            rollover = " (rollover detected)" if pattern.rollover_detected else ""
            notes.append(
                f"{bits}-bit counter at byte[{pattern.start_byte}:{pattern.end_byte}], "
                f"{endian} endian{rollover}"
            )
        elif pattern.pattern == PatternKind.SENSOR16:
            correlation = (
                " (rollover correlation detected)" if pattern.correlated_rollover else ""
            )
            notes.append(
                f"16-bit sensor at byte[{pattern.start_byte}:{pattern.start_byte + 1}], "
                f"{endian} endian{value_range}{correlation}"
            )
        elif pattern.pattern == PatternKind.SENSOR32:
            slow = " (slow-changing upper bytes)" if pattern.slow_upper_bytes else ""
            correlation = (
                " (rollover correlation detected)" if pattern.correlated_rollover else ""
            )
            notes.append(
                f"32-bit sensor at byte[{pattern.start_byte}:{pattern.start_byte + 3}], "
                f"{endian} endian{value_range}{slow}{correlation}"
            )
        elif pattern.pattern == PatternKind.TEXT:
            sample = f' "{pattern.sample_text}"' if pattern.sample_text else ""
            notes.append(f"Text at byte[{pattern.start_byte}:{pattern.end_byte}]{sample}")

    if values and not counters and not sensors and not patterns:
        notes.append(f"{len(values)} byte(s) with varying values detected")

    return notes


def describe_mux_case(
    byte_stats: List[ByteStats], patterns: List[MultiBytePattern]
) -> List[str]:
    """Compact notes for one mux case."""
    notes = []
    in_patterns = _pattern_indices(patterns)

    statics = [s for s in byte_stats if s.role == ByteRole.STATIC]
    if statics:
        notes.append(f"Static: {_static_list(statics)}")

    for counter in byte_stats:
        if counter.role != ByteRole.COUNTER or counter.byte_index in in_patterns:
            continue
        direction = "inc" if counter.counter_direction == CounterDirection.UP else "dec"
        if counter.is_looping_counter and counter.looping_range and counter.looping_modulo:
            notes.append(
                f"Loop counter byte[{counter.byte_index}]: {direction}, "
                f"step={counter.counter_step}, {counter.looping_range.min}–"
                f"{counter.looping_range.max} (mod {counter.looping_modulo})"
            )
        else:
            rollover = " +rollover" if counter.rollover_detected else ""
            notes.append(
                f"Counter byte[{counter.byte_index}]: {direction}, "
                f"step={counter.counter_step}{rollover}"
            )

    for sensor in byte_stats:
        if sensor.role != ByteRole.SENSOR or sensor.byte_index in in_patterns:
            continue
        notes.append(
            f"Sensor byte[{sensor.byte_index}]: {TREND_SYMBOLS[sensor.sensor_trend]} "
            f"range {sensor.min}–{sensor.max}"
        )

    for pattern in patterns:
        value_range = (
            f" {pattern.min_value}–{pattern.max_value}"
            if pattern.min_value is not None and pattern.max_value is not None
            else ""
        )
        endian = pattern.endianness.value if pattern.endianness else None
        if pattern.pattern in (PatternKind.COUNTER16, PatternKind.COUNTER32):
            bits = 16 if pattern.pattern == PatternKind.COUNTER16 else 32
            rollover = " +rollover" if pattern.rollover_detected else ""
            notes.append(
                f"{bits}b counter byte[{pattern.start_byte}:{pattern.end_byte}] "
                f"{endian}{rollover}"
            )
        elif pattern.pattern == PatternKind.SENSOR16:
            correlation = " +correlated" if pattern.correlated_rollover else ""
            notes.append(
                f"16b sensor byte[{pattern.start_byte}:{pattern.start_byte + 1}] "
                f"{endian}{value_range}{correlation}"
            )
        elif pattern.pattern == PatternKind.SENSOR32:
            slow = " +slow-upper" if pattern.slow_upper_bytes else ""
            correlation = " +correlated" if pattern.correlated_rollover else ""
            notes.append(
                f"32b sensor byte[{pattern.start_byte}:{pattern.start_byte + 3}] "
                f"{endian}{value_range}{slow}{correlation}"
            )
        elif pattern.pattern == PatternKind.TEXT:
            sample = f' "{pattern.sample_text}"' if pattern.sample_text else ""
            notes.append(f"Text byte[{pattern.start_byte}:{pattern.end_byte}]{sample}")

    return notes


class PayloadAnalyzer:
    """Byte pattern analysis of the payloads of one frame ID."""

    def __init__(
        self,
        config: Optional[Config] = None,
        classifier: Optional[BytePatternClassifier] = None,
        mux_detector: Optional[MuxDetector] = None,
    ):
        self.config = config or Config()
        self.classifier = classifier or BytePatternClassifier(self.config)
        self.mux_detector = mux_detector or MuxDetector(self.config)
        self.logger = logging.getLogger(__name__)

    def analyze(
        self,
        payloads: Sequence[ByteSource],
        frame_id: int,
        payload_start_byte: int = 0,
        is_burst_frame: bool = False,
    ) -> PayloadAnalysisResult:
        """Analyze payloads from ``payload_start_byte`` to the shortest length.

        Args:
            payloads: Payloads of one frame ID in capture order.
            frame_id: Frame ID the payloads belong to.
            payload_start_byte: First analysed byte, skipping selector bytes.
            is_burst_frame: Whether the payloads come from a burst frame.
        """
        payloads = as_payloads(payloads)
        if not payloads:
            return self._empty_result(frame_id, payload_start_byte, is_burst_frame)

        notes: List[str] = []
        min_length = min(len(p) for p in payloads)
        max_length = max(len(p) for p in payloads)
        varying = min_length != max_length
        if varying:
            notes.append(f"Varying length: {min_length}–{max_length} bytes")

        if is_burst_frame:
            notes.append("Burst frame: analyzing stable payload portion only")

        identical = _identical_payload(payloads)
        if identical is not None:
            notes.append(
                f"Identical payload across all {len(payloads)} samples: {format_hex(identical)}"
            )

        byte_stats = self.classifier.classify_bytes(payloads, payload_start_byte, min_length)
        patterns = self.classifier.detect_multi_byte_patterns(payloads, byte_stats)
        notes.extend(describe_findings(byte_stats, patterns))

        endianness = infer_endianness(patterns)
        if endianness:
            notes.insert(0, _endianness_note(patterns, endianness))

        self.logger.debug(
            f"Analyzed {len(payloads)} payloads of frame 0x{frame_id:X}: "
            f"{len(byte_stats)} bytes, {len(patterns)} patterns",
            extra={"frame_id": frame_id, "sample_count": len(payloads)},
        )

        return PayloadAnalysisResult(
            frame_id=frame_id,
            sample_count=len(payloads),
            byte_stats=byte_stats,
            multi_byte_patterns=patterns,
            notes=notes,
            analyzed_from_byte=payload_start_byte,
            analyzed_to_byte=min_length,
            is_burst_frame=is_burst_frame,
            has_varying_length=varying,
            length_range=ValueRange(min_length, max_length) if varying else None,
            is_identical=identical is not None,
            identical_payload=identical,
            inferred_endianness=endianness,
        )

    def analyze_with_mux_detection(
        self,
        payloads: Sequence[ByteSource],
        frame_id: int,
        is_burst_frame: bool = False,
    ) -> PayloadAnalysisResult:
        """Analyze payloads, splitting multiplexed frames into per-case analyses.

        Without a detected mux selector this is ``analyze`` from byte 0. With
        one, every case is classified separately past the selector bytes; the
        overall byte stats are those of the first case and the multi-byte
        patterns of every case are merged.
        """
        payloads = as_payloads(payloads)
        if not payloads:
            return self._empty_result(frame_id, 0, is_burst_frame)

        mux = self.mux_detector.detect(payloads)
        if mux is None:
            return self.analyze(payloads, frame_id, 0, is_burst_frame)

        min_length = min(len(p) for p in payloads)
        max_length = max(len(p) for p in payloads)
        varying = min_length != max_length
        identical = _identical_payload(payloads)
        start_byte = mux_payload_start_byte(mux)

        notes: List[str] = []
        if varying:
            notes.append(f"Varying length: {min_length}–{max_length} bytes")
        if is_burst_frame:
            notes.append("Burst frame with mux: analyzing stable payload portion only")
        if identical is not None:
            notes.append(
                f"Identical payload across all {len(payloads)} samples: {format_hex(identical)}"
            )
        notes.append(f"Multiplexed frame: {format_mux_info(mux)}")

        by_key: Dict[int, List[bytes]] = {}
        for payload in payloads:
            by_key.setdefault(mux.key(payload), []).append(payload)

        cases: List[MuxCaseAnalysis] = []
        overall_stats: List[ByteStats] = []
        all_patterns: List[MultiBytePattern] = []

        for value in mux.selector_values:
            case_payloads = by_key.get(value)
            if not case_payloads:
                continue

            case_stats = self.classifier.classify_bytes(case_payloads, start_byte, min_length)
            case_patterns = self.classifier.detect_multi_byte_patterns(
                case_payloads, case_stats
            )
            cases.append(
                MuxCaseAnalysis(
                    mux_value=value,
                    sample_count=len(case_payloads),
                    byte_stats=case_stats,
                    multi_byte_patterns=case_patterns,
                    notes=describe_mux_case(case_stats, case_patterns),
                )
            )

            if not overall_stats:
                overall_stats = list(case_stats)
            all_patterns.extend(case_patterns)

        summaries = []
        for case in cases:
            counters = sum(1 for s in case.byte_stats if s.role == ByteRole.COUNTER)
            statics = sum(1 for s in case.byte_stats if s.role == ByteRole.STATIC)
            if counters or statics:
                summaries.append(
                    f"Case {format_mux_value(case.mux_value, mux.is_two_byte)}: "
                    f"{counters} counter, {statics} static"
                )
        if 0 < len(summaries) <= 4:
            notes.extend(summaries)

        endianness = infer_endianness(all_patterns)
        if endianness:
            notes.insert(0, _endianness_note(all_patterns, endianness))

        self.logger.debug(
            f"Frame 0x{frame_id:X} is multiplexed with {len(cases)} cases",
            extra={"frame_id": frame_id, "case_count": len(cases)},
        )

        return PayloadAnalysisResult(
            frame_id=frame_id,
            sample_count=len(payloads),
            byte_stats=overall_stats,
            multi_byte_patterns=all_patterns,
            notes=notes,
            analyzed_from_byte=start_byte,
            analyzed_to_byte=min_length,
            is_burst_frame=is_burst_frame,
            is_mux_frame=True,
            mux_info=MuxInfo.from_detection(mux),
            mux_case_analyses=cases,
            has_varying_length=varying,
            length_range=ValueRange(min_length, max_length) if varying else None,
            is_identical=identical is not None,
            identical_payload=identical,
            inferred_endianness=endianness,
        )

    @staticmethod
    def _empty_result(
        frame_id: int, start_byte: int, is_burst_frame: bool
    ) -> PayloadAnalysisResult:
        return PayloadAnalysisResult(
            frame_id=frame_id,
            sample_count=0,
            byte_stats=[],
            multi_byte_patterns=[],
            notes=["No frames to analyze"],
            analyzed_from_byte=start_byte,
            analyzed_to_byte=start_byte,
            is_burst_frame=is_burst_frame,
        )
