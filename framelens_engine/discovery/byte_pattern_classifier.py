"""
FrameLens Engine - Byte Pattern Classifier

This module classifies every byte position of a payload set by role (static,
counter, sensor, value, unknown) and fuses adjacent bytes into multi-byte
numeric and ASCII text patterns.

Payloads are analysed as a numpy matrix truncated to the shortest payload, so
every analysed position has a value in every sample.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core.config import Config, PatternClassifierConfig
from ..core.constants import (
    PRINTABLE_CONTROL,
    PRINTABLE_MAX,
    PRINTABLE_MIN,
    is_printable_ascii,
)
from .models import ByteSource, Endianness, as_payloads

logger = logging.getLogger(__name__)


class ByteRole(str, Enum):
    STATIC = "static"
    COUNTER = "counter"
    SENSOR = "sensor"
    VALUE = "value"
    UNKNOWN = "unknown"


class CounterDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class SensorTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    MIXED = "mixed"


class PatternKind(str, Enum):
    COUNTER16 = "counter16"
    COUNTER32 = "counter32"
    SENSOR16 = "sensor16"
    SENSOR32 = "sensor32"
    VALUE16 = "value16"
    VALUE32 = "value32"
    TEXT = "text"
    UNKNOWN = "unknown"


ENDIAN_PATTERN_KINDS = frozenset(
    {PatternKind.COUNTER16, PatternKind.COUNTER32, PatternKind.SENSOR16, PatternKind.SENSOR32}
)

# Roles that may take part in a multi-byte numeric pattern
FUSABLE_ROLES = frozenset(
    {ByteRole.COUNTER, ByteRole.VALUE, ByteRole.SENSOR, ByteRole.UNKNOWN}
)


@dataclass(frozen=True)
class ValueRange:
    min: int
    max: int

    def to_dict(self):
        return {"min": self.min, "max": self.max}


@dataclass
class CounterResult:
    direction: CounterDirection
    step: int
    rollover_detected: bool


@dataclass
class LoopingCounterResult:
    direction: CounterDirection
    step: int
    range: ValueRange
    modulo: int


@dataclass
class SensorResult:
    trend: SensorTrend
    trend_strength: float
    rollover_detected: bool


@dataclass
class ByteStats:
    """Aggregate statistics and role of one byte position."""

    byte_index: int
    min: int
    max: int
    unique_values: Set[int]
    role: ByteRole = ByteRole.UNKNOWN
    static_value: Optional[int] = None

    # Counters
    is_counter: bool = False
    counter_direction: Optional[CounterDirection] = None
    counter_step: Optional[int] = None
    rollover_detected: bool = False
    is_looping_counter: bool = False
    looping_range: Optional[ValueRange] = None
    looping_modulo: Optional[int] = None

    # Sensors
    is_sensor: bool = False
    sensor_trend: Optional[SensorTrend] = None
    trend_strength: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "byte_index": self.byte_index,
            "min": self.min,
            "max": self.max,
            "unique_count": len(self.unique_values),
            "role": self.role.value,
            "rollover_detected": self.rollover_detected,
        }
        if self.static_value is not None:
            result["static_value"] = self.static_value
        if self.is_counter:
            result.update(
                {
                    "counter_direction": self.counter_direction.value,
                    "counter_step": self.counter_step,
                    "is_looping_counter": self.is_looping_counter,
                }
            )
            if self.is_looping_counter:
                result["looping_range"] = self.looping_range.to_dict()
                result["looping_modulo"] = self.looping_modulo
        if self.is_sensor:
            result["sensor_trend"] = self.sensor_trend.value
            result["trend_strength"] = self.trend_strength
        return result


@dataclass
class MultiBytePattern:
    """A numeric or text field spanning several adjacent bytes."""

    start_byte: int
    length: int
    pattern: PatternKind
    endianness: Optional[Endianness] = None
    rollover_detected: bool = False
    correlated_rollover: bool = False
    slow_upper_bytes: bool = False
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    sample_text: Optional[str] = None

    @property
    def end_byte(self) -> int:
        """Last byte index (inclusive)."""
        return self.start_byte + self.length - 1

    def byte_indices(self) -> range:
        return range(self.start_byte, self.start_byte + self.length)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "start_byte": self.start_byte,
            "length": self.length,
            "pattern": self.pattern.value,
        }
        if self.endianness is not None:
            result["endianness"] = self.endianness.value
        if self.pattern != PatternKind.TEXT:
            result["rollover_detected"] = self.rollover_detected
            result["correlated_rollover"] = self.correlated_rollover
            result["slow_upper_bytes"] = self.slow_upper_bytes
        if self.min_value is not None:
            result["min_value"] = self.min_value
            result["max_value"] = self.max_value
        if self.sample_text is not None:
            result["sample_text"] = self.sample_text
        return result


def payload_matrix(payloads: Sequence[bytes], width: int) -> np.ndarray:
    """Stack payloads truncated to ``width`` bytes as an int64 matrix."""
    if not payloads or width <= 0:
        return np.zeros((len(payloads), 0), dtype=np.int64)
    joined = b"".join(p[:width] for p in payloads)
    return np.frombuffer(joined, dtype=np.uint8).reshape(len(payloads), width).astype(
        np.int64
    )


def infer_endianness(patterns: Sequence[MultiBytePattern]) -> Optional[str]:
    """'little', 'big' or 'mixed' from numeric patterns, None without any."""
    endians = {
        p.endianness
        for p in patterns
        if p.endianness is not None and p.pattern in ENDIAN_PATTERN_KINDS
    }
    if not endians:
        return None
    if len(endians) > 1:
        return "mixed"
    return endians.pop().value


class BytePatternClassifier:
    """Per-byte role classification and multi-byte pattern fusion."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> PatternClassifierConfig:
        return self.config.patterns

    # =========================================================================
    # Byte positions
    # =========================================================================

    def classify_bytes(
        self,
        payloads: Sequence[ByteSource],
        start_byte: int = 0,
        end_byte: Optional[int] = None,
    ) -> List[ByteStats]:
        """Classify positions ``start_byte`` up to ``end_byte`` (exclusive).

        ``end_byte`` is capped at the shortest payload length.
        """
        payloads = as_payloads(payloads)
        if not payloads:
            return []

        width = min(len(p) for p in payloads)
        if end_byte is not None:
            width = min(width, end_byte)
        matrix = payload_matrix(payloads, width)
        return [
            self._classify_column(matrix[:, index], index, len(payloads))
            for index in range(start_byte, width)
        ]

    def classify_position(
        self, payloads: Sequence[ByteSource], byte_index: int
    ) -> ByteStats:
        """Classify one position over the payloads long enough to contain it."""
        payloads = as_payloads(payloads)
        values = np.array(
            [p[byte_index] for p in payloads if byte_index < len(p)], dtype=np.int64
        )
        return self._classify_column(values, byte_index, len(payloads))

    def _classify_column(
        self, values: np.ndarray, byte_index: int, frame_count: int
    ) -> ByteStats:
        if values.size == 0:
            return ByteStats(byte_index=byte_index, min=0, max=0, unique_values=set())

        unique_values = set(values.tolist())
        stats = ByteStats(
            byte_index=byte_index,
            min=int(values.min()),
            max=int(values.max()),
            unique_values=unique_values,
        )

        if len(unique_values) == 1:
            stats.role = ByteRole.STATIC
            stats.static_value = int(values[0])
            return stats

        looping = self.detect_looping_counter(values)
        if looping is not None:
            stats.role = ByteRole.COUNTER
            stats.is_counter = True
            stats.is_looping_counter = True
            stats.counter_direction = looping.direction
            stats.counter_step = looping.step
            stats.looping_range = looping.range
            stats.looping_modulo = looping.modulo
            stats.rollover_detected = True
            return stats

        if len(unique_values) == 2:
            # flag or slowly changing value
            stats.role = ByteRole.VALUE
            return stats

        counter = self.detect_counter(values)
        if counter is not None:
            stats.role = ByteRole.COUNTER
            stats.is_counter = True
            stats.counter_direction = counter.direction
            stats.counter_step = counter.step
            stats.rollover_detected = counter.rollover_detected
            return stats

        sensor = self.detect_sensor(values)
        if sensor is not None:
            stats.role = ByteRole.SENSOR
            stats.is_sensor = True
            stats.sensor_trend = sensor.trend
            stats.trend_strength = sensor.trend_strength
            stats.rollover_detected = sensor.rollover_detected
        elif len(unique_values) >= frame_count * self.settings.value_unique_ratio:
            stats.role = ByteRole.VALUE

        return stats

    # =========================================================================
    # Sequence detectors
    # =========================================================================

    @staticmethod
    def _wrapped_deltas(
        values: np.ndarray, threshold: int, modulus: int
    ) -> Tuple[np.ndarray, int]:
        """Consecutive deltas with jumps beyond ``threshold`` treated as rollover."""
        deltas = np.diff(values)
        up = deltas < -threshold
        down = deltas > threshold
        adjusted = np.where(up, deltas + modulus, np.where(down, deltas - modulus, deltas))
        return adjusted, int(up.sum() + down.sum())

    @staticmethod
    def _dominant_delta(deltas: np.ndarray) -> Tuple[int, int]:
        """Most common delta and its count; ties go to the earliest seen."""
        delta, count = Counter(deltas.tolist()).most_common(1)[0]
        return delta, count

    def detect_counter(self, values: Sequence[int]) -> Optional[CounterResult]:
        """Counter with one dominant non-zero step, 8-bit rollover corrected."""
        values = np.asarray(values, dtype=np.int64)
        if values.size < 3:
            return None

        deltas, rollovers = self._wrapped_deltas(
            values, self.settings.rollover_threshold_8, 256
        )
        delta, count = self._dominant_delta(deltas)
        if count / deltas.size >= self.settings.counter_consistency and delta != 0:
            return CounterResult(
                direction=CounterDirection.UP if delta > 0 else CounterDirection.DOWN,
                step=abs(delta),
                rollover_detected=rollovers > 0,
            )
        return None

    def detect_counter16(self, values: Sequence[int]) -> Optional[CounterResult]:
        """16-bit variant of ``detect_counter``."""
        values = np.asarray(values, dtype=np.int64)
        if values.size < 3:
            return None

        deltas, rollovers = self._wrapped_deltas(
            values, self.settings.rollover_threshold_16, 65536
        )
        delta, count = self._dominant_delta(deltas)
        if count / deltas.size >= self.settings.counter_consistency and delta != 0:
            return CounterResult(
                direction=CounterDirection.UP if delta > 0 else CounterDirection.DOWN,
                step=abs(delta),
                rollover_detected=rollovers > 0,
            )
        return None

    def detect_sensor(self, values: Sequence[int]) -> Optional[SensorResult]:
        """Trending value with a variable step.

        At least ``sensor_trend_threshold`` of the non-flat transitions must go
        one way. Otherwise an active value with three or more levels is a
        ``mixed`` sensor.
        """
        values = np.asarray(values, dtype=np.int64)
        if values.size < 3:
            return None

        deltas, rollovers = self._wrapped_deltas(
            values, self.settings.rollover_threshold_8, 256
        )
        increasing = int((deltas > 0).sum())
        decreasing = int((deltas < 0).sum())
        transitions = increasing + decreasing
        if transitions == 0:
            return None

        inc_ratio = increasing / transitions
        dec_ratio = decreasing / transitions
        threshold = self.settings.sensor_trend_threshold

        if inc_ratio >= threshold:
            return SensorResult(SensorTrend.INCREASING, inc_ratio, rollovers > 0)
        if dec_ratio >= threshold:
            return SensorResult(SensorTrend.DECREASING, dec_ratio, rollovers > 0)

        if (
            len(np.unique(values)) >= 3
            and transitions >= values.size * self.settings.sensor_mixed_activity
        ):
            return SensorResult(SensorTrend.MIXED, max(inc_ratio, dec_ratio), rollovers > 0)
        return None

    def detect_looping_counter(
        self, values: Sequence[int]
    ) -> Optional[LoopingCounterResult]:
        """Counter cycling through a small range, e.g. 0..3 or 0..14.

        Steps from max to min count as +1 wraps and from min to max as -1
        wraps.
        """
        s = self.settings
        values = np.asarray(values, dtype=np.int64)
        if values.size < s.looping_min_samples:
            return None

        unique_count = len(np.unique(values))
        if unique_count < 2 or unique_count > s.looping_max_unique:
            return None

        low = int(values.min())
        high = int(values.max())
        value_range = high - low + 1
        has_all_values = value_range == unique_count

        prev = values[:-1]
        curr = values[1:]
        wrap_up = (prev == high) & (curr == low)
        wrap_down = (prev == low) & (curr == high) & ~wrap_up
        deltas = np.where(wrap_up, 1, np.where(wrap_down, -1, curr - prev))
        wrap_count = int(wrap_up.sum() + wrap_down.sum())

        min_wraps = 2 if values.size >= s.looping_strict_sample_count else 1
        if wrap_count < min_wraps:
            return None

        delta, count = self._dominant_delta(deltas)
        if count / deltas.size < s.counter_consistency or delta == 0:
            return None

        expected_wraps = values.size // value_range
        if has_all_values or wrap_count >= expected_wraps * s.looping_expected_wrap_ratio:
            return LoopingCounterResult(
                direction=CounterDirection.UP if delta > 0 else CounterDirection.DOWN,
                step=abs(delta),
                range=ValueRange(low, high),
                modulo=value_range,
            )
        return None

    def is_slow_changing_byte(self, unique_values: Set[int], sample_count: int) -> bool:
        """Few distinct values over a large sample, like the upper bytes of a
        32-bit value that change only when the lower word rolls over."""
        s = self.settings
        if sample_count < s.slow_min_samples:
            return False
        unique_count = len(unique_values)
        if unique_count < s.slow_min_unique or unique_count > s.slow_max_unique:
            return False
        return unique_count / sample_count < s.slow_max_ratio

    # =========================================================================
    # Multi-byte fusion
    # =========================================================================

    def detect_multi_byte_patterns(
        self, payloads: Sequence[ByteSource], byte_stats: List[ByteStats]
    ) -> List[MultiBytePattern]:
        """Greedy left-to-right fusion of adjacent bytes, then one ASCII pass.

        Numeric candidates are tried in order: 16-bit counter, 16-bit rollover
        correlation, 32-bit sensor with slow upper bytes. Consumed bytes are
        never revisited, so patterns do not overlap.
        """
        payloads = as_payloads(payloads)
        patterns: List[MultiBytePattern] = []
        used: Set[int] = set()
        if not payloads or not byte_stats:
            return patterns

        width = min(len(p) for p in payloads)
        matrix = payload_matrix(payloads, width)
        stats_by_index = {s.byte_index: s for s in byte_stats}

        i = 0
        while i < len(byte_stats) - 1:
            current = byte_stats[i]
            following = byte_stats[i + 1]

            if (
                current.byte_index in used
                or current.role not in FUSABLE_ROLES
                or following.role not in FUSABLE_ROLES
                or current.byte_index + 1 >= width
            ):
                i += 1
                continue

            index = current.byte_index
            found = self._check_16bit_counter(matrix, index)
            if found is None:
                found = self._check_rollover_correlation(matrix, index)
            if found is None:
                found = self._check_sensor32_slow_upper(matrix, index, stats_by_index)

            if found is not None:
                patterns.append(found)
                used.update(found.byte_indices())
                i += found.length
            else:
                i += 1

        text = self._detect_text_pattern(matrix, byte_stats, used)
        if text is not None:
            patterns.append(text)
            used.update(text.byte_indices())

        return patterns

    def _check_16bit_counter(
        self, matrix: np.ndarray, index: int
    ) -> Optional[MultiBytePattern]:
        if matrix.shape[0] < 3:
            return None

        first = matrix[:, index]
        second = matrix[:, index + 1]
        for endianness, words in (
            (Endianness.LITTLE, first | (second << 8)),
            (Endianness.BIG, (first << 8) | second),
        ):
            counter = self.detect_counter16(words)
            if counter is not None:
                return MultiBytePattern(
                    start_byte=index,
                    length=2,
                    pattern=PatternKind.COUNTER16,
                    endianness=endianness,
                    rollover_detected=counter.rollover_detected,
                )
        return None

    @staticmethod
    def _correlated_rollovers(
        low: np.ndarray, high: np.ndarray, high_edge: int, low_edge: int, threshold: int
    ) -> Tuple[int, int]:
        """Count low-part boundary crossings and those where the high part
        moved one step in the matching direction."""
        prev_low, curr_low = low[:-1], low[1:]
        crossed = ((prev_low >= high_edge) & (curr_low <= low_edge)) | (
            (prev_low <= low_edge) & (curr_low >= high_edge)
        )
        low_delta = curr_low - prev_low
        expected = np.where(low_delta < -threshold, 1, np.where(low_delta > threshold, -1, 0))
        high_delta = high[1:] - high[:-1]
        correlated = crossed & (high_delta != 0) & (np.sign(high_delta) == expected)
        return int(crossed.sum()), int(correlated.sum())

    def _check_rollover_correlation(
        self, matrix: np.ndarray, index: int
    ) -> Optional[MultiBytePattern]:
        s = self.settings
        if matrix.shape[0] < s.rollover_min_samples:
            return None

        first = matrix[:, index]
        second = matrix[:, index + 1]
        for endianness, low, high in (
            (Endianness.LITTLE, first, second),
            (Endianness.BIG, second, first),
        ):
            hits, correlated = self._correlated_rollovers(
                low, high, s.rollover_high_8, s.rollover_low_8, s.rollover_threshold_8
            )
            if hits >= 1 and correlated >= 1:
                words = low | (high << 8)
                return MultiBytePattern(
                    start_byte=index,
                    length=2,
                    pattern=PatternKind.SENSOR16,
                    endianness=endianness,
                    rollover_detected=True,
                    correlated_rollover=True,
                    min_value=int(words.min()),
                    max_value=int(words.max()),
                )
        return None

    def _check_sensor32_slow_upper(
        self, matrix: np.ndarray, index: int, stats_by_index: Dict[int, ByteStats]
    ) -> Optional[MultiBytePattern]:
        s = self.settings
        sample_count = matrix.shape[0]
        if sample_count < s.slow_min_samples or index + 3 >= matrix.shape[1]:
            return None

        upper = [stats_by_index.get(index + 2), stats_by_index.get(index + 3)]
        if any(stats is None for stats in upper):
            return None

        # both upper bytes quiet, but not both fully static
        if not all(
            stats.role == ByteRole.STATIC
            or self.is_slow_changing_byte(stats.unique_values, sample_count)
            for stats in upper
        ):
            return None
        if all(stats.role == ByteRole.STATIC for stats in upper):
            return None

        return self._check_sensor32_correlation(matrix, index)

    def _check_sensor32_correlation(
        self, matrix: np.ndarray, index: int
    ) -> Optional[MultiBytePattern]:
        s = self.settings
        b0, b1, b2, b3 = (matrix[:, index + k] for k in range(4))

        for endianness, low, high in (
            (Endianness.LITTLE, b0 | (b1 << 8), b2 | (b3 << 8)),
            (Endianness.BIG, (b2 << 8) | b3, (b0 << 8) | b1),
        ):
            hits, correlated = self._correlated_rollovers(
                low, high, s.rollover_high_16, s.rollover_low_16, s.rollover_threshold_16
            )
            if hits >= 1 and correlated >= 1:
                values = low | (high << 16)
                return MultiBytePattern(
                    start_byte=index,
                    length=4,
                    pattern=PatternKind.SENSOR32,
                    endianness=endianness,
                    rollover_detected=True,
                    correlated_rollover=True,
                    slow_upper_bytes=True,
                    min_value=int(values.min()),
                    max_value=int(values.max()),
                )
        return None

    def _detect_text_pattern(
        self, matrix: np.ndarray, byte_stats: List[ByteStats], used: Set[int]
    ) -> Optional[MultiBytePattern]:
        """Longest run of unconsumed positions holding printable ASCII."""
        s = self.settings
        sample_count = matrix.shape[0]
        if sample_count < s.text_min_samples:
            return None

        flags = []
        for stats in byte_stats:
            if stats.byte_index in used or stats.byte_index >= matrix.shape[1]:
                flags.append(False)
                continue
            column = matrix[:, stats.byte_index]
            printable = ((column >= PRINTABLE_MIN) & (column <= PRINTABLE_MAX)) | np.isin(
                column, sorted(PRINTABLE_CONTROL)
            )
            ratio = printable.sum() / sample_count
            flags.append(ratio >= s.text_printable_ratio)

        best_start, best_length = -1, 0
        run_start, run_length = -1, 0
        for position, flag in enumerate(flags + [False]):
            if flag:
                if run_length == 0:
                    run_start = position
                run_length += 1
                continue
            if run_length > best_length and run_length >= s.text_min_length:
                best_start, best_length = run_start, run_length
            run_length = 0

        if best_length < s.text_min_length:
            return None

        start = byte_stats[best_start].byte_index
        first = matrix[0, start : start + best_length].tolist()
        sample_text = "".join(chr(b) if is_printable_ascii(b) else "." for b in first)

        return MultiBytePattern(
            start_byte=start,
            length=best_length,
            pattern=PatternKind.TEXT,
            sample_text=sample_text,
        )
