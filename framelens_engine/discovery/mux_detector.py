"""
FrameLens Engine - Multiplexed Frame Detection

Detects single-byte (byte[0]) and two-byte (byte[0:1]) multiplex selectors in
the payloads of one frame ID.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..core.config import Config, MuxDetectionConfig
from .models import ByteSource, as_payloads

logger = logging.getLogger(__name__)


@dataclass
class MuxDetectionResult:
    """Detected multiplex selector.

    ``selector_byte`` is 0 for a byte[0] selector and -1 for a two-byte
    byte[0:1] selector whose keys are ``byte0 * 256 + byte1``.
    """

    selector_byte: int
    selector_values: List[int]
    is_two_byte: bool
    occurrences_per_value: Dict[int, int] = field(default_factory=dict)

    def key(self, payload: bytes) -> int:
        """Selector key of one payload."""
        if self.is_two_byte:
            return payload[0] * 256 + payload[1]
        return payload[0]

    @property
    def payload_start_byte(self) -> int:
        return mux_payload_start_byte(self)

    def to_dict(self):
        return {
            "selector_byte": self.selector_byte,
            "selector_values": self.selector_values,
            "is_two_byte": self.is_two_byte,
            "occurrences_per_value": {
                str(k): v for k, v in self.occurrences_per_value.items()
            },
            "description": format_mux_info(self),
        }


def is_mux_like_sequence(
    values: Sequence[int],
    counts: Mapping[int, int],
    settings: Optional[MuxDetectionConfig] = None,
) -> bool:
    """Check whether sorted unique ``values`` look like a mux selector.

    Selectors have few values that start small, cover most of their range and
    occur with a balanced frequency.
    """
    settings = settings or MuxDetectionConfig()

    if len(values) < settings.min_unique or len(values) > settings.max_unique:
        return False

    min_val = values[0]
    max_val = values[-1]
    if min_val > settings.max_start_value or max_val > settings.max_value:
        return False

    coverage = len(values) / (max_val - min_val + 1)
    if coverage < settings.min_coverage and len(values) < settings.coverage_override_values:
        return False

    occurrences = list(counts.values())
    min_count = min(occurrences)
    max_count = max(occurrences)
    if min_count < 1 or max_count > min_count * settings.balance_ratio:
        return False

    return True


def mux_payload_start_byte(result: MuxDetectionResult) -> int:
    """First payload byte after the selector."""
    return 2 if result.is_two_byte else 1


def format_mux_info(result: MuxDetectionResult) -> str:
    if result.is_two_byte:
        return f"byte[0:1], {len(result.selector_values)} cases"

    values = result.selector_values
    if len(values) <= 6:
        return f"byte[0], cases: {', '.join(str(v) for v in values)}"
    return f"byte[0], {len(values)} cases ({values[0]}-{values[-1]})"


def format_mux_value(value: int, is_two_byte: bool) -> str:
    if is_two_byte:
        return f"{value // 256}:{value % 256}"
    return str(value)


class MuxDetector:
    """Multiplex selector detection for one frame ID."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> MuxDetectionConfig:
        return self.config.mux

    def detect(self, payloads: Iterable[ByteSource]) -> Optional[MuxDetectionResult]:
        """Detect a mux selector, or return None.

        Every payload must carry the selector bytes so that each payload maps
        to exactly one selector value.
        """
        payloads = as_payloads(payloads)
        if len(payloads) < self.settings.min_payloads:
            return None
        if any(len(p) == 0 for p in payloads):
            return None

        byte0_counts = Counter(p[0] for p in payloads)
        unique_byte0 = sorted(byte0_counts)

        if not is_mux_like_sequence(unique_byte0, byte0_counts, self.settings):
            return None

        two_byte = self._detect_two_byte(payloads)
        if two_byte is not None:
            self.logger.debug(
                f"Two-byte mux detected with {len(two_byte.selector_values)} cases"
            )
            return two_byte

        return MuxDetectionResult(
            selector_byte=0,
            selector_values=unique_byte0,
            is_two_byte=False,
            occurrences_per_value=dict(byte0_counts),
        )

    def _detect_two_byte(self, payloads: List[bytes]) -> Optional[MuxDetectionResult]:
        if any(len(p) < 2 for p in payloads):
            return None

        byte1_per_byte0: Dict[int, set] = {}
        for payload in payloads:
            byte1_per_byte0.setdefault(payload[0], set()).add(payload[1])

        # byte[1] must take the same value set under every byte[0] value
        common = None
        for byte1_values in byte1_per_byte0.values():
            ordered = sorted(byte1_values)
            if common is None:
                common = ordered
            elif ordered != common:
                return None

        if not common or len(common) < 2:
            return None

        byte1_counts = Counter(p[1] for p in payloads)
        if not is_mux_like_sequence(common, byte1_counts, self.settings):
            return None

        combined = Counter(p[0] * 256 + p[1] for p in payloads)
        min_count = min(combined.values())
        max_count = max(combined.values())
        if min_count < 1 or max_count > min_count * self.settings.two_byte_balance_ratio:
            return None

        return MuxDetectionResult(
            selector_byte=-1,
            selector_values=sorted(combined),
            is_two_byte=True,
            occurrences_per_value=dict(combined),
        )
