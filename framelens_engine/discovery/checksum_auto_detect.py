"""
FrameLens Engine - Checksum Auto Detection

Matches the fixed algorithm registry against one payload set and ranks the
configurations that reproduce the embedded checksum.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..core.config import AutoDetectConfig, Config
from ..core.exceptions import ChecksumPrimitiveException
from .checksum_primitive import (
    CHECKSUM_ALGORITHMS,
    ChecksumPrimitive,
    InProcessChecksumPrimitive,
    algorithm_order,
    resolve_byte_index,
)
from .models import ByteSource, Endianness, as_payloads, read_uint16

logger = logging.getLogger(__name__)


@dataclass
class AlgorithmMatch:
    """One registry algorithm and byte order that matched at least once."""

    algorithm: str
    endianness: Endianness
    match_count: int
    total_count: int
    match_rate: float

    def to_dict(self):
        return {
            "algorithm": self.algorithm,
            "endianness": self.endianness.value,
            "match_count": self.match_count,
            "total_count": self.total_count,
            "match_rate": self.match_rate,
        }


@dataclass
class MatchRateConfig:
    """One fixed checksum layout for ``match_rate``."""

    checksum_start: int
    checksum_bytes: int
    endianness: Endianness
    calc_start: int
    calc_end: int


@dataclass
class MatchRate:
    matches: int
    total: int
    match_rate: float

    def to_dict(self):
        return {"matches": self.matches, "total": self.total, "match_rate": self.match_rate}


def extract_checksum_value(
    payload: bytes, position: int, num_bytes: int, endianness: Endianness
) -> int:
    """Read the checksum field at an already resolved position (0 if out of range)."""
    if position + num_bytes > len(payload):
        return 0
    if num_bytes == 1:
        return payload[position]
    return read_uint16(payload, position, endianness)


def get_best_match(
    matches: Iterable[AlgorithmMatch], min_match_rate: float = 80.0
) -> Optional[AlgorithmMatch]:
    """First ranked match meeting ``min_match_rate``, else None."""
    for match in matches:
        if match.match_rate >= min_match_rate:
            return match
    return None


class ChecksumAutoDetector:
    """Ranks registry algorithms against a payload set."""

    def __init__(
        self,
        config: Optional[Config] = None,
        primitive: Optional[ChecksumPrimitive] = None,
    ):
        self.config = config or Config()
        self.primitive = primitive or InProcessChecksumPrimitive()
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> AutoDetectConfig:
        return self.config.auto_detect

    async def detect(
        self,
        payloads: Iterable[ByteSource],
        max_samples: Optional[int] = None,
        checksum_position: Optional[int] = None,
        checksum_bytes: Optional[int] = None,
        calc_start: Optional[int] = None,
        calc_end: Optional[int] = None,
    ) -> List[AlgorithmMatch]:
        """Detect which registry algorithms reproduce the embedded checksum.

        Args:
            payloads: Frame payloads.
            max_samples: Number of leading payloads to test.
            checksum_position: Checksum byte index, negative for end-relative.
                Defaults to the last ``output_bytes`` bytes of each payload.
            checksum_bytes: Restrict to 1- or 2-byte algorithms.
            calc_start: First byte of the calculated range.
            calc_end: End (exclusive) of the calculated range, negative for
                end-relative. Defaults to the checksum position.

        Returns:
            Matches sorted by match rate, then match count, then registry order.
        """
        payloads = as_payloads(payloads)
        if not payloads:
            return []

        if checksum_bytes is not None and checksum_bytes not in (1, 2):
            raise ValueError(f"checksum_bytes must be 1 or 2, got {checksum_bytes}")

        max_samples = self.settings.max_samples if max_samples is None else max_samples
        calc_start = self.settings.calc_start if calc_start is None else calc_start
        samples = payloads[:max_samples]
        results: List[AlgorithmMatch] = []

        for algo in CHECKSUM_ALGORITHMS:
            if checksum_bytes is not None and algo.output_bytes != checksum_bytes:
                continue

            endiannesses = (
                [Endianness.LITTLE, Endianness.BIG]
                if algo.output_bytes == 2
                else [Endianness.BIG]
            )

            for endianness in endiannesses:
                match_count = 0
                tested_count = 0

                for payload in samples:
                    if len(payload) < algo.output_bytes + 1:
                        continue
                    tested_count += 1

                    if checksum_position is not None:
                        checksum_start = resolve_byte_index(checksum_position, len(payload))
                    else:
                        checksum_start = len(payload) - algo.output_bytes

                    end = (
                        resolve_byte_index(calc_end, len(payload))
                        if calc_end is not None
                        else checksum_start
                    )
                    data = payload[calc_start:end]

                    try:
                        expected = await self.primitive.compute(algo.id, data, 0, len(data))
                    except ChecksumPrimitiveException as e:
                        self.logger.error(
                            f"Checksum primitive failed for {algo.id}: {e}",
                            extra={"algorithm": algo.id},
                        )
                        raise

                    actual = extract_checksum_value(
                        payload, checksum_start, algo.output_bytes, endianness
                    )
                    if expected == actual:
                        match_count += 1

                if match_count > 0 and tested_count > 0:
                    results.append(
                        AlgorithmMatch(
                            algorithm=algo.id,
                            endianness=endianness,
                            match_count=match_count,
                            total_count=tested_count,
                            match_rate=(match_count / tested_count) * 100,
                        )
                    )

        # sort is stable, so endianness order breaks ties within one algorithm
        results.sort(
            key=lambda m: (-m.match_rate, -m.match_count, algorithm_order(m.algorithm))
        )

        self.logger.debug(
            f"Auto-detection tested {len(samples)} payloads, {len(results)} algorithms matched",
            extra={"sample_count": len(samples), "match_count": len(results)},
        )
        return results

    async def match_rate(
        self, payloads: Iterable[ByteSource], algorithm: str, config: MatchRateConfig
    ) -> MatchRate:
        """Recompute the match metric for one fixed configuration."""
        matches = 0
        total = 0

        for payload in as_payloads(payloads):
            resolved_start = resolve_byte_index(config.checksum_start, len(payload))
            resolved_calc_end = resolve_byte_index(config.calc_end, len(payload))

            if resolved_start >= len(payload) or resolved_calc_end > len(payload):
                continue
            total += 1

            data = payload[config.calc_start : resolved_calc_end]
            expected = await self.primitive.compute(algorithm, data, 0, len(data))
            actual = extract_checksum_value(
                payload, resolved_start, config.checksum_bytes, config.endianness
            )
            if expected == actual:
                matches += 1

        return MatchRate(
            matches=matches,
            total=total,
            match_rate=(matches / total) * 100 if total > 0 else 0.0,
        )
