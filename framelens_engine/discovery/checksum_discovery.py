"""
FrameLens Engine - Checksum Discovery Engine

This module searches, per frame ID and checksum position, for the checksum
algorithm that reproduces the embedded checksum bytes. The search runs an
ordered pipeline of strategies and stops at the first candidate reaching the
configured match rate:

1. simple XOR / additive sum-8 (with and without a frame ID prefix)
2. the known CRC registry via the auto-detector
3. CRC-8 brute force over every non-zero polynomial
4. CRC-16 brute force over all or the common polynomials
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.config import ChecksumDiscoveryConfig, Config
from ..core.constants import (
    COMMON_CRC16_POLYNOMIALS,
    CRC8_INIT_VALUES,
    CRC8_XOR_OUT_VALUES,
    CRC16_INIT_VALUES,
    CRC16_XOR_OUT_VALUES,
)
from ..core.exceptions import ChecksumPrimitiveException
from .checksum_auto_detect import ChecksumAutoDetector, extract_checksum_value
from .checksum_primitive import (
    ChecksumKind,
    ChecksumPrimitive,
    InProcessChecksumPrimitive,
    PayloadBatch,
    get_algorithm_info,
    resolve_byte_index,
)
from .models import Endianness, Frame
from .progress import (
    CancellationToken,
    DiscoveryPhase,
    DiscoveryProgress,
    ProgressCallback,
)

logger = logging.getLogger(__name__)


@dataclass
class DataRange:
    start: int
    end: int

    def to_dict(self):
        return {"start": self.start, "end": self.end}


@dataclass
class ChecksumCandidate:
    """A checksum configuration matching one frame ID at one position."""

    frame_id: int
    position: int  # negative = from end
    length: int
    kind: ChecksumKind
    endianness: Endianness
    includes_frame_id: bool
    match_count: int
    total_count: int
    match_rate: float
    data_range: DataRange
    algorithm_name: Optional[str] = None

    # CRC parameters, brute-force candidates only
    polynomial: Optional[int] = None
    init: Optional[int] = None
    xor_out: Optional[int] = None
    reflect: Optional[bool] = None

    @property
    def summary_key(self) -> str:
        return self.algorithm_name or self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "frame_id": self.frame_id,
            "position": self.position,
            "length": self.length,
            "kind": self.kind.value,
            "endianness": self.endianness.value,
            "includes_frame_id": self.includes_frame_id,
            "match_count": self.match_count,
            "total_count": self.total_count,
            "match_rate": self.match_rate,
            "data_range": self.data_range.to_dict(),
            "algorithm_name": self.algorithm_name,
        }
        if self.polynomial is not None:
            result.update(
                {
                    "polynomial": f"0x{self.polynomial:0{self.length * 2}X}",
                    "init": f"0x{self.init:0{self.length * 2}X}",
                    "xor_out": f"0x{self.xor_out:0{self.length * 2}X}",
                    "reflect": self.reflect,
                }
            )
        return result


@dataclass
class ChecksumDiscoverySummary:
    frames_with_checksum: int
    frames_without_checksum: int
    most_common_algorithm: Optional[str]

    def to_dict(self):
        return {
            "frames_with_checksum": self.frames_with_checksum,
            "frames_without_checksum": self.frames_without_checksum,
            "most_common_algorithm": self.most_common_algorithm,
        }


@dataclass
class ChecksumDiscoveryResult:
    """Result of one checksum discovery pass."""

    frame_count: int
    unique_frame_ids: int
    candidates_by_frame_id: Dict[int, List[ChecksumCandidate]]
    summary: ChecksumDiscoverySummary
    combinations_tested: int = 0
    processing_time: float = 0.0
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_count": self.frame_count,
            "unique_frame_ids": self.unique_frame_ids,
            "candidates_by_frame_id": {
                str(frame_id): [c.to_dict() for c in candidates]
                for frame_id, candidates in self.candidates_by_frame_id.items()
            },
            "summary": self.summary.to_dict(),
            "combinations_tested": self.combinations_tested,
            "processing_time": self.processing_time,
            "notes": self.notes,
        }


@dataclass
class _DiscoveryRun:
    """Per-call progress sink, cancellation token and counters."""

    on_progress: Optional[ProgressCallback]
    cancellation: Optional[CancellationToken]
    combinations: int = 0


@dataclass
class _PositionSamples:
    """Samples of one frame ID prepared for one checksum position."""

    frame_id: int
    frame_index: int
    total_frame_ids: int
    position: int
    length: int
    frames: List[Frame]
    data_payloads: List[bytes]
    expected: List[int]
    data_payloads_with_id: List[bytes]
    run: _DiscoveryRun
    batches: Dict[Tuple[bool, Endianness], PayloadBatch] = field(default_factory=dict)


Strategy = Callable[[_PositionSamples], Awaitable[Optional[ChecksumCandidate]]]


def group_frames_by_id(
    frames: Iterable[Frame], min_samples: int, max_samples: int
) -> Dict[int, List[Frame]]:
    """Group frames by ID keeping the first ``max_samples`` of each ID.

    Groups with fewer than ``min_samples`` frames are dropped. Group order is
    the order of first appearance.
    """
    groups: Dict[int, List[Frame]] = {}
    for frame in frames:
        group = groups.setdefault(frame.id, [])
        if len(group) < max_samples:
            group.append(frame)
    return {fid: group for fid, group in groups.items() if len(group) >= min_samples}


def frame_id_prefix(frame_id: int) -> bytes:
    """Two-byte little-endian frame ID prefix."""
    return bytes([frame_id & 0xFF, (frame_id >> 8) & 0xFF])


def _swap16(value: int) -> int:
    return ((value & 0xFF) << 8) | ((value >> 8) & 0xFF)


class ChecksumDiscoveryEngine:
    """Per-frame-ID checksum search."""

    def __init__(
        self,
        config: Optional[Config] = None,
        primitive: Optional[ChecksumPrimitive] = None,
    ):
        self.config = config or Config()
        self.primitive = primitive or InProcessChecksumPrimitive()
        self.auto_detector = ChecksumAutoDetector(self.config, self.primitive)
        self.logger = logging.getLogger(__name__)

    @property
    def settings(self) -> ChecksumDiscoveryConfig:
        return self.config.checksum_discovery

    async def discover(
        self,
        frames: Iterable[Frame],
        on_progress: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> ChecksumDiscoveryResult:
        """Discover checksum algorithms for every sufficiently sampled frame ID.

        Args:
            frames: Captured frames.
            on_progress: Observational progress sink.
            cancellation: Token checked at phase boundaries and progress ticks.

        Returns:
            Candidates per frame ID and a summary.

        Raises:
            ChecksumPrimitiveException: The primitive failed; the pass is aborted.
            AnalysisCancelledException: The token was cancelled.
        """
        start_time = time.time()
        frames = list(frames)
        run = _DiscoveryRun(on_progress, cancellation)

        self._report(run, DiscoveryPhase.GROUPING, 0, 0, 0)
        groups = group_frames_by_id(
            frames, self.settings.min_samples, self.settings.max_samples_per_frame_id
        )
        frame_ids = list(groups.keys())

        self.logger.info(
            f"Starting checksum discovery on {len(frames)} frames, {len(frame_ids)} frame IDs",
            extra={"frame_count": len(frames), "frame_id_count": len(frame_ids)},
        )

        candidates_by_frame_id: Dict[int, List[ChecksumCandidate]] = {}

        for index, frame_id in enumerate(frame_ids):
            candidates = await self._discover_frame_id(
                run, frame_id, index, len(frame_ids), groups[frame_id]
            )
            if candidates:
                candidates_by_frame_id[frame_id] = candidates

        summary = self._build_summary(candidates_by_frame_id, len(frame_ids))
        notes = []
        if not frames:
            notes.append("No frames to analyze")
        elif not frame_ids:
            notes.append(
                f"No frame ID has at least {self.settings.min_samples} samples"
            )

        processing_time = time.time() - start_time
        self.logger.info(
            f"Checksum discovery completed in {processing_time:.2f}s: "
            f"{summary.frames_with_checksum}/{len(frame_ids)} frame IDs with checksum",
            extra={
                "combinations_tested": run.combinations,
                "frames_with_checksum": summary.frames_with_checksum,
            },
        )

        return ChecksumDiscoveryResult(
            frame_count=len(frames),
            unique_frame_ids=len(frame_ids),
            candidates_by_frame_id=candidates_by_frame_id,
            summary=summary,
            combinations_tested=run.combinations,
            processing_time=processing_time,
            notes=notes,
        )

    async def _discover_frame_id(
        self,
        run: _DiscoveryRun,
        frame_id: int,
        index: int,
        total: int,
        frames: List[Frame],
    ) -> List[ChecksumCandidate]:
        candidates = []
        strategies: List[Strategy] = []
        if self.settings.try_simple_first:
            strategies.append(self._try_simple_algorithms)
        strategies.extend(
            [
                self._try_known_crc_algorithms,
                self._brute_force_crc8,
                self._brute_force_crc16,
            ]
        )

        for position in self.settings.checksum_positions:
            samples = self._prepare_position(
                run, frame_id, index, total, frames, position
            )
            if len(samples.data_payloads) < self.settings.min_samples:
                continue

            candidate = await self._first_match(strategies, samples)
            if candidate is not None:
                self.logger.debug(
                    f"Frame 0x{frame_id:X} position {position}: {candidate.summary_key} "
                    f"({candidate.match_rate:.1f}%)",
                    extra={"frame_id": frame_id, "position": position},
                )
                candidates.append(candidate)

        return candidates

    async def _first_match(
        self, strategies: List[Strategy], samples: _PositionSamples
    ) -> Optional[ChecksumCandidate]:
        """Run strategies in order and return the first candidate found."""
        for strategy in strategies:
            candidate = await strategy(samples)
            if candidate is not None:
                return candidate
        return None

    def _prepare_position(
        self,
        run: _DiscoveryRun,
        frame_id: int,
        index: int,
        total: int,
        frames: List[Frame],
        position: int,
    ) -> _PositionSamples:
        length = 1 if position == -1 else 2
        samples = _PositionSamples(
            frame_id=frame_id,
            frame_index=index,
            total_frame_ids=total,
            position=position,
            length=length,
            frames=frames,
            data_payloads=[],
            expected=[],
            data_payloads_with_id=[],
            run=run,
        )

        for frame in frames:
            data = frame.data
            if len(data) < length + 1:
                continue

            checksum_start = resolve_byte_index(position, len(data))
            payload = data[:checksum_start]
            samples.data_payloads.append(payload)
            samples.expected.append(
                extract_checksum_value(data, checksum_start, length, Endianness.LITTLE)
            )
            samples.data_payloads_with_id.append(frame_id_prefix(frame.id) + payload)

        return samples

    def _batch(
        self, samples: _PositionSamples, includes_frame_id: bool, endianness: Endianness
    ) -> PayloadBatch:
        key = (includes_frame_id, endianness)
        if key not in samples.batches:
            payloads = (
                samples.data_payloads_with_id if includes_frame_id else samples.data_payloads
            )
            expected = samples.expected
            if endianness == Endianness.BIG:
                expected = [_swap16(v) for v in expected]
            samples.batches[key] = self.primitive.prepare_batch(payloads, expected)
        return samples.batches[key]

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _try_simple_algorithms(
        self, samples: _PositionSamples
    ) -> Optional[ChecksumCandidate]:
        self._report(
            samples.run,
            DiscoveryPhase.SIMPLE,
            samples.frame_index,
            samples.total_frame_ids,
            samples.frame_id,
        )

        for includes_frame_id in (False, True):
            payloads = (
                samples.data_payloads_with_id if includes_frame_id else samples.data_payloads
            )
            for algorithm_id, kind in (("xor", ChecksumKind.XOR), ("sum8", ChecksumKind.SUM8)):
                match_count = 0
                for data, expected in zip(payloads, samples.expected):
                    calculated = await self._compute(algorithm_id, data)
                    if calculated == expected:
                        match_count += 1

                match_rate = (match_count / len(payloads)) * 100
                if match_rate >= self.settings.min_match_rate:
                    return ChecksumCandidate(
                        frame_id=samples.frame_id,
                        position=samples.position,
                        length=samples.length,
                        kind=kind,
                        endianness=Endianness.LITTLE,
                        includes_frame_id=includes_frame_id,
                        match_count=match_count,
                        total_count=len(payloads),
                        match_rate=match_rate,
                        data_range=DataRange(0, samples.position),
                        algorithm_name=algorithm_id.upper(),
                    )
        return None

    async def _try_known_crc_algorithms(
        self, samples: _PositionSamples
    ) -> Optional[ChecksumCandidate]:
        self._report(
            samples.run,
            DiscoveryPhase.KNOWN_CRC,
            samples.frame_index,
            samples.total_frame_ids,
            samples.frame_id,
        )

        matches = await self.auto_detector.detect(
            [frame.data for frame in samples.frames],
            max_samples=self.settings.max_samples_per_frame_id,
            checksum_position=samples.position,
            checksum_bytes=samples.length,
        )
        if not matches or matches[0].match_rate < self.settings.min_match_rate:
            return None

        match = matches[0]
        info = get_algorithm_info(match.algorithm)
        # tagged by checksum width, whatever registry family matched
        kind = ChecksumKind.CRC8 if samples.length == 1 else ChecksumKind.CRC16
        return ChecksumCandidate(
            frame_id=samples.frame_id,
            position=samples.position,
            length=samples.length,
            kind=kind,
            endianness=match.endianness,
            includes_frame_id=False,
            match_count=match.match_count,
            total_count=match.total_count,
            match_rate=match.match_rate,
            data_range=DataRange(0, samples.position),
            algorithm_name=info.name,
        )

    async def _brute_force_crc8(
        self, samples: _PositionSamples
    ) -> Optional[ChecksumCandidate]:
        if samples.length != 1:
            return None

        polynomials = range(1, 256)
        total = (
            len(polynomials) * len(CRC8_INIT_VALUES) * len(CRC8_XOR_OUT_VALUES) * 2 * 2
        )
        self._report(
            samples.run,
            DiscoveryPhase.BRUTE_FORCE_CRC8,
            samples.frame_index,
            samples.total_frame_ids,
            samples.frame_id,
            0,
            total,
        )

        tested = 0
        for init in CRC8_INIT_VALUES:
            for xor_out in CRC8_XOR_OUT_VALUES:
                for reflect in (False, True):
                    for includes_frame_id in (False, True):
                        batch = self._batch(samples, includes_frame_id, Endianness.LITTLE)
                        for poly in polynomials:
                            tested += 1
                            await self._tick(
                                DiscoveryPhase.BRUTE_FORCE_CRC8,
                                samples,
                                tested,
                                total,
                                self.settings.crc8_progress_interval,
                            )

                            rate, result = await self._batch_rate(
                                samples.run, batch, 8, poly, init, xor_out, reflect
                            )
                            if rate >= self.settings.min_match_rate:
                                return ChecksumCandidate(
                                    frame_id=samples.frame_id,
                                    position=samples.position,
                                    length=1,
                                    kind=ChecksumKind.CRC8,
                                    endianness=Endianness.BIG,
                                    includes_frame_id=includes_frame_id,
                                    match_count=result.match_count,
                                    total_count=result.total_count,
                                    match_rate=rate,
                                    data_range=DataRange(0, samples.position),
                                    polynomial=poly,
                                    init=init,
                                    xor_out=xor_out,
                                    reflect=reflect,
                                )
        return None

    async def _brute_force_crc16(
        self, samples: _PositionSamples
    ) -> Optional[ChecksumCandidate]:
        if samples.length != 2:
            return None

        if self.settings.brute_force_crc16:
            polynomials = range(1, 0x10000)
        else:
            polynomials = COMMON_CRC16_POLYNOMIALS
        total = (
            len(polynomials)
            * len(CRC16_INIT_VALUES)
            * len(CRC16_XOR_OUT_VALUES)
            * 2  # reflect
            * 2  # endianness
            * 2  # frame ID prefix
        )
        self._report(
            samples.run,
            DiscoveryPhase.BRUTE_FORCE_CRC16,
            samples.frame_index,
            samples.total_frame_ids,
            samples.frame_id,
            0,
            total,
        )

        tested = 0
        for init in CRC16_INIT_VALUES:
            for xor_out in CRC16_XOR_OUT_VALUES:
                for reflect in (False, True):
                    for endianness in (Endianness.LITTLE, Endianness.BIG):
                        for includes_frame_id in (False, True):
                            batch = self._batch(samples, includes_frame_id, endianness)
                            for poly in polynomials:
                                tested += 1
                                await self._tick(
                                    DiscoveryPhase.BRUTE_FORCE_CRC16,
                                    samples,
                                    tested,
                                    total,
                                    self.settings.crc16_progress_interval,
                                )

                                rate, result = await self._batch_rate(
                                    samples.run, batch, 16, poly, init, xor_out, reflect
                                )
                                if rate >= self.settings.min_match_rate:
                                    return ChecksumCandidate(
                                        frame_id=samples.frame_id,
                                        position=samples.position,
                                        length=2,
                                        kind=ChecksumKind.CRC16,
                                        endianness=endianness,
                                        includes_frame_id=includes_frame_id,
                                        match_count=result.match_count,
                                        total_count=result.total_count,
                                        match_rate=rate,
                                        data_range=DataRange(0, samples.position),
                                        polynomial=poly,
                                        init=init,
                                        xor_out=xor_out,
                                        reflect=reflect,
                                    )
        return None

    # =========================================================================
    # Primitive calls, progress and scheduling
    # =========================================================================

    async def _compute(self, algorithm_id: str, data: bytes) -> int:
        try:
            return await self.primitive.compute(algorithm_id, data, 0, len(data))
        except ChecksumPrimitiveException as e:
            self.logger.error(f"Checksum primitive failed: {e}")
            raise

    async def _batch_rate(self, run, batch, bit_width, poly, init, xor_out, reflect):
        run.combinations += 1
        try:
            result = await self.primitive.batch_test_crc(
                batch, bit_width, poly, init, xor_out, reflect
            )
        except ChecksumPrimitiveException as e:
            self.logger.error(f"Checksum primitive failed: {e}")
            raise

        if result.total_count == 0:
            return 0.0, result
        return (result.match_count / result.total_count) * 100, result

    async def _tick(
        self,
        phase: DiscoveryPhase,
        samples: _PositionSamples,
        tested: int,
        total: int,
        interval: int,
    ) -> None:
        if tested % interval == 0:
            self._report(
                samples.run,
                phase,
                samples.frame_index,
                samples.total_frame_ids,
                samples.frame_id,
                tested,
                total,
            )
        if tested % self.settings.yield_interval == 0:
            await asyncio.sleep(0)

    def _report(
        self,
        run: _DiscoveryRun,
        phase: DiscoveryPhase,
        frame_id_index: int,
        total_frame_ids: int,
        current_frame_id: int,
        polynomials_tested: Optional[int] = None,
        polynomials_total: Optional[int] = None,
    ) -> None:
        if run.cancellation is not None:
            run.cancellation.raise_if_cancelled(phase.value)
        if run.on_progress is None:
            return

        progress = DiscoveryProgress(
            phase=phase,
            frame_id_index=frame_id_index,
            total_frame_ids=total_frame_ids,
            current_frame_id=current_frame_id,
            polynomials_tested=polynomials_tested,
            polynomials_total=polynomials_total,
        )
        try:
            run.on_progress(progress)
        except Exception as e:
            self.logger.warning(f"Progress sink failed: {e}")

    def _build_summary(
        self, candidates_by_frame_id: Dict[int, List[ChecksumCandidate]], frame_id_count: int
    ) -> ChecksumDiscoverySummary:
        counts = Counter(
            candidate.summary_key
            for candidates in candidates_by_frame_id.values()
            for candidate in candidates
        )

        most_common = None
        max_count = 0
        for key, count in counts.items():
            if count > max_count:
                max_count = count
                most_common = key

        return ChecksumDiscoverySummary(
            frames_with_checksum=len(candidates_by_frame_id),
            frames_without_checksum=frame_id_count - len(candidates_by_frame_id),
            most_common_algorithm=most_common,
        )
