"""
FrameLens Engine - Frame Discovery Orchestrator

This module runs the discovery analyses over a capture: per frame ID payload
analysis with mux detection, mirror detection and checksum discovery for
frame captures, and framing detection followed by structure and payload
analysis for raw serial streams.
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from prometheus_client import Counter, Histogram

from ..core.config import Config
from ..core.exceptions import (
    AnalysisCancelledException,
    DiscoveryException,
    FrameLensException,
)
from ..core.structured_logging import LogCategory, PerformanceLogger
from .checksum_discovery import ChecksumDiscoveryEngine, ChecksumDiscoveryResult
from .checksum_primitive import ChecksumPrimitive, InProcessChecksumPrimitive
from .framing_detector import FramingDetector, FramingResult, split_frames
from .mirror_detector import MirrorFrameDetector, MirrorGroup
from .models import ByteSource, Frame
from .payload_analyzer import PayloadAnalysisResult, PayloadAnalyzer
from .progress import CancellationToken, ProgressCallback
from .serial_structure_analyzer import SerialStructureAnalyzer, SerialStructureResult

# Prometheus metrics
ANALYSIS_COUNTER = Counter(
    "framelens_analyses_total", "Total discovery analyses run", ["kind", "status"]
)
ANALYSIS_DURATION = Histogram(
    "framelens_analysis_duration_seconds", "Discovery analysis duration", ["kind"]
)
CHECKSUM_COMBINATIONS = Counter(
    "framelens_checksum_combinations_total",
    "Checksum parameter combinations tested",
)


@dataclass
class FrameDiscoveryReport:
    """Everything inferred from one frame capture."""

    frame_count: int
    frame_ids: List[int]
    payload_analyses: Dict[int, PayloadAnalysisResult] = field(default_factory=dict)
    mirror_groups: List[MirrorGroup] = field(default_factory=list)
    checksums: Optional[ChecksumDiscoveryResult] = None
    processing_time: float = 0.0
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_count": self.frame_count,
            "frame_ids": self.frame_ids,
            "payload_analyses": {
                str(frame_id): analysis.to_dict()
                for frame_id, analysis in self.payload_analyses.items()
            },
            "mirror_groups": [g.to_dict() for g in self.mirror_groups],
            "checksums": self.checksums.to_dict() if self.checksums else None,
            "processing_time": self.processing_time,
            "notes": self.notes,
        }


@dataclass
class StreamDiscoveryReport:
    """Everything inferred from one raw byte stream."""

    byte_count: int
    framing: FramingResult
    frames: List[bytes] = field(default_factory=list)
    structure: Optional[SerialStructureResult] = None
    payload_analysis: Optional[PayloadAnalysisResult] = None
    processing_time: float = 0.0
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "byte_count": self.byte_count,
            "framing": self.framing.to_dict(),
            "frame_count": len(self.frames),
            "structure": self.structure.to_dict() if self.structure else None,
            "payload_analysis": self.payload_analysis.to_dict()
            if self.payload_analysis
            else None,
            "processing_time": self.processing_time,
            "notes": self.notes,
        }


class FrameDiscoveryOrchestrator:
    """
    Runs every discovery analysis over a capture.

    Pure analyses are dispatched to a thread pool so the event loop stays
    responsive; checksum discovery runs on the loop and yields cooperatively.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        primitive: Optional[ChecksumPrimitive] = None,
        max_workers: int = 4,
    ):
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)
        self.performance = PerformanceLogger(self.logger)

        self.primitive = primitive or InProcessChecksumPrimitive()
        self.payload_analyzer = PayloadAnalyzer(self.config)
        self.mirror_detector = MirrorFrameDetector(self.config)
        self.checksum_engine = ChecksumDiscoveryEngine(self.config, self.primitive)
        self.framing_detector = FramingDetector(self.config)
        self.structure_analyzer = SerialStructureAnalyzer(self.config, self.primitive)

        self.executor = ThreadPoolExecutor(max_workers=max_workers)

    @contextmanager
    def _track(self, kind: str):
        """Time one analysis and record its outcome."""
        start_time = time.perf_counter()
        status = "success"
        try:
            with self.performance.time_operation(kind, LogCategory.PERFORMANCE):
                yield
        except AnalysisCancelledException:
            status = "cancelled"
            raise
        except FrameLensException:
            status = "error"
            raise
        except Exception as e:
            status = "error"
            self.logger.error(f"{kind} failed: {e}", exc_info=True)
            raise DiscoveryException(f"{kind} failed: {e}", analysis=kind) from e
        finally:
            ANALYSIS_COUNTER.labels(kind=kind, status=status).inc()
            ANALYSIS_DURATION.labels(kind=kind).observe(time.perf_counter() - start_time)

    async def _run_sync(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor, functools.partial(func, *args, **kwargs)
        )

    async def analyze_frames(
        self,
        frames: Iterable[Frame],
        on_progress: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        run_checksum_discovery: Optional[bool] = None,
        run_mirror_detection: Optional[bool] = None,
    ) -> FrameDiscoveryReport:
        """
        Analyze a frame capture.

        Args:
            frames: Captured frames in capture order.
            on_progress: Progress sink for checksum discovery.
            cancellation: Token checked between analyses.
            run_checksum_discovery: Override of the configured default.
            run_mirror_detection: Override of the configured default.

        Returns:
            Payload analysis per frame ID, mirror groups and checksum candidates.
        """
        start_time = time.time()
        frames = list(frames)
        if run_checksum_discovery is None:
            run_checksum_discovery = self.config.run_checksum_discovery
        if run_mirror_detection is None:
            run_mirror_detection = self.config.run_mirror_detection

        payloads_by_id: Dict[int, List[bytes]] = {}
        for frame in frames:
            payloads_by_id.setdefault(frame.id, []).append(frame.data)
        frame_ids = sorted(payloads_by_id)

        report = FrameDiscoveryReport(frame_count=len(frames), frame_ids=frame_ids)
        if not frames:
            report.notes.append("No frames to analyze")
            return report

        self.logger.info(
            f"Analyzing {len(frames)} frames across {len(frame_ids)} frame IDs",
            extra={"frame_count": len(frames), "frame_id_count": len(frame_ids)},
        )

        with self._track("payload_analysis"):
            for frame_id in frame_ids:
                if cancellation is not None:
                    cancellation.raise_if_cancelled("payload_analysis")
                report.payload_analyses[frame_id] = await self._run_sync(
                    self.payload_analyzer.analyze_with_mux_detection,
                    payloads_by_id[frame_id],
                    frame_id,
                )

        mux_frames = sum(1 for a in report.payload_analyses.values() if a.is_mux_frame)
        if mux_frames:
            report.notes.append(f"{mux_frames} multiplexed frame ID(s)")

        if run_mirror_detection:
            if cancellation is not None:
                cancellation.raise_if_cancelled("mirror_detection")
            with self._track("mirror_detection"):
                report.mirror_groups = await self._run_sync(
                    self.mirror_detector.detect_frames, frames
                )
            if report.mirror_groups:
                report.notes.append(f"{len(report.mirror_groups)} mirror group(s)")

        if run_checksum_discovery:
            with self._track("checksum_discovery"):
                report.checksums = await self.checksum_engine.discover(
                    frames, on_progress=on_progress, cancellation=cancellation
                )
            CHECKSUM_COMBINATIONS.inc(report.checksums.combinations_tested)
            report.notes.extend(report.checksums.notes)

        report.processing_time = time.time() - start_time
        return report

    async def analyze_stream(
        self,
        raw: ByteSource,
        frame_id: int = 0,
        cancellation: Optional[CancellationToken] = None,
    ) -> StreamDiscoveryReport:
        """
        Analyze a raw serial byte stream.

        The stream is split with the best framing candidate; the resulting
        frames get structure analysis and payload analysis under ``frame_id``.
        """
        start_time = time.time()
        raw = bytes(raw)

        with self._track("framing_detection"):
            framing = await self._run_sync(self.framing_detector.detect, raw)

        report = StreamDiscoveryReport(byte_count=len(raw), framing=framing)
        best = framing.best_candidate
        if best is None:
            report.notes.append("No framing detected, stream left unsplit")
            report.processing_time = time.time() - start_time
            return report

        report.frames = split_frames(raw, best, self.config.framing)
        report.notes.append(f"Split into {len(report.frames)} {best.mode.value} frames")

        if cancellation is not None:
            cancellation.raise_if_cancelled("serial_structure")
        with self._track("serial_structure"):
            report.structure = await self.structure_analyzer.analyze(report.frames)

        if cancellation is not None:
            cancellation.raise_if_cancelled("payload_analysis")
        with self._track("payload_analysis"):
            report.payload_analysis = await self._run_sync(
                self.payload_analyzer.analyze_with_mux_detection, report.frames, frame_id
            )

        report.processing_time = time.time() - start_time
        return report

    async def shutdown(self):
        """Release the worker pool."""
        self.logger.info("Shutting down frame discovery orchestrator")
        self.executor.shutdown(wait=True)
