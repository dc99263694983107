"""
FrameLens Engine - Discovery Module

This module provides schema-free structure discovery for captured frames:
checksum search, byte role classification, multiplex and mirror detection,
and stream framing inference.
"""

from .byte_pattern_classifier import BytePatternClassifier, ByteRole, ByteStats, MultiBytePattern
from .checksum_auto_detect import AlgorithmMatch, ChecksumAutoDetector
from .checksum_discovery import ChecksumCandidate, ChecksumDiscoveryEngine
from .checksum_primitive import (
    CHECKSUM_ALGORITHMS,
    ChecksumPrimitive,
    InProcessChecksumPrimitive,
    resolve_byte_index,
)
from .frame_discovery_orchestrator import (
    FrameDiscoveryOrchestrator,
    FrameDiscoveryReport,
    StreamDiscoveryReport,
)
from .framing_detector import FramingCandidate, FramingDetector, FramingMode, FramingResult
from .mirror_detector import MirrorFrameDetector, MirrorGroup
from .models import Endianness, Frame, TimestampedPayload
from .mux_detector import MuxDetectionResult, MuxDetector
from .payload_analyzer import PayloadAnalysisResult, PayloadAnalyzer
from .progress import CancellationToken, DiscoveryProgress, ProgressChannel
from .serial_structure_analyzer import SerialStructureAnalyzer, SerialStructureResult

__all__ = [
    "BytePatternClassifier",
    "ByteRole",
    "ByteStats",
    "MultiBytePattern",
    "AlgorithmMatch",
    "ChecksumAutoDetector",
    "ChecksumCandidate",
    "ChecksumDiscoveryEngine",
    "CHECKSUM_ALGORITHMS",
    "ChecksumPrimitive",
    "InProcessChecksumPrimitive",
    "resolve_byte_index",
    "FrameDiscoveryOrchestrator",
    "FrameDiscoveryReport",
    "StreamDiscoveryReport",
    "FramingCandidate",
    "FramingDetector",
    "FramingMode",
    "FramingResult",
    "MirrorFrameDetector",
    "MirrorGroup",
    "Endianness",
    "Frame",
    "TimestampedPayload",
    "MuxDetectionResult",
    "MuxDetector",
    "PayloadAnalysisResult",
    "PayloadAnalyzer",
    "CancellationToken",
    "DiscoveryProgress",
    "ProgressChannel",
    "SerialStructureAnalyzer",
    "SerialStructureResult",
]
