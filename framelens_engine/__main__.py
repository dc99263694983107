"""
FrameLens Engine - Command Line Entry Point

Batch discovery over capture files. Results are printed to stdout as JSON;
logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from .core.config import Config, LogLevel
from .core.exceptions import FrameLensException
from .core.structured_logging import configure_logging
from .discovery.checksum_auto_detect import ChecksumAutoDetector
from .discovery.checksum_discovery import ChecksumDiscoveryEngine
from .discovery.frame_discovery_orchestrator import FrameDiscoveryOrchestrator
from .discovery.frame_loader import load_frames, load_raw_stream
from .discovery.framing_detector import FramingDetector, split_frames
from .discovery.mirror_detector import MirrorFrameDetector
from .discovery.models import Frame
from .discovery.mux_detector import MuxDetector
from .discovery.payload_analyzer import PayloadAnalyzer
from .discovery.progress import DiscoveryProgress
from .discovery.serial_structure_analyzer import SerialStructureAnalyzer

logger = logging.getLogger("framelens_engine")


def _frame_id(value: str) -> int:
    return int(value, 0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="framelens",
        description="FrameLens - schema-free structure discovery for captured frames",
    )
    parser.add_argument("--config", type=str, help="Configuration file path (YAML)")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=[level.value for level in LogLevel],
        help="Log level",
    )
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")

    sub = parser.add_subparsers(dest="command", required=True)

    checksums = sub.add_parser("checksums", help="Discover checksums per frame ID")
    checksums.add_argument("capture", help="Frame capture (.jsonl or .csv)")
    checksums.add_argument("--min-samples", type=int, help="Minimum samples per frame ID")
    checksums.add_argument(
        "--brute-force-crc16", action="store_true", help="Try all 65535 CRC-16 polynomials"
    )

    autodetect = sub.add_parser("autodetect", help="Match known checksum algorithms")
    autodetect.add_argument("capture", help="Frame capture (.jsonl or .csv)")
    autodetect.add_argument("--frame-id", type=_frame_id, required=True)
    autodetect.add_argument("--max-samples", type=int)
    autodetect.add_argument("--position", type=int, help="Checksum byte index")
    autodetect.add_argument("--bytes", type=int, choices=[1, 2], dest="checksum_bytes")
    autodetect.add_argument("--calc-start", type=int)
    autodetect.add_argument("--calc-end", type=int)

    patterns = sub.add_parser("patterns", help="Classify payload bytes per frame ID")
    patterns.add_argument("capture", help="Frame capture (.jsonl or .csv)")
    patterns.add_argument("--frame-id", type=_frame_id, help="Only this frame ID")
    patterns.add_argument("--no-mux", action="store_true", help="Skip mux detection")

    mux = sub.add_parser("mux", help="Detect multiplex selectors per frame ID")
    mux.add_argument("capture", help="Frame capture (.jsonl or .csv)")
    mux.add_argument("--frame-id", type=_frame_id, help="Only this frame ID")

    framing = sub.add_parser("framing", help="Detect framing of a raw byte stream")
    framing.add_argument("stream", help="Raw binary stream")

    mirrors = sub.add_parser("mirrors", help="Detect mirrored frame IDs")
    mirrors.add_argument("capture", help="Frame capture (.jsonl or .csv)")
    mirrors.add_argument("--tolerance-us", type=int)

    structure = sub.add_parser(
        "serial-structure", help="Analyze ID, address and checksum fields of a stream"
    )
    structure.add_argument("stream", help="Raw binary stream")

    discover = sub.add_parser("discover", help="Run every applicable analysis")
    discover.add_argument("input", help="Frame capture, or raw stream with --stream")
    discover.add_argument("--stream", action="store_true", help="Input is a raw byte stream")
    discover.add_argument("--no-checksums", action="store_true", help="Skip checksum discovery")
    discover.add_argument("--no-mirrors", action="store_true", help="Skip mirror detection")

    return parser


def _payloads_by_id(frames: List[Frame], frame_id: Optional[int]) -> Dict[int, List[bytes]]:
    grouped: Dict[int, List[bytes]] = {}
    for frame in frames:
        if frame_id is None or frame.id == frame_id:
            grouped.setdefault(frame.id, []).append(frame.data)
    return dict(sorted(grouped.items()))


def _log_progress(progress: DiscoveryProgress) -> None:
    logger.debug("Checksum discovery progress", extra={"progress": progress.to_dict()})


async def run_command(args: argparse.Namespace, config: Config) -> Any:
    """Execute one subcommand and return a JSON-serializable result."""
    if args.command == "checksums":
        if args.min_samples is not None:
            config.checksum_discovery.min_samples = args.min_samples
        if args.brute_force_crc16:
            config.checksum_discovery.brute_force_crc16 = True
        engine = ChecksumDiscoveryEngine(config)
        result = await engine.discover(load_frames(args.capture), on_progress=_log_progress)
        return result.to_dict()

    if args.command == "autodetect":
        payloads = _payloads_by_id(load_frames(args.capture), args.frame_id)
        detector = ChecksumAutoDetector(config)
        matches = await detector.detect(
            payloads.get(args.frame_id, []),
            max_samples=args.max_samples,
            checksum_position=args.position,
            checksum_bytes=args.checksum_bytes,
            calc_start=args.calc_start,
            calc_end=args.calc_end,
        )
        return [m.to_dict() for m in matches]

    if args.command == "patterns":
        analyzer = PayloadAnalyzer(config)
        results = {}
        for frame_id, payloads in _payloads_by_id(
            load_frames(args.capture), args.frame_id
        ).items():
            if args.no_mux:
                analysis = analyzer.analyze(payloads, frame_id)
            else:
                analysis = analyzer.analyze_with_mux_detection(payloads, frame_id)
            results[str(frame_id)] = analysis.to_dict()
        return results

    if args.command == "mux":
        detector = MuxDetector(config)
        results = {}
        for frame_id, payloads in _payloads_by_id(
            load_frames(args.capture), args.frame_id
        ).items():
            detected = detector.detect(payloads)
            results[str(frame_id)] = detected.to_dict() if detected else None
        return results

    if args.command == "framing":
        return FramingDetector(config).detect(load_raw_stream(args.stream)).to_dict()

    if args.command == "mirrors":
        groups = MirrorFrameDetector(config).detect_frames(
            load_frames(args.capture), args.tolerance_us
        )
        return [g.to_dict() for g in groups]

    if args.command == "serial-structure":
        raw = load_raw_stream(args.stream)
        framing = FramingDetector(config).detect(raw)
        if framing.best_candidate is None:
            raise FrameLensException(
                "No framing detected; cannot split the stream into frames",
                error_code="NO_FRAMING",
            )
        frames = split_frames(raw, framing.best_candidate, config.framing)
        result = await SerialStructureAnalyzer(config).analyze(frames)
        return result.to_dict()

    if args.command == "discover":
        orchestrator = FrameDiscoveryOrchestrator(config)
        try:
            if args.stream:
                report = await orchestrator.analyze_stream(load_raw_stream(args.input))
            else:
                report = await orchestrator.analyze_frames(
                    load_frames(args.input),
                    on_progress=_log_progress,
                    run_checksum_discovery=False if args.no_checksums else None,
                    run_mirror_detection=False if args.no_mirrors else None,
                )
        finally:
            await orchestrator.shutdown()
        return report.to_dict()

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the FrameLens command line."""
    args = build_parser().parse_args(argv)

    try:
        config = Config.load_from_file(args.config) if args.config else Config.load_from_env()
        if args.log_level:
            config.log_level = LogLevel(args.log_level)
        if args.log_json:
            config.log_json = True
        config.validate()
    except FrameLensException as e:
        configure_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        return 2

    configure_logging(config.log_level.value, json_format=config.log_json)

    try:
        result = asyncio.run(run_command(args, config))
    except FrameLensException as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    json.dump(result, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
