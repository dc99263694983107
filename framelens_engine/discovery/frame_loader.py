"""
FrameLens Engine - Capture Loaders

Reads frame captures (JSON lines or CSV with ``id``, ``bus``, ``timestamp_us``
and hex ``data`` columns) and raw binary byte streams.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..core.exceptions import DataException
from .models import Frame

logger = logging.getLogger(__name__)

JSON_LINES_SUFFIXES = (".jsonl", ".ndjson", ".json")
CSV_SUFFIXES = (".csv",)


def parse_int(value: Any, field_name: str) -> int:
    """Parse an integer field; strings accept ``0x`` hex notation."""
    if isinstance(value, bool):
        raise ValueError(f"'{field_name}' must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        return int(value.strip(), 0)
    raise ValueError(f"'{field_name}' must be an integer")


def parse_hex_data(value: Any) -> bytes:
    """Parse payload hex, ignoring whitespace and an optional ``0x`` prefix."""
    if not isinstance(value, str):
        raise ValueError("'data' must be a hex string")
    text = "".join(value.split())
    if text[:2].lower() == "0x":
        text = text[2:]
    return bytes.fromhex(text)


def frame_from_record(
    record: Mapping[str, Any], source: str = "<input>", line_number: Optional[int] = None
) -> Frame:
    """Build a ``Frame`` from one capture record."""
    try:
        if "id" not in record or "data" not in record:
            raise ValueError("record needs 'id' and 'data'")
        return Frame(
            id=parse_int(record["id"], "id"),
            data=parse_hex_data(record["data"]),
            timestamp_us=parse_int(record.get("timestamp_us") or 0, "timestamp_us"),
            bus=parse_int(record.get("bus") or 0, "bus"),
        )
    except ValueError as e:
        raise DataException(
            f"Malformed frame record: {e}", data_source=source, line_number=line_number
        )


def parse_json_lines(lines: Iterable[str], source: str = "<input>") -> List[Frame]:
    frames = []
    for line_number, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise DataException(
                f"Invalid JSON: {e.msg}", data_source=source, line_number=line_number
            )
        if not isinstance(record, dict):
            raise DataException(
                "Frame record must be a JSON object",
                data_source=source,
                line_number=line_number,
            )
        frames.append(frame_from_record(record, source, line_number))
    return frames


def parse_csv(lines: Iterable[str], source: str = "<input>") -> List[Frame]:
    reader = csv.DictReader(lines)
    if reader.fieldnames is None:
        return []

    missing = {"id", "data"} - {name.strip() for name in reader.fieldnames}
    if missing:
        raise DataException(
            f"CSV header is missing columns: {', '.join(sorted(missing))}",
            data_source=source,
            line_number=1,
        )

    frames = []
    for row in reader:
        record: Dict[str, Any] = {
            (k or "").strip(): (v or "").strip() for k, v in row.items()
        }
        frames.append(frame_from_record(record, source, reader.line_num))
    return frames


def load_frames(path: Union[str, Path]) -> List[Frame]:
    """Load a frame capture, choosing the format from the file suffix."""
    path = Path(path)
    if not path.exists():
        raise DataException(f"Capture file not found: {path}", data_source=str(path))

    suffix = path.suffix.lower()
    with open(path, "r", newline="") as f:
        if suffix in CSV_SUFFIXES:
            frames = parse_csv(f, str(path))
        elif suffix in JSON_LINES_SUFFIXES:
            frames = parse_json_lines(f, str(path))
        else:
            raise DataException(
                f"Unsupported capture format '{suffix}', expected .jsonl or .csv",
                data_source=str(path),
            )

    logger.info(
        f"Loaded {len(frames)} frames from {path}",
        extra={"frame_count": len(frames), "data_source": str(path)},
    )
    return frames


def load_raw_stream(path: Union[str, Path]) -> bytes:
    """Load a raw binary byte stream."""
    path = Path(path)
    if not path.exists():
        raise DataException(f"Stream file not found: {path}", data_source=str(path))
    data = path.read_bytes()
    logger.info(
        f"Loaded {len(data)} raw bytes from {path}",
        extra={"byte_count": len(data), "data_source": str(path)},
    )
    return data
