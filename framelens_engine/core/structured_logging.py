"""
FrameLens Engine - Structured Logging

This module provides JSON structured logging with categories, performance
timings and a single ``configure_logging`` entry point used by the CLI.
"""

import json
import logging
import logging.config
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class LogCategory(Enum):
    """Log categories for filtering and routing."""

    SYSTEM = "system"
    PERFORMANCE = "performance"
    CHECKSUM_DISCOVERY = "checksum_discovery"
    PAYLOAD_ANALYSIS = "payload_analysis"
    FRAMING = "framing"
    MIRROR_DETECTION = "mirror_detection"
    DATA_PROCESSING = "data_processing"


@dataclass
class LogEvent:
    """Structured log event."""

    timestamp: float
    level: str
    category: LogCategory
    message: str
    component: str
    operation: Optional[str] = None
    exception: Optional[BaseException] = None
    performance_metrics: Optional[Dict[str, float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "timestamp": self.timestamp,
            "iso_timestamp": datetime.fromtimestamp(
                self.timestamp, timezone.utc
            ).isoformat(),
            "level": self.level,
            "category": self.category.value,
            "message": self.message,
            "component": self.component,
            "operation": self.operation,
            "metadata": self.metadata,
        }

        if self.exception:
            result["exception"] = {
                "type": type(self.exception).__name__,
                "message": str(self.exception),
                "traceback": traceback.format_exception(
                    type(self.exception), self.exception, self.exception.__traceback__
                ),
            }

        if self.performance_metrics:
            result["performance_metrics"] = self.performance_metrics

        return result

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


# LogRecord attributes that are not user supplied ``extra`` fields
_RESERVED_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "category", "operation", "performance_metrics", "component"}


class StructuredFormatter(logging.Formatter):
    """Formatter that renders every record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        category = getattr(record, "category", LogCategory.SYSTEM)
        if not isinstance(category, LogCategory):
            category = LogCategory.SYSTEM

        metadata = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_FIELDS
        }

        log_event = LogEvent(
            timestamp=record.created,
            level=record.levelname,
            category=category,
            message=record.getMessage(),
            component=getattr(record, "component", record.name),
            operation=getattr(record, "operation", None),
            exception=record.exc_info[1] if record.exc_info else None,
            performance_metrics=getattr(record, "performance_metrics", None),
            metadata=metadata,
        )

        return log_event.to_json()


class PerformanceLogger:
    """Logger specifically for performance metrics."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.operation_times: Dict[str, List[float]] = {}
        self.lock = threading.Lock()

    @contextmanager
    def time_operation(
        self, operation_name: str, category: LogCategory = LogCategory.PERFORMANCE
    ):
        """Context manager to time operations."""
        start_time = time.perf_counter()

        try:
            yield
        finally:
            duration = time.perf_counter() - start_time

            with self.lock:
                times = self.operation_times.setdefault(operation_name, [])
                times.append(duration)
                # Keep only last 1000 measurements
                if len(times) > 1000:
                    del times[:-1000]

            self.logger.info(
                f"Operation {operation_name} completed in {duration * 1000:.1f}ms",
                extra={
                    "category": category,
                    "operation": operation_name,
                    "performance_metrics": {
                        "duration_seconds": duration,
                        "duration_ms": duration * 1000,
                    },
                },
            )

    def get_operation_stats(self, operation_name: str) -> Optional[Dict[str, float]]:
        """Get statistics for an operation."""
        with self.lock:
            times = self.operation_times.get(operation_name)
            if not times:
                return None
            return {
                "count": len(times),
                "total_seconds": sum(times),
                "mean_seconds": sum(times) / len(times),
                "max_seconds": max(times),
            }


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure the logging system.

    Logs go to stderr so that command output on stdout stays machine readable.
    """
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {"()": StructuredFormatter},
                "simple": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured" if json_format else "simple",
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
        }
    )
