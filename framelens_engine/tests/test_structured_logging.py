"""Structured logging tests."""

import json
import logging

from framelens_engine.core.structured_logging import (
    LogCategory,
    PerformanceLogger,
    StructuredFormatter,
    configure_logging,
)


def _record(message="Checksum found", exc_info=None, **extra):
    record = logging.LogRecord(
        "framelens_engine.discovery", logging.INFO, __file__, 10, message, None, exc_info
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test suite for StructuredFormatter."""

    def test_json_line(self):
        line = StructuredFormatter().format(
            _record(category=LogCategory.CHECKSUM_DISCOVERY, frame_id=0x100)
        )

        event = json.loads(line)

        assert event["level"] == "INFO"
        assert event["category"] == "checksum_discovery"
        assert event["message"] == "Checksum found"
        assert event["component"] == "framelens_engine.discovery"
        assert event["metadata"] == {"frame_id": 0x100}

    def test_unknown_category_falls_back_to_system(self):
        event = json.loads(StructuredFormatter().format(_record(category="bogus")))
        assert event["category"] == "system"

    def test_exception_details(self):
        try:
            raise ValueError("bad payload")
        except ValueError as e:
            record = _record(exc_info=(type(e), e, e.__traceback__))

        event = json.loads(StructuredFormatter().format(record))

        assert event["exception"]["type"] == "ValueError"
        assert event["exception"]["message"] == "bad payload"


class TestPerformanceLogger:
    """Test suite for PerformanceLogger."""

    def test_time_operation_records_stats(self, caplog):
        performance = PerformanceLogger(logging.getLogger("framelens_engine.test"))

        with caplog.at_level(logging.INFO, logger="framelens_engine.test"):
            with performance.time_operation("framing_detection"):
                pass
            with performance.time_operation("framing_detection"):
                pass

        stats = performance.get_operation_stats("framing_detection")
        assert stats["count"] == 2
        assert stats["max_seconds"] >= stats["mean_seconds"] >= 0
        assert caplog.records[0].operation == "framing_detection"
        assert caplog.records[0].category == LogCategory.PERFORMANCE

    def test_unknown_operation(self):
        performance = PerformanceLogger(logging.getLogger("framelens_engine.test"))
        assert performance.get_operation_stats("missing") is None


class TestConfigureLogging:
    """Test suite for configure_logging."""

    def test_json_handler(self):
        configure_logging("debug", json_format=True)

        root = logging.getLogger()

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        configure_logging("INFO")
