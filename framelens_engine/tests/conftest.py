"""
FrameLens Engine - Pytest Configuration and Fixtures

This module provides shared fixtures and synthetic capture builders for all
tests.
"""

import random
import shutil
import tempfile
from typing import Callable, List

import pytest

from framelens_engine.core.config import Config, LogLevel
from framelens_engine.discovery.checksum_primitive import (
    InProcessChecksumPrimitive,
    append_modbus_crc,
)
from framelens_engine.discovery.models import Frame


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    tmp_dir = tempfile.mkdtemp()
    yield tmp_dir
    shutil.rmtree(tmp_dir, ignore_errors=True)


@pytest.fixture
def test_config():
    """Create test configuration."""
    config = Config()
    config.log_level = LogLevel.DEBUG
    return config


@pytest.fixture
def primitive():
    return InProcessChecksumPrimitive()


@pytest.fixture
def rng():
    """Seeded random source so synthetic captures are reproducible."""
    return random.Random(1234)


@pytest.fixture
def make_frames() -> Callable[..., List[Frame]]:
    """Build frames of one ID from payloads, 10 ms apart."""

    def _make(frame_id, payloads, start_us=0, interval_us=10_000, bus=0):
        return [
            Frame(id=frame_id, data=bytes(p), timestamp_us=start_us + i * interval_us, bus=bus)
            for i, p in enumerate(payloads)
        ]

    return _make


@pytest.fixture
def modbus_stream(rng) -> bytes:
    """Twelve Modbus RTU read requests from two slaves."""
    frames = []
    for i in range(12):
        address = 1 if i % 2 == 0 else 2
        request = bytes([address, 0x03, 0x00, rng.randrange(0, 64), 0x00, 0x01 + i % 4])
        frames.append(append_modbus_crc(request))
    return b"".join(frames)
