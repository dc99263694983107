"""Multiplex selector detection tests."""

import pytest

from framelens_engine.core.config import MuxDetectionConfig
from framelens_engine.discovery.mux_detector import (
    MuxDetector,
    format_mux_info,
    format_mux_value,
    is_mux_like_sequence,
)


class TestMuxDetector:
    """Test suite for MuxDetector."""

    @pytest.fixture
    def detector(self, test_config):
        return MuxDetector(test_config)

    def test_single_byte_selector(self, detector):
        payloads = [bytes([i % 4, i, 0x10, 0x20]) for i in range(40)]

        result = detector.detect(payloads)

        assert result is not None
        assert result.selector_byte == 0
        assert result.selector_values == [0, 1, 2, 3]
        assert not result.is_two_byte
        assert result.occurrences_per_value == {0: 10, 1: 10, 2: 10, 3: 10}
        assert result.payload_start_byte == 1

    def test_two_byte_selector(self, detector):
        """byte[1] cycling through the same values under every byte[0] upgrades the mux."""
        payloads = [bytes([i % 2, (i // 2) % 3, 0xAB]) for i in range(36)]

        result = detector.detect(payloads)

        assert result.is_two_byte
        assert result.selector_byte == -1
        assert result.selector_values == [0, 1, 2, 256, 257, 258]
        assert result.payload_start_byte == 2
        assert result.key(bytes([1, 2, 0xAB])) == 258

    def test_too_few_payloads(self, detector):
        assert detector.detect([bytes([0]), bytes([1]), bytes([2])]) is None

    def test_empty_payload_rejects_detection(self, detector):
        payloads = [bytes([i % 2, 0]) for i in range(10)] + [b""]
        assert detector.detect(payloads) is None

    def test_selector_must_start_small(self, detector):
        payloads = [bytes([5 + i % 3, i]) for i in range(30)]
        assert detector.detect(payloads) is None

    def test_unbalanced_selector(self, detector):
        payloads = [bytes([0, i]) for i in range(10)] + [bytes([1, 0]), bytes([1, 1])]
        assert detector.detect(payloads) is None

    def test_too_many_values(self, detector):
        payloads = [bytes([i % 20, 0]) for i in range(80)]
        assert detector.detect(payloads) is None

    def test_to_dict_describes_cases(self, detector):
        payloads = [bytes([i % 4, i]) for i in range(40)]
        result = detector.detect(payloads).to_dict()
        assert result["description"] == "byte[0], cases: 0, 1, 2, 3"
        assert result["occurrences_per_value"]["3"] == 10


class TestMuxHelpers:
    """Test suite for selector helpers."""

    def test_sparse_values_pass_with_enough_cases(self):
        values = [0, 10, 20, 30]
        counts = {v: 5 for v in values}
        assert is_mux_like_sequence(values, counts)

    def test_sparse_values_fail_with_few_cases(self):
        values = [0, 10, 20]
        counts = {v: 5 for v in values}
        assert not is_mux_like_sequence(values, counts)

    def test_custom_settings(self):
        values = [0, 1]
        counts = {0: 8, 1: 2}
        assert not is_mux_like_sequence(values, counts)
        assert is_mux_like_sequence(values, counts, MuxDetectionConfig(balance_ratio=5.0))

    def test_format_mux_value(self):
        assert format_mux_value(258, True) == "1:2"
        assert format_mux_value(7, False) == "7"

    def test_format_many_cases(self, test_config):
        payloads = [bytes([i % 8, i]) for i in range(80)]
        result = MuxDetector(test_config).detect(payloads)
        assert format_mux_info(result) == "byte[0], 8 cases (0-7)"
