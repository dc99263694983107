"""Payload analysis tests."""

import pytest

from framelens_engine.discovery.byte_pattern_classifier import ByteRole, ValueRange
from framelens_engine.discovery.payload_analyzer import PayloadAnalyzer


class TestPayloadAnalyzer:
    """Test suite for PayloadAnalyzer."""

    @pytest.fixture
    def analyzer(self, test_config):
        return PayloadAnalyzer(test_config)

    def test_empty_input(self, analyzer):
        result = analyzer.analyze([], 0x100)

        assert result.sample_count == 0
        assert result.notes == ["No frames to analyze"]
        assert analyzer.analyze_with_mux_detection([], 0x100).notes == ["No frames to analyze"]

    def test_identical_payloads(self, analyzer):
        result = analyzer.analyze([b"\x01\x02"] * 5, 0x100)

        assert result.is_identical
        assert result.identical_payload == b"\x01\x02"
        assert "Identical payload across all 5 samples: 01 02" in result.notes
        assert "Static bytes: byte[0]=0x01, byte[1]=0x02" in result.notes

    def test_varying_length(self, analyzer):
        payloads = [b"\x01\x02\x03", b"\x01\x02"] * 3

        result = analyzer.analyze(payloads, 0x100)

        assert result.has_varying_length
        assert result.length_range == ValueRange(2, 3)
        assert result.analyzed_to_byte == 2
        assert result.notes[0] == "Varying length: 2–3 bytes"
        assert len(result.byte_stats) == 2

    def test_counter_note(self, analyzer):
        payloads = [bytes([i % 256, 0xAA]) for i in range(300)]

        result = analyzer.analyze(payloads, 0x200)

        assert "Counter at byte[0]: incrementing, step=1 (rollover detected)" in result.notes
        assert "Static bytes: byte[1]=0xAA" in result.notes
        assert not result.is_mux_frame

    def test_burst_frame_note(self, analyzer):
        payloads = [bytes([i, 0]) for i in range(10)]
        result = analyzer.analyze(payloads, 0x200, is_burst_frame=True)
        assert result.is_burst_frame
        assert "Burst frame: analyzing stable payload portion only" in result.notes

    def test_endianness_note_leads(self, analyzer):
        payloads = [(1000 + 7 * i).to_bytes(2, "little") + b"\x00" for i in range(100)]

        result = analyzer.analyze(payloads, 0x300)

        assert result.inferred_endianness == "little"
        assert result.notes[0].startswith("Little-endian (inferred from 1 multi-byte pattern(s))")

    def test_mux_frame(self, analyzer):
        payloads = [bytes([i % 4, i, 0x10]) for i in range(40)]

        result = analyzer.analyze_with_mux_detection(payloads, 0x400)

        assert result.is_mux_frame
        assert result.mux_info.selector_values == [0, 1, 2, 3]
        assert result.analyzed_from_byte == 1
        assert len(result.mux_case_analyses) == 4
        assert "Multiplexed frame: byte[0], cases: 0, 1, 2, 3" in result.notes
        assert "Case 0: 1 counter, 1 static" in result.notes

        case = result.mux_case_analyses[0]
        assert case.sample_count == 10
        assert [s.role for s in case.byte_stats] == [ByteRole.COUNTER, ByteRole.STATIC]
        assert case.byte_stats[0].counter_step == 4
        assert "Static: byte[2]=0x10" in case.notes
        assert "Counter byte[1]: inc, step=4" in case.notes
        assert result.byte_stats == case.byte_stats

    def test_without_mux_falls_back_to_whole_frame(self, analyzer):
        payloads = [bytes([0x40 + i % 3, 0]) for i in range(30)]

        result = analyzer.analyze_with_mux_detection(payloads, 0x500)

        assert not result.is_mux_frame
        assert result.analyzed_from_byte == 0
        assert result.mux_info is None

    def test_to_dict(self, analyzer):
        payloads = [bytes([i % 4, i, 0x10]) for i in range(40)]

        data = analyzer.analyze_with_mux_detection(payloads, 0x400).to_dict()

        assert data["frame_id"] == 0x400
        assert data["is_mux_frame"] is True
        assert data["mux_info"]["selector_values"] == [0, 1, 2, 3]
        assert len(data["mux_case_analyses"]) == 4
        assert "length_range" not in data
