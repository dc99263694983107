"""Serial frame structure analysis tests."""

import pytest

from framelens_engine.discovery.checksum_primitive import crc16_modbus
from framelens_engine.discovery.serial_structure_analyzer import (
    SerialStructureAnalyzer,
    format_checksum_candidate,
    format_field_candidate,
)


def _xor(data):
    value = 0
    for b in data:
        value ^= b
    return value


class TestSerialStructureAnalyzer:
    """Test suite for SerialStructureAnalyzer."""

    @pytest.fixture
    def analyzer(self, test_config, primitive):
        return SerialStructureAnalyzer(test_config, primitive)

    @pytest.fixture
    def typed_frames(self, rng):
        """Type byte, source address, two data bytes and an XOR trailer."""
        frames = []
        for i in range(30):
            body = bytes(
                [1 + i % 3, 0x11 + (i // 3) % 3, rng.randrange(256), rng.randrange(256)]
            )
            frames.append(body + bytes([_xor(body)]))
        return frames

    @pytest.mark.asyncio
    async def test_empty_input(self, analyzer):
        result = await analyzer.analyze([])
        assert result.frame_count == 0
        assert result.notes == ["No frames to analyze"]

    @pytest.mark.asyncio
    async def test_typed_frames(self, analyzer, typed_frames):
        result = await analyzer.analyze(typed_frames)

        assert result.frame_count == 30
        assert not result.has_varying_length
        assert result.notes[0] == "Fixed length: 5 bytes"

        best_id = result.id_candidates[0]
        assert (best_id.start_byte, best_id.length) == (0, 1)
        assert best_id.unique_values == [1, 2, 3]

        source = result.source_address_candidates[0]
        assert (source.start_byte, source.length) == (1, 1)
        assert source.unique_values == [0x11, 0x12, 0x13]

        checksum = result.checksum_candidates[0]
        assert checksum.algorithm == "xor"
        assert checksum.position == -1
        assert checksum.calc_start_byte == 0
        assert checksum.match_rate == 100.0
        assert "Perfect match across all samples" in checksum.notes
        assert "Best checksum candidate: xor at byte -1 (100% match rate)" in result.notes

    @pytest.mark.asyncio
    async def test_two_byte_checksum_is_big_endian(self, analyzer, rng):
        frames = []
        for _ in range(20):
            data = bytes(rng.randrange(256) for _ in range(6))
            frames.append(data + crc16_modbus(data).to_bytes(2, "big"))

        result = await analyzer.analyze(frames)

        checksum = result.checksum_candidates[0]
        assert checksum.algorithm == "crc16_modbus"
        assert (checksum.position, checksum.length) == (-2, 2)

    @pytest.mark.asyncio
    async def test_one_candidate_per_position(self, analyzer, typed_frames):
        result = await analyzer.analyze(typed_frames)
        keys = [(c.position, c.length) for c in result.checksum_candidates]
        assert len(keys) == len(set(keys))

    @pytest.mark.asyncio
    async def test_varying_length_note(self, analyzer, typed_frames):
        result = await analyzer.analyze(typed_frames + [typed_frames[0] + b"\x00"])
        assert result.has_varying_length
        assert result.notes[0] == "Varying length: 5–6 bytes"

    @pytest.mark.asyncio
    async def test_formatting(self, analyzer, typed_frames):
        result = await analyzer.analyze(typed_frames)

        assert format_field_candidate(result.id_candidates[0]).startswith(
            "byte[0]: 3 distinct values"
        )
        assert (
            format_checksum_candidate(result.checksum_candidates[0], 5)
            == "XOR at byte -1 (byte 4), 100% match"
        )
