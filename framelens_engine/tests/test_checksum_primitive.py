"""Checksum primitive and algorithm registry tests."""

import pytest

from framelens_engine.core.exceptions import ChecksumPrimitiveException
from framelens_engine.discovery.checksum_primitive import (
    CHECKSUM_ALGORITHMS,
    ChecksumKind,
    algorithm_order,
    append_modbus_crc,
    crc16_modbus,
    crc_compute,
    format_byte_index,
    get_algorithm_info,
    get_algorithm_output_bytes,
    resolve_byte_index,
    running_modbus_crc,
    validate_modbus_crc,
)

CHECK_INPUT = b"123456789"


class TestByteIndex:
    """Test suite for negative byte index resolution."""

    @pytest.mark.parametrize("length", [1, 2, 8, 64])
    def test_last_byte(self, length):
        assert resolve_byte_index(-1, length) == length - 1

    @pytest.mark.parametrize("k,length", [(1, 8), (2, 8), (8, 8), (9, 8), (20, 3)])
    def test_negative_clamps_at_zero(self, k, length):
        assert resolve_byte_index(-k, length) == max(0, length - k)

    def test_positive_index_unchanged(self):
        assert resolve_byte_index(5, 3) == 5

    def test_format_byte_index(self):
        assert format_byte_index(3) == "3"
        assert format_byte_index(-2, 8) == "-2 (byte 6)"
        assert format_byte_index(-1) == "-1 (from end)"


class TestRegistry:
    """Test suite for the ordered algorithm registry."""

    def test_registry_order_and_size(self):
        ids = [a.id for a in CHECKSUM_ALGORITHMS]
        assert len(ids) == 11
        assert ids[0] == "xor"
        assert ids[1] == "sum8"
        assert ids[-2:] == ["crc16_modbus", "crc16_ccitt"]
        assert algorithm_order("xor") < algorithm_order("crc8") < algorithm_order("crc16_ccitt")
        assert algorithm_order("unknown") == len(ids)

    def test_output_bytes(self):
        assert get_algorithm_output_bytes("crc8_maxim") == 1
        assert get_algorithm_output_bytes("crc16_modbus") == 2
        assert get_algorithm_output_bytes("missing") == 1
        assert get_algorithm_info("missing") is None

    def test_kinds(self):
        assert get_algorithm_info("xor").kind == ChecksumKind.XOR
        assert get_algorithm_info("crc8_autosar").kind == ChecksumKind.CRC8
        assert get_algorithm_info("crc16_ccitt").kind == ChecksumKind.CRC16


class TestCrcCompute:
    """Test suite for bit-exact CRC computation against catalogue check values."""

    @pytest.mark.parametrize(
        "algorithm_id,check",
        [
            ("crc8", 0xF4),
            ("crc8_sae_j1850", 0x4B),
            ("crc8_autosar", 0xDF),
            ("crc8_maxim", 0xA1),
            ("crc8_cdma2000", 0xDA),
            ("crc8_dvb_s2", 0xBC),
            ("crc16_modbus", 0x4B37),
            ("crc16_ccitt", 0x29B1),
        ],
    )
    @pytest.mark.asyncio
    async def test_check_values(self, primitive, algorithm_id, check):
        assert await primitive.compute(algorithm_id, CHECK_INPUT) == check

    @pytest.mark.asyncio
    async def test_simple_algorithms(self, primitive):
        data = bytes([0x01, 0x02, 0xFF])
        assert await primitive.compute("xor", data) == 0x01 ^ 0x02 ^ 0xFF
        assert await primitive.compute("sum8", data) == (0x01 + 0x02 + 0xFF) & 0xFF

    @pytest.mark.asyncio
    async def test_compute_range(self, primitive):
        data = bytes([0xAA, 0x01, 0x02, 0x03, 0xBB])
        assert await primitive.compute("xor", data, 1, -1) == 0x01 ^ 0x02 ^ 0x03
        assert await primitive.compute("sum8", data, 1, 4) == 6

    @pytest.mark.asyncio
    async def test_unknown_algorithm_raises(self, primitive):
        with pytest.raises(ChecksumPrimitiveException):
            await primitive.compute("crc99", b"\x00")

    def test_unsupported_width_raises(self):
        with pytest.raises(ChecksumPrimitiveException):
            crc_compute(b"\x00", 12, 0x80F)

    def test_modbus_reference_implementation(self):
        assert crc16_modbus(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x01])) == 0x0A84
        assert crc16_modbus(CHECK_INPUT) == crc_compute(CHECK_INPUT, 16, 0x8005, 0xFFFF, 0, True)

    def test_modbus_trailer_is_little_endian(self):
        frame = append_modbus_crc(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x01]))
        assert frame[-2:] == bytes([0x84, 0x0A])
        assert validate_modbus_crc(frame)
        assert not validate_modbus_crc(frame[:-1] + b"\x00")

    def test_running_modbus_crc_matches_prefixes(self):
        data = bytes(range(1, 12))
        running = list(running_modbus_crc(data, 2, 9))
        assert running == [crc16_modbus(data[2:k]) for k in range(3, 10)]


class TestBatchEvaluation:
    """Test suite for batched CRC evaluation."""

    @pytest.mark.asyncio
    async def test_batch_matches_single_tests(self, primitive, rng):
        payloads = [
            bytes(rng.randrange(256) for _ in range(rng.choice([4, 6, 7])))
            for _ in range(30)
        ]
        expected = [crc_compute(p, 16, 0x1021, 0xFFFF, 0, False) for p in payloads]
        expected[0] ^= 0x1

        batch = primitive.prepare_batch(payloads, expected)
        result = await primitive.batch_test_crc(batch, 16, 0x1021, 0xFFFF, 0, False)

        singles = [
            await primitive.test_crc(p, e, 16, 0x1021, 0xFFFF, 0, False)
            for p, e in zip(payloads, expected)
        ]
        assert result.total_count == 30
        assert result.match_count == sum(singles) == 29

    @pytest.mark.asyncio
    async def test_reflected_batch(self, primitive):
        payloads = [CHECK_INPUT, b"\x01\x03\x00\x00\x00\x01"]
        expected = [0x4B37, 0x0A84]
        batch = primitive.prepare_batch(payloads, expected)
        result = await primitive.batch_test_crc(batch, 16, 0x8005, 0xFFFF, 0, True)
        assert result.match_count == 2

    def test_mismatched_arrays_raise(self, primitive):
        with pytest.raises(ChecksumPrimitiveException):
            primitive.prepare_batch([b"\x00"], [])

    @pytest.mark.asyncio
    async def test_validate_checksum(self, primitive):
        frame = append_modbus_crc(b"\x01\x03\x00\x00\x00\x01")
        result = await primitive.validate_checksum("crc16_modbus", frame, -2, 2, False)
        assert result.valid
        assert result.extracted == result.calculated == 0x0A84

        with pytest.raises(ChecksumPrimitiveException):
            await primitive.validate_checksum("crc16_modbus", frame, 7, 2, False)
