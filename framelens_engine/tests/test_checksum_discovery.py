"""Checksum discovery engine tests."""

import pytest

from framelens_engine.core.exceptions import (
    AnalysisCancelledException,
    ChecksumPrimitiveException,
)
from framelens_engine.discovery.checksum_discovery import (
    ChecksumDiscoveryEngine,
    frame_id_prefix,
    group_frames_by_id,
)
from framelens_engine.discovery.checksum_primitive import (
    ChecksumKind,
    InProcessChecksumPrimitive,
    crc_compute,
)
from framelens_engine.discovery.models import Endianness, Frame
from framelens_engine.discovery.progress import (
    CancellationToken,
    DiscoveryPhase,
)


def _xor(data):
    value = 0
    for b in data:
        value ^= b
    return value


class CountingPrimitive(InProcessChecksumPrimitive):
    def __init__(self, fail_after=None):
        super().__init__()
        self.calls = 0
        self.fail_after = fail_after

    async def compute(self, algorithm_id, data, range_start=0, range_end=None):
        self.calls += 1
        if self.fail_after is not None and self.calls > self.fail_after:
            raise ChecksumPrimitiveException("backend unavailable", algorithm=algorithm_id)
        return await super().compute(algorithm_id, data, range_start, range_end)


class TestChecksumDiscoveryEngine:
    """Test suite for ChecksumDiscoveryEngine."""

    @pytest.fixture
    def engine(self, test_config, primitive):
        test_config.checksum_discovery.checksum_positions = [-1]
        return ChecksumDiscoveryEngine(test_config, primitive)

    @pytest.fixture
    def random_data(self, rng):
        def _data(count, length=7):
            return [bytes(rng.randrange(256) for _ in range(length)) for _ in range(count)]

        return _data

    @pytest.mark.asyncio
    async def test_xor_checksum(self, engine, make_frames, random_data):
        frames = make_frames(0x100, [d + bytes([_xor(d)]) for d in random_data(20)])

        result = await engine.discover(frames)

        candidate = result.candidates_by_frame_id[0x100][0]
        assert candidate.kind == ChecksumKind.XOR
        assert candidate.algorithm_name == "XOR"
        assert candidate.position == -1
        assert candidate.length == 1
        assert not candidate.includes_frame_id
        assert candidate.match_rate == 100.0
        assert result.summary.frames_with_checksum == 1
        assert result.summary.most_common_algorithm == "XOR"

    @pytest.mark.asyncio
    async def test_xor_with_frame_id_prefix(self, engine, make_frames, random_data):
        frames = make_frames(
            0x123,
            [d + bytes([_xor(frame_id_prefix(0x123) + d)]) for d in random_data(20)],
        )

        result = await engine.discover(frames)

        candidate = result.candidates_by_frame_id[0x123][0]
        assert candidate.kind == ChecksumKind.XOR
        assert candidate.includes_frame_id

    @pytest.mark.asyncio
    async def test_known_crc_algorithm(self, engine, primitive, make_frames, random_data):
        payloads = []
        for data in random_data(20):
            payloads.append(data + bytes([await primitive.compute("crc8_autosar", data)]))

        result = await engine.discover(make_frames(0x200, payloads))

        candidate = result.candidates_by_frame_id[0x200][0]
        assert candidate.kind == ChecksumKind.CRC8
        assert candidate.algorithm_name == "CRC-8 AUTOSAR"
        assert candidate.polynomial is None

    @pytest.mark.asyncio
    async def test_known_algorithm_tagged_by_width(
        self, test_config, make_frames, random_data
    ):
        test_config.checksum_discovery.checksum_positions = [-1]
        test_config.checksum_discovery.try_simple_first = False
        engine = ChecksumDiscoveryEngine(test_config)
        frames = make_frames(0x210, [d + bytes([_xor(d)]) for d in random_data(20)])

        result = await engine.discover(frames)

        candidate = result.candidates_by_frame_id[0x210][0]
        assert candidate.algorithm_name == "XOR"
        assert candidate.kind == ChecksumKind.CRC8

    @pytest.mark.asyncio
    async def test_crc8_brute_force(self, engine, make_frames, random_data):
        """A CRC-8 outside the registry is found by polynomial search."""
        payloads = [d + bytes([crc_compute(d, 8, 0x39)]) for d in random_data(20)]
        events = []

        result = await engine.discover(make_frames(0x300, payloads), on_progress=events.append)

        candidate = result.candidates_by_frame_id[0x300][0]
        assert candidate.kind == ChecksumKind.CRC8
        assert candidate.polynomial == 0x39
        assert candidate.init == 0
        assert candidate.xor_out == 0
        assert candidate.reflect is False
        assert candidate.to_dict()["polynomial"] == "0x39"
        assert result.combinations_tested >= 0x39

        brute_force = [e for e in events if e.phase == DiscoveryPhase.BRUTE_FORCE_CRC8]
        assert brute_force
        assert brute_force[0].polynomials_total == 4080

    @pytest.mark.asyncio
    async def test_crc16_common_polynomial(self, test_config, make_frames, random_data):
        test_config.checksum_discovery.checksum_positions = [-2]
        engine = ChecksumDiscoveryEngine(test_config)
        payloads = []
        for data in random_data(16, length=6):
            crc = crc_compute(data, 16, 0x3D65)
            payloads.append(data + crc.to_bytes(2, "big"))

        result = await engine.discover(make_frames(0x400, payloads))

        candidate = result.candidates_by_frame_id[0x400][0]
        assert candidate.kind == ChecksumKind.CRC16
        assert candidate.polynomial == 0x3D65
        assert candidate.endianness == Endianness.BIG
        assert candidate.length == 2

    @pytest.mark.asyncio
    async def test_frame_ids_below_min_samples_are_skipped(self, engine, make_frames, random_data):
        frames = make_frames(0x500, [d + bytes([_xor(d)]) for d in random_data(5)])

        result = await engine.discover(frames)

        assert result.unique_frame_ids == 0
        assert result.candidates_by_frame_id == {}
        assert result.notes == ["No frame ID has at least 10 samples"]

    @pytest.mark.asyncio
    async def test_empty_capture(self, engine):
        result = await engine.discover([])
        assert result.frame_count == 0
        assert result.notes == ["No frames to analyze"]
        assert result.summary.most_common_algorithm is None

    @pytest.mark.asyncio
    async def test_frames_without_checksum(self, engine, make_frames):
        frames = make_frames(0x600, [bytes([i, 0, 0, 0]) for i in range(12)])

        result = await engine.discover(frames)

        assert result.summary.frames_with_checksum == 0
        assert result.summary.frames_without_checksum == 1

    @pytest.mark.asyncio
    async def test_cancellation(self, engine, make_frames, random_data):
        token = CancellationToken()
        token.cancel("user request")
        frames = make_frames(0x100, [d + bytes([_xor(d)]) for d in random_data(20)])

        with pytest.raises(AnalysisCancelledException) as exc_info:
            await engine.discover(frames, cancellation=token)
        assert exc_info.value.context["phase"] == DiscoveryPhase.GROUPING.value

    @pytest.mark.asyncio
    async def test_failing_progress_sink_does_not_change_result(
        self, engine, make_frames, random_data
    ):
        frames = make_frames(0x100, [d + bytes([_xor(d)]) for d in random_data(20)])

        def broken_sink(progress):
            raise RuntimeError("display gone")

        with_sink = await engine.discover(frames, on_progress=broken_sink)
        without_sink = await engine.discover(frames)

        assert [c.to_dict() for c in with_sink.candidates_by_frame_id[0x100]] == [
            c.to_dict() for c in without_sink.candidates_by_frame_id[0x100]
        ]

    @pytest.mark.asyncio
    async def test_primitive_failure_aborts_pass(self, test_config, make_frames, random_data):
        test_config.checksum_discovery.checksum_positions = [-1]
        engine = ChecksumDiscoveryEngine(test_config, CountingPrimitive(fail_after=3))
        frames = make_frames(0x100, [d + bytes([0]) for d in random_data(20)])

        with pytest.raises(ChecksumPrimitiveException):
            await engine.discover(frames)


class TestGrouping:
    """Test suite for frame grouping helpers."""

    def test_group_frames_by_id(self):
        frames = [Frame(id=i % 3, data=b"\x00") for i in range(30)]
        frames += [Frame(id=9, data=b"\x00")]

        groups = group_frames_by_id(frames, min_samples=2, max_samples=4)

        assert list(groups) == [0, 1, 2]
        assert all(len(g) == 4 for g in groups.values())

    def test_frame_id_prefix_little_endian(self):
        assert frame_id_prefix(0x1234) == bytes([0x34, 0x12])
