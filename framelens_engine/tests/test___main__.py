"""Command line entry point tests."""

import json
import os

import pytest

from framelens_engine.__main__ import build_parser, main


def _xor(data):
    value = 0
    for b in data:
        value ^= b
    return value


@pytest.fixture
def capture_path(temp_dir, rng):
    """JSON lines capture with an XOR-checksummed frame and a multiplexed frame."""
    path = os.path.join(temp_dir, "capture.jsonl")
    with open(path, "w") as f:
        for i in range(20):
            data = bytes(rng.randrange(256) for _ in range(7))
            payload = data + bytes([_xor(data)])
            record = {"id": "0x200", "timestamp_us": i * 10_000, "data": payload.hex()}
            f.write(json.dumps(record) + "\n")
        for i in range(40):
            record = {"id": 256, "timestamp_us": i * 5_000, "data": bytes([i % 4, i, 0x10]).hex()}
            f.write(json.dumps(record) + "\n")
    return path


@pytest.fixture
def stream_path(temp_dir, modbus_stream):
    path = os.path.join(temp_dir, "stream.bin")
    with open(path, "wb") as f:
        f.write(modbus_stream)
    return path


def _run(capsys, argv):
    code = main(argv)
    out = capsys.readouterr().out
    return code, json.loads(out) if code == 0 else None


class TestMain:
    """Test suite for the framelens command line."""

    def test_checksums(self, capsys, capture_path):
        code, result = _run(capsys, ["checksums", capture_path])

        assert code == 0
        candidates = result["candidates_by_frame_id"]["512"]
        assert any(c["kind"] == "xor" and c["position"] == -1 for c in candidates)

    def test_autodetect(self, capsys, capture_path):
        code, result = _run(
            capsys, ["autodetect", capture_path, "--frame-id", "0x200", "--bytes", "1"]
        )

        assert code == 0
        assert result[0]["algorithm"] == "xor"
        assert result[0]["match_rate"] == 100.0

    def test_patterns_and_mux(self, capsys, capture_path):
        code, result = _run(capsys, ["patterns", capture_path, "--frame-id", "256"])
        assert code == 0
        assert list(result) == ["256"]
        assert result["256"]["is_mux_frame"] is True

        code, result = _run(capsys, ["mux", capture_path])
        assert code == 0
        assert result["256"]["selector_values"] == [0, 1, 2, 3]
        assert result["512"] is None

    def test_patterns_without_mux(self, capsys, capture_path):
        code, result = _run(capsys, ["patterns", capture_path, "--frame-id", "256", "--no-mux"])
        assert code == 0
        assert result["256"]["is_mux_frame"] is False

    def test_mirrors(self, capsys, capture_path):
        code, result = _run(capsys, ["mirrors", capture_path, "--tolerance-us", "1000"])
        assert code == 0
        assert result == []

    def test_framing(self, capsys, stream_path):
        code, result = _run(capsys, ["framing", stream_path])
        assert code == 0
        assert result["best_candidate"]["mode"] == "modbus_rtu"
        assert result["best_candidate"]["estimated_frame_count"] == 12

    def test_serial_structure(self, capsys, stream_path):
        code, result = _run(capsys, ["serial-structure", stream_path])
        assert code == 0
        assert result["frame_count"] == 12
        assert result["min_length"] == 8

    def test_serial_structure_without_framing(self, capsys, temp_dir):
        path = os.path.join(temp_dir, "noise.bin")
        with open(path, "wb") as f:
            f.write(b"\x41" * 10)

        assert main(["serial-structure", path]) == 1
        assert capsys.readouterr().out == ""

    def test_discover(self, capsys, capture_path):
        code, result = _run(capsys, ["discover", capture_path, "--no-checksums"])

        assert code == 0
        assert result["frame_ids"] == [0x100, 0x200]
        assert result["checksums"] is None

    def test_discover_stream(self, capsys, stream_path):
        code, result = _run(capsys, ["discover", stream_path, "--stream"])
        assert code == 0
        assert result["frame_count"] == 12

    def test_missing_capture(self, capsys, temp_dir):
        assert main(["checksums", os.path.join(temp_dir, "missing.jsonl")]) == 1

    def test_invalid_configuration(self, capsys, temp_dir, capture_path):
        config_path = os.path.join(temp_dir, "framelens.yaml")
        with open(config_path, "w") as f:
            f.write("mirror:\n  window: 5\n")

        assert main(["--config", config_path, "mux", capture_path]) == 2

    def test_log_level_flag(self, capsys, capture_path):
        code, _ = _run(capsys, ["--log-level", "DEBUG", "--log-json", "mux", capture_path])
        assert code == 0


class TestParser:
    """Test suite for argument parsing."""

    def test_frame_id_accepts_hex(self):
        args = build_parser().parse_args(["autodetect", "c.jsonl", "--frame-id", "0x7E8"])
        assert args.frame_id == 0x7E8

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_checksum_bytes_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["autodetect", "c.jsonl", "--frame-id", "1", "--bytes", "3"])
