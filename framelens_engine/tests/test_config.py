"""Configuration loading and validation tests."""

import os

import pytest
import yaml

from framelens_engine.core import config as config_module
from framelens_engine.core.config import (
    Config,
    LogLevel,
    get_config,
    load_config,
    set_config,
)
from framelens_engine.core.exceptions import ConfigurationException


class TestConfig:
    """Test suite for Config."""

    def test_defaults(self):
        config = Config()

        assert config.log_level == LogLevel.INFO
        assert config.checksum_discovery.min_samples == 10
        assert config.checksum_discovery.min_match_rate == 95.0
        assert config.checksum_discovery.checksum_positions == [-1, -2]
        assert config.checksum_discovery.brute_force_crc16 is False
        assert config.auto_detect.max_samples == 20
        assert config.mirror.tolerance_us == 50000
        assert config.mirror.min_match_percentage == 80.0
        config.validate()

    def test_load_from_file(self, temp_dir):
        path = os.path.join(temp_dir, "framelens.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(
                {
                    "log_level": "debug",
                    "checksum_discovery": {"min_samples": 5, "brute_force_crc16": True},
                    "mirror": {"tolerance_us": 1000},
                    "run_mirror_detection": False,
                },
                f,
            )

        config = Config.load_from_file(path)

        assert config.log_level == LogLevel.DEBUG
        assert config.checksum_discovery.min_samples == 5
        assert config.checksum_discovery.brute_force_crc16 is True
        assert config.checksum_discovery.min_match_rate == 95.0
        assert config.mirror.tolerance_us == 1000
        assert config.run_mirror_detection is False

    def test_unknown_section_key(self, temp_dir):
        path = os.path.join(temp_dir, "framelens.yaml")
        with open(path, "w") as f:
            f.write("mux:\n  max_cases: 4\n")

        with pytest.raises(ConfigurationException) as exc_info:
            Config.load_from_file(path)
        assert exc_info.value.context["config_key"] == "mux"

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigurationException):
            Config.load_from_file(os.path.join(temp_dir, "missing.yaml"))

    def test_invalid_yaml(self, temp_dir):
        path = os.path.join(temp_dir, "framelens.yaml")
        with open(path, "w") as f:
            f.write("mirror: [unclosed\n")
        with pytest.raises(ConfigurationException):
            Config.load_from_file(path)

    def test_non_mapping_file(self, temp_dir):
        path = os.path.join(temp_dir, "framelens.yaml")
        with open(path, "w") as f:
            f.write("- 1\n- 2\n")
        with pytest.raises(ConfigurationException):
            Config.load_from_file(path)

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("FRAMELENS_LOG_LEVEL", "warning")
        monkeypatch.setenv("FRAMELENS_LOG_JSON", "true")
        monkeypatch.setenv("FRAMELENS_MIN_SAMPLES", "25")
        monkeypatch.setenv("FRAMELENS_BRUTE_FORCE_CRC16", "TRUE")
        monkeypatch.setenv("FRAMELENS_MIRROR_TOLERANCE_US", "2000")

        config = Config.load_from_env()

        assert config.log_level == LogLevel.WARNING
        assert config.log_json is True
        assert config.checksum_discovery.min_samples == 25
        assert config.checksum_discovery.brute_force_crc16 is True
        assert config.mirror.tolerance_us == 2000

    def test_to_dict(self):
        data = Config().to_dict()
        assert set(data) == {
            "log_level",
            "log_json",
            "checksum_discovery",
            "auto_detect",
            "patterns",
            "mux",
            "framing",
            "mirror",
            "serial_structure",
            "run_checksum_discovery",
            "run_mirror_detection",
        }
        assert data["log_level"] == "INFO"
        assert data["checksum_discovery"]["checksum_positions"] == [-1, -2]
        assert data["framing"]["modbus_max_frame"] == 256

    @pytest.mark.parametrize(
        "section,key,value",
        [
            ("checksum_discovery", "min_samples", 0),
            ("checksum_discovery", "min_match_rate", 101),
            ("checksum_discovery", "checksum_positions", []),
            ("checksum_discovery", "checksum_positions", [0]),
            ("auto_detect", "max_samples", 0),
            ("framing", "modbus_min_frame", 3),
            ("mirror", "tolerance_us", -1),
            ("serial_structure", "checksum_min_match_rate", 150.0),
        ],
    )
    def test_validate_rejects(self, section, key, value):
        config = Config()
        setattr(getattr(config, section), key, value)
        with pytest.raises(ConfigurationException):
            config.validate()


class TestGlobalConfig:
    """Test suite for the process-wide configuration."""

    @pytest.fixture(autouse=True)
    def reset_global(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config", None)

    def test_get_config_loads_environment(self, monkeypatch):
        monkeypatch.setenv("FRAMELENS_MIN_SAMPLES", "12")
        assert get_config().checksum_discovery.min_samples == 12
        assert get_config() is get_config()

    def test_set_config_validates(self):
        config = Config()
        config.mirror.tolerance_us = -5
        with pytest.raises(ConfigurationException):
            set_config(config)

    def test_load_config(self, temp_dir):
        path = os.path.join(temp_dir, "framelens.yaml")
        with open(path, "w") as f:
            f.write("checksum_discovery:\n  min_samples: 7\n")

        config = load_config(path)

        assert get_config() is config
        assert config.checksum_discovery.min_samples == 7
