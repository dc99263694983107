"""
FrameLens Engine - Configuration Management

This module provides configuration management for the discovery engine. All
tuned heuristic constants live here as named settings so that callers can
adjust them without touching the analysis code.
"""

import os
import yaml
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Union
from pathlib import Path
from enum import Enum
import logging

from .exceptions import ConfigurationException

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class ChecksumDiscoveryConfig:
    """Checksum discovery search settings."""

    min_samples: int = 10
    min_match_rate: float = 95.0  # percent
    checksum_positions: List[int] = field(default_factory=lambda: [-1, -2])
    try_simple_first: bool = True
    brute_force_crc16: bool = False
    max_samples_per_frame_id: int = 100

    # Progress and scheduling
    crc8_progress_interval: int = 100
    crc16_progress_interval: int = 500
    yield_interval: int = 64


@dataclass
class AutoDetectConfig:
    """Known-algorithm auto detection settings."""

    max_samples: int = 20
    calc_start: int = 0


@dataclass
class PatternClassifierConfig:
    """Byte role classification thresholds."""

    counter_consistency: float = 0.8
    rollover_threshold_8: int = 200
    rollover_threshold_16: int = 60000
    sensor_trend_threshold: float = 0.6
    sensor_mixed_activity: float = 0.5
    value_unique_ratio: float = 0.1

    # Looping counters
    looping_max_unique: int = 16
    looping_min_samples: int = 5
    looping_strict_sample_count: int = 50
    looping_expected_wrap_ratio: float = 0.5

    # Rollover correlation windows
    rollover_high_8: int = 250
    rollover_low_8: int = 5
    rollover_high_16: int = 65000
    rollover_low_16: int = 500
    rollover_min_samples: int = 5

    # Slow-changing upper bytes for 32-bit sensors
    slow_min_unique: int = 2
    slow_max_unique: int = 20
    slow_min_samples: int = 1000
    slow_max_ratio: float = 0.001

    # ASCII text runs
    text_printable_ratio: float = 0.9
    text_min_length: int = 2
    text_min_samples: int = 3


@dataclass
class MuxDetectionConfig:
    """Multiplexed frame selector heuristics."""

    min_payloads: int = 4
    min_unique: int = 2
    max_unique: int = 16
    max_start_value: int = 2
    max_value: int = 31
    min_coverage: float = 0.5
    coverage_override_values: int = 4
    balance_ratio: float = 3.0
    two_byte_balance_ratio: float = 2.0


@dataclass
class FramingConfig:
    """Raw stream framing detection settings."""

    modbus_min_frame: int = 4
    modbus_max_frame: int = 256
    modbus_min_address: int = 1
    modbus_max_address: int = 247
    modbus_min_function: int = 1
    modbus_max_function: int = 127
    reasonable_min_frame: int = 4
    reasonable_max_frame: int = 256
    text_ratio: float = 0.7


@dataclass
class MirrorConfig:
    """Mirror frame detection settings."""

    tolerance_us: int = 50000
    min_samples: int = 3
    min_match_percentage: float = 80.0


@dataclass
class SerialStructureConfig:
    """Serial frame structure analysis settings."""

    max_id_position: int = 4
    id_min_confidence: float = 30.0
    id_two_byte_min_confidence: float = 35.0
    source_search_depth: int = 4
    source_min_confidence: float = 30.0
    source_two_byte_min_confidence: float = 35.0
    checksum_min_match_rate: float = 50.0
    checksum_rate_tie_window: float = 5.0


@dataclass
class Config:
    """Main configuration class."""

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_json: bool = False

    # Component configurations
    checksum_discovery: ChecksumDiscoveryConfig = field(
        default_factory=ChecksumDiscoveryConfig
    )
    auto_detect: AutoDetectConfig = field(default_factory=AutoDetectConfig)
    patterns: PatternClassifierConfig = field(default_factory=PatternClassifierConfig)
    mux: MuxDetectionConfig = field(default_factory=MuxDetectionConfig)
    framing: FramingConfig = field(default_factory=FramingConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    serial_structure: SerialStructureConfig = field(default_factory=SerialStructureConfig)

    # Orchestrator
    run_checksum_discovery: bool = True
    run_mirror_detection: bool = True

    @classmethod
    def load_from_file(cls, config_path: Union[str, Path]) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigurationException(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationException(f"Invalid YAML in configuration file: {e}")

        if not isinstance(config_data, dict):
            raise ConfigurationException(
                f"Configuration file must contain a mapping: {config_path}"
            )
        return cls._from_dict(config_data)

    @classmethod
    def load_from_env(cls, prefix: str = "FRAMELENS_") -> "Config":
        """Load configuration from environment variables."""
        config = cls()

        config.log_level = LogLevel(
            os.getenv(f"{prefix}LOG_LEVEL", config.log_level.value).upper()
        )
        config.log_json = (
            os.getenv(f"{prefix}LOG_JSON", str(config.log_json)).lower() == "true"
        )

        # Checksum discovery overrides
        if os.getenv(f"{prefix}MIN_MATCH_RATE"):
            config.checksum_discovery.min_match_rate = float(
                os.getenv(f"{prefix}MIN_MATCH_RATE")
            )
        if os.getenv(f"{prefix}MIN_SAMPLES"):
            config.checksum_discovery.min_samples = int(os.getenv(f"{prefix}MIN_SAMPLES"))
        if os.getenv(f"{prefix}BRUTE_FORCE_CRC16"):
            config.checksum_discovery.brute_force_crc16 = (
                os.getenv(f"{prefix}BRUTE_FORCE_CRC16").lower() == "true"
            )

        # Mirror overrides
        if os.getenv(f"{prefix}MIRROR_TOLERANCE_US"):
            config.mirror.tolerance_us = int(os.getenv(f"{prefix}MIRROR_TOLERANCE_US"))

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create configuration from dictionary."""
        config = cls()

        if "log_level" in data:
            config.log_level = LogLevel(str(data["log_level"]).upper())
        if "log_json" in data:
            config.log_json = data["log_json"]

        sections = {
            "checksum_discovery": ChecksumDiscoveryConfig,
            "auto_detect": AutoDetectConfig,
            "patterns": PatternClassifierConfig,
            "mux": MuxDetectionConfig,
            "framing": FramingConfig,
            "mirror": MirrorConfig,
            "serial_structure": SerialStructureConfig,
        }
        for key, section_cls in sections.items():
            if key not in data:
                continue
            known = {f.name for f in fields(section_cls)}
            unknown = set(data[key]) - known
            if unknown:
                raise ConfigurationException(
                    f"Unknown settings in '{key}': {', '.join(sorted(unknown))}",
                    config_key=key,
                )
            setattr(config, key, section_cls(**data[key]))

        for key in ["run_checksum_discovery", "run_mirror_detection"]:
            if key in data:
                setattr(config, key, data[key])

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "log_level": self.log_level.value,
            "log_json": self.log_json,
            "checksum_discovery": asdict(self.checksum_discovery),
            "auto_detect": asdict(self.auto_detect),
            "patterns": asdict(self.patterns),
            "mux": asdict(self.mux),
            "framing": asdict(self.framing),
            "mirror": asdict(self.mirror),
            "serial_structure": asdict(self.serial_structure),
            "run_checksum_discovery": self.run_checksum_discovery,
            "run_mirror_detection": self.run_mirror_detection,
        }

    def validate(self) -> None:
        """Validate configuration settings."""
        errors = []

        discovery = self.checksum_discovery
        if discovery.min_samples <= 0:
            errors.append("Checksum min_samples must be positive")
        if not 0 <= discovery.min_match_rate <= 100:
            errors.append("Checksum min_match_rate must be between 0 and 100")
        if discovery.max_samples_per_frame_id < discovery.min_samples:
            errors.append("max_samples_per_frame_id must be at least min_samples")
        if not discovery.checksum_positions:
            errors.append("At least one checksum position is required")
        if any(p == 0 for p in discovery.checksum_positions):
            errors.append("Checksum positions must be non-zero")

        if self.auto_detect.max_samples <= 0:
            errors.append("Auto-detect max_samples must be positive")

        if not 0 < self.patterns.counter_consistency <= 1:
            errors.append("Counter consistency must be between 0 and 1")
        if not 0 < self.patterns.text_printable_ratio <= 1:
            errors.append("Text printable ratio must be between 0 and 1")

        if self.mux.min_unique > self.mux.max_unique:
            errors.append("Mux min_unique must not exceed max_unique")

        if self.framing.modbus_min_frame < 4:
            errors.append("Modbus frames need at least 4 bytes")
        if self.framing.modbus_max_frame < self.framing.modbus_min_frame:
            errors.append("Modbus max frame must not be below min frame")

        if self.mirror.tolerance_us < 0:
            errors.append("Mirror tolerance must not be negative")
        if not 0 <= self.mirror.min_match_percentage <= 100:
            errors.append("Mirror match percentage must be between 0 and 100")

        if not 0 <= self.serial_structure.checksum_min_match_rate <= 100:
            errors.append("Serial checksum match rate must be between 0 and 100")

        if errors:
            raise ConfigurationException(
                f"Configuration validation failed: {'; '.join(errors)}"
            )


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load_from_env()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    config.validate()
    _config = config


def load_config(config_path: Union[str, Path]) -> Config:
    """Load and set configuration from file."""
    config = Config.load_from_file(config_path)
    set_config(config)
    return config
