"""
FrameLens Engine - Core Module

This module provides the core infrastructure for the discovery engine including
configuration management, exception handling and structured logging.
"""

from .config import (
    Config,
    ChecksumDiscoveryConfig,
    AutoDetectConfig,
    PatternClassifierConfig,
    MuxDetectionConfig,
    FramingConfig,
    MirrorConfig,
    SerialStructureConfig,
    get_config,
    set_config,
    load_config,
)
from .exceptions import (
    FrameLensException,
    ConfigurationException,
    DataException,
    ChecksumPrimitiveException,
    DiscoveryException,
    AnalysisCancelledException,
)

__version__ = "1.0.0"
__all__ = [
    "Config",
    "ChecksumDiscoveryConfig",
    "AutoDetectConfig",
    "PatternClassifierConfig",
    "MuxDetectionConfig",
    "FramingConfig",
    "MirrorConfig",
    "SerialStructureConfig",
    "get_config",
    "set_config",
    "load_config",
    "FrameLensException",
    "ConfigurationException",
    "DataException",
    "ChecksumPrimitiveException",
    "DiscoveryException",
    "AnalysisCancelledException",
]
