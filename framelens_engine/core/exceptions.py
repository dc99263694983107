"""
FrameLens Engine - Custom Exceptions

This module defines custom exception classes for the discovery engine.
"""

from typing import Any, Dict, Optional


class FrameLensException(Exception):
    """Base exception for all FrameLens Engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "FRAMELENS_ERROR"
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (Code: {self.error_code}, Context: {self.context})"
        return f"{self.message} (Code: {self.error_code})"


class ConfigurationException(FrameLensException):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message,
            error_code="CONFIG_ERROR",
            context={"config_key": config_key} if config_key else {},
        )


class DataException(FrameLensException):
    """Exception raised for malformed capture data."""

    def __init__(
        self,
        message: str,
        data_source: Optional[str] = None,
        line_number: Optional[int] = None,
    ):
        context = {}
        if data_source:
            context["data_source"] = data_source
        if line_number is not None:
            context["line_number"] = line_number

        super().__init__(message, error_code="DATA_ERROR", context=context)


class ChecksumPrimitiveException(FrameLensException):
    """Exception raised when the checksum primitive cannot evaluate a request."""

    def __init__(
        self,
        message: str,
        algorithm: Optional[str] = None,
        bit_width: Optional[int] = None,
        polynomial: Optional[int] = None,
    ):
        context = {}
        if algorithm:
            context["algorithm"] = algorithm
        if bit_width is not None:
            context["bit_width"] = bit_width
        if polynomial is not None:
            context["polynomial"] = f"0x{polynomial:X}"

        super().__init__(message, error_code="CHECKSUM_PRIMITIVE_ERROR", context=context)


class DiscoveryException(FrameLensException):
    """Exception raised during a discovery pass."""

    def __init__(
        self,
        message: str,
        analysis: Optional[str] = None,
        frame_id: Optional[int] = None,
    ):
        context = {}
        if analysis:
            context["analysis"] = analysis
        if frame_id is not None:
            context["frame_id"] = frame_id

        super().__init__(message, error_code="DISCOVERY_ERROR", context=context)


class AnalysisCancelledException(FrameLensException):
    """Exception raised when a running analysis is cancelled by its caller."""

    def __init__(self, message: str = "Analysis cancelled", phase: Optional[str] = None):
        context = {"phase": phase} if phase else {}
        super().__init__(message, error_code="ANALYSIS_CANCELLED", context=context)
