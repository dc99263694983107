"""
FrameLens Engine

Protocol structure discovery for captured CAN, Modbus and serial traffic.
"""

from .core import Config, FrameLensException, __version__

__all__ = ["Config", "FrameLensException", "__version__"]
