"""
FrameLens Engine - Protocol Constants

This module defines fixed protocol values shared by the discovery analyses.
Tunable heuristics live in ``config.py``; the values here are defined by the
protocols themselves.
"""

# =============================================================================
# SLIP (RFC 1055)
# =============================================================================

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


# =============================================================================
# DELIMITER CANDIDATES (most likely first)
# =============================================================================

DELIMITER_CANDIDATES = (
    (b"\r\n", "CRLF"),
    (b"\n", "LF"),
    (b"\r", "CR"),
    (b"\x00", "NUL"),
    (b"\x03", "ETX"),
    (b"\x04", "EOT"),
)

TEXT_DELIMITERS = frozenset({"CRLF", "LF", "CR"})


# =============================================================================
# CHECKSUM SEARCH SPACE
# =============================================================================

# Common CRC-16 polynomials tried when full brute force is disabled
COMMON_CRC16_POLYNOMIALS = (
    0x8005,  # CRC-16-IBM/ANSI (USB, Modbus)
    0x1021,  # CRC-16-CCITT (X.25, HDLC)
    0x8BB7,  # CRC-16-T10-DIF
    0x3D65,  # CRC-16-DNP
    0x1DCF,  # CRC-16-MCRF4XX
    0x0589,  # CRC-16-DECT
    0x080D,  # CRC-16-ARINC
    0xC867,  # CRC-16-CDMA2000
    0x755B,  # CRC-16-DARC
    0x5935,  # CRC-16-DDS-110
    0x0599,  # CRC-16-DECT-R
    0xA097,  # CRC-16-RIELLO
    0x29B1,  # CRC-16-TELEDISK
    0x6F63,  # CRC-16-TMS37157
    0x8408,  # CRC-16-KERMIT (reflected 0x1021)
    0xA001,  # CRC-16-MODBUS (reflected 0x8005)
)

CRC8_INIT_VALUES = (0x00, 0xFF)
CRC8_XOR_OUT_VALUES = (0x00, 0xFF)
CRC16_INIT_VALUES = (0x0000, 0xFFFF)
CRC16_XOR_OUT_VALUES = (0x0000, 0xFFFF)


# =============================================================================
# PAYLOAD CLASSIFICATION
# =============================================================================

# Printable ASCII range plus tab, line feed and carriage return
PRINTABLE_MIN = 0x20
PRINTABLE_MAX = 0x7E
PRINTABLE_CONTROL = frozenset({0x09, 0x0A, 0x0D})

# Modbus RTU CRC parameters
MODBUS_CRC_INIT = 0xFFFF
MODBUS_CRC_POLY = 0x8005
MODBUS_CRC_POLY_REFLECTED = 0xA001


def is_printable_ascii(value: int) -> bool:
    """Return True for printable ASCII or tab/LF/CR."""
    return PRINTABLE_MIN <= value <= PRINTABLE_MAX or value in PRINTABLE_CONTROL
