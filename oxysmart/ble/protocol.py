"""
OxySmart BLE Protocol Constants and Frame Helpers

Contains UUIDs, frame layout constants, the checksum, and default
configuration for the OxySmart / PC-60FW pulse-oximeter notification stream.
"""

import struct

# ============================================================================
# BLE UUIDs
# ============================================================================

# Nordic UART Service, the oximeter pushes its stream on the TX characteristic
SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NOTIFY_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

# ============================================================================
# Default Configuration
# ============================================================================

# Only devices whose name contains this string are tried
DEFAULT_NAME_FILTER = "OxySmart"

# Default BLE adapter (None = platform default)
DEFAULT_ADAPTER = None

DEFAULT_SCAN_TIMEOUT = 5.0
DEFAULT_CONNECT_TIMEOUT = 20.0

# No reading for this long means the session is stalled and gets replaced
DEFAULT_INACTIVITY_TIMEOUT = 30.0

# Delay between reconnect attempts (doubles per failure up to the maximum)
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_MAX_RETRY_DELAY = 30.0

# Bytes discarded without a single valid frame before the session is dropped
DEFAULT_MAX_GARBAGE = 4096

# ============================================================================
# Frame Layout
# ============================================================================
#
#   aa 55 <token> <len> <type> <payload...> <crc8>
#
# <len> counts every byte after itself, type and crc included.

FRAME_HEADER = bytes([0xaa, 0x55])
HEADER_SIZE = 4

MIN_FRAME_LENGTH = 2     # type + crc
MAX_FRAME_LENGTH = 32

TOKEN_DATA = 0x0f

TYPE_PARAMS = 0x01
TYPE_WAVEFORM = 0x02

FRAME_TYPES = {
    TYPE_PARAMS: "PARAMS",
    TYPE_WAVEFORM: "WAVEFORM",
}

# Parameter payload: spo2(1) pulse_rate(2 LE) perfusion_index(1) status...
# spo2 and the pulse rate low byte are frame bytes 5 and 6
PARAMS_FORMAT = '<BHB'
PARAMS_MIN_PAYLOAD = struct.calcsize(PARAMS_FORMAT)

WAVEFORM_VALUE_MASK = 0x7f
WAVEFORM_BEAT_FLAG = 0x80

# Valid ranges; anything else is reported as "no value"
SPO2_RANGE = (1, 100)
PULSE_RATE_RANGE = (1, 300)

# Candidate checksums for the trailing frame byte. None of them is confirmed
# against a hardware capture yet, so frames are accepted on marker, length,
# token and type alone unless one is selected.
CRC8_POLY = 0x07            # CRC-8, x^8 + x^2 + x + 1, init 0
CRC8_MAXIM_POLY = 0x8c      # CRC-8/MAXIM, reflected 0x31, init 0

DEFAULT_CHECKSUM = "none"

# ============================================================================
# Helper Functions
# ============================================================================


def crc8(data: bytes) -> int:
    """CRC-8 (poly 0x07, init 0). Check value for b"123456789" is 0xf4."""
    crc = 0x00
    for b in data:
        crc ^= b
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ CRC8_POLY) & 0xff
            else:
                crc = (crc << 1) & 0xff
    return crc


def crc8_maxim(data: bytes) -> int:
    """CRC-8/MAXIM (Dallas 1-Wire). Check value for b"123456789" is 0xa1."""
    crc = 0x00
    for b in data:
        crc ^= b
        for _ in range(8):
            if crc & 0x01:
                crc = (crc >> 1) ^ CRC8_MAXIM_POLY
            else:
                crc >>= 1
    return crc


# CLI name -> checksum function (None = not verified)
CHECKSUMS = {
    "none": None,
    "crc8": crc8,
    "crc8-maxim": crc8_maxim,
}


def get_frame_type_name(frame_type: int) -> str:
    """Get frame type name from the type byte."""
    return FRAME_TYPES.get(frame_type, f"UNKNOWN_{frame_type:02x}")


def format_hex(data: bytes) -> str:
    """Format bytes as hex string."""
    return ' '.join(f'{b:02x}' for b in data)


def build_frame(frame_type: int, payload: bytes, token: int = TOKEN_DATA,
                checksum=crc8) -> bytes:
    """Build a complete frame with header, length and checksum.

    Args:
        frame_type: Type byte (TYPE_PARAMS, TYPE_WAVEFORM, ...)
        payload: Bytes between the type byte and the checksum
        token: Token byte after the marker (0x0f for measurement data)
        checksum: Function computing the trailing byte

    Returns:
        The frame exactly as the device sends it.
    """
    length = len(payload) + 2
    if not MIN_FRAME_LENGTH <= length <= MAX_FRAME_LENGTH:
        raise ValueError(f"Payload of {len(payload)} bytes does not fit a frame")

    body = FRAME_HEADER + bytes([token, length, frame_type]) + bytes(payload)
    return body + bytes([checksum(body)])


def build_params_frame(spo2: int, pulse_rate: int, perfusion_index: int = 0,
                       status: bytes = b'\x00\x00', checksum=crc8) -> bytes:
    """Build a parameter frame (SpO2, pulse rate, PI in tenths of a percent)."""
    payload = struct.pack(PARAMS_FORMAT, spo2, pulse_rate, perfusion_index) + status
    return build_frame(TYPE_PARAMS, payload, checksum=checksum)


def build_waveform_frame(samples, checksum=crc8) -> bytes:
    """Build a waveform frame from raw sample bytes (beat flag in bit 7)."""
    return build_frame(TYPE_WAVEFORM, bytes(samples), checksum=checksum)
