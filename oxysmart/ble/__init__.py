"""
OxySmart BLE Module

Connection lifecycle and frame decoding for the OxySmart pulse oximeter.
"""

from oxysmart.ble.adapter import BleakAdapter
from oxysmart.ble.decoder import decode, DecodeResult, FrameDecoder
from oxysmart.ble.protocol import (
    SERVICE_UUID,
    NOTIFY_CHAR_UUID,
    FRAME_HEADER,
    CHECKSUMS,
    crc8,
    crc8_maxim,
    format_hex,
)
from oxysmart.ble.session import (
    Session,
    Outcome,
    ConnectError,
    NotFound,
    ConnectFailed,
    SubscribeFailed,
)
from oxysmart.ble.state import ConnectionState
from oxysmart.ble.supervisor import Supervisor, ExponentialBackoff, fixed_delay

__all__ = [
    'BleakAdapter',
    'decode',
    'DecodeResult',
    'FrameDecoder',
    'SERVICE_UUID',
    'NOTIFY_CHAR_UUID',
    'FRAME_HEADER',
    'CHECKSUMS',
    'crc8',
    'crc8_maxim',
    'format_hex',
    'Session',
    'Outcome',
    'ConnectError',
    'NotFound',
    'ConnectFailed',
    'SubscribeFailed',
    'ConnectionState',
    'Supervisor',
    'ExponentialBackoff',
    'fixed_delay',
]
