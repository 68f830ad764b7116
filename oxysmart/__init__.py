"""OxySmart pulse-oximeter BLE library.

Keeps a connection to an OxySmart / PC-60FW oximeter alive across
disconnects and decodes its notification stream into readings.

Example:
    import asyncio
    from oxysmart import BleakAdapter, DeviceIdentity, Session, Supervisor, CsvSink

    adapter = BleakAdapter()
    identity = DeviceIdentity(name_filter="OxySmart")

    async def connect(on_stage):
        return await Session.open(adapter, identity, on_stage=on_stage)

    asyncio.run(Supervisor(connect, CsvSink()).run())
"""

from oxysmart.data.models import DeviceIdentity, Reading
from oxysmart.ble import (
    BleakAdapter,
    ConnectionState,
    ConnectError,
    NotFound,
    ConnectFailed,
    SubscribeFailed,
    Outcome,
    Session,
    Supervisor,
    ExponentialBackoff,
    FrameDecoder,
    decode,
)
from oxysmart.sinks import CsvSink, JsonLinesSink, RawCapture, read_capture

__all__ = [
    "DeviceIdentity",
    "Reading",
    "BleakAdapter",
    "ConnectionState",
    "ConnectError",
    "NotFound",
    "ConnectFailed",
    "SubscribeFailed",
    "Outcome",
    "Session",
    "Supervisor",
    "ExponentialBackoff",
    "FrameDecoder",
    "decode",
    "CsvSink",
    "JsonLinesSink",
    "RawCapture",
    "read_capture",
]

__version__ = "0.1.0"
