"""
OxySmart BLE Session

One Session is one live link to the oximeter: discovery, connect,
characteristic lookup, subscription, and the queue notifications arrive on.
It owns its link and its FrameDecoder; when anything goes wrong it is
closed and thrown away, and the supervisor builds a fresh one.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional, Union

from oxysmart.data.models import DeviceIdentity, Reading
from oxysmart.ble.decoder import Checksum, FrameDecoder
from oxysmart.ble.protocol import (
    NOTIFY_CHAR_UUID, DEFAULT_SCAN_TIMEOUT, DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_GARBAGE, format_hex,
)
from oxysmart.ble.state import ConnectionState

log = logging.getLogger(__name__)


# ============================================================================
# Errors and Outcomes
# ============================================================================

class ConnectError(Exception):
    """A session could not be established. The attempt is over."""


class NotFound(ConnectError):
    """No device matching the identity was discovered."""


class ConnectFailed(ConnectError):
    """The link layer connection failed."""


class SubscribeFailed(ConnectError):
    """Connected, but the notify characteristic could not be subscribed."""


class Outcome(Enum):
    """Non-data results of reading from a session."""
    DISCONNECTED = "disconnected"
    DECODE_FATAL = "decode_fatal"
    STALLED = "stalled"

    def __str__(self):
        return self.value


_DISCONNECT = object()


# ============================================================================
# Session
# ============================================================================

class Session:
    """A single connection to the oximeter. Never reused after it ends."""

    def __init__(self, identity: DeviceIdentity, max_garbage: int = DEFAULT_MAX_GARBAGE,
                 on_chunk: Optional[Callable[[bytes], None]] = None,
                 checksum: Optional[Checksum] = None):
        self.identity = identity
        self.on_chunk = on_chunk
        self.link = None
        self.characteristic = None
        self.decoder = FrameDecoder(max_garbage=max_garbage, checksum=checksum)

        self.terminated = False
        self.closed = False
        self.chunks_received = 0

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()

    @classmethod
    async def open(
        cls,
        adapter,
        identity: DeviceIdentity,
        *,
        characteristic_uuid: str = NOTIFY_CHAR_UUID,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_garbage: int = DEFAULT_MAX_GARBAGE,
        checksum: Optional[Checksum] = None,
        on_stage: Optional[Callable[[ConnectionState], None]] = None,
        on_chunk: Optional[Callable[[bytes], None]] = None,
    ) -> "Session":
        """Discover, connect and subscribe.

        Raises:
            NotFound: no matching device was seen during the scan.
            ConnectFailed: connecting to the device failed.
            SubscribeFailed: the service lookup failed, the characteristic is
                missing, or start_notify failed.
        """
        def stage(state: ConnectionState):
            if on_stage:
                on_stage(state)

        session = cls(identity, max_garbage=max_garbage, on_chunk=on_chunk, checksum=checksum)

        stage(ConnectionState.DISCOVERING)
        try:
            device = await adapter.discover(identity, scan_timeout)
        except Exception as e:
            raise NotFound(f"Scan failed: {e}") from e
        if device is None:
            raise NotFound(f"No device matching {identity.describe()}")

        log.info(f"Found matching peripheral {device.name or device.address!r}")

        stage(ConnectionState.CONNECTING)
        try:
            session.link = await adapter.connect(device, session._on_disconnect, connect_timeout)
        except Exception as e:
            raise ConnectFailed(f"Error connecting to {device.address}: {e}") from e

        stage(ConnectionState.SUBSCRIBING)
        try:
            await session._subscribe(characteristic_uuid)
        except BaseException:
            await session.close()
            raise

        log.info(f"Subscribed to {characteristic_uuid} on {device.address}")
        return session

    async def _subscribe(self, characteristic_uuid: str):
        try:
            characteristic = self.link.find_characteristic(characteristic_uuid)
        except Exception as e:
            # bleak raises when service discovery did not complete before a drop
            raise SubscribeFailed(f"Service lookup for {characteristic_uuid} failed: {e}") from e
        if characteristic is None:
            raise SubscribeFailed(f"Couldn't find notifiable characteristic {characteristic_uuid}")
        try:
            await self.link.subscribe(characteristic, self._on_notify)
        except Exception as e:
            raise SubscribeFailed(f"Subscribe to {characteristic_uuid} failed: {e}") from e
        self.characteristic = characteristic

    # ========================================================================
    # Adapter callbacks
    # ========================================================================

    def _on_notify(self, data: bytes):
        self._loop.call_soon_threadsafe(self._queue.put_nowait, data)

    def _on_disconnect(self):
        self._loop.call_soon_threadsafe(self._queue.put_nowait, _DISCONNECT)

    # ========================================================================
    # Reading
    # ========================================================================

    async def next_chunk(self, timeout: Optional[float] = None) -> Union[bytes, Outcome]:
        """Wait for the next raw notification payload.

        Returns:
            The payload, Outcome.DISCONNECTED once the link is gone, or
            Outcome.STALLED if nothing arrived within timeout.
        """
        if self.terminated:
            return Outcome.DISCONNECTED

        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return Outcome.STALLED

        if item is _DISCONNECT:
            log.info("Disconnected from peripheral")
            self.terminated = True
            return Outcome.DISCONNECTED

        self.chunks_received += 1
        log.debug(f"Got raw data: {format_hex(item)}")
        if self.on_chunk:
            self.on_chunk(item)
        return item

    async def next_readings(self, inactivity_timeout: Optional[float] = None) -> Union[List[Reading], Outcome]:
        """Read chunks until the decoder yields at least one Reading.

        Chunks that decode to nothing do not extend the inactivity deadline.
        """
        deadline = None
        if inactivity_timeout is not None:
            deadline = self._loop.time() + inactivity_timeout

        while True:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - self._loop.time())

            chunk = await self.next_chunk(remaining)
            if isinstance(chunk, Outcome):
                return chunk

            readings = self.decoder.feed(chunk)
            if self.decoder.exhausted:
                log.warning(f"No valid frame in the last {self.decoder.garbage_run} bytes, giving up on session")
                self.terminated = True
                return Outcome.DECODE_FATAL
            if readings:
                return readings

    # ========================================================================
    # Teardown
    # ========================================================================

    async def close(self):
        """Release the link. Safe to call more than once."""
        self.terminated = True
        if self.closed:
            return
        self.closed = True

        if self.link is None:
            return

        log.info("Disconnecting from peripheral...")
        try:
            await self.link.close()
        except Exception as e:
            log.warning(f"Disconnect error: {e}")
