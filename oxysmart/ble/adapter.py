"""
OxySmart BLE Adapter

Capability object wrapping bleak. The session only talks to the adapter it is
given, so tests can pass a fake with the same methods:

    adapter.discover(identity, timeout)          -> device or None
    adapter.connect(device, on_disconnect, timeout) -> link
    link.find_characteristic(uuid)               -> characteristic or None
    link.subscribe(characteristic, callback)     # callback(bytes)
    link.close()
    link.is_connected
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

try:
    from bleak import BleakClient, BleakScanner
    from bleak.exc import BleakError
except ImportError:
    raise ImportError("bleak not installed. Run: pip install bleak")

from oxysmart.data.models import DeviceIdentity
from oxysmart.ble.protocol import DEFAULT_ADAPTER

log = logging.getLogger(__name__)


class BleakLink:
    """One live GATT connection, owned by exactly one Session."""

    def __init__(self, client: BleakClient):
        self.client = client
        self._subscribed = None

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    @property
    def address(self) -> str:
        return self.client.address

    def find_characteristic(self, uuid: str):
        """Return the characteristic if present and notifiable, else None."""
        characteristic = self.client.services.get_characteristic(uuid)
        if characteristic is None:
            log.debug(f"Characteristic {uuid} not found on {self.address}")
            return None
        if "notify" not in characteristic.properties:
            log.debug(f"Characteristic {uuid} has no notify property: {characteristic.properties}")
            return None
        return characteristic

    async def subscribe(self, characteristic, callback: Callable[[bytes], None]):
        """Start notifications, delivering each payload as bytes."""
        def handler(_sender, data: bytearray):
            callback(bytes(data))

        await self.client.start_notify(characteristic, handler)
        self._subscribed = characteristic

    async def close(self):
        """Stop notifications and disconnect."""
        if not self.client.is_connected:
            return

        if self._subscribed is not None:
            try:
                await self.client.stop_notify(self._subscribed)
            except (BleakError, EOFError, OSError) as e:
                # Link may already be dropping
                log.debug(f"stop_notify failed: {e}")
            self._subscribed = None

        await self.client.disconnect()


class BleakAdapter:
    """Discovery and connection through bleak."""

    def __init__(self, adapter: Optional[str] = DEFAULT_ADAPTER):
        """Initialize adapter.

        Args:
            adapter: Bluetooth adapter (e.g., 'hci0'). None uses the default.
        """
        self.adapter = adapter

    def _kwargs(self) -> Dict[str, str]:
        return {"adapter": self.adapter} if self.adapter else {}

    async def discover(self, identity: DeviceIdentity, timeout: float):
        """Scan until a device matching the identity shows up.

        Returns:
            BLEDevice if found, None otherwise.
        """
        log.info(f"Scanning {timeout:.0f}s for {identity.describe()}...")
        if identity.address:
            return await BleakScanner.find_device_by_address(
                identity.address, timeout=timeout, **self._kwargs()
            )
        return await BleakScanner.find_device_by_filter(
            identity.matches, timeout=timeout, **self._kwargs()
        )

    async def connect(self, device, on_disconnect: Callable[[], None], timeout: float) -> BleakLink:
        """Connect to a discovered device.

        on_disconnect is called (from bleak's callback) when the link drops.
        """
        client = BleakClient(
            device,
            disconnected_callback=lambda _client: on_disconnect(),
            timeout=timeout,
            **self._kwargs(),
        )
        try:
            await client.connect()
        except BaseException:
            # Includes cancellation
            await _abort(client)
            raise
        return BleakLink(client)

    async def scan(self, timeout: float) -> List[Tuple[object, object]]:
        """Return every (device, advertisement) seen during the scan."""
        seen = await BleakScanner.discover(timeout=timeout, return_adv=True, **self._kwargs())
        return list(seen.values())


async def _abort(client: BleakClient):
    try:
        await asyncio.shield(client.disconnect())
    except (BleakError, EOFError, OSError) as e:
        log.debug(f"Disconnect after failed connect: {e}")
