"""
Thin async adapter over bleak for the link manager.

Keeps every bleak call in one place so the connection state machine can be
driven by a test double with the same methods.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

logger = logging.getLogger(__name__)

# (name, advertised service uuids, address) -> should connect
DeviceMatcher = Callable[[Optional[str], list[str], str], bool]


@dataclass
class FoundDevice:
    """A peripheral picked during discovery."""

    address: str
    name: Optional[str]
    handle: Any = None


class BleakTransport:
    """Scanning and GATT access for a single peripheral."""

    def __init__(self) -> None:
        self._client: Optional[BleakClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def find_device(
        self, matcher: DeviceMatcher, timeout: float
    ) -> Optional[FoundDevice]:
        """Scan until a device satisfies ``matcher`` or the timeout expires."""
        names: dict[str, Optional[str]] = {}

        def _filter(device: BLEDevice, adv: AdvertisementData) -> bool:
            name = device.name or adv.local_name
            logger.debug(f"Discovered: {name or 'Unknown'} ({device.address})")
            names[device.address] = name
            return matcher(name, list(adv.service_uuids or []), device.address)

        device = await BleakScanner.find_device_by_filter(_filter, timeout=timeout)
        if device is None:
            return None
        # Some consoles only put their name in the advertisement
        name = names.get(device.address) or device.name
        return FoundDevice(address=device.address, name=name, handle=device)

    async def find_by_address(
        self, address: str, timeout: float
    ) -> Optional[FoundDevice]:
        """Look up a remembered peripheral without a full scan."""
        device = await BleakScanner.find_device_by_address(address, timeout=timeout)
        if device is None:
            return None
        return FoundDevice(address=device.address, name=device.name, handle=device)

    async def connect(
        self, device: FoundDevice, on_disconnect: Callable[[], None]
    ) -> None:
        """Open a GATT connection; raises on failure."""

        def _disconnected(client: BleakClient) -> None:
            on_disconnect()

        self._client = BleakClient(
            device.handle or device.address,
            disconnected_callback=_disconnected,
        )
        await self._client.connect()

    def has_characteristic(self, uuid: str) -> bool:
        if self._client is None:
            return False
        return self._client.services.get_characteristic(uuid) is not None

    async def start_notify(self, uuid: str, callback: Callable[[bytes], None]) -> None:
        def _handler(sender: Any, data: bytearray) -> None:
            callback(bytes(data))

        assert self._client is not None
        await self._client.start_notify(uuid, _handler)

    async def write(self, uuid: str, data: bytes) -> None:
        assert self._client is not None
        await self._client.write_gatt_char(uuid, data, response=True)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()
