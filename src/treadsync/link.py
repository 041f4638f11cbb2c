"""
Connection state machine for the treadmill console.

Handles discovery, the handshake, the polling loop and recovery from
dropped links. All callbacks and tasks run on one asyncio event loop, so
state changes never interleave.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from bleak.exc import BleakError

from .core import (
    CHARACTERISTIC_UUID,
    DEVICE_IDENTITY_KEY,
    DEVICE_NAME_KEYWORDS,
    HANDSHAKE_COMMANDS,
    SERVICE_UUID,
    LinkSettings,
)
from .observable import Observable
from .protocol import POLL_SEQUENCE, ProtocolCodec, Query, SampleFrame
from .storage import StateStore
from .transport import BleakTransport, FoundDevice

logger = logging.getLogger(__name__)


class StateKind(Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LINK_SILENTLY_OFF = "link_silently_off"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """Current link state; ``reason`` is only set for errors."""

    kind: StateKind
    reason: Optional[str] = None

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(StateKind.DISCONNECTED)

    @classmethod
    def scanning(cls) -> "ConnectionState":
        return cls(StateKind.SCANNING)

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(StateKind.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionState":
        return cls(StateKind.CONNECTED)

    @classmethod
    def silently_off(cls) -> "ConnectionState":
        return cls(StateKind.LINK_SILENTLY_OFF)

    @classmethod
    def error(cls, reason: str) -> "ConnectionState":
        return cls(StateKind.ERROR, reason)

    @property
    def is_connected(self) -> bool:
        return self.kind is StateKind.CONNECTED

    @property
    def needs_manual_retry(self) -> bool:
        return self.kind in (StateKind.LINK_SILENTLY_OFF, StateKind.ERROR)

    def __str__(self) -> str:
        if self.kind is StateKind.ERROR:
            return f"Error: {self.reason}"
        if self.kind is StateKind.LINK_SILENTLY_OFF:
            return "Treadmill BLE off"
        return self.kind.value.capitalize()


class LinkSetupError(Exception):
    """The connected peripheral does not expose the console characteristic."""


class PendingQueryQueue:
    """FIFO of queries awaiting a response, dropping the oldest when full."""

    def __init__(self, maxsize: int = 10) -> None:
        self.maxsize = maxsize
        self._queries: deque[Query] = deque()

    def push(self, query: Query) -> None:
        self._queries.append(query)
        # Console stopped answering; forget the stale requests
        while len(self._queries) > self.maxsize:
            dropped = self._queries.popleft()
            logger.debug(f"Dropped unanswered query: {dropped.name}")

    def pop(self) -> Optional[Query]:
        if not self._queries:
            return None
        return self._queries.popleft()

    def clear(self) -> None:
        self._queries.clear()

    def __len__(self) -> int:
        return len(self._queries)


def backoff_delay(attempt: int, cap: float = 30.0) -> float:
    """Seconds to wait before reconnect ``attempt`` (1-based)."""
    return min(2.0 ** (attempt - 1), cap)


def is_likely_treadmill(name: Optional[str]) -> bool:
    """Check a device name against known console name fragments."""
    if not name:
        return False
    lowered = name.lower()
    return any(keyword in lowered for keyword in DEVICE_NAME_KEYWORDS)


class LinkManager:
    """Owns the BLE connection to one treadmill console.

    Exposes ``connection_state`` and ``current_sample`` observables and the
    commands ``start_scanning``, ``retry_connection``, ``forget_device`` and
    ``stop``.
    """

    def __init__(
        self,
        transport: Optional[Any] = None,
        store: Optional[StateStore] = None,
        settings: Optional[LinkSettings] = None,
        codec: Optional[ProtocolCodec] = None,
    ) -> None:
        """Initialize the link with no device connection.

        Args:
            transport: Object with the BleakTransport interface
            store: Persistent storage for the bonded device identity
            settings: Timing and retry tunables
            codec: Response decoder (one is created if None)
        """
        self.transport = transport or BleakTransport()
        self.store = store or StateStore()
        self.settings = settings or LinkSettings()
        self.codec = codec or ProtocolCodec()

        self.connection_state: Observable[ConnectionState] = Observable(
            ConnectionState.disconnected()
        )
        self.current_sample: Observable[SampleFrame] = Observable(SampleFrame())
        self.last_sync_time: Optional[datetime] = None

        self._pending = PendingQueryQueue(self.settings.max_pending_queries)
        self._device: Optional[FoundDevice] = None
        self._link_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._consecutive_drops = 0
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        return self.connection_state.value

    @property
    def device_name(self) -> Optional[str]:
        return self._device.name if self._device else None

    @property
    def device_identity(self) -> Optional[str]:
        """Address of the remembered console, if any."""
        data = self.store.load(DEVICE_IDENTITY_KEY)
        if isinstance(data, dict):
            return data.get("address")
        return None

    @property
    def pending_queries(self) -> int:
        return len(self._pending)

    # ========== Commands ==========

    async def start_scanning(self) -> ConnectionState:
        """Find the console and connect to it.

        Returns:
            The connection state once the attempt has finished
        """
        if self.state.is_connected:
            logger.warning("Already connected")
            return self.state

        self._cancel_link_task()
        self._link_task = asyncio.create_task(self._discover_and_connect())
        task = self._link_task
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()
        return self.state

    async def retry_connection(self) -> ConnectionState:
        """Manual retry after an error or a silently disabled link."""
        logger.info("Manual reconnection requested")
        if self.state.is_connected:
            logger.warning("Already connected")
            return self.state

        task = self._link_task
        self._cancel_link_task()
        if task and task is not asyncio.current_task():
            await asyncio.wait({task})
        if self.transport.is_connected:
            # Cancelled mid-handshake, the radio link is still up
            self._closing = True
            await self._safe_disconnect()

        self._reconnect_attempts = 0
        self._consecutive_drops = 0
        self._set_state(ConnectionState.disconnected())
        return await self.start_scanning()

    async def forget_device(self) -> None:
        """Drop the remembered console and any connection to it."""
        logger.info("Forgetting saved treadmill")
        self.store.delete(DEVICE_IDENTITY_KEY)
        await self._shutdown()
        self._device = None
        self.codec.reset()
        self._reconnect_attempts = 0
        self._consecutive_drops = 0
        self._set_state(ConnectionState.disconnected())

    async def stop(self) -> None:
        """Disconnect without triggering reconnection."""
        await self._shutdown()
        self._set_state(ConnectionState.disconnected())

    # ========== Connection flow ==========

    def _set_state(self, state: ConnectionState) -> None:
        if self.connection_state.set(state):
            logger.info(f"Link state: {state}")

    def _matches(self, name: Optional[str], service_uuids: list, address: str) -> bool:
        if is_likely_treadmill(name):
            return True
        if SERVICE_UUID in [uuid.lower() for uuid in service_uuids]:
            return True
        remembered = self.device_identity
        return remembered is not None and remembered == address

    async def _discover_and_connect(self) -> None:
        device = await self._find_remembered()

        if device is None:
            logger.info("Scanning for LifeSpan treadmill...")
            self._set_state(ConnectionState.scanning())
            try:
                device = await self.transport.find_device(
                    self._matches, timeout=self.settings.scan_timeout
                )
            except (BleakError, OSError) as e:
                logger.error(f"Scan failed: {e}")
                self._set_state(ConnectionState.error("bluetooth unavailable"))
                return

            if device is None:
                logger.warning("Scanning timeout - no treadmill found")
                self._set_state(ConnectionState.error("not found"))
                return

        reason = await self._connect(device)
        if reason:
            self._set_state(ConnectionState.error(reason))

    async def _find_remembered(self) -> Optional[FoundDevice]:
        address = self.device_identity
        if not address:
            return None

        logger.info(f"Trying cached address: {address}")
        try:
            device = await self.transport.find_by_address(
                address, timeout=self.settings.cached_lookup_timeout
            )
        except (BleakError, OSError) as e:
            logger.warning(f"Cached address lookup failed: {e}")
            return None

        if device is None:
            return None
        if device.name and not is_likely_treadmill(device.name):
            logger.warning("Cached peripheral name mismatch, clearing saved identity")
            self.store.delete(DEVICE_IDENTITY_KEY)
            return None

        logger.info(f"Found cached peripheral: {device.name or 'Unknown'}")
        return device

    async def _connect(self, device: FoundDevice) -> Optional[str]:
        """Connect, handshake and start polling.

        Returns:
            None on success, otherwise a short failure reason
        """
        self._device = device
        self._closing = False
        self._set_state(ConnectionState.connecting())
        logger.info(f"Connecting to {device.name or device.address}...")

        try:
            await asyncio.wait_for(
                self.transport.connect(device, self._on_transport_disconnect),
                timeout=self.settings.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Connection timeout")
            await self._safe_disconnect()
            return "timeout"
        except (BleakError, OSError) as e:
            logger.error(f"Connection failed: {e}")
            return "failed"

        try:
            await self._handshake()
        except (BleakError, OSError, LinkSetupError) as e:
            logger.error(f"Link setup failed: {e}")
            await self._safe_disconnect()
            return "failed"

        self._reconnect_attempts = 0
        self._consecutive_drops = 0
        if is_likely_treadmill(device.name):
            self.store.save(DEVICE_IDENTITY_KEY, {"address": device.address})

        logger.info("Handshake complete, starting data poll")
        self._set_state(ConnectionState.connected())
        self._poll_task = asyncio.create_task(self._poll())
        return None

    async def _handshake(self) -> None:
        if not self.transport.has_characteristic(CHARACTERISTIC_UUID):
            raise LinkSetupError(f"characteristic {CHARACTERISTIC_UUID} not found")

        logger.info("Subscribing to notifications...")
        await self.transport.start_notify(CHARACTERISTIC_UUID, self._on_notification)
        await asyncio.sleep(self.settings.subscribe_settle)

        self._pending.clear()
        for index, command in enumerate(HANDSHAKE_COMMANDS, start=1):
            await self.transport.write(CHARACTERISTIC_UUID, command)
            logger.debug(f"Sent handshake command {index}/{len(HANDSHAKE_COMMANDS)}")
            await asyncio.sleep(self.settings.handshake_delay)

    async def _poll(self) -> None:
        """Cycle the metric queries until the link goes away."""
        try:
            while self.transport.is_connected:
                for query in POLL_SEQUENCE:
                    self._pending.push(query)
                    await self.transport.write(
                        CHARACTERISTIC_UUID, self.codec.encode(query)
                    )
                    await asyncio.sleep(self.settings.poll_interval)
        except (BleakError, OSError) as e:
            logger.error(f"Query write failed: {e}")
        finally:
            logger.info("Stopped data polling")

        if not self._closing:
            self._link_lost()

    def _on_notification(self, data: bytes) -> None:
        query = self._pending.pop()
        if query is None:
            logger.debug("Received data with no pending query")
            return

        value = self.codec.decode(query, data)
        self.last_sync_time = datetime.now()
        self.current_sample.set(self.current_sample.value.with_value(query, value))

    # ========== Recovery ==========

    def _on_transport_disconnect(self) -> None:
        if self._closing:
            return
        self._link_lost()

    def _link_lost(self) -> None:
        """React to an unexpected drop of an established link."""
        if not self.state.is_connected:
            return

        logger.warning("Disconnected from treadmill")
        self._stop_polling()
        self._pending.clear()
        self._set_state(ConnectionState.disconnected())
        self._link_task = asyncio.create_task(self._recover())

    async def _recover(self) -> None:
        """Reconnect with exponential backoff until connected or given up."""
        while True:
            self._consecutive_drops += 1
            if self._consecutive_drops >= self.settings.silent_link_threshold:
                # Repeated drops mean the console radio was switched off
                logger.warning("Likely BLE turned off on treadmill (walk-away)")
                self._set_state(ConnectionState.silently_off())
                return

            if self._reconnect_attempts >= self.settings.max_reconnect_attempts:
                logger.warning(
                    f"Max reconnection attempts reached "
                    f"({self.settings.max_reconnect_attempts})"
                )
                self._set_state(ConnectionState.error("connection lost"))
                return

            self._reconnect_attempts += 1
            delay = backoff_delay(self._reconnect_attempts, self.settings.backoff_cap)
            logger.info(
                f"Will attempt reconnection {self._reconnect_attempts}/"
                f"{self.settings.max_reconnect_attempts} in {delay:g}s..."
            )
            await asyncio.sleep(delay)

            if self._device is None:
                await self._discover_and_connect()
                return

            reason = await self._connect(self._device)
            if reason is None:
                return
            self._set_state(ConnectionState.disconnected())

    # ========== Teardown ==========

    def _cancel_link_task(self) -> None:
        task = self._link_task
        self._link_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _shutdown(self) -> None:
        self._closing = True
        self._cancel_link_task()
        self._stop_polling()
        self._pending.clear()
        await self._safe_disconnect()

    async def _safe_disconnect(self) -> None:
        try:
            await self.transport.disconnect()
        except (BleakError, OSError) as e:
            logger.warning(f"Disconnect failed: {e}")
