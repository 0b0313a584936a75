# greendrop/valve_control/device/base_device.py
"""BLE link driver for the GreenDrop valve controller.

Notes:
- Uses bleak-retry-connector for connection establishment and write retries.
- One service, one write characteristic, one notify characteristic. The
  stock firmware uses the same characteristic for both.
- Notifications are handed out as a NotifySubscription; whoever holds it is
  the only one able to stop them, and stopping happens at most once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

# Editor-only types; avoid importing bleak at runtime unless needed.
if TYPE_CHECKING:  # pragma: no cover
    from bleak.backends.characteristic import BleakGATTCharacteristic
    from bleak.backends.service import BleakGATTServiceCollection
else:
    BleakGATTCharacteristic = Any
    BleakGATTServiceCollection = Any

from ...const import NOTIFY_CHAR_UUID, SERVICE_UUID, WRITE_CHAR_UUID
from ...exception import CharacteristicMissingError
from ...models import PeripheralHandle

DEFAULT_ATTEMPTS = 3
BLEAK_BACKOFF_TIME = 0.25

FrameHandler = Callable[[bytearray], None]
DisconnectObserver = Callable[[], None]


def _import_bleak_retry():
    """Lazy import bleak-retry-connector items when actually needed."""
    from bleak_retry_connector import (
        BLEAK_RETRY_EXCEPTIONS as BLEAK_EXCEPTIONS,
        BleakClientWithServiceCache,
        BleakError,
        BleakNotFoundError,
        establish_connection,
        retry_bluetooth_connection_error,
    )
    return {
        "BLEAK_EXCEPTIONS": BLEAK_EXCEPTIONS,
        "BleakError": BleakError,
        "BleakClientWithServiceCache": BleakClientWithServiceCache,
        "BleakNotFoundError": BleakNotFoundError,
        "establish_connection": establish_connection,
        "retry_bluetooth_connection_error": retry_bluetooth_connection_error,
    }


def _ble_device_for(handle: PeripheralHandle) -> Any:
    """Return the handle's BLEDevice, fabricating one if only an address is known."""
    if handle.ble_device is not None:
        return handle.ble_device
    from bleak.backends.device import BLEDevice  # lazy

    return BLEDevice(handle.id.upper(), handle.name, None)


class NotifySubscription:
    """Active notification stream on the notify characteristic.

    Frames go to exactly one handler. ``cancel()`` stops notifications and
    drops the handler; calling it again is a no-op.
    """

    def __init__(self, device: "ValveDevice", char: BleakGATTCharacteristic, handler: FrameHandler) -> None:
        self._device = device
        self._char = char
        self._handler: Optional[FrameHandler] = handler
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def _dispatch(self, _sender: BleakGATTCharacteristic, data: bytearray) -> None:
        handler = self._handler
        if handler is None:
            return
        try:
            handler(data)
        except Exception:
            self._device._logger.debug("%s: frame handler raised", self._device.name, exc_info=True)

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._handler = None
        client = self._device.client
        if client is not None and getattr(client, "is_connected", False):
            try:
                await client.stop_notify(self._char)
            except Exception:
                self._device._logger.debug(
                    "%s: stop_notify failed (already stopped?)", self._device.name, exc_info=True
                )


class ValveDevice:
    """One BLE connection to a valve controller."""

    def __init__(
        self,
        handle: PeripheralHandle,
        *,
        service_uuid: str = SERVICE_UUID,
        write_char_uuid: str = WRITE_CHAR_UUID,
        notify_char_uuid: str = NOTIFY_CHAR_UUID,
    ) -> None:
        self._handle = handle
        self._ble_device = _ble_device_for(handle)
        self._logger = logging.getLogger(__name__ + "." + handle.id.replace(":", "-"))
        self._service_uuid = service_uuid
        self._write_char_uuid = write_char_uuid
        self._notify_char_uuid = notify_char_uuid
        self._client: Any = None  # BleakClientWithServiceCache | None
        self._write_char: BleakGATTCharacteristic | None = None
        self._notify_char: BleakGATTCharacteristic | None = None
        self._operation_lock: asyncio.Lock = asyncio.Lock()
        self._connect_lock: asyncio.Lock = asyncio.Lock()
        self._expected_disconnect = False
        self._disconnect_observer: Optional[DisconnectObserver] = None

    # ---- properties ----
    @property
    def address(self) -> str:
        return self._handle.id

    @property
    def name(self) -> str:
        return self._handle.name or self._handle.id

    @property
    def client(self) -> Any:
        return self._client

    @property
    def is_connected(self) -> bool:
        return bool(self._client and getattr(self._client, "is_connected", False))

    # ---- connection ----
    async def connect(self) -> None:
        bits = _import_bleak_retry()
        BleakClientWithServiceCache = bits["BleakClientWithServiceCache"]
        establish_connection = bits["establish_connection"]

        async with self._connect_lock:
            if self.is_connected:
                return
            self._logger.debug("%s: Connecting", self.name)
            self._expected_disconnect = False
            client = await establish_connection(
                BleakClientWithServiceCache,
                self._ble_device,
                self.name,
                self._disconnected,
                use_services_cache=True,
                ble_device_callback=lambda: self._ble_device,
            )
            self._logger.debug("%s: Connected", self.name)
            self._client = client
            if not self._resolve_characteristics(client.services):
                self._logger.debug("%s: characteristics missing, dropping link", self.name)
                await self._execute_disconnect()
                raise CharacteristicMissingError(
                    f"Service {self._service_uuid} lacks write/notify characteristics"
                )

    def _resolve_characteristics(self, services: BleakGATTServiceCollection) -> bool:
        service = services.get_service(self._service_uuid) if services else None
        if service is None:
            return False
        self._write_char = service.get_characteristic(self._write_char_uuid)
        self._notify_char = service.get_characteristic(self._notify_char_uuid)
        return bool(self._write_char and self._notify_char)

    def set_disconnect_observer(self, observer: Optional[DisconnectObserver]) -> None:
        """Called (once per drop) when the link goes away without us asking."""
        self._disconnect_observer = observer

    def _disconnected(self, _client: Any) -> None:
        if self._expected_disconnect:
            self._logger.debug("%s: Disconnected from device", self.name)
            return
        self._logger.warning("%s: Device unexpectedly disconnected", self.name)
        observer = self._disconnect_observer
        self._disconnect_observer = None
        if observer is not None:
            observer()

    async def disconnect(self) -> None:
        self._logger.debug("%s: Disconnecting", self.name)
        async with self._connect_lock:
            await self._execute_disconnect()

    async def _execute_disconnect(self) -> None:
        client = self._client
        self._expected_disconnect = True
        self._disconnect_observer = None
        self._client = None
        self._write_char = None
        self._notify_char = None
        if client and getattr(client, "is_connected", False):
            await client.disconnect()

    # ---- notifications ----
    async def subscribe(self, handler: FrameHandler) -> NotifySubscription:
        """Bind ``handler`` first, then enable notifications."""
        if not self.is_connected or self._notify_char is None:
            raise CharacteristicMissingError("Notify characteristic missing")
        subscription = NotifySubscription(self, self._notify_char, handler)
        self._logger.debug("%s: Subscribe to notifications", self.name)
        await self._client.start_notify(self._notify_char, subscription._dispatch)
        return subscription

    # ---- writes ----
    async def write(self, data: bytes) -> None:
        bits = _import_bleak_retry()
        BleakNotFoundError = bits["BleakNotFoundError"]
        BLEAK_EXCEPTIONS = bits["BLEAK_EXCEPTIONS"]

        self._logger.debug("%s: Sending %r", self.name, data)
        if self._operation_lock.locked():
            self._logger.debug("%s: Operation already in progress, waiting for it to complete", self.name)
        async with self._operation_lock:
            try:
                await self._write_locked(data)
            except BleakNotFoundError:
                self._logger.error("%s: device not found or no longer in range", self.name, exc_info=True)
                raise
            except CharacteristicMissingError as ex:
                self._logger.debug("%s: characteristic missing: %s", self.name, ex, exc_info=True)
                raise
            except BLEAK_EXCEPTIONS:
                self._logger.debug("%s: communication failed", self.name, exc_info=True)
                raise

    async def _write_locked(self, data: bytes) -> None:
        """Retry-wrapped by bleak_retry_connector; do not call directly."""
        from bleak.exc import BleakDBusError  # lazy

        try:
            await self._execute_write_locked(data)
        except BleakDBusError as ex:
            self._logger.debug("%s: Backing off %ss; write error: %s", self.name, BLEAK_BACKOFF_TIME, ex)
            await asyncio.sleep(BLEAK_BACKOFF_TIME)
            raise

    async def _execute_write_locked(self, data: bytes) -> None:
        if self._client is None:
            raise CharacteristicMissingError("Client not connected")
        if not self._write_char:
            raise CharacteristicMissingError("Write characteristic missing")
        response = "write" in getattr(self._write_char, "properties", [])
        await self._client.write_gatt_char(self._write_char, data, response=response)


# Decorate retry AFTER class is defined (keeps import-time light)
_retry_bits = _import_bleak_retry()
retry_bluetooth_connection_error = _retry_bits["retry_bluetooth_connection_error"]

ValveDevice._write_locked = retry_bluetooth_connection_error(DEFAULT_ATTEMPTS)(  # type: ignore[method-assign]
    ValveDevice._write_locked
)
