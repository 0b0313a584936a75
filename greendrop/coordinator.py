# greendrop/coordinator.py
"""Device session manager: the one BLE connection and its backend session.

This module is the only writer of ConnectionState. It:
- connects to a peripheral, binds the single notification subscription and
  asks for a first reading
- turns notification frames into live telemetry, opening the backend session
  on the first frame and persisting only frames that report irrigation
- tears everything down through one cleanup path, whether the operator
  disconnected, logged out, or the radio link dropped

Backend failures are logged and never hold the radio link open.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Optional

from .api import GreenDropApi
from .config import GreenDropConfig
from .const import (
    SIGNAL_CONNECTED_DEVICE,
    SIGNAL_LIVE_TELEMETRY,
    SIGNAL_NOTICE,
)
from .dispatcher import Dispatcher
from .exception import FrameDecodeError
from .models import (
    ConnectionResult,
    ConnectionState,
    ConnectStatus,
    LiveTelemetry,
    PeripheralHandle,
)
from .valve_control.commands import CommandChannel
from .valve_control.device.base_device import ValveDevice
from .valve_control.protocol import Command, decode_frame

_LOGGER: logging.Logger = logging.getLogger(__name__)

DeviceFactory = Callable[[PeripheralHandle], Any]

MSG_CONNECT_FAILED = "Could not connect. Try again."
MSG_BUSY = "Already connected to another device. Disconnect first."
MSG_DISCONNECTED = "Device disconnected."
MSG_USER_DISCONNECTED = "You disconnected from the device."


def default_device_factory(config: GreenDropConfig) -> DeviceFactory:
    def _factory(handle: PeripheralHandle) -> ValveDevice:
        return ValveDevice(
            handle,
            service_uuid=config.service_uuid,
            write_char_uuid=config.write_char_uuid,
            notify_char_uuid=config.notify_char_uuid,
        )

    return _factory


class DeviceSessionManager:
    """Own the BLE link and keep the backend session in step with it."""

    def __init__(
        self,
        state: ConnectionState,
        api: GreenDropApi,
        commands: CommandChannel,
        dispatcher: Dispatcher,
        device_factory: DeviceFactory,
    ) -> None:
        self.state = state
        self.api = api
        self.commands = commands
        self.dispatcher = dispatcher
        self._device_factory = device_factory

        self._session_lock = asyncio.Lock()
        self._cleanup_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ────────────────────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────────────────────
    def _notice(self, text: str, level: str = "info") -> None:
        self.dispatcher.send(SIGNAL_NOTICE, text, level)

    def _publish_connected(self) -> None:
        device_id = self.state.active_device_id
        if device_id is None:
            return
        self.dispatcher.send(
            SIGNAL_CONNECTED_DEVICE,
            {"id": device_id, "name": self.state.last_known_name},
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def is_connected(self) -> bool:
        return self.state.is_alive

    # ────────────────────────────────────────────────────────────────
    # Connect
    # ────────────────────────────────────────────────────────────────
    async def async_connect(self, handle: PeripheralHandle) -> ConnectionResult:
        state = self.state

        if state.device is not None:
            if state.is_alive and state.owns(handle):
                name = state.last_known_name or handle.name
                _LOGGER.debug("%s: already connected, not reconnecting", handle.id)
                if state.session_open:
                    self._publish_connected()
                return ConnectionResult(
                    ConnectStatus.ALREADY_CONNECTED,
                    device_id=state.active_device_id or handle.id,
                    name=name,
                    message=f"You are already connected to {name}.",
                )
            if state.is_alive:
                _LOGGER.warning(
                    "Refusing to connect to %s while %s holds the link",
                    handle.id,
                    state.handle.id if state.handle else "?",
                )
                return ConnectionResult(ConnectStatus.BUSY, message=MSG_BUSY)
            _LOGGER.debug("Dropping stale connection before connecting to %s", handle.id)
            await self._async_cleanup(notice=None)

        device = self._device_factory(handle)
        acquired = False
        try:
            await device.connect()
            state.acquire(handle, device)
            acquired = True
            self.commands.attach(device)

            subscription = await device.subscribe(
                lambda data: self._on_notification(handle, device, data)
            )
            state.attach_subscription(subscription)

            # First reading without waiting a full notification interval
            await self.commands.send_strict(Command.READ)

            device.set_disconnect_observer(self.handle_unexpected_disconnect)
        except Exception as e:
            _LOGGER.error("Could not connect/subscribe to %s: %s", handle.id, e, exc_info=True)
            await self._async_unwind(device, owned=acquired)
            self._notice(MSG_CONNECT_FAILED, "error")
            return ConnectionResult(ConnectStatus.FAILED, message=MSG_CONNECT_FAILED)

        _LOGGER.info("%s: connected, waiting for readings", handle.name)
        return ConnectionResult(
            ConnectStatus.CONNECTED,
            device_id=handle.id,
            name=handle.name,
            message=f"Connected to {handle.name}. Waiting for readings...",
        )

    async def _async_unwind(self, device: Any, *, owned: bool) -> None:
        """Release whatever a failed connect managed to set up."""
        if owned:
            await self._async_release()
            return
        try:
            await device.disconnect()
        except Exception:
            _LOGGER.debug("disconnect after failed connect raised", exc_info=True)

    # ────────────────────────────────────────────────────────────────
    # Notifications
    # ────────────────────────────────────────────────────────────────
    def _on_notification(self, handle: PeripheralHandle, device: Any, data: bytearray) -> None:
        self._spawn(self.async_handle_frame(handle, bytes(data), device=device))

    async def async_handle_frame(
        self, handle: PeripheralHandle, payload: bytes, device: Any = None
    ) -> Optional[LiveTelemetry]:
        """Handle one notification for the connection that owns ``device``.

        ``device`` defaults to the current connection. A frame whose
        connection has since been cleaned up or replaced is dropped.
        """
        owner = device if device is not None else self.state.device
        if owner is None or self.state.device is not owner:
            _LOGGER.debug("%s: frame from a released connection, ignoring", handle.id)
            return None

        try:
            frame = decode_frame(payload)
        except FrameDecodeError as e:
            _LOGGER.warning("Invalid notification dropped: %s", e)
            return None

        # frames without a deviceId belong to the device the session was opened for
        device_id = frame.device_id or self.state.active_device_id or handle.id
        name = frame.name or handle.name

        await self._async_ensure_session(owner, device_id, name)

        # Link went away (or was replaced) while the session call was in flight
        if self.state.device is not owner:
            _LOGGER.debug("%s: frame arrived after cleanup, ignoring", device_id)
            return None

        live = self.state.update_live(frame, device_id, name)
        self.dispatcher.send(SIGNAL_LIVE_TELEMETRY, live)

        if frame.minutes <= 0:
            _LOGGER.debug("%s: live reading (not persisted)", device_id)
            return live

        await self._async_push(live)
        return live

    async def _async_ensure_session(self, owner: Any, device_id: str, name: Optional[str]) -> None:
        if self.state.session_open:
            return
        async with self._session_lock:
            if self.state.session_open or self.state.device is not owner:
                return
            try:
                await self.api.async_open_session(device_id)
            except Exception as e:
                _LOGGER.warning("open-session failed for %s: %s", device_id, e)
                return
            if self.state.device is not owner:
                # the connection was released while the open call ran
                await self._async_close_orphan(device_id)
                return
            self.state.mark_session_open(device_id)
            self.state.last_known_name = name
            _LOGGER.info("%s: backend session open", device_id)
            self._publish_connected()
            self._notice(f"Connected to {name}. You can go to the device view.", "success")

    async def _async_close_orphan(self, device_id: str) -> None:
        try:
            await self.api.async_close_session(device_id)
            _LOGGER.info("%s: closed session opened for a released connection", device_id)
        except Exception as e:
            _LOGGER.warning("close-session failed for %s: %s", device_id, e)

    async def _async_push(self, live: LiveTelemetry) -> None:
        device_id = self.state.active_device_id or live.device_id
        record = replace(live, device_id=device_id)
        try:
            await self.api.async_push_telemetry(record)
        except Exception as e:
            _LOGGER.warning("telemetry push failed for %s: %s", device_id, e)

    # ────────────────────────────────────────────────────────────────
    # Disconnect / cleanup
    # ────────────────────────────────────────────────────────────────
    def handle_unexpected_disconnect(self) -> None:
        """Transport callback for a dropped link; runs the shared cleanup."""
        self._spawn(self.async_handle_unexpected_disconnect())

    async def async_handle_unexpected_disconnect(self) -> None:
        await self._async_cleanup(notice=MSG_DISCONNECTED)

    async def async_disconnect(self) -> None:
        """Operator disconnect; also the handle the application calls on logout."""
        await self._async_cleanup(notice=MSG_USER_DISCONNECTED)

    async def _async_cleanup(self, notice: Optional[str]) -> None:
        # _session_lock waits out an open-session call already in flight
        async with self._cleanup_lock, self._session_lock:
            state = self.state
            if state.is_empty:
                _LOGGER.debug("Nothing to clean up")
                return
            device_id = state.active_device_id
            try:
                if state.session_open and device_id:
                    await self.api.async_close_session(device_id)
                    _LOGGER.info("%s: backend session closed", device_id)
            except Exception as e:
                _LOGGER.warning("close-session failed: %s", e)
            finally:
                await self._async_release()
                self.dispatcher.send(SIGNAL_CONNECTED_DEVICE, None)
                if notice:
                    self._notice(notice)

    async def _async_release(self) -> None:
        state = self.state
        subscription = state.subscription
        device = state.device
        try:
            if subscription is not None:
                try:
                    await subscription.cancel()
                except Exception:
                    _LOGGER.debug("subscription cancel raised", exc_info=True)
            if device is not None:
                try:
                    await device.disconnect()
                except Exception:
                    _LOGGER.debug("device disconnect raised", exc_info=True)
        finally:
            self.commands.detach()
            state.reset()

    # ────────────────────────────────────────────────────────────────
    # Remount
    # ────────────────────────────────────────────────────────────────
    def restore(self) -> bool:
        """Re-publish the surviving connection for a freshly created view."""
        if not self.state.is_alive:
            return False
        if self.state.session_open:
            self._publish_connected()
        return True
