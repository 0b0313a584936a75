# greendrop/app.py
"""Application shell: global state plus the wiring between components.

Holds what the views read (route, connected device, live telemetry, timer,
history) and reacts to the dispatcher signals the session manager and the
timer publish. The connection state lives here, so a view that goes away
and comes back finds the link where it left it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .api import GreenDropApi, TokenStore
from .config import GreenDropConfig
from .const import (
    DEFAULT_DEVICE_ID,
    DEFAULT_PLANT,
    DEFAULT_STATUS,
    FALLBACK_DURATION_MIN,
    LATEST_POLL_INTERVAL,
    PLANT_DURATIONS,
    SIGNAL_CONNECTED_DEVICE,
    SIGNAL_LIVE_TELEMETRY,
    SIGNAL_NOTICE,
    SIGNAL_TIMER,
)
from .coordinator import DeviceFactory, DeviceSessionManager, default_device_factory
from .dispatcher import Dispatcher
from .models import (
    ConnectionResult,
    ConnectionState,
    HistoryItem,
    LiveTelemetry,
    PeripheralHandle,
    TimerState,
)
from .timer import IrrigationTimerController, TimerPhase
from .valve_control.commands import CommandChannel
from .valve_control.device import async_scan

_LOGGER = logging.getLogger(__name__)


class Route(str, Enum):
    SPLASH = "splash"
    AUTH = "auth"
    SCAN = "scan"
    DEVICE = "device"
    IRRIGATE = "irrigate"
    HISTORY = "history"


PRIVATE_ROUTES = {Route.SCAN, Route.DEVICE, Route.IRRIGATE, Route.HISTORY}
DEVICE_ROUTES = {Route.DEVICE, Route.IRRIGATE, Route.HISTORY}

MSG_SCAN_EMPTY = "No devices found or search cancelled."


@dataclass
class AppState:
    route: Route = Route.SPLASH
    connected: Optional[dict[str, Any]] = None
    live_telemetry: Optional[LiveTelemetry] = None
    timer: TimerState = field(default_factory=TimerState)
    history_items: list[HistoryItem] = field(default_factory=list)
    notice: Optional[tuple[str, str]] = None
    ble_disconnect: Optional[Callable[[], Awaitable[None]]] = None


def history_item_from_record(record: dict[str, Any], plant: str = DEFAULT_PLANT) -> HistoryItem:
    created = record.get("createdAt")
    when = datetime.now()
    if created:
        try:
            when = datetime.fromisoformat(str(created).replace("Z", "+00:00")).astimezone()
        except ValueError:
            _LOGGER.debug("Unparseable createdAt %r", created)
    return HistoryItem(
        date=when.strftime("%Y-%m-%d %H:%M:%S"),
        plant=plant,
        device=record.get("name") or record.get("deviceId") or "",
        minutes=record.get("minutos") or 0,
        humidity=record.get("humedad") or 0,
        purity=record.get("pureza") or 0,
    )


class GreenDropApp:
    def __init__(
        self,
        config: GreenDropConfig,
        *,
        api: Optional[GreenDropApi] = None,
        device_factory: Optional[DeviceFactory] = None,
        connection: Optional[ConnectionState] = None,
    ) -> None:
        self.config = config
        self.dispatcher = Dispatcher()
        self.api = api or GreenDropApi(config.api_url, TokenStore(config.token), timeout=config.http_timeout)
        self.tokens: TokenStore = self.api.tokens
        self.connection = connection or ConnectionState()
        self.commands = CommandChannel()
        self.manager = DeviceSessionManager(
            self.connection,
            self.api,
            self.commands,
            self.dispatcher,
            device_factory or default_device_factory(config),
        )
        self.timer = IrrigationTimerController(
            self.commands,
            on_snapshot=lambda snap: self.dispatcher.send(SIGNAL_TIMER, snap),
            on_stopped=self._on_irrigation_stopped,
            navigate=self._on_timer_navigate,
            tick_interval=config.tick_interval,
        )
        self.state = AppState(ble_disconnect=self.manager.async_disconnect)

        self._unsubs = [
            self.dispatcher.connect(SIGNAL_CONNECTED_DEVICE, self._on_connected),
            self.dispatcher.connect(SIGNAL_LIVE_TELEMETRY, self._on_live),
            self.dispatcher.connect(SIGNAL_TIMER, self._on_timer),
            self.dispatcher.connect(SIGNAL_NOTICE, self._on_notice),
        ]

    # ────────────────────────────────────────────────────────────────
    # Signal handlers
    # ────────────────────────────────────────────────────────────────
    def _on_connected(self, device: Optional[dict[str, Any]]) -> None:
        self.state.connected = device
        # losing the link while on a device-bound view sends the user back to scan
        if device is None and self.state.route in DEVICE_ROUTES:
            self.state.route = Route.SCAN

    def _on_live(self, live: LiveTelemetry) -> None:
        self.state.live_telemetry = live

    def _on_timer(self, snapshot: TimerState) -> None:
        self.state.timer = snapshot

    def _on_notice(self, text: str, level: str) -> None:
        self.state.notice = (text, level)

    async def _on_irrigation_stopped(self, manual: bool) -> None:
        _LOGGER.info("Irrigation stopped. Manual: %s", manual)

    def _on_timer_navigate(self, route: str) -> None:
        # a run that ends after logout leaves the user where they are
        if not self.is_authenticated:
            return
        self.go_to(Route(route))

    # ────────────────────────────────────────────────────────────────
    # Navigation
    # ────────────────────────────────────────────────────────────────
    @property
    def is_authenticated(self) -> bool:
        return self.tokens.is_authenticated

    def go_to(self, route: Route) -> Route:
        if not self.is_authenticated and route in PRIVATE_ROUTES:
            route = Route.AUTH
        elif route in DEVICE_ROUTES and not (self.state.connected and self.state.connected.get("id")):
            route = Route.SCAN
        self.state.route = route
        return route

    # ────────────────────────────────────────────────────────────────
    # Device
    # ────────────────────────────────────────────────────────────────
    async def async_scan(self) -> Optional[PeripheralHandle]:
        handle = await async_scan(self.config.name_prefix, self.config.scan_timeout)
        if handle is None:
            self._on_notice(MSG_SCAN_EMPTY, "info")
        return handle

    async def async_connect(self, handle: PeripheralHandle) -> ConnectionResult:
        result = await self.manager.async_connect(handle)
        if result.message:
            self._on_notice(result.message, "info" if result.ok else "error")
        return result

    def remount(self) -> None:
        """A view came back: re-publish the live link and resume the countdown."""
        self.manager.restore()
        self.timer.resume(self.state.timer)

    # ────────────────────────────────────────────────────────────────
    # Irrigation
    # ────────────────────────────────────────────────────────────────
    @staticmethod
    def duration_for(plant: str) -> int:
        return PLANT_DURATIONS.get(plant, FALLBACK_DURATION_MIN)

    async def async_start_irrigation(
        self, duration_minutes: Optional[float] = None, plant: str = DEFAULT_PLANT
    ) -> TimerState:
        if self.timer.phase is TimerPhase.STOPPED:
            self.timer.acknowledge()
        minutes = duration_minutes if duration_minutes is not None else self.duration_for(plant)
        snapshot = await self.timer.async_start(minutes)
        self.go_to(Route.IRRIGATE)
        return snapshot

    async def async_stop_irrigation(self) -> bool:
        return await self.timer.async_stop(manual=True)

    # ────────────────────────────────────────────────────────────────
    # Backend reads
    # ────────────────────────────────────────────────────────────────
    async def async_load_history(self, device_id: Optional[str] = None) -> list[HistoryItem]:
        device_id = device_id or (self.state.connected or {}).get("id")
        if not device_id:
            self.state.history_items = []
            return []
        try:
            records = await self.api.async_get_history(device_id)
        except Exception as e:
            _LOGGER.error("Could not load history for %s: %s", device_id, e)
            records = []
        self.state.history_items = [history_item_from_record(r) for r in records]
        return self.state.history_items

    async def async_latest_readings(self, device_id: Optional[str] = None) -> dict[str, Any]:
        """Sensor card values when no device streams live data."""
        device_id = device_id or DEFAULT_DEVICE_ID
        try:
            data = await self.api.async_get_latest(device_id)
        except Exception as e:
            _LOGGER.error("getLatestTelemetry error: %s", e)
            return {"humedad": None, "pureza": None, "estado": "ERROR"}
        if not data:
            return {"humedad": None, "pureza": None, "estado": "SIN DATOS"}
        return {
            "humedad": data.get("humedad") if isinstance(data.get("humedad"), (int, float)) else 0,
            "pureza": data.get("pureza") if isinstance(data.get("pureza"), (int, float)) else 0,
            "estado": data.get("estado") or DEFAULT_STATUS,
        }

    async def async_watch_latest(
        self, device_id: Optional[str] = None, interval: float = LATEST_POLL_INTERVAL
    ) -> AsyncIterator[dict[str, Any]]:
        """Poll the latest readings until a device starts streaming live data."""
        while not self.manager.is_connected:
            yield await self.async_latest_readings(device_id)
            await asyncio.sleep(interval)
        _LOGGER.debug("Device connected, latest-reading poll stopped")

    # ────────────────────────────────────────────────────────────────
    # Session end
    # ────────────────────────────────────────────────────────────────
    async def async_logout(self) -> None:
        if self.timer.phase is TimerPhase.RUNNING:
            # close the valve while the command channel is still attached
            await self.timer.async_stop(manual=True)
        self.timer.acknowledge()
        self.state.timer = TimerState()

        disconnect = self.state.ble_disconnect
        if disconnect is not None:
            try:
                await disconnect()
            except Exception as e:
                _LOGGER.warning("Error disconnecting BLE on logout: %s", e)
        self.tokens.clear()
        self.state.connected = None
        self.state.live_telemetry = None
        self.state.history_items = []
        self.state.route = Route.SPLASH

    async def async_close(self) -> None:
        await self.timer.async_shutdown()
        for unsub in self._unsubs:
            unsub()
        self._unsubs = []
