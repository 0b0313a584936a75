# tests/conftest.py
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from greendrop.api import TokenStore
from greendrop.config import GreenDropConfig
from greendrop.exception import ApiError
from greendrop.models import PeripheralHandle


def frame(**fields: Any) -> bytes:
    """Encode a notification payload the way the firmware sends it."""
    return json.dumps(fields).encode("utf-8")


class FakeSubscription:
    def __init__(self, device: "FakeDevice", handler: Callable[[bytearray], None]):
        self._device = device
        self.handler: Optional[Callable[[bytearray], None]] = handler
        self.cancel_calls = 0
        self.raise_on_cancel: Exception | None = None

    @property
    def active(self) -> bool:
        return self.handler is not None

    async def cancel(self) -> None:
        self.cancel_calls += 1
        self.handler = None
        if self.raise_on_cancel:
            raise self.raise_on_cancel


class FakeDevice:
    """Stands in for ValveDevice: records writes, lets tests push frames."""

    def __init__(self, handle: PeripheralHandle):
        self.handle = handle
        self.connected = False
        self.writes: list[bytes] = []
        self.subscriptions: list[FakeSubscription] = []
        self.observer: Optional[Callable[[], None]] = None
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.raise_on_connect: Exception | None = None
        self.raise_on_subscribe: Exception | None = None
        self.raise_on_write: Exception | None = None
        self.raise_on_disconnect: Exception | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.raise_on_connect:
            raise self.raise_on_connect
        self.connected = True

    async def subscribe(self, handler):
        if self.raise_on_subscribe:
            raise self.raise_on_subscribe
        sub = FakeSubscription(self, handler)
        self.subscriptions.append(sub)
        return sub

    async def write(self, data: bytes) -> None:
        if self.raise_on_write:
            raise self.raise_on_write
        self.writes.append(bytes(data))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self.observer = None
        if self.raise_on_disconnect:
            raise self.raise_on_disconnect

    def set_disconnect_observer(self, observer) -> None:
        self.observer = observer

    # ---- test helpers ----
    @property
    def commands(self) -> list[str]:
        return [w.decode("ascii") for w in self.writes]

    def notify(self, payload: bytes) -> None:
        for sub in self.subscriptions:
            if sub.handler is not None:
                sub.handler(bytearray(payload))

    def drop(self) -> None:
        """Radio link lost without anyone asking."""
        self.connected = False
        observer, self.observer = self.observer, None
        if observer is not None:
            observer()


class FakeDeviceFactory:
    def __init__(self):
        self.devices: list[FakeDevice] = []
        self.prepare: Optional[Callable[[FakeDevice], None]] = None

    def __call__(self, handle: PeripheralHandle) -> FakeDevice:
        device = FakeDevice(handle)
        if self.prepare is not None:
            self.prepare(device)
        self.devices.append(device)
        return device

    @property
    def last(self) -> FakeDevice:
        return self.devices[-1]


class FakeApi:
    """Records backend calls; failures are switched on per endpoint."""

    def __init__(self, token: str | None = "tok"):
        self.tokens = TokenStore(token)
        self.calls: list[tuple[str, Any]] = []
        self.fail_open = False
        self.fail_close = False
        self.fail_push = False
        self.fail_reads = False
        # runs while an open-session call is in flight
        self.on_open: Optional[Callable[[], None]] = None
        self.latest: Any = None
        self.history: list[dict[str, Any]] = []

    def _count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    @property
    def opens(self) -> int:
        return self._count("open")

    @property
    def closes(self) -> int:
        return self._count("close")

    @property
    def pushes(self) -> list[dict[str, Any]]:
        return [arg for call, arg in self.calls if call == "push"]

    # each call yields once, like a real round trip would
    async def async_open_session(self, device_id: str):
        self.calls.append(("open", device_id))
        await asyncio.sleep(0)
        if self.on_open is not None:
            self.on_open()
        if self.fail_open:
            raise ApiError("HTTP 500", status=500)
        return {"ok": True}

    async def async_close_session(self, device_id: str):
        self.calls.append(("close", device_id))
        await asyncio.sleep(0)
        if self.fail_close:
            raise ApiError("Network error: boom")
        return {"ok": True}

    async def async_push_telemetry(self, telemetry):
        self.calls.append(("push", telemetry.to_payload()))
        await asyncio.sleep(0)
        if self.fail_push:
            raise ApiError("HTTP 503", status=503)
        return {"ok": True}

    async def async_get_latest(self, device_id: str):
        self.calls.append(("latest", device_id))
        if self.fail_reads:
            raise ApiError("HTTP 500", status=500)
        return self.latest

    async def async_get_history(self, device_id: str):
        self.calls.append(("history", device_id))
        if self.fail_reads:
            raise ApiError("HTTP 500", status=500)
        return self.history


async def drain(manager) -> None:
    """Wait for the frame/cleanup tasks the manager spawned."""
    while True:
        pending = [t for t in manager._tasks if not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


@pytest.fixture
def handle() -> PeripheralHandle:
    return PeripheralHandle(id="AA:BB:CC:DD:EE:01", name="ESP32-Riego", rssi=-60)


@pytest.fixture
def other_handle() -> PeripheralHandle:
    return PeripheralHandle(id="AA:BB:CC:DD:EE:02", name="ESP32-Huerta", rssi=-70)


@pytest.fixture
def factory() -> FakeDeviceFactory:
    return FakeDeviceFactory()


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def config() -> GreenDropConfig:
    # ticks are driven by hand in tests
    return GreenDropConfig(token="tok", tick_interval=3600.0)
