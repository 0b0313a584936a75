# greendrop/models.py
"""The GreenDrop client models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .exception import ConnectionBusyError, InvariantViolation

if TYPE_CHECKING:  # pragma: no cover
    from .valve_control.device.base_device import NotifySubscription, ValveDevice

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeripheralHandle:
    """A discovered valve controller.

    Attributes:
        id:          BLE address (the "local handle id" used when a frame
                     carries no deviceId).
        name:        Advertised name, or the default display name.
        rssi:        Synthesized signal strength, display only.
        ble_device:  The bleak ``BLEDevice`` (None for address-only handles).
    """

    id: str
    name: str
    rssi: int = 0
    ble_device: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class TelemetryFrame:
    """One decoded notification. Wire names are humedad/pureza/estado/minutos."""

    device_id: Optional[str] = None
    name: Optional[str] = None
    humidity: Optional[float] = None
    purity: Optional[float] = None
    status: str = "OK"
    minutes: float = 0


@dataclass(frozen=True)
class LiveTelemetry:
    """Snapshot published to live-telemetry observers."""

    device_id: str
    name: Optional[str] = None
    humidity: Optional[float] = None
    purity: Optional[float] = None
    status: Optional[str] = None
    minutes: Optional[float] = None

    def merged(self, frame: TelemetryFrame, device_id: str, name: Optional[str]) -> "LiveTelemetry":
        """Fold a new frame in; fields the frame omits keep their last value."""
        return LiveTelemetry(
            device_id=device_id,
            name=name or self.name,
            humidity=frame.humidity if frame.humidity is not None else self.humidity,
            purity=frame.purity if frame.purity is not None else self.purity,
            status=frame.status,
            minutes=frame.minutes,
        )

    def to_payload(self) -> dict[str, Any]:
        """Backend/wire shape, absent fields dropped."""
        payload: dict[str, Any] = {"deviceId": self.device_id}
        for key, value in (
            ("name", self.name),
            ("humedad", self.humidity),
            ("pureza", self.purity),
            ("estado", self.status),
            ("minutos", self.minutes),
        ):
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class TimerState:
    """Shared timer record: seconds in total, seconds left, running flag."""

    total: int = 0
    left: int = 0
    running: bool = False


@dataclass(frozen=True)
class HistoryItem:
    """One row of the irrigation history view."""

    date: str
    plant: str
    device: str
    minutes: float
    humidity: float
    purity: float


# ────────────────────────────────────────────────────────────────
# Connection result
# ────────────────────────────────────────────────────────────────
class ConnectStatus(str, Enum):
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    BUSY = "busy"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionResult:
    status: ConnectStatus
    device_id: Optional[str] = None
    name: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ConnectStatus.CONNECTED, ConnectStatus.ALREADY_CONNECTED)


# ────────────────────────────────────────────────────────────────
# Connection state (one per application)
# ────────────────────────────────────────────────────────────────
class ConnectionState:
    """Owns the single active BLE connection.

    Only the session manager mutates it. It outlives any view that reads
    it, so a view re-created while the link is alive can pick it back up.

    Invariants:
      - ``device`` and ``write_channel`` are set together or not at all.
      - ``session_open`` implies ``device`` and ``active_device_id``.
      - at most one ``subscription`` is attached.
    """

    def __init__(self) -> None:
        self.handle: Optional[PeripheralHandle] = None
        self.device: Optional["ValveDevice"] = None
        self.write_channel: Optional["ValveDevice"] = None
        self.subscription: Optional["NotifySubscription"] = None
        self.session_open: bool = False
        self.active_device_id: Optional[str] = None
        self.last_known_name: Optional[str] = None
        self.live: Optional[LiveTelemetry] = None

    # ---- queries ----
    @property
    def is_empty(self) -> bool:
        return (
            self.device is None
            and self.write_channel is None
            and self.subscription is None
            and not self.session_open
            and self.active_device_id is None
            and self.handle is None
        )

    @property
    def is_alive(self) -> bool:
        return self.device is not None and bool(getattr(self.device, "is_connected", False))

    def owns(self, handle: PeripheralHandle) -> bool:
        return self.handle is not None and self.handle.id == handle.id

    # ---- mutations (session manager only) ----
    def acquire(self, handle: PeripheralHandle, device: "ValveDevice") -> None:
        """Take ownership of a connected device; refuses a second holder."""
        if self.device is not None:
            raise ConnectionBusyError(
                f"Connection already held for {self.handle.id if self.handle else '?'}"
            )
        self.handle = handle
        self.device = device
        self.write_channel = device
        self.last_known_name = handle.name

    def attach_subscription(self, subscription: "NotifySubscription") -> None:
        if self.device is None:
            raise InvariantViolation("Cannot subscribe without a connected device")
        if self.subscription is not None:
            raise InvariantViolation("A notification handler is already registered")
        self.subscription = subscription

    def mark_session_open(self, device_id: str) -> None:
        if self.device is None:
            raise InvariantViolation("Cannot open a session without a connected device")
        self.active_device_id = device_id
        self.session_open = True

    def update_live(self, frame: TelemetryFrame, device_id: str, name: Optional[str]) -> LiveTelemetry:
        if self.live is None or self.live.device_id != device_id:
            base = LiveTelemetry(device_id=device_id)
        else:
            base = self.live
        self.live = base.merged(frame, device_id, name)
        return self.live

    def reset(self) -> None:
        _LOGGER.debug("Connection state reset (was %s)", self.handle.id if self.handle else None)
        self.handle = None
        self.device = None
        self.write_channel = None
        self.subscription = None
        self.session_open = False
        self.active_device_id = None
        self.last_known_name = None
        self.live = None


def stopped(state: TimerState) -> TimerState:
    """Final snapshot of a run: nothing left, not running."""
    return replace(state, left=0, running=False)
