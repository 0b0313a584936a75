# greendrop/__init__.py
"""GreenDrop irrigation valve client root module."""
from __future__ import annotations

from .app import GreenDropApp, Route
from .config import GreenDropConfig, load_config
from .coordinator import DeviceSessionManager
from .models import ConnectionState, PeripheralHandle, TimerState
from .timer import IrrigationTimerController, TimerPhase

__all__ = [
    "ConnectionState",
    "DeviceSessionManager",
    "GreenDropApp",
    "GreenDropConfig",
    "IrrigationTimerController",
    "PeripheralHandle",
    "Route",
    "TimerPhase",
    "TimerState",
    "load_config",
]
