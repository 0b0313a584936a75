# greendrop/const.py
"""Constants for the GreenDrop valve controller client."""

from __future__ import annotations

# ────────────────────────────────────────────────────────────────────────────────
# Core identifiers
# ────────────────────────────────────────────────────────────────────────────────
DOMAIN: str = "greendrop"

# ────────────────────────────────────────────────────────────────────────────────
# Dispatcher signals (published events)
# ────────────────────────────────────────────────────────────────────────────────
# {"id": ..., "name": ...} or None
SIGNAL_CONNECTED_DEVICE = f"{DOMAIN}_connected_device"
# LiveTelemetry snapshot, every decoded frame
SIGNAL_LIVE_TELEMETRY = f"{DOMAIN}_live_telemetry"
# TimerState snapshot, once per tick and on start/stop
SIGNAL_TIMER = f"{DOMAIN}_timer"
# (text, level) notices meant for the operator
SIGNAL_NOTICE = f"{DOMAIN}_notice"

# ────────────────────────────────────────────────────────────────────────────────
# BLE protocol details
# ────────────────────────────────────────────────────────────────────────────────
# The valve firmware exposes a single characteristic for write + notify.
SERVICE_UUID = "12345678-1234-1234-1234-1234567890ab"
WRITE_CHAR_UUID = "abcd1234-abcd-1234-abcd-1234567890ab"  # write
NOTIFY_CHAR_UUID = "abcd1234-abcd-1234-abcd-1234567890ab"  # notify

DEFAULT_NAME_PREFIX = "ESP32"
DEFAULT_DEVICE_NAME = "ESP32"
DEFAULT_SCAN_TIMEOUT = 10.0

# Cosmetic only; the scan view shows a bar, nothing decides on it.
FAKE_RSSI_RANGE = (-90, -40)

# ────────────────────────────────────────────────────────────────────────────────
# Backend
# ────────────────────────────────────────────────────────────────────────────────
DEFAULT_API_URL = "http://localhost:3000"
# Readings shown on the device view while nothing is connected
DEFAULT_DEVICE_ID = "ESP32-Riego"
# Seconds between latest-reading polls while nothing is connected
LATEST_POLL_INTERVAL = 2.0

# ────────────────────────────────────────────────────────────────────────────────
# Irrigation
# ────────────────────────────────────────────────────────────────────────────────
DEFAULT_STATUS = "OK"
PLANT_DURATIONS: dict[str, int] = {
    "Pasto": 12,
}
DEFAULT_PLANT = "Pasto"
FALLBACK_DURATION_MIN = 8
TICK_INTERVAL = 1.0
