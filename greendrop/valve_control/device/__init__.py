# greendrop/valve_control/device/__init__.py
"""Discovery helpers for GreenDrop valve controllers.

- Keeps imports light at module import time (bleak is imported lazily).
- ``async_scan`` is the bounded, operator-triggered search: one matching
  peripheral or None, never an exception.
- ``get_handle_from_address`` resolves a MAC for CLI/testing contexts.
"""
from __future__ import annotations

import logging
import random
from typing import Any, Optional

from ...const import DEFAULT_DEVICE_NAME, DEFAULT_NAME_PREFIX, DEFAULT_SCAN_TIMEOUT, FAKE_RSSI_RANGE
from ...exception import DeviceNotFound
from ...models import PeripheralHandle
from .base_device import NotifySubscription, ValveDevice

_LOGGER = logging.getLogger(__name__)


def synthesize_rssi() -> int:
    """Signal strength shown next to a scan result; purely cosmetic."""
    low, high = FAKE_RSSI_RANGE
    return random.randint(low, high)


def matches_prefix(name: Optional[str], prefix: str) -> bool:
    return bool(name) and name.upper().startswith(prefix.upper())  # type: ignore[union-attr]


def _handle_from_ble_device(ble_device: Any) -> PeripheralHandle:
    return PeripheralHandle(
        id=ble_device.address,
        name=ble_device.name or DEFAULT_DEVICE_NAME,
        rssi=synthesize_rssi(),
        ble_device=ble_device,
    )


async def async_scan(
    name_prefix: str = DEFAULT_NAME_PREFIX,
    timeout: float = DEFAULT_SCAN_TIMEOUT,
) -> Optional[PeripheralHandle]:
    """Look for one peripheral whose advertised name starts with ``name_prefix``."""
    from bleak import BleakScanner  # lazy import
    from bleak.exc import BleakError

    _LOGGER.debug("Scanning for '%s*' (timeout %ss)", name_prefix, timeout)
    try:
        ble_device = await BleakScanner.find_device_by_filter(
            lambda dev, _adv: matches_prefix(dev.name, name_prefix),
            timeout=timeout,
        )
    except (BleakError, OSError) as e:
        _LOGGER.warning("Scan failed: %s", e)
        return None
    if ble_device is None:
        _LOGGER.info("No '%s*' device found", name_prefix)
        return None
    handle = _handle_from_ble_device(ble_device)
    _LOGGER.debug("Found %s (%s)", handle.name, handle.id)
    return handle


async def get_handle_from_address(device_address: str, timeout: float = DEFAULT_SCAN_TIMEOUT) -> PeripheralHandle:
    """Resolve a MAC address to a handle (lazy bleak import).

    Intended for CLI/testing contexts where the operator already knows the
    address and skips the scan.
    """
    from bleak import BleakScanner  # lazy import

    ble_dev = await BleakScanner.find_device_by_address(device_address, timeout=timeout)
    if ble_dev is None:
        raise DeviceNotFound(f"BLE device not found: {device_address}")
    return _handle_from_ble_device(ble_dev)


__all__ = [
    "NotifySubscription",
    "ValveDevice",
    "async_scan",
    "get_handle_from_address",
    "matches_prefix",
    "synthesize_rssi",
]
