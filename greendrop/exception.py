# greendrop/exception.py
"""Exceptions raised by the GreenDrop client.

Transport and backend errors are recoverable and get turned into notices
or log lines where they occur. ``InvariantViolation`` and
``TimerStateError`` flag programmer defects and are meant to propagate.
"""

from __future__ import annotations

from typing import Any


class GreenDropError(Exception):
    """Base class for all GreenDrop errors."""


# ────────────────────────────────────────────────────────────────
# Transport
# ────────────────────────────────────────────────────────────────
class TransportError(GreenDropError):
    """Discovery, connect, characteristic or write failure."""


class DeviceNotFound(TransportError):
    """No matching peripheral is in range."""


class CharacteristicMissingError(TransportError):
    """The peripheral does not expose the expected characteristics."""


class ConnectionBusyError(TransportError):
    """The connection state already owns a live connection."""


# ────────────────────────────────────────────────────────────────
# Parse
# ────────────────────────────────────────────────────────────────
class FrameDecodeError(GreenDropError):
    """A notification payload is not a valid telemetry frame."""


# ────────────────────────────────────────────────────────────────
# Backend
# ────────────────────────────────────────────────────────────────
class ApiError(GreenDropError):
    """Non-2xx response (or transport failure) from the backend."""

    def __init__(self, code: str, *, status: int | None = None, raw: Any = None) -> None:
        super().__init__(code)
        self.code = code
        self.status = status
        self.raw = raw


# ────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────
class ConfigError(GreenDropError):
    """Invalid configuration value."""


# ────────────────────────────────────────────────────────────────
# Defects
# ────────────────────────────────────────────────────────────────
class InvariantViolation(GreenDropError):
    """Connection state used in a way its invariants forbid."""


class TimerStateError(GreenDropError):
    """Timer transition requested from a state that does not allow it."""
