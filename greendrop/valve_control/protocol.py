# greendrop/valve_control/protocol.py
"""
GreenDrop valve controller: wire protocol helpers.

• Commands (host → device), written as plain ASCII on the write characteristic:
    - READ     ask for a telemetry frame right now
    - IRR_ON   open the valve
    - IRR_OFF  close the valve; the firmware then reports the minutes irrigated

• Telemetry (device → host), one UTF-8 JSON object per notification:
    {"deviceId": "...", "name": "...", "humedad": 0..100, "pureza": 0..100,
     "estado": "...", "minutos": >= 0}
  Every field is optional. Unknown keys are ignored; JSON null counts as absent.
  Anything else (not JSON, not an object, out-of-range values) is malformed.
"""

from __future__ import annotations

import json
import math
from enum import Enum
from typing import Any

import voluptuous as vol

from ..const import DEFAULT_STATUS
from ..exception import FrameDecodeError
from ..models import TelemetryFrame

__all__ = [
    "Command",
    "encode_command",
    "FRAME_SCHEMA",
    "decode_frame",
]


class Command(str, Enum):
    READ = "READ"
    IRR_ON = "IRR_ON"
    IRR_OFF = "IRR_OFF"


def encode_command(command: Command | str) -> bytes:
    token = command.value if isinstance(command, Command) else str(command)
    try:
        return token.encode("ascii")
    except UnicodeEncodeError as e:
        raise ValueError(f"Command must be ASCII: {token!r}") from e


# ────────────────────────────────────────────────────────────────
# Frame schema
# ────────────────────────────────────────────────────────────────
def _finite_number(value: Any) -> float:
    # bool is an int subclass; "true" is not a reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise vol.Invalid("expected a number")
    if not math.isfinite(value):
        raise vol.Invalid("expected a finite number")
    return value


def _percent(value: Any) -> float:
    value = _finite_number(value)
    if not 0 <= value <= 100:
        raise vol.Invalid("expected 0..100")
    return value


def _non_negative(value: Any) -> float:
    value = _finite_number(value)
    if value < 0:
        raise vol.Invalid("expected >= 0")
    return value


def _text(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise vol.Invalid("expected text")
    return str(value)


def _optional(validator):
    return vol.Any(None, validator)


FRAME_SCHEMA = vol.Schema(
    {
        vol.Optional("deviceId"): _optional(_text),
        vol.Optional("name"): _optional(_text),
        vol.Optional("humedad"): _optional(_percent),
        vol.Optional("pureza"): _optional(_percent),
        vol.Optional("estado"): _optional(_text),
        vol.Optional("minutos"): _optional(_non_negative),
    },
    extra=vol.REMOVE_EXTRA,
)


def decode_frame(payload: bytes | bytearray) -> TelemetryFrame:
    """Decode one notification payload, raising FrameDecodeError if malformed."""
    try:
        text = bytes(payload).decode("utf-8")
        data = json.loads(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise FrameDecodeError(f"Not a JSON payload: {bytes(payload)[:64]!r}") from e
    if not isinstance(data, dict):
        raise FrameDecodeError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        fields = FRAME_SCHEMA(data)
    except vol.Invalid as e:
        raise FrameDecodeError(f"Invalid telemetry frame: {e}") from e

    return TelemetryFrame(
        device_id=fields.get("deviceId") or None,
        name=fields.get("name") or None,
        humidity=fields.get("humedad"),
        purity=fields.get("pureza"),
        status=fields.get("estado") or DEFAULT_STATUS,
        minutes=fields.get("minutos") or 0,
    )
