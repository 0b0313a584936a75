# greendrop/valve_control/__init__.py
"""BLE side of the client: link driver, wire protocol and command channel."""
from __future__ import annotations

from .commands import CommandChannel
from .protocol import Command, decode_frame, encode_command

__all__ = ["Command", "CommandChannel", "decode_frame", "encode_command"]
