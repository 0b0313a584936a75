# greendrop/valve_control/commands.py
"""Command channel: short ASCII tokens to the valve's write characteristic.

Fire-and-forget. ``send`` logs and reports False on failure instead of
raising; ``send_strict`` raises for callers (the connect sequence) that must
unwind when the first write fails.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .protocol import Command, encode_command

_LOGGER = logging.getLogger(__name__)


class CommandWriter(Protocol):
    async def write(self, data: bytes) -> None: ...


class CommandChannel:
    """Holds the current write capability; the session manager attaches it."""

    def __init__(self) -> None:
        self._writer: Optional[CommandWriter] = None

    @property
    def attached(self) -> bool:
        return self._writer is not None

    def attach(self, writer: CommandWriter) -> None:
        self._writer = writer

    def detach(self) -> None:
        self._writer = None

    async def send_strict(self, command: Command | str) -> None:
        writer = self._writer
        if writer is None:
            raise RuntimeError("No BLE characteristic configured")
        data = encode_command(command)
        _LOGGER.debug("Sending command %s", data.decode("ascii"))
        await writer.write(data)

    async def send(self, command: Command | str) -> bool:
        token = command.value if isinstance(command, Command) else command
        if self._writer is None:
            _LOGGER.warning("No BLE characteristic configured; dropping %s", token)
            return False
        try:
            await self.send_strict(command)
        except Exception as e:
            _LOGGER.error("Error sending %s: %s", token, e, exc_info=True)
            return False
        return True

    # Shorthands used by the views / timer
    async def read_now(self) -> bool:
        return await self.send(Command.READ)

    async def irrigation_on(self) -> bool:
        return await self.send(Command.IRR_ON)

    async def irrigation_off(self) -> bool:
        return await self.send(Command.IRR_OFF)
