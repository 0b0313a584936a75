# greendrop/timer.py
"""Irrigation countdown.

The application keeps the durable TimerState; the controller works on a
local copy and publishes every change back, so re-rendering observers never
drive the tick cadence.

    idle ──start──▶ running ──tick to 0 / stop──▶ stopping ──▶ stopped ──acknowledge──▶ idle

Entering ``stopping`` is what makes the stop sequence single-shot: a manual
stop racing the automatic zero-crossing finds the controller no longer
running and returns.
"""

from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from .const import TICK_INTERVAL
from .exception import TimerStateError
from .models import TimerState, stopped
from .valve_control.commands import CommandChannel

_LOGGER = logging.getLogger(__name__)

SnapshotCallback = Callable[[TimerState], None]
StoppedCallback = Callable[[bool], Union[Awaitable[None], None]]
NavigateCallback = Callable[[str], None]

ROUTE_DEVICE = "device"


class TimerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def progress_percent(total: int, left: int) -> int:
    if not total:
        return 0
    # halves round up, not to even
    pct = 100 - math.floor(left / total * 100 + 0.5)
    return max(0, min(100, pct))


def format_mmss(seconds: float) -> str:
    seconds = max(0, seconds)
    return f"{int(seconds // 60):02d}:{int(seconds % 60):02d}"


class IrrigationTimerController:
    def __init__(
        self,
        commands: CommandChannel,
        *,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_stopped: Optional[StoppedCallback] = None,
        navigate: Optional[NavigateCallback] = None,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._commands = commands
        self._on_snapshot = on_snapshot
        self._on_stopped = on_stopped
        self._navigate = navigate
        self._tick_interval = tick_interval

        self._phase = TimerPhase.IDLE
        self._local = TimerState()
        self._tick_task: Optional[asyncio.Task] = None
        self.last_stop_manual: Optional[bool] = None

    # ---- read side ----
    @property
    def phase(self) -> TimerPhase:
        return self._phase

    @property
    def state(self) -> TimerState:
        return self._local

    @property
    def progress(self) -> int:
        return progress_percent(self._local.total, self._local.left)

    @property
    def clock(self) -> str:
        return format_mmss(self._local.left)

    def _publish(self, state: TimerState) -> None:
        self._local = state
        if self._on_snapshot is not None:
            try:
                self._on_snapshot(state)
            except Exception:
                _LOGGER.debug("timer snapshot observer raised", exc_info=True)

    # ────────────────────────────────────────────────────────────────
    # Transitions
    # ────────────────────────────────────────────────────────────────
    async def async_start(self, duration_minutes: float) -> TimerState:
        if self._phase is not TimerPhase.IDLE:
            raise TimerStateError(f"Cannot start while {self._phase.value}")
        total = int(round(duration_minutes * 60))
        if total <= 0:
            raise ValueError("Irrigation duration must be positive")

        self._phase = TimerPhase.RUNNING
        self.last_stop_manual = None
        self._publish(TimerState(total=total, left=total, running=True))
        _LOGGER.info("Irrigation started for %s (%ss)", format_mmss(total), total)
        self._arm_ticks()
        await self._commands.irrigation_on()
        return self._local

    def resume(self, timer: TimerState) -> bool:
        """Pick up a run from the application's copy (no IRR_ON re-send)."""
        if self._phase is not TimerPhase.IDLE:
            return False
        self._local = timer
        if not timer.running or timer.left <= 0 or timer.total <= 0:
            return False
        self._phase = TimerPhase.RUNNING
        _LOGGER.debug("Resuming irrigation with %ss left", timer.left)
        self._arm_ticks()
        return True

    async def async_tick(self) -> TimerState:
        if self._phase is not TimerPhase.RUNNING or self._local.left <= 0:
            return self._local
        left = max(0, self._local.left - 1)
        self._publish(TimerState(total=self._local.total, left=left, running=left > 0))
        if left <= 0:
            await self.async_stop(manual=False)
        return self._local

    async def async_stop(self, manual: bool) -> bool:
        """Run the stop sequence once per run; later callers get False."""
        if self._phase is not TimerPhase.RUNNING:
            _LOGGER.debug("Stop (manual=%s) ignored while %s", manual, self._phase.value)
            return False
        self._phase = TimerPhase.STOPPING
        self.last_stop_manual = manual
        _LOGGER.info("Stopping irrigation (%s)", "manual" if manual else "finished")

        # Best effort; the local stop completes regardless.
        await self._commands.irrigation_off()

        self._cancel_ticks()
        self._publish(stopped(self._local))

        if self._on_stopped is not None:
            try:
                result = self._on_stopped(manual)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                _LOGGER.warning("Irrigation stopped callback raised", exc_info=True)

        self._phase = TimerPhase.STOPPED
        if self._navigate is not None:
            self._navigate(ROUTE_DEVICE)
        return True

    def acknowledge(self) -> None:
        if self._phase is TimerPhase.STOPPED:
            self._phase = TimerPhase.IDLE

    async def async_shutdown(self) -> None:
        """Drop the tick task without running the stop sequence."""
        task = self._cancel_ticks()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ────────────────────────────────────────────────────────────────
    # Tick loop
    # ────────────────────────────────────────────────────────────────
    def _arm_ticks(self) -> None:
        self._cancel_ticks()
        self._tick_task = asyncio.get_running_loop().create_task(self._run_ticks())

    def _cancel_ticks(self) -> Optional[asyncio.Task]:
        task = self._tick_task
        self._tick_task = None
        # never cancel ourselves when the zero-crossing stops the run from inside the loop
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            return task
        return None

    async def _run_ticks(self) -> None:
        while self._phase is TimerPhase.RUNNING and self._local.left > 0:
            await asyncio.sleep(self._tick_interval)
            await self.async_tick()
