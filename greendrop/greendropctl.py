# greendrop/greendropctl.py
"""GreenDrop valve control CLI entrypoint.

Talks to the valve directly over BLE (bleak) and to the telemetry backend
over HTTP. Every device-bound command runs through GreenDropApp, so the CLI
exercises the same session and timer logic as any other front end.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import typer
from rich import print
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from typer import Context
from typing_extensions import Annotated

from .app import GreenDropApp
from .config import GreenDropConfig, load_config
from .const import PLANT_DURATIONS, SIGNAL_LIVE_TELEMETRY, SIGNAL_NOTICE
from .exception import ConfigError, DeviceNotFound
from .models import LiveTelemetry
from .timer import TimerPhase, format_mmss
from .valve_control.device import async_scan, get_handle_from_address

app = typer.Typer(help="GreenDrop irrigation valve control")


# ────────────────────────────────────────────────────────────────
# Global options
# ────────────────────────────────────────────────────────────────
@app.callback()
def _global_options(
    ctx: Context,
    debug: Annotated[bool, typer.Option("--debug/--no-debug", help="Enable verbose debug logging")] = False,
    api_url: Annotated[Optional[str], typer.Option(help="Backend base URL")] = None,
    token: Annotated[Optional[str], typer.Option(help="Bearer token for the backend")] = None,
) -> None:
    try:
        config = load_config(api_url=api_url, token=token)
    except ConfigError as e:
        raise typer.BadParameter(str(e)) from e
    ctx.obj = {"config": config, "debug": debug}

    if debug:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_level=True)],
        )
        logging.getLogger("bleak").setLevel(logging.DEBUG)
        logging.getLogger("greendrop").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────
def _config(ctx: Context) -> GreenDropConfig:
    return ctx.obj["config"]


def _telemetry_table(live: LiveTelemetry) -> Table:
    table = Table("Device", "Name", "Humidity", "Purity", "Status", "Minutes")
    table.add_row(
        live.device_id,
        live.name or "",
        "-" if live.humidity is None else f"{live.humidity}%",
        "-" if live.purity is None else f"{live.purity}%",
        live.status or "-",
        str(live.minutes or 0),
    )
    return table


def _run_connected(
    config: GreenDropConfig,
    device_address: str,
    body: Callable[[GreenDropApp], Awaitable[Any]],
) -> Any:
    """Connect, run ``body`` with the app, always disconnect afterwards."""

    async def _async_func() -> Any:
        gd = GreenDropApp(config)
        gd.dispatcher.connect(SIGNAL_NOTICE, lambda text, level: print(f"[dim]{text}[/dim]"))
        try:
            handle = await get_handle_from_address(device_address, timeout=config.scan_timeout)
        except DeviceNotFound as e:
            print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
        result = await gd.async_connect(handle)
        if not result.ok:
            raise typer.Exit(code=1)
        try:
            return await body(gd)
        finally:
            await gd.manager.async_disconnect()
            await gd.async_close()

    return asyncio.run(_async_func())


# ────────────────────────────────────────────────────────────────
# Device commands
# ────────────────────────────────────────────────────────────────
@app.command(name="scan")
def scan(
    ctx: Context,
    timeout: Annotated[Optional[float], typer.Option(help="Seconds to search")] = None,
    prefix: Annotated[Optional[str], typer.Option(help="Advertised name prefix")] = None,
) -> None:
    """Search for one valve controller."""
    config = _config(ctx)
    print("Scanning for Bluetooth devices…")
    handle = asyncio.run(async_scan(prefix or config.name_prefix, timeout or config.scan_timeout))
    if handle is None:
        print("[yellow]No devices found or search cancelled.[/yellow]")
        raise typer.Exit(code=1)
    table = Table("Name", "Address", "Signal")
    table.add_row(handle.name, handle.id, f"{handle.rssi} dBm")
    print(table)


@app.command(name="read")
def read(
    ctx: Context,
    device_address: str,
    timeout: Annotated[float, typer.Option(help="Seconds to wait for a reading")] = 10.0,
) -> None:
    """Connect, request one reading and print it."""

    async def _body(gd: GreenDropApp) -> None:
        got: asyncio.Future[LiveTelemetry] = asyncio.get_running_loop().create_future()

        def _on_live(live: LiveTelemetry) -> None:
            if not got.done():
                got.set_result(live)

        gd.dispatcher.connect(SIGNAL_LIVE_TELEMETRY, _on_live)
        try:
            live = await asyncio.wait_for(got, timeout=timeout)
        except asyncio.TimeoutError:
            print("[yellow]No reading received.[/yellow]")
            return
        print(_telemetry_table(live))

    _run_connected(_config(ctx), device_address, _body)


@app.command(name="monitor")
def monitor(
    ctx: Context,
    device_address: str,
    seconds: Annotated[Optional[float], typer.Option(help="Stop after this many seconds")] = None,
) -> None:
    """Stream live telemetry until Ctrl-C (or --seconds)."""

    async def _body(gd: GreenDropApp) -> None:
        gd.dispatcher.connect(SIGNAL_LIVE_TELEMETRY, lambda live: print(_telemetry_table(live)))
        if seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(seconds)

    _run_connected(_config(ctx), device_address, _body)


@app.command(name="irrigate")
def irrigate(
    ctx: Context,
    device_address: str,
    minutes: Annotated[Optional[float], typer.Option(min=0.1, help="Run length in minutes")] = None,
    plant: Annotated[str, typer.Option(help=f"Plant preset ({', '.join(PLANT_DURATIONS)})")] = "Pasto",
) -> None:
    """Open the valve for a timed run; Ctrl-C stops it early."""

    async def _body(gd: GreenDropApp) -> None:
        snapshot = await gd.async_start_irrigation(minutes, plant=plant)
        with Progress(
            TextColumn("Irrigating"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[clock]}"),
        ) as progress:
            task = progress.add_task("run", total=100, clock=format_mmss(snapshot.left))
            try:
                while gd.timer.phase is TimerPhase.RUNNING:
                    progress.update(task, completed=gd.timer.progress, clock=gd.timer.clock)
                    await asyncio.sleep(0.25)
            except asyncio.CancelledError:
                await gd.async_stop_irrigation()
                raise
            progress.update(task, completed=gd.timer.progress, clock=gd.timer.clock)
        how = "manually" if gd.timer.last_stop_manual else "after the full run"
        print(f"[green]Irrigation stopped {how}.[/green]")

    try:
        _run_connected(_config(ctx), device_address, _body)
    except KeyboardInterrupt:
        print("[yellow]Irrigation stopped manually.[/yellow]")


# ────────────────────────────────────────────────────────────────
# Backend commands
# ────────────────────────────────────────────────────────────────
@app.command(name="latest")
def latest(
    ctx: Context,
    device_id: str,
    watch: Annotated[bool, typer.Option("--watch", help="Keep polling until Ctrl-C")] = False,
) -> None:
    """Show the latest stored record for a device."""
    gd = GreenDropApp(_config(ctx))
    if not watch:
        _print_readings(asyncio.run(gd.async_latest_readings(device_id)))
        return

    async def _watch() -> None:
        async for readings in gd.async_watch_latest(device_id):
            _print_readings(readings)

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        print("[yellow]Stopped.[/yellow]")


def _print_readings(readings: dict[str, Any]) -> None:
    table = Table("Humidity", "Purity", "Status")
    table.add_row(str(readings["humedad"]), str(readings["pureza"]), str(readings["estado"]))
    print(table)


@app.command(name="history")
def history(ctx: Context, device_id: str) -> None:
    """List stored irrigation records for a device."""
    gd = GreenDropApp(_config(ctx))
    items = asyncio.run(gd.async_load_history(device_id))
    if not items:
        print("[yellow]No irrigation records yet.[/yellow]")
        return
    table = Table("Date", "Plant", "Device", "Minutes", "Humidity", "Purity")
    for item in items:
        table.add_row(item.date, item.plant, item.device, str(item.minutes), f"{item.humidity}%", f"{item.purity}%")
    print(table)


if __name__ == "__main__":
    try:
        app()
    except asyncio.CancelledError:
        pass
