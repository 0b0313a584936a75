# tests/test_connection_state.py
from __future__ import annotations

import pytest

from conftest import FakeDevice
from greendrop.exception import ConnectionBusyError, InvariantViolation
from greendrop.models import ConnectionState, LiveTelemetry, TelemetryFrame, TimerState, stopped


def test_fresh_state_is_empty():
    state = ConnectionState()
    assert state.is_empty
    assert not state.is_alive


def test_acquire_sets_device_and_channel_together(handle):
    state = ConnectionState()
    device = FakeDevice(handle)
    device.connected = True
    state.acquire(handle, device)
    assert state.device is device
    assert state.write_channel is device
    assert state.owns(handle)
    assert state.is_alive
    assert state.last_known_name == handle.name


def test_second_acquire_refused(handle, other_handle):
    state = ConnectionState()
    state.acquire(handle, FakeDevice(handle))
    with pytest.raises(ConnectionBusyError):
        state.acquire(other_handle, FakeDevice(other_handle))
    assert state.owns(handle)


def test_single_subscription(handle):
    state = ConnectionState()
    with pytest.raises(InvariantViolation):
        state.attach_subscription(object())
    state.acquire(handle, FakeDevice(handle))
    state.attach_subscription(object())
    with pytest.raises(InvariantViolation):
        state.attach_subscription(object())


def test_session_requires_device():
    state = ConnectionState()
    with pytest.raises(InvariantViolation):
        state.mark_session_open("ESP32-Riego")
    assert not state.session_open


def test_reset_empties_everything(handle):
    state = ConnectionState()
    state.acquire(handle, FakeDevice(handle))
    state.attach_subscription(object())
    state.mark_session_open("ESP32-Riego")
    state.update_live(TelemetryFrame(humidity=40), "ESP32-Riego", "Huerta")
    state.reset()
    assert state.is_empty
    assert state.live is None
    assert state.last_known_name is None


def test_live_merges_fields_within_a_device(handle):
    state = ConnectionState()
    state.acquire(handle, FakeDevice(handle))
    state.update_live(TelemetryFrame(humidity=40), "X", "Huerta")
    live = state.update_live(TelemetryFrame(purity=90, minutes=2), "X", None)
    assert live == LiveTelemetry(device_id="X", name="Huerta", humidity=40, purity=90, status="OK", minutes=2)


def test_live_does_not_carry_across_devices(handle):
    state = ConnectionState()
    state.acquire(handle, FakeDevice(handle))
    state.update_live(TelemetryFrame(humidity=40), "X", "Huerta")
    live = state.update_live(TelemetryFrame(purity=90), "Y", None)
    assert live.humidity is None
    assert live.name is None


def test_payload_drops_absent_fields():
    live = LiveTelemetry(device_id="X", humidity=40, minutes=0)
    assert live.to_payload() == {"deviceId": "X", "humedad": 40, "minutos": 0}


def test_stopped_snapshot():
    assert stopped(TimerState(total=720, left=300, running=True)) == TimerState(total=720, left=0, running=False)
