# tests/test_api.py
from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
import requests

from greendrop.api import GreenDropApi, TokenStore
from greendrop.exception import ApiError
from greendrop.models import LiveTelemetry


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None):
        self.status_code = status_code
        self.text = "" if body is None else (body if isinstance(body, str) else json.dumps(body))

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """Minimal requests.Session stub: queued responses, recorded requests."""

    def __init__(self, *responses: FakeResponse):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.raise_on_request: Exception | None = None

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.raise_on_request:
            raise self.raise_on_request
        return self.responses.pop(0) if self.responses else FakeResponse(200, {"ok": True})


def make_api(*responses: FakeResponse, token: str | None = "tok", timeout: float | None = None):
    session = FakeSession(*responses)
    api = GreenDropApi("http://backend:3000/", TokenStore(token), session=session, timeout=timeout)
    return api, session


def test_open_session_sends_device_id_with_bearer():
    api, session = make_api()
    asyncio.run(api.async_open_session("ESP32-Riego"))
    req = session.requests[0]
    assert req["method"] == "POST"
    assert req["url"] == "http://backend:3000/telemetry/open-session"
    assert req["json"] == {"deviceId": "ESP32-Riego"}
    assert req["headers"]["Authorization"] == "Bearer tok"
    assert req["headers"]["Content-Type"] == "application/json"


def test_no_token_no_authorization_header():
    api, session = make_api(token=None)
    asyncio.run(api.async_close_session("X"))
    assert "Authorization" not in session.requests[0]["headers"]
    assert session.requests[0]["url"].endswith("/telemetry/close-session")


def test_push_uses_wire_names():
    api, session = make_api(timeout=5.0)
    live = LiveTelemetry(device_id="X", name="Huerta", humidity=40, purity=95, status="OK", minutes=12)
    asyncio.run(api.async_push_telemetry(live))
    req = session.requests[0]
    assert req["url"].endswith("/telemetry/push")
    assert req["json"] == {
        "deviceId": "X",
        "name": "Huerta",
        "humedad": 40,
        "pureza": 95,
        "estado": "OK",
        "minutos": 12,
    }
    assert req["timeout"] == 5.0


def test_path_ids_are_encoded():
    api, session = make_api(FakeResponse(200, []), FakeResponse(200, {}))
    asyncio.run(api.async_get_history("ESP32 Riego/1"))
    asyncio.run(api.async_get_latest("ESP32 Riego/1"))
    assert session.requests[0]["url"].endswith("/telemetry/history/ESP32%20Riego%2F1")
    assert session.requests[1]["url"].endswith("/telemetry/latest/ESP32%20Riego%2F1")


def test_latest_empty_body_is_none():
    api, _ = make_api(FakeResponse(200, None))
    assert asyncio.run(api.async_get_latest("X")) is None


def test_latest_record():
    api, _ = make_api(FakeResponse(200, {"humedad": 40, "pureza": 90, "estado": "OK"}))
    assert asyncio.run(api.async_get_latest("X")) == {"humedad": 40, "pureza": 90, "estado": "OK"}


def test_history_non_list_is_empty():
    api, _ = make_api(FakeResponse(200, {"unexpected": True}))
    assert asyncio.run(api.async_get_history("X")) == []


def test_error_code_from_body():
    api, _ = make_api(FakeResponse(409, {"code": "SESSION_ALREADY_OPEN"}))
    with pytest.raises(ApiError) as err:
        asyncio.run(api.async_open_session("X"))
    assert err.value.code == "SESSION_ALREADY_OPEN"
    assert err.value.status == 409
    assert err.value.raw == {"code": "SESSION_ALREADY_OPEN"}


def test_error_without_body_uses_status():
    api, _ = make_api(FakeResponse(502, "<html>bad gateway</html>"))
    with pytest.raises(ApiError) as err:
        asyncio.run(api.async_get_history("X"))
    assert str(err.value) == "HTTP 502"
    assert err.value.raw is None


def test_unauthorized_drops_token():
    api, _ = make_api(FakeResponse(401, {"message": "Unauthorized"}))
    with pytest.raises(ApiError) as err:
        asyncio.run(api.async_push_telemetry(LiveTelemetry(device_id="X", minutes=1)))
    assert err.value.code == "Unauthorized"
    assert not api.tokens.is_authenticated


def test_network_error_wrapped():
    api, session = make_api()
    session.raise_on_request = requests.ConnectionError("refused")
    with pytest.raises(ApiError) as err:
        asyncio.run(api.async_open_session("X"))
    assert err.value.code.startswith("Network error")
    assert err.value.status is None


def test_token_store():
    tokens = TokenStore("")
    assert not tokens.is_authenticated
    tokens.set("abc")
    assert tokens.get() == "abc"
    tokens.clear()
    assert tokens.get() is None
