# greendrop/api.py
"""Backend REST client (telemetry endpoints).

Blocking ``requests`` calls run in the loop's default executor so the BLE
notification path and the timer tick never wait on the network thread.
All calls send JSON and a bearer token when one is stored; a 401 drops the
stored token.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests import RequestException

from .const import DEFAULT_API_URL
from .exception import ApiError
from .models import LiveTelemetry

_LOGGER = logging.getLogger(__name__)


class TokenStore:
    """Holds the bearer credential for the process lifetime."""

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token or None

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: Optional[str]) -> None:
        self._token = token or None

    def clear(self) -> None:
        self._token = None

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None


def _read_json_safe(response: requests.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class GreenDropApi:
    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        tokens: Optional[TokenStore] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tokens = tokens or TokenStore()
        self._session = session or requests.Session()
        self._timeout = timeout

    # ────────────────────────────────────────────────────────────────
    # Plumbing
    # ────────────────────────────────────────────────────────────────
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self.tokens.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def request(self, method: str, path: str, payload: Any = None) -> Any:
        url = self.base_url + path
        _LOGGER.debug("%s %s %s", method, url, payload if payload is not None else "")
        try:
            response = self._session.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except RequestException as e:
            raise ApiError(f"Network error: {e}") from e

        data = _read_json_safe(response)

        # expired / revoked credential
        if response.status_code == 401:
            _LOGGER.info("Backend rejected the credential; discarding it")
            self.tokens.clear()

        if not response.ok:
            code = None
            if isinstance(data, dict):
                code = data.get("code") or data.get("message")
            raise ApiError(str(code or f"HTTP {response.status_code}"), status=response.status_code, raw=data)
        return data

    async def _async_request(self, method: str, path: str, payload: Any = None) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.request, method, path, payload))

    # ────────────────────────────────────────────────────────────────
    # Telemetry
    # ────────────────────────────────────────────────────────────────
    async def async_open_session(self, device_id: str) -> Any:
        return await self._async_request("POST", "/telemetry/open-session", {"deviceId": device_id})

    async def async_close_session(self, device_id: str) -> Any:
        return await self._async_request("POST", "/telemetry/close-session", {"deviceId": device_id})

    async def async_push_telemetry(self, telemetry: LiveTelemetry) -> Any:
        return await self._async_request("POST", "/telemetry/push", telemetry.to_payload())

    async def async_get_latest(self, device_id: str) -> Optional[dict[str, Any]]:
        data = await self._async_request("GET", f"/telemetry/latest/{quote(device_id, safe='')}")
        if not data or not isinstance(data, dict):
            return None
        return data

    async def async_get_history(self, device_id: str) -> list[dict[str, Any]]:
        data = await self._async_request("GET", f"/telemetry/history/{quote(device_id, safe='')}")
        if not isinstance(data, list):
            return []
        return data
