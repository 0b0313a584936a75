# greendrop/config.py
"""Runtime configuration.

Values come from ``GREENDROP_*`` environment variables (CLI options take
precedence) and are validated with voluptuous before use.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import voluptuous as vol

from .const import (
    DEFAULT_API_URL,
    DEFAULT_NAME_PREFIX,
    DEFAULT_SCAN_TIMEOUT,
    NOTIFY_CHAR_UUID,
    SERVICE_UUID,
    TICK_INTERVAL,
    WRITE_CHAR_UUID,
)
from .exception import ConfigError

ENV_PREFIX = "GREENDROP_"

_UUID = vol.Match(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_POSITIVE = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional("api_url", default=DEFAULT_API_URL): vol.All(str, vol.Match(r"^https?://")),
        vol.Optional("token", default=None): vol.Any(None, str),
        vol.Optional("name_prefix", default=DEFAULT_NAME_PREFIX): vol.All(str, vol.Length(min=1)),
        vol.Optional("service_uuid", default=SERVICE_UUID): _UUID,
        vol.Optional("write_char_uuid", default=WRITE_CHAR_UUID): _UUID,
        vol.Optional("notify_char_uuid", default=NOTIFY_CHAR_UUID): _UUID,
        vol.Optional("scan_timeout", default=DEFAULT_SCAN_TIMEOUT): _POSITIVE,
        vol.Optional("http_timeout", default=None): vol.Any(None, _POSITIVE),
        vol.Optional("tick_interval", default=TICK_INTERVAL): _POSITIVE,
    }
)


@dataclass(frozen=True)
class GreenDropConfig:
    api_url: str = DEFAULT_API_URL
    token: Optional[str] = None
    name_prefix: str = DEFAULT_NAME_PREFIX
    service_uuid: str = SERVICE_UUID
    write_char_uuid: str = WRITE_CHAR_UUID
    notify_char_uuid: str = NOTIFY_CHAR_UUID
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    http_timeout: Optional[float] = None
    tick_interval: float = TICK_INTERVAL


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in CONFIG_SCHEMA.schema:
        name = ENV_PREFIX + str(key).upper()
        value = env.get(name)
        if value not in (None, ""):
            out[str(key)] = value
    return out


def load_config(env: Optional[Mapping[str, str]] = None, **overrides: Any) -> GreenDropConfig:
    """Build a validated config; ``overrides`` set to None are ignored."""
    raw = _from_env(os.environ if env is None else env)
    raw.update({k: v for k, v in overrides.items() if v is not None})
    try:
        data = CONFIG_SCHEMA(raw)
    except vol.Invalid as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return GreenDropConfig(**data)
