from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_STATION_ID = "station"
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2

_BASE_URL_ENV = "API_BASE_URL"
_STATION_ID_ENV = "STATION_ID"
_TIMEOUT_ENV = "CLI_TIMEOUT"
_RETRIES_ENV = "CLI_RETRIES"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    station_id: str = DEFAULT_STATION_ID
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES


def _read_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_int(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def load_config(
    base_url: Optional[str] = None,
    station_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CLIConfig:
    url = base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL
    station = station_id or (os.getenv(_STATION_ID_ENV) or "").strip() or DEFAULT_STATION_ID
    if timeout is None:
        timeout = _read_float(os.getenv(_TIMEOUT_ENV), DEFAULT_TIMEOUT)
    return CLIConfig(
        base_url=url.rstrip("/"),
        station_id=station,
        timeout=timeout,
        retries=_read_int(os.getenv(_RETRIES_ENV), DEFAULT_RETRIES),
    )
