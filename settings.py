from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_QUERY_BASE_URL_ENV = "QUERY_BASE_URL"
_STATION_ID_ENV = "STATION_ID"
_LONGITUDE_ENV = "STATION_LONGITUDE"
_LATITUDE_ENV = "STATION_LATITUDE"
_ALTITUDE_ENV = "STATION_ALTITUDE"
_CACHE_TTL_ENV = "QUERY_CACHE_TTL_SECONDS"
_RETRIES_ENV = "QUERY_RETRIES"
_RETRY_DELAY_ENV = "QUERY_RETRY_DELAY_SECONDS"
_TIMEOUT_ENV = "QUERY_TIMEOUT_SECONDS"
_STALE_PENDING_ENV = "CACHE_STALE_PENDING_SECONDS"
_SWEEP_INTERVAL_ENV = "CACHE_SWEEP_INTERVAL_SECONDS"
_COMPOSITE_PATH_ENV = "COMPOSITE_CATALOG_PATH"
_INTEGRATOR_PATH_ENV = "INTEGRATOR_CATALOG_PATH"
_UNITS_PATH_ENV = "UNITS_CONFIG_PATH"
_FORECAST_HORIZON_ENV = "FORECAST_HORIZON_HOURS"
_STEP_COUNT_ENV = "DEFAULT_STEP_COUNT"
_LOG_LEVEL_ENV = "LOG_LEVEL"
_LOG_FORMAT_ENV = "LOG_FORMAT"


@dataclass(frozen=True)
class Settings:
    query_base_url: str
    station_id: str
    longitude: float
    latitude: float
    altitude: float
    cache_ttl_seconds: float
    query_retries: int
    retry_delay_seconds: float
    query_timeout_seconds: float
    stale_pending_seconds: float
    sweep_interval_seconds: float
    composite_catalog_path: Optional[str]
    integrator_catalog_path: Optional[str]
    units_config_path: Optional[str]
    forecast_horizon_hours: float
    default_step_count: int
    log_level: str
    log_format: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_float_env(name: str, default: float, minimum: Optional[float] = None) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _read_int_env(name: str, default: int, minimum: int = 0) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        query_base_url=_read_str_env(_QUERY_BASE_URL_ENV, "http://localhost:3000").rstrip("/"),
        station_id=_read_str_env(_STATION_ID_ENV, "station"),
        longitude=_read_float_env(_LONGITUDE_ENV, 0.0),
        latitude=_read_float_env(_LATITUDE_ENV, 0.0),
        altitude=_read_float_env(_ALTITUDE_ENV, 0.0),
        cache_ttl_seconds=_read_float_env(_CACHE_TTL_ENV, 10.0, minimum=0.0),
        query_retries=_read_int_env(_RETRIES_ENV, 2),
        retry_delay_seconds=_read_float_env(_RETRY_DELAY_ENV, 1.5, minimum=0.0),
        query_timeout_seconds=_read_float_env(_TIMEOUT_ENV, 30.0, minimum=0.1),
        stale_pending_seconds=_read_float_env(_STALE_PENDING_ENV, 300.0, minimum=1.0),
        sweep_interval_seconds=_read_float_env(_SWEEP_INTERVAL_ENV, 60.0, minimum=1.0),
        composite_catalog_path=_read_optional_env(
            _COMPOSITE_PATH_ENV, "./tmp/composite_probes.json"
        ),
        integrator_catalog_path=_read_optional_env(
            _INTEGRATOR_PATH_ENV, "./tmp/integrator_probes.json"
        ),
        units_config_path=_read_optional_env(_UNITS_PATH_ENV, None),
        forecast_horizon_hours=_read_float_env(_FORECAST_HORIZON_ENV, 48.0, minimum=1.0),
        default_step_count=_read_int_env(_STEP_COUNT_ENV, 500, minimum=1),
        log_level=_read_log_level("INFO"),
        log_format=_read_str_env(_LOG_FORMAT_ENV, "text").lower(),
    )
