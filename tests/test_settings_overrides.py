from __future__ import annotations

import json
from typing import Iterable

from datastore.catalog import build_default_composite_catalog, build_default_integrator_catalog
from services.request_cache import build_default_cache
from services.series_builder import build_default_builder
from services.units import build_default_units
from settings import get_settings
from storage.raw_series import build_default_source


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


CACHES = (
    get_settings,
    build_default_cache,
    build_default_source,
    build_default_units,
    build_default_composite_catalog,
    build_default_integrator_catalog,
    build_default_builder,
)


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    composite_path = tmp_path / "composite.json"
    integrator_path = tmp_path / "integrator.json"

    monkeypatch.setenv("QUERY_BASE_URL", "http://weather.local:3000/")
    monkeypatch.setenv("STATION_ID", "roof")
    monkeypatch.setenv("STATION_LATITUDE", "48.85")
    monkeypatch.setenv("QUERY_CACHE_TTL_SECONDS", "30")
    monkeypatch.setenv("QUERY_RETRIES", "4")
    monkeypatch.setenv("CACHE_STALE_PENDING_SECONDS", "120")
    monkeypatch.setenv("COMPOSITE_CATALOG_PATH", str(composite_path))
    monkeypatch.setenv("INTEGRATOR_CATALOG_PATH", str(integrator_path))
    monkeypatch.setenv("FORECAST_HORIZON_HOURS", "24")
    monkeypatch.setenv("DEFAULT_STEP_COUNT", "250")
    _clear_caches(CACHES)

    try:
        cache = build_default_cache()
        source = build_default_source()
        builder = build_default_builder()

        assert cache.ttl == 30.0
        assert cache.retries == 4
        assert cache.stale_pending_after == 120.0
        assert source.cache is cache
        assert source.base_url == "http://weather.local:3000"
        assert source.station_id == "roof"
        assert source.default_step_count == 250
        assert build_default_composite_catalog().persistence_path == composite_path
        assert build_default_integrator_catalog().persistence_path == integrator_path
        assert builder.constants is not None and builder.constants.latitude == 48.85
        assert builder.forecast_horizon.total_seconds() == 24 * 3600
    finally:
        _clear_caches(CACHES)


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("QUERY_RETRIES", "many")
    monkeypatch.setenv("QUERY_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("DEFAULT_STEP_COUNT", "0")
    monkeypatch.setenv("COMPOSITE_CATALOG_PATH", "  ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.query_retries == 2
        assert settings.query_timeout_seconds == 30.0
        assert settings.default_step_count == 500
        assert settings.composite_catalog_path is None
        assert settings.log_level == "DEBUG"
    finally:
        get_settings.cache_clear()


def test_units_file_override(monkeypatch, tmp_path) -> None:
    units_path = tmp_path / "units.json"
    units = {
        "temperature": {
            "metric": "K",
            "user": "°F",
            "sensors": ["temperature:outTemp"],
            "available_units": {
                "°F": {
                    "fromMetric": "lambda x: (x - 273.15) * 9 / 5 + 32",
                    "toMetric": "lambda x: (x - 32) * 5 / 9 + 273.15",
                }
            },
        }
    }
    units_path.write_text(json.dumps(units), encoding="utf-8")
    monkeypatch.setenv("UNITS_CONFIG_PATH", str(units_path))
    _clear_caches((get_settings, build_default_units))

    try:
        category = build_default_units().units_for("temperature:outTemp")
        assert category.user_unit == "°F"
        assert round(category.convert(273.15), 6) == 32.0
    finally:
        _clear_caches((get_settings, build_default_units))
