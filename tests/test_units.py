from __future__ import annotations

import json
import math

import pytest

from services.units import UnitConversionRegistry


@pytest.fixture()
def registry() -> UnitConversionRegistry:
    return UnitConversionRegistry()


def test_sensor_membership_selects_category(registry: UnitConversionRegistry) -> None:
    category = registry.units_for("temperature:outTemp")

    assert category.name == "temperature"
    assert category.metric_unit == "K"
    assert category.user_unit == "°C"
    assert category.convert(283.15) == pytest.approx(10.0)


def test_explicit_category_wins(registry: UnitConversionRegistry) -> None:
    category = registry.units_for("dew_point_calc", "temperature")

    assert category.name == "temperature"


def test_prefix_is_used_for_unlisted_sensors(registry: UnitConversionRegistry) -> None:
    category = registry.units_for("speed:someOtherWind")

    assert category.name == "speed"
    assert category.convert(10.0) == pytest.approx(36.0)


def test_unknown_sensor_gets_identity(registry: UnitConversionRegistry) -> None:
    category = registry.units_for("mystery_calc")

    assert category.convert(9.85) == 9.85
    assert category.user_unit == ""


@pytest.mark.parametrize(
    "sensor_key, metric_value",
    [
        ("temperature:outTemp", 283.15),
        ("speed:Wind", 4.2),
        ("pressure:barometer", 1013.25),
    ],
)
def test_round_trip_through_declared_inverse(
    registry: UnitConversionRegistry, sensor_key: str, metric_value: float
) -> None:
    category = registry.units_for(sensor_key)
    assert category.invert is not None

    assert category.invert(category.convert(metric_value)) == pytest.approx(metric_value)


def test_conversion_errors_become_nan(tmp_path) -> None:
    config = {
        "temperature": {
            "metric": "K",
            "user": "ratio",
            "sensors": ["temperature:outTemp"],
            "available_units": {"ratio": {"fromMetric": "lambda x: 1 / x"}},
        }
    }
    path = tmp_path / "units.json"
    path.write_text(json.dumps(config))

    registry = UnitConversionRegistry.from_file(path)
    category = registry.units_for("temperature:outTemp")

    assert math.isnan(category.convert(0.0))
    assert category.invert is None
    assert registry.categories() == ("temperature",)


def test_invalid_conversion_falls_back_to_metric() -> None:
    registry = UnitConversionRegistry(
        {"rain": {"metric": "mm", "user": "in", "available_units": {"in": {"fromMetric": "import os"}}}}
    )
    category = registry.units_for("rain:rainFall")

    assert category.user_unit == "mm"
    assert category.convert(3.0) == 3.0


def test_unreadable_file_uses_defaults(tmp_path) -> None:
    path = tmp_path / "units.json"
    path.write_text("{not json")

    registry = UnitConversionRegistry.from_file(path)

    assert "temperature" in registry.categories()
    assert registry.sensor_type_map()["pressure:barometer"] == "pressure"
