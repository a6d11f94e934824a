from __future__ import annotations

import pytest

from services.dependencies import FALLBACK_DEPENDENCY, DependencyResolver, short_field_name
from services.errors import FormulaParseError


@pytest.fixture()
def resolver() -> DependencyResolver:
    return DependencyResolver()


def test_keys_in_source_order_without_duplicates(resolver: DependencyResolver) -> None:
    source = """
t = data['temperature:outTemp']
h = data['humidity:outHumidity']
return dew_point(data['temperature:outTemp'], h) - t
"""

    resolved = resolver.resolve(source)

    assert resolved.dependency_keys == ["temperature:outTemp", "humidity:outHumidity"]


def test_field_mapping_uses_short_names_and_timestamp(resolver: DependencyResolver) -> None:
    resolved = resolver.resolve("data['temperature:outTemp'] + data['humidity:outHumidity']")

    assert resolved.field_mapping == {
        "d": "timestamp",
        "temperature:outTemp": "outTemp",
        "humidity:outHumidity": "outHumidity",
    }


def test_formula_without_data_access_falls_back(resolver: DependencyResolver) -> None:
    resolved = resolver.resolve("return 42;")

    assert resolved.dependency_keys == [FALLBACK_DEPENDENCY]
    assert resolved.field_mapping == {"d": "timestamp", "pressure:barometer": "barometer"}


def test_lambda_parameter_name_does_not_matter(resolver: DependencyResolver) -> None:
    resolved = resolver.resolve("val = lambda d: d['temperature:outTemp'] - 273.15")

    assert resolved.dependency_keys == ["temperature:outTemp"]


def test_helper_arguments_count_as_dependencies(resolver: DependencyResolver) -> None:
    source = (
        "adaptive_setpoint(data, forecast, target, indoor='temperature:inTemp', "
        "outdoor='temperature:outTemp', irradiance='irradiance:solar')"
    )

    resolved = resolver.resolve(source)

    assert resolved.dependency_keys == [
        "temperature:inTemp",
        "temperature:outTemp",
        "irradiance:solar",
    ]


def test_dynamic_keys_are_not_detected(resolver: DependencyResolver) -> None:
    resolved = resolver.resolve("key = 'temperature' + ':outTemp'\nreturn data[key]")

    assert resolved.dependency_keys == [FALLBACK_DEPENDENCY]


def test_plain_strings_are_not_sensor_keys(resolver: DependencyResolver) -> None:
    resolved = resolver.resolve("data['label'] if data['temperature:outTemp'] > 0 else 0")

    assert resolved.dependency_keys == ["temperature:outTemp"]


def test_malformed_source_raises(resolver: DependencyResolver) -> None:
    with pytest.raises(FormulaParseError):
        resolver.resolve("data['temperature:outTemp'] +")


def test_short_field_name() -> None:
    assert short_field_name("rain:rainRate") == "rainRate"
    assert short_field_name("barometer") == "barometer"
