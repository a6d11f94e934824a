"""Per-category unit metadata and metric -> user conversions."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from services.errors import FormulaParseError, FormulaRuntimeError
from services.formula import CompiledFormula, FormulaEvaluator, to_scalar
from settings import get_settings

logger = logging.getLogger(__name__)

Converter = Callable[[float], float]

IDENTITY = "lambda x: x"

DEFAULT_UNITS: Dict[str, Dict[str, Any]] = {
    "temperature": {
        "metric": "K",
        "user": "°C",
        "sensors": [
            "temperature:outTemp",
            "temperature:inTemp",
            "temperature:dewpoint",
            "temperature:heatindex",
            "temperature:windchill",
        ],
        "available_units": {
            "K": {"fromMetric": IDENTITY, "toMetric": IDENTITY},
            "°C": {"fromMetric": "lambda x: x - 273.15", "toMetric": "lambda x: x + 273.15"},
            "°F": {
                "fromMetric": "lambda x: (x - 273.15) * 9 / 5 + 32",
                "toMetric": "lambda x: (x - 32) * 5 / 9 + 273.15",
            },
        },
    },
    "pressure": {
        "metric": "hPa",
        "user": "hPa",
        "sensors": ["pressure:barometer"],
        "available_units": {
            "hPa": {"fromMetric": IDENTITY, "toMetric": IDENTITY},
            "mmHg": {"fromMetric": "lambda x: x * 0.750062", "toMetric": "lambda x: x / 0.750062"},
            "inHg": {"fromMetric": "lambda x: x * 0.0295300", "toMetric": "lambda x: x / 0.0295300"},
        },
    },
    "humidity": {
        "metric": "%",
        "user": "%",
        "sensors": ["humidity:outHumidity", "humidity:inHumidity"],
        "available_units": {"%": {"fromMetric": IDENTITY, "toMetric": IDENTITY}},
    },
    "speed": {
        "metric": "m/s",
        "user": "km/h",
        "sensors": ["speed:Wind", "speed:Gust"],
        "available_units": {
            "m/s": {"fromMetric": IDENTITY, "toMetric": IDENTITY},
            "km/h": {"fromMetric": "lambda x: x * 3.6", "toMetric": "lambda x: x / 3.6"},
            "mph": {"fromMetric": "lambda x: x * 2.236936", "toMetric": "lambda x: x / 2.236936"},
            "kn": {"fromMetric": "lambda x: x * 1.943844", "toMetric": "lambda x: x / 1.943844"},
        },
    },
    "rain": {
        "metric": "mm",
        "user": "mm",
        "sensors": ["rain:rainFall", "rain:rainRate"],
        "available_units": {
            "mm": {"fromMetric": IDENTITY, "toMetric": IDENTITY},
            "in": {"fromMetric": "lambda x: x / 25.4", "toMetric": "lambda x: x * 25.4"},
        },
    },
    "irradiance": {
        "metric": "W/m²",
        "user": "W/m²",
        "sensors": ["irradiance:solar"],
        "available_units": {"W/m²": {"fromMetric": IDENTITY, "toMetric": IDENTITY}},
    },
    "uv": {
        "metric": "index",
        "user": "index",
        "sensors": ["uv:UV"],
        "available_units": {"index": {"fromMetric": IDENTITY, "toMetric": IDENTITY}},
    },
    "direction": {
        "metric": "°",
        "user": "°",
        "sensors": ["direction:Wind", "direction:Gust"],
        "available_units": {"°": {"fromMetric": IDENTITY, "toMetric": IDENTITY}},
    },
    "angle": {
        "metric": "°",
        "user": "°",
        "sensors": [],
        "available_units": {"°": {"fromMetric": IDENTITY, "toMetric": IDENTITY}},
    },
}


def _identity(value: float) -> float:
    return value


@dataclass(frozen=True)
class UnitCategory:
    name: str
    metric_unit: str
    user_unit: str
    sensors: Tuple[str, ...]
    convert: Converter
    invert: Optional[Converter] = None
    from_metric_source: str = IDENTITY


def _converter(formula: CompiledFormula) -> Converter:
    def convert(value: float) -> float:
        try:
            result = to_scalar(formula(value))
        except FormulaRuntimeError:
            return math.nan
        return math.nan if result is None else result

    return convert


class UnitConversionRegistry:
    """Immutable lookup table built once from a units configuration."""

    def __init__(
        self,
        config: Optional[Mapping[str, Mapping[str, Any]]] = None,
        evaluator: Optional[FormulaEvaluator] = None,
    ) -> None:
        self._evaluator = evaluator or FormulaEvaluator()
        source = DEFAULT_UNITS if config is None else config
        self._categories: Dict[str, UnitCategory] = {
            name: self._build_category(name, entry) for name, entry in source.items()
        }
        self._sensor_types: Dict[str, str] = {}
        for name, category in self._categories.items():
            for sensor in category.sensors:
                self._sensor_types[sensor] = name

    @classmethod
    def from_file(cls, path: Path, evaluator: Optional[FormulaEvaluator] = None) -> "UnitConversionRegistry":
        try:
            config = json.loads(path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to load units configuration; using defaults", extra={"reason": str(path)})
            config = None
        return cls(config=config, evaluator=evaluator)

    def _build_category(self, name: str, entry: Mapping[str, Any]) -> UnitCategory:
        metric_unit = str(entry.get("metric") or "")
        user_unit = str(entry.get("user") or metric_unit)
        available = entry.get("available_units") or {}
        conversion = available.get(user_unit) or {}

        from_source = conversion.get("fromMetric") or IDENTITY
        to_source = conversion.get("toMetric")
        try:
            convert = _converter(self._evaluator.compile(from_source))
            invert = _converter(self._evaluator.compile(to_source)) if to_source else None
        except FormulaParseError:
            logger.error(
                "Invalid conversion for unit category; falling back to metric",
                extra={"reason": f"{name}:{user_unit}"},
            )
            user_unit, from_source = metric_unit, IDENTITY
            convert, invert = _identity, _identity

        return UnitCategory(
            name=name,
            metric_unit=metric_unit,
            user_unit=user_unit,
            sensors=tuple(entry.get("sensors") or ()),
            convert=convert,
            invert=invert,
            from_metric_source=from_source,
        )

    def units_for(self, sensor_key: str, category: Optional[str] = None) -> UnitCategory:
        """Explicit category, then sensor membership, then the key's prefix."""
        if category and category in self._categories:
            return self._categories[category]
        name = self._sensor_types.get(sensor_key)
        if name is None:
            prefix, separator, _ = sensor_key.partition(":")
            name = prefix if separator else None
        if name is not None and name in self._categories:
            return self._categories[name]
        return UnitCategory(
            name=category or "unknown",
            metric_unit="",
            user_unit="",
            sensors=(),
            convert=_identity,
            invert=_identity,
        )

    def sensor_type_map(self) -> Dict[str, str]:
        return dict(self._sensor_types)

    def categories(self) -> Tuple[str, ...]:
        return tuple(self._categories)


@lru_cache
def build_default_units() -> UnitConversionRegistry:
    settings = get_settings()
    if settings.units_config_path:
        return UnitConversionRegistry.from_file(Path(settings.units_config_path))
    return UnitConversionRegistry()
