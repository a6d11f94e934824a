"""Derived series assembly: fetch, align, evaluate, convert."""

from __future__ import annotations

import asyncio
import logging
import math
import statistics
from bisect import bisect_left
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from app.schemas import (
    CurrentValue,
    DerivedSensorDefinition,
    DerivedSeries,
    ProbeKind,
    SeriesPoint,
)
from datastore.catalog import (
    DerivedSensorCatalog,
    build_default_composite_catalog,
    build_default_integrator_catalog,
)
from models.records import RawSensorSeries, StationConstants, TimeWindow
from services.dependencies import TIMESTAMP_FIELD, short_field_name
from services.errors import DefinitionNotFoundError, FormulaRuntimeError, MissingDependencyDataError
from services.formula import CompiledFormula, FormulaEvaluator, finite_or_none, to_scalar
from services.units import UnitCategory, UnitConversionRegistry, build_default_units
from settings import get_settings
from storage.raw_series import RawSeriesSource, build_default_source

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


def alignment_tolerance(series: RawSensorSeries) -> timedelta:
    """Half the median sampling step of ``series``; zero below two points."""
    stamps = [point.timestamp for point in series.points]
    steps = [(later - earlier).total_seconds() for earlier, later in zip(stamps, stamps[1:])]
    if not steps:
        return timedelta(0)
    return timedelta(seconds=statistics.median(steps) / 2)


def _nearest_value(
    stamps: Sequence[datetime],
    series: RawSensorSeries,
    moment: datetime,
    tolerance: timedelta,
) -> Optional[float]:
    index = bisect_left(stamps, moment)
    best: Optional[Tuple[timedelta, float]] = None
    for candidate in (index - 1, index):
        if 0 <= candidate < len(stamps):
            distance = abs(stamps[candidate] - moment)
            if best is None or distance < best[0]:
                best = (distance, series.points[candidate].value)
    if best is None or best[0] > tolerance:
        return None
    return best[1]


def align_records(series_list: Sequence[RawSensorSeries]) -> List[Record]:
    """One record per timestamp of the first series.

    Other series contribute the value at the exact or nearest timestamp within
    the alignment tolerance; a field with nothing close enough is left out.
    """
    if not series_list:
        return []
    primary, others = series_list[0], series_list[1:]
    tolerance = alignment_tolerance(primary)
    lookups = [(series, [point.timestamp for point in series.points]) for series in others]

    records: List[Record] = []
    for point in primary.points:
        record: Record = {TIMESTAMP_FIELD: point.timestamp, primary.key: point.value}
        for series, stamps in lookups:
            value = _nearest_value(stamps, series, point.timestamp, tolerance)
            if value is not None:
                record[series.key] = value
        records.append(record)
    return records


def merge_records(series_list: Sequence[RawSensorSeries]) -> List[Record]:
    """Every sample of every series, one row per distinct timestamp.

    Unlike :func:`align_records` nothing is snapped to another series'
    timestamps, so a sensor sampled at its own rate keeps all of its points.
    """
    rows: Dict[datetime, Record] = {}
    for series in series_list:
        for point in series.points:
            row = rows.setdefault(point.timestamp, {TIMESTAMP_FIELD: point.timestamp})
            row[series.key] = point.value
    return [rows[moment] for moment in sorted(rows)]


class DerivedSeriesBuilder:
    """Turns a derived sensor definition into a series in user units."""

    def __init__(
        self,
        source: RawSeriesSource,
        catalogs: Sequence[DerivedSensorCatalog],
        units: UnitConversionRegistry,
        evaluator: Optional[FormulaEvaluator] = None,
        constants: Optional[StationConstants] = None,
        forecast_horizon_hours: float = 48.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.source = source
        self.catalogs = tuple(catalogs)
        self.units = units
        self.evaluator = evaluator or FormulaEvaluator()
        self.constants = constants
        self.forecast_horizon = timedelta(hours=forecast_horizon_hours)
        self._now = now

    def find_definition(self, derived_key: str) -> DerivedSensorDefinition:
        for catalog in self.catalogs:
            definition = catalog.get(derived_key)
            if definition is not None:
                return definition
        raise DefinitionNotFoundError(derived_key)

    def units_for(self, definition: DerivedSensorDefinition) -> UnitCategory:
        return self.units.units_for(definition.key, definition.measurement_category)

    async def build(
        self,
        derived_key: str,
        window: TimeWindow,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> DerivedSeries:
        definition = self.find_definition(derived_key)
        keys = list(definition.dependency_keys)
        model_style = definition.kind == ProbeKind.integrator

        fetches: List[Any] = [
            self.source.fetch(key, window, step_count, station_id) for key in keys
        ]
        if model_style:
            forecast_window = TimeWindow(start=window.end, end=window.end + self.forecast_horizon)
            fetches.append(self.source.fetch_rows(keys, forecast_window, step_count, station_id))
        results = await asyncio.gather(*fetches)

        series_list: List[RawSensorSeries] = list(results[: len(keys)])
        for series in series_list:
            if series.is_empty:
                raise MissingDependencyDataError(
                    f"No data for {series.key} between {window.start.isoformat()} "
                    f"and {window.end.isoformat()}.",
                    sensor_key=series.key,
                )

        compiled = self.evaluator.compile(definition.formula_source, self.constants)
        if model_style:
            records = merge_records(series_list)
            bindings = dict(definition.model_parameters)
            bindings["forecast"] = results[-1]
            bindings["series"] = {
                series.key: [{TIMESTAMP_FIELD: point.timestamp, "v": point.value} for point in series.points]
                for series in series_list
            }
            bindings[TIMESTAMP_FIELD] = window.end
            raw_values, formula_errors = self._evaluate(compiled, [(window.end, records)], bindings)
        else:
            records = align_records(series_list)
            raw_values, formula_errors = self._evaluate(
                compiled, [(record[TIMESTAMP_FIELD], record) for record in records]
            )

        category = self.units_for(definition)
        points: List[SeriesPoint] = []
        for moment, value in raw_values:
            converted = finite_or_none(category.convert(value))
            if converted is not None:
                points.append(SeriesPoint(d=moment, v=converted))

        attempted = 1 if model_style else len(records)
        dropped = attempted - len(points)
        series = DerivedSeries(
            key=definition.key,
            label=definition.label,
            kind=definition.kind,
            measurement=category.name,
            unit=category.metric_unit,
            user_unit=category.user_unit,
            points=points,
            first=points[0].d if points else None,
            last=points[-1].d if points else None,
            count=len(points),
            dropped_points=dropped,
            formula_errors=formula_errors,
        )
        logger.info(
            "Built derived series",
            extra={
                "derived_key": definition.key,
                "point_count": len(points),
                "dropped_count": dropped,
            },
        )
        return series

    def _evaluate(
        self,
        compiled: CompiledFormula,
        inputs: Sequence[Tuple[datetime, Any]],
        bindings: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[List[Tuple[datetime, float]], int]:
        values: List[Tuple[datetime, float]] = []
        errors = 0
        for moment, record in inputs:
            try:
                value = finite_or_none(to_scalar(compiled(record, bindings)))
            except FormulaRuntimeError as exc:
                errors += 1
                logger.debug("Formula failed for one point", extra={"reason": str(exc)})
                continue
            if value is not None:
                values.append((moment, value))
        return values, errors

    def evaluate_current(
        self,
        derived_key: str,
        readings: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> CurrentValue:
        """Evaluate a composite probe against live readings keyed by short field name."""
        definition = self.find_definition(derived_key)
        if definition.kind == ProbeKind.integrator:
            raise ValueError(f"{definition.key} is model-style and has no live value.")

        moment = now or self._now()
        record: Record = {TIMESTAMP_FIELD: moment}
        for key in definition.dependency_keys:
            field = definition.field_mapping.get(key) or short_field_name(key)
            reading = readings.get(field)
            if reading is None or (isinstance(reading, float) and math.isnan(reading)):
                raise MissingDependencyDataError(f"No current reading for {field!r}.", sensor_key=key)
            record[key] = float(reading)

        category = self.units_for(definition)
        compiled = self.evaluator.compile(definition.formula_source, self.constants)
        try:
            raw = finite_or_none(to_scalar(compiled(record)))
        except FormulaRuntimeError as exc:
            logger.warning(
                "Live evaluation failed",
                extra={"derived_key": definition.key, "reason": str(exc)},
            )
            raw = None

        value = finite_or_none(category.convert(raw)) if raw is not None else None
        return CurrentValue(
            key=definition.key,
            d=moment,
            v=value,
            measurement=category.name,
            unit=category.metric_unit,
            user_unit=category.user_unit,
        )


@lru_cache
def build_default_builder() -> DerivedSeriesBuilder:
    """Factory that wires the builder with the shared cache and catalogs."""
    settings = get_settings()
    return DerivedSeriesBuilder(
        source=build_default_source(),
        catalogs=(build_default_composite_catalog(), build_default_integrator_catalog()),
        units=build_default_units(),
        constants=StationConstants(
            longitude=settings.longitude,
            latitude=settings.latitude,
            altitude=settings.altitude,
        ),
        forecast_horizon_hours=settings.forecast_horizon_hours,
    )
