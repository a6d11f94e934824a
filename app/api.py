"""HTTP route definitions for the service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import (
    CatalogResponse,
    CatalogSettings,
    CurrentReadings,
    CurrentValueResponse,
    DerivedSeriesResponse,
    ErrorResponse,
    SeriesMetadata,
)
from datastore.catalog import (
    DerivedSensorCatalog,
    build_default_composite_catalog,
    build_default_integrator_catalog,
)
from models.records import TimeWindow, parse_timestamp
from services.errors import (
    DefinitionNotFoundError,
    DerivedMetricsError,
    FormulaParseError,
    MissingDependencyDataError,
)
from services.series_builder import DerivedSeriesBuilder, build_default_builder

router = APIRouter()


def get_builder() -> DerivedSeriesBuilder:
    return build_default_builder()


def get_composite_catalog() -> DerivedSensorCatalog:
    return build_default_composite_catalog()


def get_integrator_catalog() -> DerivedSensorCatalog:
    return build_default_integrator_catalog()


def _fail(status_code: int, exc: Exception, error_type: Optional[str] = None) -> NoReturn:
    body = ErrorResponse(
        error=str(exc), error_type=error_type or getattr(exc, "error_type", None)
    )
    raise HTTPException(
        status_code=status_code, detail=body.model_dump(by_alias=True)
    ) from exc


def _status_for(exc: DerivedMetricsError) -> int:
    if isinstance(exc, (DefinitionNotFoundError, MissingDependencyDataError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, FormulaParseError):
        return status.HTTP_400_BAD_REQUEST
    # The query backend failed or refused us.
    return status.HTTP_502_BAD_GATEWAY


def _replace_catalog(catalog: DerivedSensorCatalog, payload: CatalogSettings) -> CatalogResponse:
    try:
        stored = catalog.replace_all(payload.settings)
    except (FormulaParseError, ValueError) as exc:
        _fail(status.HTTP_400_BAD_REQUEST, exc, "invalid_definition")
    return CatalogResponse(settings=stored)


@router.get(
    "/api/composite-probes",
    response_model=CatalogResponse,
    response_model_by_alias=True,
    summary="List point-wise derived sensors.",
)
async def list_composite_probes(
    catalog: DerivedSensorCatalog = Depends(get_composite_catalog),
) -> CatalogResponse:
    return CatalogResponse(settings=catalog.to_settings())


@router.put(
    "/api/composite-probes",
    response_model=CatalogResponse,
    response_model_by_alias=True,
    summary="Replace the point-wise derived sensors.",
)
async def replace_composite_probes(
    payload: CatalogSettings,
    catalog: DerivedSensorCatalog = Depends(get_composite_catalog),
) -> CatalogResponse:
    return _replace_catalog(catalog, payload)


@router.get(
    "/api/integrator-probes",
    response_model=CatalogResponse,
    response_model_by_alias=True,
    summary="List model-style derived sensors.",
)
async def list_integrator_probes(
    catalog: DerivedSensorCatalog = Depends(get_integrator_catalog),
) -> CatalogResponse:
    return CatalogResponse(settings=catalog.to_settings())


@router.put(
    "/api/integrator-probes",
    response_model=CatalogResponse,
    response_model_by_alias=True,
    summary="Replace the model-style derived sensors.",
)
async def replace_integrator_probes(
    payload: CatalogSettings,
    catalog: DerivedSensorCatalog = Depends(get_integrator_catalog),
) -> CatalogResponse:
    return _replace_catalog(catalog, payload)


@router.get(
    "/query/{station_id}/Derived/{derived_key}",
    response_model=DerivedSeriesResponse,
    response_model_by_alias=True,
    summary="Compute a derived sensor over a time window.",
)
async def get_derived_series(
    station_id: str,
    derived_key: str,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    step_count: Optional[int] = Query(default=None, alias="stepCount", ge=1),
    builder: DerivedSeriesBuilder = Depends(get_builder),
) -> DerivedSeriesResponse:
    try:
        definition = builder.find_definition(derived_key)
        end = parse_timestamp(end_date) if end_date else datetime.now(timezone.utc)
        start = (
            parse_timestamp(start_date)
            if start_date
            else end - timedelta(seconds=definition.refresh_period_seconds)
        )
        window = TimeWindow(start=start, end=end)
    except DefinitionNotFoundError as exc:
        _fail(status.HTTP_404_NOT_FOUND, exc)
    except ValueError as exc:
        _fail(status.HTTP_400_BAD_REQUEST, exc, "invalid_window")

    try:
        series = await builder.build(
            derived_key, window, step_count=step_count, station_id=station_id
        )
    except DerivedMetricsError as exc:
        _fail(_status_for(exc), exc)

    metadata = SeriesMetadata.model_validate(series.model_dump(exclude={"points"}))
    message = "OK" if series.points else "No plottable values in range."
    return DerivedSeriesResponse(message=message, data=series.points, metadata=metadata)


@router.post(
    "/query/{station_id}/Derived/{derived_key}/current",
    response_model=CurrentValueResponse,
    response_model_by_alias=True,
    summary="Evaluate a derived sensor against live readings.",
)
async def get_current_value(
    station_id: str,
    derived_key: str,
    payload: CurrentReadings,
    builder: DerivedSeriesBuilder = Depends(get_builder),
) -> CurrentValueResponse:
    try:
        current = builder.evaluate_current(derived_key, payload.readings)
    except DerivedMetricsError as exc:
        _fail(_status_for(exc), exc)
    except ValueError as exc:
        _fail(status.HTTP_400_BAD_REQUEST, exc, "invalid_request")
    return CurrentValueResponse(data=current)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
