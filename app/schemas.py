"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_REFRESH_PERIOD_SECONDS = 604800


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProbeKind(str, Enum):
    """Point-wise composite probes and model-style integrator probes."""

    composite = "composite"
    integrator = "integrator"


class DerivedSensorDefinition(_CamelModel):
    """Stored definition of one derived sensor.

    ``dependency_keys`` and ``field_mapping`` are derived from
    ``formula_source`` whenever the definition enters a catalog; whatever a
    client sends for them is discarded.
    """

    key: str = ""
    label: str = ""
    comment: str = ""
    formula_source: str = Field(..., min_length=1)
    dependency_keys: List[str] = Field(default_factory=list)
    field_mapping: Dict[str, str] = Field(default_factory=dict)
    refresh_period_seconds: int = Field(default=DEFAULT_REFRESH_PERIOD_SECONDS, ge=0)
    output_storage_key: Optional[str] = None
    measurement_category: Optional[str] = None
    kind: ProbeKind = ProbeKind.composite
    model_parameters: Dict[str, Any] = Field(default_factory=dict)


class CatalogSettings(_CamelModel):
    settings: Dict[str, DerivedSensorDefinition] = Field(default_factory=dict)


class CatalogResponse(_CamelModel):
    success: bool = True
    settings: Dict[str, DerivedSensorDefinition] = Field(default_factory=dict)


class ErrorResponse(_CamelModel):
    success: bool = False
    error: str
    error_type: Optional[str] = None


class SeriesPoint(BaseModel):
    d: datetime
    v: float


class DerivedSeries(_CamelModel):
    """Derived values in user units plus what a consumer needs to label them."""

    key: str
    label: str = ""
    kind: ProbeKind = ProbeKind.composite
    measurement: str
    unit: str
    user_unit: str
    points: List[SeriesPoint] = Field(default_factory=list)
    first: Optional[datetime] = None
    last: Optional[datetime] = None
    count: int = Field(default=0, ge=0)
    dropped_points: int = Field(default=0, ge=0)
    formula_errors: int = Field(default=0, ge=0)


class SeriesMetadata(_CamelModel):
    key: str
    label: str = ""
    kind: ProbeKind = ProbeKind.composite
    measurement: str
    unit: str
    user_unit: str
    first: Optional[datetime] = None
    last: Optional[datetime] = None
    count: int = 0
    dropped_points: int = 0
    formula_errors: int = 0


class DerivedSeriesResponse(_CamelModel):
    success: bool = True
    message: str = "OK"
    data: List[SeriesPoint] = Field(default_factory=list)
    metadata: SeriesMetadata


class CurrentReadings(_CamelModel):
    readings: Dict[str, float] = Field(default_factory=dict)


class CurrentValue(_CamelModel):
    key: str
    d: datetime
    v: Optional[float] = None
    measurement: str
    unit: str
    user_unit: str


class CurrentValueResponse(_CamelModel):
    success: bool = True
    data: CurrentValue
