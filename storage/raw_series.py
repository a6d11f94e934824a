"""Reads raw sensor series from the query backend through the shared cache."""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote, urlencode

from models.records import RawPoint, RawSensorSeries, TimeWindow, format_timestamp, parse_timestamp
from services.errors import ApplicationError
from services.request_cache import RequestCache, build_default_cache
from settings import get_settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _data_rows(payload: Any, url: str) -> List[Any]:
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise ApplicationError(f"Unexpected payload from {url}: 'data' is not a list.")
    return rows


class RawSeriesSource:
    """Builds ``Raw``/``Raws`` query URLs and parses what comes back."""

    def __init__(
        self,
        cache: RequestCache,
        base_url: str,
        station_id: str,
        default_step_count: int = 500,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.station_id = station_id
        self.default_step_count = default_step_count

    def _params(self, window: TimeWindow, step_count: Optional[int]) -> str:
        return urlencode(
            {
                "startDate": format_timestamp(window.start),
                "endDate": format_timestamp(window.end),
                "stepCount": step_count or self.default_step_count,
            }
        )

    def _station_path(self, station_id: Optional[str]) -> str:
        return f"{self.base_url}/query/{quote(station_id or self.station_id, safe='')}"

    def raw_url(
        self,
        sensor_key: str,
        window: TimeWindow,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> str:
        return (
            f"{self._station_path(station_id)}/Raw/"
            f"{quote(sensor_key, safe=':')}?{self._params(window, step_count)}"
        )

    def raws_url(
        self,
        sensor_keys: Sequence[str],
        window: TimeWindow,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> str:
        joined = ",".join(quote(key, safe=":") for key in sensor_keys)
        return f"{self._station_path(station_id)}/Raws/{joined}?{self._params(window, step_count)}"

    async def fetch(
        self,
        sensor_key: str,
        window: TimeWindow,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> RawSensorSeries:
        url = self.raw_url(sensor_key, window, step_count, station_id)
        payload = await self.cache.query(url)
        return self.parse_series(sensor_key, payload, url)

    async def fetch_rows(
        self,
        sensor_keys: Sequence[str],
        window: TimeWindow,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> List[Row]:
        url = self.raws_url(sensor_keys, window, step_count, station_id)
        payload = await self.cache.query(url)
        return self.parse_rows(sensor_keys, payload, url)

    @staticmethod
    def parse_series(sensor_key: str, payload: Any, url: str = "") -> RawSensorSeries:
        points: List[RawPoint] = []
        skipped = 0
        for row in _data_rows(payload, url):
            if not isinstance(row, dict):
                skipped += 1
                continue
            value = _as_number(row.get("v"))
            stamp = row.get("d")
            if value is None or not isinstance(stamp, str):
                skipped += 1
                continue
            try:
                timestamp = parse_timestamp(stamp)
            except ValueError:
                skipped += 1
                continue
            points.append(RawPoint(timestamp=timestamp, value=value))

        if skipped:
            logger.debug(
                "Skipped unusable raw points",
                extra={"sensor_key": sensor_key, "dropped_count": skipped},
            )
        points.sort(key=lambda point: point.timestamp)
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        return RawSensorSeries(key=sensor_key, points=tuple(points), metadata=dict(metadata))

    @staticmethod
    def parse_rows(sensor_keys: Iterable[str], payload: Any, url: str = "") -> List[Row]:
        """Rows of a ``Raws`` answer with ``d`` parsed and values as floats."""
        keys = list(sensor_keys)
        rows: List[Row] = []
        for row in _data_rows(payload, url):
            if not isinstance(row, dict) or not isinstance(row.get("d"), str):
                continue
            try:
                timestamp = parse_timestamp(row["d"])
            except ValueError:
                continue
            parsed: Row = {"d": timestamp}
            for key in keys:
                parsed[key] = _as_number(row.get(key))
            rows.append(parsed)
        rows.sort(key=lambda item: item["d"])
        return rows


@lru_cache
def build_default_source() -> RawSeriesSource:
    settings = get_settings()
    return RawSeriesSource(
        cache=build_default_cache(),
        base_url=settings.query_base_url,
        station_id=settings.station_id,
        default_step_count=settings.default_step_count,
    )
