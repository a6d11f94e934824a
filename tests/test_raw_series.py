from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from models.records import TimeWindow
from services.errors import ApplicationError
from services.request_cache import RequestCache
from storage.raw_series import RawSeriesSource

WINDOW = TimeWindow(
    start=datetime(2024, 1, 1, tzinfo=timezone.utc),
    end=datetime(2024, 1, 2, tzinfo=timezone.utc),
)


def _source(cache: RequestCache) -> RawSeriesSource:
    return RawSeriesSource(cache=cache, base_url="http://backend/", station_id="home", default_step_count=100)


def test_raw_url_layout() -> None:
    source = _source(RequestCache(httpx.AsyncClient()))

    url = httpx.URL(source.raw_url("temperature:outTemp", WINDOW))

    assert url.path == "/query/home/Raw/temperature:outTemp"
    assert url.params["startDate"] == "2024-01-01T00:00:00Z"
    assert url.params["endDate"] == "2024-01-02T00:00:00Z"
    assert url.params["stepCount"] == "100"


def test_raws_url_joins_keys_and_overrides_station() -> None:
    source = _source(RequestCache(httpx.AsyncClient()))

    url = httpx.URL(
        source.raws_url(["temperature:outTemp", "irradiance:solar"], WINDOW, step_count=12, station_id="roof")
    )

    assert url.path == "/query/roof/Raws/temperature:outTemp,irradiance:solar"
    assert url.params["stepCount"] == "12"


def test_parse_series_sorts_and_skips_unusable_points() -> None:
    payload = {
        "success": True,
        "data": [
            {"d": "2024-01-01T00:10:00Z", "v": 2},
            {"d": "2024-01-01T00:00:00Z", "v": 1.5},
            {"d": "2024-01-01T00:20:00Z", "v": None},
            {"d": "not a date", "v": 3},
            {"v": 4},
        ],
        "metadata": {"unit": "K"},
    }

    series = RawSeriesSource.parse_series("temperature:outTemp", payload)

    assert [point.value for point in series.points] == [1.5, 2.0]
    assert series.points[0].timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert series.metadata == {"unit": "K"}


def test_parse_series_rejects_unexpected_payload() -> None:
    with pytest.raises(ApplicationError):
        RawSeriesSource.parse_series("temperature:outTemp", {"success": True, "data": "oops"})


def test_parse_rows_keeps_missing_fields_as_none() -> None:
    payload = {
        "data": [
            {"d": "2024-01-01T01:00:00Z", "temperature:outTemp": 280.0},
            {"d": "2024-01-01T00:00:00Z", "temperature:outTemp": 279.0, "irradiance:solar": 12},
        ]
    }

    rows = RawSeriesSource.parse_rows(["temperature:outTemp", "irradiance:solar"], payload)

    assert [row["temperature:outTemp"] for row in rows] == [279.0, 280.0]
    assert rows[0]["irradiance:solar"] == 12.0
    assert rows[1]["irradiance:solar"] is None


def test_fetch_goes_through_the_cache() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"success": True, "data": [{"d": "2024-01-01T00:00:00Z", "v": 1}]})

    async def scenario() -> None:
        cache = RequestCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        source = _source(cache)
        try:
            first = await source.fetch("temperature:outTemp", WINDOW)
            second = await source.fetch("temperature:outTemp", WINDOW)
        finally:
            await cache.aclose()
        assert first == second
        assert len(first) == 1

    asyncio.run(scenario())

    assert len(requests) == 1
