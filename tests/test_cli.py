from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import pytest
from typer.testing import CliRunner

from app.schemas import ProbeKind
from cli.app import app
from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from services.errors import TransientNetworkError
from services.request_cache import RequestCache


def _probe(key: str, formula: str = "data['temperature:outTemp']") -> Dict[str, Any]:
    return {
        "key": key,
        "label": key,
        "kind": "composite",
        "formulaSource": formula,
        "dependencyKeys": ["temperature:outTemp"],
        "refreshPeriodSeconds": 604800,
    }


class StubClient:
    def __init__(self, config) -> None:
        self.config = config
        self.settings: Dict[str, Dict[str, Any]] = {"temp_c_calc": _probe("temp_c_calc")}
        self.calls: List[tuple] = []
        self.failure: Optional[Exception] = None
        self.closed = False

    async def list_probes(self, kind: ProbeKind) -> Dict[str, Dict[str, Any]]:
        self.calls.append(("list", kind))
        if self.failure is not None:
            raise self.failure
        return self.settings

    async def set_probe(self, kind: ProbeKind, key: str, formula: str, **options: Any) -> Dict[str, Any]:
        self.calls.append(("set", kind, key, formula, options))
        return dict(_probe(f"{key}_calc", formula), modelParameters=options.get("parameters") or {})

    async def remove_probe(self, kind: ProbeKind, key: str) -> Dict[str, Dict[str, Any]]:
        self.calls.append(("remove", kind, key))
        return {}

    async def get_series(self, key: str, **options: Any) -> Dict[str, Any]:
        self.calls.append(("series", key, options))
        return {
            "success": True,
            "message": "OK",
            "data": [{"d": "2024-01-01T00:00:00Z", "v": 9.85}],
            "metadata": {"key": key, "label": "Outside", "userUnit": "°C", "count": 1, "droppedPoints": 0},
        }

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stub(monkeypatch) -> StubClient:
    client = StubClient(config=None)

    def factory(config):
        client.config = config
        return client

    monkeypatch.setattr("cli.app.ApiClient", factory)
    return client


def test_probes_list(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["--base-url", "http://svc:9000/", "probes", "list"])

    assert result.exit_code == 0
    assert "temp_c_calc" in result.stdout
    assert "dependencies: temperature:outTemp" in result.stdout
    assert stub.calls == [("list", ProbeKind.composite)]
    assert stub.config.base_url == "http://svc:9000"
    assert stub.closed is True


def test_probes_set_with_parameters(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(
        app,
        [
            "probes",
            "set",
            "setpoint",
            "--kind",
            "integrator",
            "--formula",
            "len(data)",
            "--param",
            "target=293.15",
            "-p",
            "mode=eco",
        ],
    )

    assert result.exit_code == 0
    assert "Saved setpoint_calc." in result.stdout
    assert "  - target: 293.15" in result.stdout
    _, kind, key, formula, options = stub.calls[0]
    assert (kind, key, formula) == (ProbeKind.integrator, "setpoint", "len(data)")
    assert options["parameters"] == {"target": 293.15, "mode": "eco"}


def test_probes_set_requires_formula(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["probes", "set", "empty"])

    assert result.exit_code != 0
    assert stub.calls == []


def test_probes_remove(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["probes", "remove", "temp_c_calc"])

    assert result.exit_code == 0
    assert "Removed temp_c_calc. 0 definition(s) left." in result.stdout
    assert stub.calls == [("remove", ProbeKind.composite, "temp_c_calc")]


def test_series_command(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["series", "temp_c_calc", "--start", "2024-01-01T00:00:00Z", "--step-count", "50"])

    assert result.exit_code == 0
    assert "Derived Series temp_c_calc" in result.stdout
    assert "unit: °C" in result.stdout
    assert "2024-01-01T00:00:00Z  9.85" in result.stdout
    _, key, options = stub.calls[0]
    assert options["start"] == datetime.fromisoformat("2024-01-01T00:00:00+00:00")
    assert options["end"] is None
    assert options["step_count"] == 50


def test_series_rejects_bad_timestamp(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["series", "temp_c_calc", "--end", "yesterday"])

    assert result.exit_code != 0
    assert stub.calls == []


def test_request_failure_exits_with_error(runner: CliRunner, stub: StubClient) -> None:
    stub.failure = TransientNetworkError("GET http://svc failed with status 503", status_code=503)

    result = runner.invoke(app, ["probes", "list"])

    assert result.exit_code == 1
    assert "Request failed" in result.output
    assert stub.closed is True


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://env:8000/")
    monkeypatch.setenv("STATION_ID", "garden")
    monkeypatch.setenv("CLI_TIMEOUT", "-1")
    monkeypatch.setenv("CLI_RETRIES", "5")

    config = load_config()

    assert config == CLIConfig(base_url="http://env:8000", station_id="garden", timeout=30.0, retries=5)
    assert load_config(station_id="roof").station_id == "roof"


class FakeService:
    """In-memory stand-in for the catalog endpoints."""

    def __init__(self) -> None:
        self.settings: Dict[str, Dict[str, Any]] = {"old_calc": _probe("old_calc")}
        self.methods: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.methods.append(request.method)
        if request.method == "PUT":
            self.settings = json.loads(request.content)["settings"]
        return httpx.Response(200, json={"success": True, "settings": self.settings})


def test_api_client_set_probe_resolves_and_puts_whole_catalog() -> None:
    service = FakeService()

    async def scenario() -> Dict[str, Any]:
        cache = RequestCache(httpx.AsyncClient(transport=httpx.MockTransport(service)), retries=0)
        client = ApiClient(CLIConfig(base_url="http://svc"), cache=cache)
        try:
            stored = await client.set_probe(
                ProbeKind.composite,
                "dew",
                "dew_point(data['temperature:outTemp'], data['humidity:outHumidity'])",
                category="temperature",
            )
            listed = await client.list_probes(ProbeKind.composite)
            assert set(listed) == {"old_calc", "dew_calc"}
            return stored
        finally:
            await client.aclose()

    stored = asyncio.run(scenario())

    assert stored["dependencyKeys"] == ["temperature:outTemp", "humidity:outHumidity"]
    assert stored["measurementCategory"] == "temperature"
    assert stored["label"] == "dew_calc"
    # the PUT invalidates the cached catalog so the second list hits the service
    assert service.methods == ["GET", "PUT", "GET"]


def test_api_client_keeps_an_injected_empty_cache() -> None:
    cache = RequestCache(httpx.AsyncClient(transport=httpx.MockTransport(FakeService())))
    assert len(cache) == 0

    client = ApiClient(CLIConfig(), cache=cache)

    assert client._cache is cache
