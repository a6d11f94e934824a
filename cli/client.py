from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import typer

from app.schemas import ProbeKind
from cli.config import CLIConfig
from datastore.catalog import normalize_key
from models.records import format_timestamp
from services.dependencies import DependencyResolver
from services.errors import FormulaParseError
from services.request_cache import RequestCache


class ApiClient:
    """Async client for the derived metrics service.

    Reads go through a :class:`RequestCache`; catalog writes use ``mutate`` and
    invalidate the cached catalog they change.
    """

    def __init__(self, config: CLIConfig, cache: Optional[RequestCache] = None) -> None:
        self._config = config
        if cache is None:
            cache = RequestCache(timeout=config.timeout, retries=config.retries)
        self._cache = cache
        self._resolver = DependencyResolver()

    async def aclose(self) -> None:
        await self._cache.aclose()

    @staticmethod
    def _catalog_path(kind: ProbeKind) -> str:
        return f"/api/{kind.value}-probes"

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}{path}"

    async def list_probes(self, kind: ProbeKind) -> Dict[str, Dict[str, Any]]:
        payload = await self._cache.query(self._url(self._catalog_path(kind)))
        return dict(payload.get("settings") or {})

    async def save_probes(
        self, kind: ProbeKind, settings: Dict[str, Dict[str, Any]]
    ) -> Dict[str, Dict[str, Any]]:
        path = self._catalog_path(kind)
        payload = await self._cache.mutate(
            self._url(path), method="PUT", json={"settings": settings}, invalidate=[path]
        )
        return dict(payload.get("settings") or {})

    async def set_probe(
        self,
        kind: ProbeKind,
        key: str,
        formula: str,
        label: Optional[str] = None,
        comment: Optional[str] = None,
        category: Optional[str] = None,
        period: Optional[int] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            normalized = normalize_key(key)
            resolved = self._resolver.resolve(formula)
        except (FormulaParseError, ValueError) as exc:
            raise typer.BadParameter(str(exc)) from exc

        settings = await self.list_probes(kind)
        entry = dict(settings.get(normalized) or {})
        entry.update(
            {
                "key": normalized,
                "formulaSource": formula,
                "dependencyKeys": resolved.dependency_keys,
                "fieldMapping": resolved.field_mapping,
                "kind": kind.value,
            }
        )
        entry.setdefault("label", label or normalized)
        if label is not None:
            entry["label"] = label
        if comment is not None:
            entry["comment"] = comment
        if category is not None:
            entry["measurementCategory"] = category
        if period is not None:
            entry["refreshPeriodSeconds"] = period
        if parameters:
            entry["modelParameters"] = {**(entry.get("modelParameters") or {}), **parameters}
        settings[normalized] = entry

        stored = await self.save_probes(kind, settings)
        return stored.get(normalized, entry)

    async def remove_probe(self, kind: ProbeKind, key: str) -> Dict[str, Dict[str, Any]]:
        settings = await self.list_probes(kind)
        if key not in settings and f"{key}_calc" in settings:
            key = f"{key}_calc"
        if key not in settings:
            raise typer.BadParameter(f"Derived sensor {key} was not found.")
        del settings[key]
        return await self.save_probes(kind, settings)

    async def get_series(
        self,
        key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        step_count: Optional[int] = None,
        station_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if start is not None:
            params["startDate"] = format_timestamp(start)
        if end is not None:
            params["endDate"] = format_timestamp(end)
        if step_count is not None:
            params["stepCount"] = step_count
        station = quote(station_id or self._config.station_id, safe="")
        url = self._url(f"/query/{station}/Derived/{quote(key, safe='')}")
        if params:
            url = f"{url}?{urlencode(params)}"
        return await self._cache.query(url)
