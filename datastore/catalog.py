from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, Mapping, Optional

from app.schemas import DerivedSensorDefinition, ProbeKind
from services.dependencies import DependencyResolver
from services.errors import DefinitionNotFoundError, FormulaParseError
from settings import get_settings

logger = logging.getLogger(__name__)

KEY_SUFFIX = "_calc"
_KEY_BASE = re.compile(r"^[a-zA-Z0-9_]+$")


def normalize_key(key: str) -> str:
    """Return ``key`` with the ``_calc`` suffix, rejecting unusable names."""
    candidate = (key or "").strip()
    base = candidate[: -len(KEY_SUFFIX)] if candidate.endswith(KEY_SUFFIX) else candidate
    if not base or not _KEY_BASE.match(base):
        raise ValueError(
            f"Invalid derived sensor key {key!r}: use letters, digits and underscores only."
        )
    return f"{base}{KEY_SUFFIX}"


class DerivedSensorCatalog:

    def __init__(
        self,
        name: str,
        kind: ProbeKind = ProbeKind.composite,
        persistence_path: Optional[Path] = None,
        resolver: Optional[DependencyResolver] = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.resolver = resolver or DependencyResolver()
        self._items: Dict[str, DerivedSensorDefinition] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def prepare(self, key: str, definition: DerivedSensorDefinition) -> DerivedSensorDefinition:
        """Normalize the key and recompute what the formula reads.

        Raises ``ValueError`` for a bad key and ``FormulaParseError`` for a
        formula outside the grammar.
        """
        normalized = normalize_key(key or definition.key)
        resolved = self.resolver.resolve(definition.formula_source)
        return definition.model_copy(
            update={
                "key": normalized,
                "dependency_keys": list(resolved.dependency_keys),
                "field_mapping": dict(resolved.field_mapping),
                "output_storage_key": definition.output_storage_key or normalized,
                "kind": self.kind,
            },
            deep=True,
        )

    def put(self, key: str, definition: DerivedSensorDefinition) -> DerivedSensorDefinition:
        prepared = self.prepare(key, definition)
        with self._lock:
            self._items[prepared.key] = prepared
            self._persist()
        return prepared.model_copy(deep=True)

    def get(self, key: str) -> Optional[DerivedSensorDefinition]:
        with self._lock:
            item = self._items.get(key)
            if item is None and not key.endswith(KEY_SUFFIX):
                item = self._items.get(f"{key}{KEY_SUFFIX}")
            if item is None:
                return None
            return item.model_copy(deep=True)

    def remove(self, key: str) -> DerivedSensorDefinition:
        with self._lock:
            item = self._items.pop(key, None)
            if item is None and not key.endswith(KEY_SUFFIX):
                item = self._items.pop(f"{key}{KEY_SUFFIX}", None)
            if item is None:
                raise DefinitionNotFoundError(key)
            self._persist()
        logger.info("Removed derived sensor", extra={"catalog": self.name, "derived_key": item.key})
        return item

    def scan(self) -> list[DerivedSensorDefinition]:
        """Return deep copies of all stored definitions."""

        with self._lock:
            return [item.model_copy(deep=True) for item in self._items.values()]

    def to_settings(self) -> Dict[str, DerivedSensorDefinition]:
        with self._lock:
            return {key: item.model_copy(deep=True) for key, item in self._items.items()}

    def replace_all(
        self, settings: Mapping[str, DerivedSensorDefinition]
    ) -> Dict[str, DerivedSensorDefinition]:
        """Swap the whole catalog; nothing changes if any definition is rejected."""
        prepared = self._prepare_all(settings.items())
        with self._lock:
            self._items = prepared
            self._persist()
        logger.info(
            "Replaced catalog",
            extra={"catalog": self.name, "point_count": len(prepared)},
        )
        return {key: item.model_copy(deep=True) for key, item in prepared.items()}

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _prepare_all(
        self, entries: Iterable[tuple[str, DerivedSensorDefinition]]
    ) -> Dict[str, DerivedSensorDefinition]:
        prepared: Dict[str, DerivedSensorDefinition] = {}
        for key, definition in entries:
            item = self.prepare(key, definition)
            prepared[item.key] = item
        return prepared

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            key: item.model_dump(mode="json", by_alias=True) for key, item in self._items.items()
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to read catalog", extra={"catalog": self.name})
            data = {}

        for key, payload in data.items():
            try:
                item = self.prepare(key, DerivedSensorDefinition.model_validate(payload))
            except (ValueError, FormulaParseError) as exc:
                logger.error(
                    "Skipping stored definition",
                    extra={"catalog": self.name, "derived_key": key, "reason": str(exc)},
                )
                continue
            self._items[item.key] = item


@lru_cache
def build_default_composite_catalog(path: Optional[str] = None) -> DerivedSensorCatalog:
    settings = get_settings()
    catalog_path = settings.composite_catalog_path if path is None else path
    persistence = Path(catalog_path) if catalog_path else None
    return DerivedSensorCatalog(
        name="composite-probes", kind=ProbeKind.composite, persistence_path=persistence
    )


@lru_cache
def build_default_integrator_catalog(path: Optional[str] = None) -> DerivedSensorCatalog:
    settings = get_settings()
    catalog_path = settings.integrator_catalog_path if path is None else path
    persistence = Path(catalog_path) if catalog_path else None
    return DerivedSensorCatalog(
        name="integrator-probes", kind=ProbeKind.integrator, persistence_path=persistence
    )
