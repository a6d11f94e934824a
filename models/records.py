"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Tuple


@dataclass(frozen=True, slots=True)
class RawPoint:
    """A single raw reading, value in metric units."""

    timestamp: datetime
    value: float


@dataclass(frozen=True, slots=True)
class RawSensorSeries:
    """Ordered readings of one raw sensor as returned by the query backend."""

    key: str
    points: Tuple[RawPoint, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return not self.points


@dataclass(frozen=True, slots=True)
class StationConstants:
    longitude: float
    latitude: float
    altitude: float

    def placeholders(self) -> Dict[str, float]:
        return {
            "%longitude%": self.longitude,
            "%latitude%": self.latitude,
            "%altitude%": self.altitude,
        }


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open request window in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Time window bounds must be timezone-aware.")
        if self.end <= self.start:
            raise ValueError("Time window end must be after its start.")


def parse_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO 8601 in UTC without fractional seconds, ``Z`` suffixed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")
