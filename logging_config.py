from __future__ import annotations

import json
import logging
from logging.config import dictConfig
from typing import Any, Dict, Iterable, Sequence

from settings import get_settings

# Attributes passed through ``extra=`` that are worth printing.
CONTEXT_KEYS = (
    "url",
    "method",
    "attempt",
    "status_code",
    "pattern",
    "removed",
    "catalog",
    "derived_key",
    "sensor_key",
    "point_count",
    "dropped_count",
    "reason",
)

_FORMATTERS = {
    "text": "logging_config.ContextualFormatter",
    "json": "logging_config.JsonContextFormatter",
}

_configured = False


def _render(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 3)
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(item) for item in value)
    return value


class ContextualFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for the known context attributes."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        context_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self.context_keys: Sequence[str] = tuple(context_keys or CONTEXT_KEYS)

    def context(self, record: logging.LogRecord) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        for key in self.context_keys:
            value = record.__dict__.get(key)
            if value is not None:
                found[key] = _render(value)
        return found

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs = " ".join(f"{key}={value}" for key, value in self.context(record).items())
        return f"{message} | {pairs}" if pairs else message


class JsonContextFormatter(ContextualFormatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt) + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self.context(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str | int | None = None, fmt: str | None = None) -> None:
    """Configure application-wide logging once per process."""
    global _configured
    if _configured:
        return

    settings = get_settings()
    log_level = level if level is not None else settings.log_level
    formatter = _FORMATTERS.get(fmt or settings.log_format, _FORMATTERS["text"])

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": formatter,
                    "fmt": "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "style": "%",
                    "context_keys": list(CONTEXT_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                }
            },
            # httpx logs every request at INFO; the cache logs what matters.
            "loggers": {
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
            },
            "root": {"handlers": ["default"], "level": log_level},
        }
    )

    _configured = True
