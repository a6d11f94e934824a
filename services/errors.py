"""Error taxonomy shared by the cache, the formula engine and the series builder."""

from __future__ import annotations

from typing import Optional


class DerivedMetricsError(Exception):
    """Base class for every failure raised by the derived metrics core."""

    error_type = "error"


class TransientNetworkError(DerivedMetricsError):
    """Transport or server failure; the request may succeed if retried."""

    error_type = "fetch_failed"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClientRequestError(DerivedMetricsError):
    """The backend rejected the request (4xx); retrying cannot help."""

    error_type = "client_error"

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApplicationError(DerivedMetricsError):
    """The backend answered but reported ``success: false``."""

    error_type = "application_error"


class FormulaParseError(DerivedMetricsError, ValueError):
    """Formula source is malformed or uses a construct outside the grammar."""

    error_type = "formula_parse_error"

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        if line is not None:
            message = f"{message} (line {line})"
        super().__init__(message)
        self.line = line


class FormulaRuntimeError(DerivedMetricsError):
    """Formula raised while evaluating one record."""

    error_type = "formula_error"


class MissingDependencyDataError(DerivedMetricsError):
    """A raw series (or a live reading) the formula needs is empty or absent."""

    error_type = "no_data"

    def __init__(self, message: str, sensor_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.sensor_key = sensor_key


class DefinitionNotFoundError(DerivedMetricsError, KeyError):
    """No catalog holds a definition for the requested derived key."""

    error_type = "not_found"

    def __init__(self, derived_key: str) -> None:
        super().__init__(f"Derived sensor {derived_key!r} not found.")
        self.derived_key = derived_key

    def __str__(self) -> str:
        return str(self.args[0])
