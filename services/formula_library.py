"""Functions a formula may call.

Everything a formula can reach outside its own record lives in ``FUNCTIONS``
and ``CONSTANTS``; the evaluator refuses any other name at compile time.
Temperatures are Kelvin in and out, like every raw temperature series.
"""

from __future__ import annotations

import math
import statistics
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from models.records import parse_timestamp

_ABSOLUTE_ZERO = 273.15
_J2000 = 2451545.0
_UNIX_EPOCH_JULIAN = 2440588.0
_RAD = math.pi / 180.0
_OBLIQUITY = _RAD * 23.4397


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        return parse_timestamp(value)
    raise TypeError(f"Expected a timestamp, got {type(value).__name__}.")


def _numbers(values: Iterable[Any]) -> List[float]:
    return [float(value) for value in values if value is not None]


def kelvin_to_celsius(kelvin: float) -> float:
    return kelvin - _ABSOLUTE_ZERO


def celsius_to_kelvin(celsius: float) -> float:
    return celsius + _ABSOLUTE_ZERO


def mean(values: Iterable[Any]) -> float:
    numbers = _numbers(values)
    if not numbers:
        raise ValueError("mean() of an empty sequence")
    return sum(numbers) / len(numbers)


def stdev(values: Iterable[Any]) -> float:
    """Sample standard deviation, 0.0 below two values."""
    numbers = _numbers(values)
    if len(numbers) < 2:
        return 0.0
    return statistics.stdev(numbers)


def linear_slope(values: Sequence[Any]) -> float:
    """Least-squares slope of ``values`` against their index."""
    numbers = _numbers(values)
    count = len(numbers)
    if count < 2:
        return 0.0
    sum_x = count * (count - 1) / 2
    sum_x2 = (count - 1) * count * (2 * count - 1) / 6
    sum_y = sum(numbers)
    sum_xy = sum(index * value for index, value in enumerate(numbers))
    return (count * sum_xy - sum_x * sum_y) / (count * sum_x2 - sum_x * sum_x)


def dew_point(temperature: float, humidity: float) -> float:
    """Magnus-Tetens dew point. Returns NaN when humidity is not positive."""
    if humidity <= 0:
        return math.nan
    celsius = kelvin_to_celsius(temperature)
    a, b = 17.62, 243.12
    gamma = math.log(min(humidity, 100.0) / 100.0) + a * celsius / (b + celsius)
    return celsius_to_kelvin(b * gamma / (a - gamma))


def thsw(
    temperature: float,
    humidity: float,
    solar: float,
    wind: float,
    uv: Optional[float] = None,
    etp: Optional[float] = None,
) -> float:
    """Temperature-Humidity-Sun-Wind index close to the Davis VP2 one."""
    celsius = kelvin_to_celsius(temperature)
    fahrenheit = celsius * 1.8 + 32
    rh = max(0.0, min(100.0, humidity))

    heat_index_f = fahrenheit
    if celsius >= 27 and humidity >= 40:
        heat_index_f = (
            -42.379
            + 2.04901523 * fahrenheit
            + 10.14333127 * rh
            - 0.22475541 * fahrenheit * rh
            - 0.00683783 * fahrenheit**2
            - 0.05481717 * rh**2
            + 0.00122874 * fahrenheit**2 * rh
            + 0.00085282 * fahrenheit * rh**2
            - 0.00000199 * fahrenheit**2 * rh**2
        )
    heat_index = (heat_index_f - 32) / 1.8

    solar_effect = 0.06 * math.sqrt(max(0.0, solar))
    uv_effect = 0.3 * (uv - 5) if uv is not None and uv >= 0 else 0.0
    wind_effect = 1.5 * math.sqrt(max(0.5, wind))
    etp_effect = -0.3 * math.log1p(etp) if etp is not None and etp > 0 else 0.0

    index = heat_index + solar_effect + uv_effect - wind_effect + etp_effect
    return celsius_to_kelvin(round(index * 10) / 10)


def solar_position(when: Any, latitude: float, longitude: float) -> Dict[str, float]:
    """Sun altitude and azimuth in radians (SunCalc algorithm)."""
    moment = _as_datetime(when)
    julian = moment.timestamp() / 86400.0 - 0.5 + _UNIX_EPOCH_JULIAN
    days = julian - _J2000

    anomaly = _RAD * (357.5291 + 0.98560028 * days)
    center = _RAD * (
        1.9148 * math.sin(anomaly)
        + 0.02 * math.sin(2 * anomaly)
        + 0.0003 * math.sin(3 * anomaly)
    )
    ecliptic = anomaly + center + _RAD * 102.9372 + math.pi

    declination = math.asin(math.sin(_OBLIQUITY) * math.sin(ecliptic))
    right_ascension = math.atan2(math.sin(ecliptic) * math.cos(_OBLIQUITY), math.cos(ecliptic))

    lw = _RAD * -longitude
    phi = _RAD * latitude
    hour_angle = _RAD * (280.16 + 360.9856235 * days) - lw - right_ascension

    altitude = math.asin(
        math.sin(phi) * math.sin(declination)
        + math.cos(phi) * math.cos(declination) * math.cos(hour_angle)
    )
    azimuth = math.atan2(
        math.sin(hour_angle),
        math.cos(hour_angle) * math.sin(phi) - math.tan(declination) * math.cos(phi),
    )
    return {"altitude": altitude, "azimuth": azimuth}


def hour(when: Any) -> int:
    return _as_datetime(when).hour


def day_of_year(when: Any) -> int:
    return _as_datetime(when).timetuple().tm_yday


def _rows_between(rows: Iterable[Mapping[str, Any]], start: datetime, end: datetime) -> List[Mapping[str, Any]]:
    selected = []
    for row in rows:
        stamp = row.get("d")
        if stamp is None:
            continue
        moment = _as_datetime(stamp)
        if start <= moment <= end:
            selected.append(row)
    return selected


def _column(rows: Iterable[Mapping[str, Any]], key: str) -> List[float]:
    return [float(row[key]) for row in rows if row.get(key) is not None]


def adaptive_setpoint(
    history: Sequence[Mapping[str, Any]],
    forecast: Sequence[Mapping[str, Any]],
    target: float,
    dt: float = 3.0,
    inertia: float = 12.0,
    now: Any = None,
    indoor: str = "temperature:inTemp",
    outdoor: str = "temperature:outTemp",
    irradiance: str = "irradiance:solar",
    history_days: float = 10.0,
) -> Dict[str, Any]:
    """Heating/cooling setpoint from ten days of history and the forecast.

    ``target`` is the comfort temperature in Kelvin, ``dt`` the tolerated
    deviation in Kelvin and ``inertia`` the building lag in hours. The
    forecast window averaged is ``[now + inertia, now + inertia + 12h]``.
    """
    if now is None:
        stamps = [_as_datetime(row["d"]) for row in history if row.get("d") is not None]
        if not stamps:
            return {"value": target, "state": "unknown", "stats": {}}
        reference = max(stamps)
    else:
        reference = _as_datetime(now)

    recent = _rows_between(history, reference - timedelta(days=history_days), reference)
    indoor_c = [kelvin_to_celsius(value) for value in _column(recent, indoor)]
    outdoor_c = [kelvin_to_celsius(value) for value in _column(recent, outdoor)]
    if not indoor_c or not outdoor_c:
        return {"value": target, "state": "unknown", "stats": {}}

    target_c = kelvin_to_celsius(target)
    indoor_mean = sum(indoor_c) / len(indoor_c)
    outdoor_mean = sum(outdoor_c) / len(outdoor_c)

    slope = linear_slope(outdoor_c)
    spread = stdev(outdoor_c)
    trend = slope / spread if spread > 0 else 0.0

    if indoor_mean > target_c + dt:
        state = "cooling"
    elif indoor_mean < target_c - dt:
        state = "heating"
    else:
        state = "comfort"

    upcoming = _rows_between(
        forecast,
        reference + timedelta(hours=inertia),
        reference + timedelta(hours=inertia + 12),
    )
    forecast_temps = [kelvin_to_celsius(value) for value in _column(upcoming, outdoor)]
    forecast_sun = _column(upcoming, irradiance)

    setpoint = target_c + trend * 0.5 * dt
    if forecast_temps:
        expected = sum(forecast_temps) / len(forecast_temps)
        if state == "cooling":
            if expected < target_c - dt:
                setpoint = target_c
            elif expected > target_c + dt:
                setpoint = target_c - dt
            else:
                setpoint = target_c - dt * trend
        elif state == "heating":
            if expected < target_c - dt:
                setpoint = target_c + dt
            elif expected > target_c + dt:
                setpoint = target_c
            else:
                setpoint = target_c + dt * trend
        else:
            factor = min(abs(expected - target_c) / dt, 1.0)
            if expected > target_c:
                setpoint -= factor * dt * 0.5
            else:
                setpoint += factor * dt * 0.5

        if forecast_sun:
            sun = sum(forecast_sun) / len(forecast_sun)
            if sun > 200:
                setpoint -= min(sun / 500, 1.0) * 2

    setpoint = max(target_c - dt, min(target_c + dt, setpoint))
    setpoint = round(setpoint * 2) / 2

    return {
        "value": celsius_to_kelvin(setpoint),
        "state": state,
        "stats": {
            "indoor_mean": indoor_mean,
            "outdoor_mean": outdoor_mean,
            "delta": indoor_mean - outdoor_mean,
            "trend": slope,
            "forecast_points": len(upcoming),
        },
    }


def _safe_pow(base: float, exponent: float) -> float:
    if abs(exponent) > 1000:
        raise ValueError("Exponent too large.")
    return math.pow(base, exponent)


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "len": len,
    "float": float,
    "int": int,
    "mean": mean,
    "stdev": stdev,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "log": math.log,
    "log10": math.log10,
    "log1p": math.log1p,
    "pow": _safe_pow,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "degrees": math.degrees,
    "radians": math.radians,
    "floor": math.floor,
    "ceil": math.ceil,
    "isfinite": math.isfinite,
    "isnan": math.isnan,
    "hour": hour,
    "day_of_year": day_of_year,
    "kelvin_to_celsius": kelvin_to_celsius,
    "celsius_to_kelvin": celsius_to_kelvin,
    "linear_slope": linear_slope,
    "dew_point": dew_point,
    "thsw": thsw,
    "solar_position": solar_position,
    "adaptive_setpoint": adaptive_setpoint,
}

CONSTANTS: Dict[str, Any] = {
    "pi": math.pi,
    "e": math.e,
    "nan": math.nan,
    "inf": math.inf,
    "True": True,
    "False": False,
    "None": None,
}
