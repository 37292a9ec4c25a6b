"""
Weather parameter extraction.

Pulls a single numeric value for an alert ``parameter`` out of either a
realtime ``WeatherObservation`` or a ``ForecastSeries``. The two shapes
carry different field sets:

    Realtime: every parameter, with uvIndex / cloudCover / pressure /
        weatherCode optional upstream (absent -> 0).
    Forecast: only the first (nearest-future) interval is read. It has no
        wind direction, pressure or visibility, and a single
        ``precipitationChance`` that stands in for both precipitation
        parameters. Null uvIndex / cloudCover / weatherCode read as 0.

Dispatch is by ``AlertKind``: the kind of the alert decides which record
shape was fetched for it, so the extractor never inspects the record type.
"""

from __future__ import annotations

from typing import Callable

from worker.trigger.models import (
    PARAMETERS,
    AlertKind,
    ForecastSeries,
    WeatherObservation,
    WeatherRecord,
)


# Forecasts omit visibility; report a clear-sky value instead of 0 so that
# "visibility < X" alerts do not fire on missing data.
FORECAST_VISIBILITY_DEFAULT: float = 10000.0


class UnsupportedParameterError(ValueError):
    """Raised when a parameter name is not extractable from a record kind."""

    pass


class NoForecastDataError(ValueError):
    """Raised when a forecast series contains no intervals."""

    pass


# ---------------------------------------------------------------------------
# Support predicate
# ---------------------------------------------------------------------------

_SUPPORTED: dict[AlertKind, frozenset[str]] = {
    AlertKind.REALTIME: frozenset(PARAMETERS),
    AlertKind.FORECAST: frozenset(
        {
            "temperature",
            "humidity",
            "windSpeed",
            "precipitation.intensity",
            "precipitation.probability",
            "uvIndex",
            "cloudCover",
            "weatherCode",
        }
    ),
}


def is_parameter_supported(parameter: str, kind: AlertKind) -> bool:
    """Return True if ``parameter`` may be evaluated for alerts of ``kind``."""
    return parameter in _SUPPORTED[kind]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_from_observation(obs: WeatherObservation, parameter: str) -> float:
    """Read ``parameter`` from a realtime observation.

    Raises
    ------
    UnsupportedParameterError
        If ``parameter`` is not one of the known parameter names.
    """
    if parameter == "temperature":
        return obs.temperature
    elif parameter == "humidity":
        return obs.humidity
    elif parameter == "windSpeed":
        return obs.wind_speed
    elif parameter == "windDirection":
        return obs.wind_direction
    elif parameter == "precipitation.intensity":
        return obs.precipitation.intensity
    elif parameter == "precipitation.probability":
        return obs.precipitation.probability
    elif parameter == "visibility":
        return obs.visibility
    elif parameter == "uvIndex":
        return obs.uv_index or 0.0
    elif parameter == "cloudCover":
        return obs.cloud_cover or 0.0
    elif parameter == "pressure":
        return obs.pressure or 0.0
    elif parameter == "weatherCode":
        return obs.weather_code or 0.0
    raise UnsupportedParameterError(f"Unknown weather parameter: {parameter}")


def extract_from_forecast(series: ForecastSeries, parameter: str) -> float:
    """Read ``parameter`` from the first interval of a forecast series.

    Raises
    ------
    NoForecastDataError
        If the series has no intervals.
    UnsupportedParameterError
        If ``parameter`` is not one of the known parameter names.
    """
    if not series.intervals:
        raise NoForecastDataError("No forecast intervals available")

    nxt = series.intervals[0]

    if parameter == "temperature":
        return nxt.temperature
    elif parameter == "humidity":
        return nxt.humidity
    elif parameter == "windSpeed":
        return nxt.wind_speed
    elif parameter in ("windDirection", "pressure"):
        return 0.0
    elif parameter in ("precipitation.intensity", "precipitation.probability"):
        return nxt.precipitation_chance
    elif parameter == "visibility":
        return FORECAST_VISIBILITY_DEFAULT
    elif parameter == "uvIndex":
        return nxt.uv_index or 0.0
    elif parameter == "cloudCover":
        return nxt.cloud_cover or 0.0
    elif parameter == "weatherCode":
        return nxt.weather_code or 0.0
    raise UnsupportedParameterError(f"Unknown weather parameter: {parameter}")


_EXTRACTORS: dict[AlertKind, Callable[..., float]] = {
    AlertKind.REALTIME: extract_from_observation,
    AlertKind.FORECAST: extract_from_forecast,
}


def extract_parameter(
    record: WeatherRecord, parameter: str, kind: AlertKind
) -> float:
    """Extract ``parameter`` from ``record`` using the extractor for ``kind``."""
    return float(_EXTRACTORS[kind](record, parameter))


# ---------------------------------------------------------------------------
# Descriptions (log output only)
# ---------------------------------------------------------------------------

_DESCRIPTIONS: dict[str, str] = {
    "temperature": "Temperature",
    "humidity": "Humidity",
    "windSpeed": "Wind Speed",
    "windDirection": "Wind Direction",
    "precipitation.intensity": "Precipitation Intensity",
    "precipitation.probability": "Precipitation Probability",
    "visibility": "Visibility",
    "uvIndex": "UV Index",
    "cloudCover": "Cloud Cover",
    "pressure": "Atmospheric Pressure",
    "weatherCode": "Weather Code",
}


def describe_parameter(parameter: str, kind: AlertKind) -> str:
    """Human-readable name of what will actually be read for ``parameter``."""
    if kind == AlertKind.FORECAST and parameter == "precipitation.intensity":
        return _DESCRIPTIONS["precipitation.probability"]
    return _DESCRIPTIONS.get(parameter, parameter)
