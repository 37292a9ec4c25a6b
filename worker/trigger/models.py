"""
Domain models for the Alerts Trigger Worker.

Pydantic v2 models for the two remote services this worker talks to: the
alerts store (``WeatherAlert`` documents) and the weather API (realtime
observations and forecast series).

Both services speak camelCase JSON. Every model sets ``populate_by_name``
so that tests and internal code can construct models with the Python field
names while the wire payloads still parse.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AlertKind(str, Enum):
    """Which weather data shape an alert is evaluated against."""

    REALTIME = "realtime"
    FORECAST = "forecast"


class Timestep(str, Enum):
    """Forecast resolution requested from the weather API."""

    HOURLY = "1h"
    DAILY = "1d"


class AlertState(str, Enum):
    """Alert trigger state as stored in ``lastState``."""

    TRIGGERED = "triggered"
    NOT_TRIGGERED = "not_triggered"


# ---------------------------------------------------------------------------
# Enumerated rule vocabulary
# ---------------------------------------------------------------------------

PARAMETERS: tuple[str, ...] = (
    "temperature",
    "humidity",
    "windSpeed",
    "windDirection",
    "precipitation.intensity",
    "precipitation.probability",
    "visibility",
    "uvIndex",
    "cloudCover",
    "pressure",
    "weatherCode",
)

OPERATORS: tuple[str, ...] = (">", "<", ">=", "<=", "==", "!=")

LAT_RANGE = (-90.0, 90.0)
LON_RANGE = (-180.0, 180.0)


_CAMEL = {"populate_by_name": True, "alias_generator": to_camel}


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertLocation(BaseModel):
    """Where an alert applies: coordinates, a city name, or both."""

    model_config = {"populate_by_name": True}

    lat: float | None = None
    lon: float | None = None
    city: str | None = None

    @property
    def has_valid_coordinates(self) -> bool:
        if self.lat is None or self.lon is None:
            return False
        return (
            LAT_RANGE[0] <= self.lat <= LAT_RANGE[1]
            and LON_RANGE[0] <= self.lon <= LON_RANGE[1]
        )

    @property
    def normalized_city(self) -> str:
        return (self.city or "").strip().lower()

    @property
    def is_valid(self) -> bool:
        return self.has_valid_coordinates or bool(self.normalized_city)

    def to_query_params(self) -> dict[str, str]:
        """Encode the location as weather API query parameters.

        Coordinates are preferred; ``city`` is only sent when no valid
        coordinate pair exists. The two are never sent together.

        Raises
        ------
        ValueError
            If the location has neither valid coordinates nor a city.
        """
        if self.has_valid_coordinates:
            return {"lat": str(self.lat), "lon": str(self.lon)}
        if self.city and self.city.strip():
            return {"city": self.city.strip()}
        raise ValueError(
            "Location must include either coordinates (lat, lon) or city"
        )


class Alert(BaseModel):
    """A weather alert rule as returned by the alerts store.

    ``parameter`` and ``operator`` are plain strings: a value
    outside ``PARAMETERS``/``OPERATORS`` must still load so that the
    evaluator can resolve it to ``not_triggered`` instead of failing the
    whole page of alerts.
    """

    model_config = _CAMEL

    id: str = Field(alias="_id")
    kind: AlertKind = Field(alias="type")
    parameter: str
    operator: str
    threshold: float
    location: AlertLocation
    timestep: Timestep | None = None
    state: AlertState = Field(default=AlertState.NOT_TRIGGERED, alias="lastState")

    name: str | None = None
    description: str | None = None
    created_at: datetime | None = None

    @property
    def effective_timestep(self) -> Timestep:
        """Timestep used for forecast lookups (hourly when unset)."""
        return self.timestep or Timestep.HOURLY

    @property
    def label(self) -> str:
        return self.name or self.id


# ---------------------------------------------------------------------------
# Weather records
# ---------------------------------------------------------------------------


class WeatherLocation(BaseModel):
    """Location echoed back by the weather API."""

    model_config = _CAMEL

    lat: float | None = None
    lon: float | None = None
    name: str | None = None
    country: str | None = None


class Precipitation(BaseModel):
    model_config = _CAMEL

    intensity: float = 0.0
    probability: float = 0.0


class WeatherObservation(BaseModel):
    """A single realtime (instantaneous) weather reading."""

    model_config = _CAMEL

    location: WeatherLocation = Field(default_factory=WeatherLocation)
    timestamp: datetime | None = None

    temperature: float
    humidity: float
    wind_speed: float
    wind_direction: float
    precipitation: Precipitation = Field(default_factory=Precipitation)
    visibility: float

    # Optional upstream fields; extraction defaults them to 0.
    uv_index: float | None = None
    cloud_cover: float | None = None
    pressure: float | None = None
    weather_code: float | None = None
    description: str | None = None


class ForecastInterval(BaseModel):
    """One future interval of a forecast series.

    Hourly intervals carry point values; daily intervals carry the daily
    maximum temperature/UV/precipitation chance and averages for the rest.
    """

    model_config = _CAMEL

    time: datetime
    temperature: float
    feels_like: float | None = None
    humidity: float
    cloud_cover: float | None = None
    precipitation_chance: float
    wind_speed: float
    uv_index: float | None = None
    weather_code: float | None = None
    description: str = ""
    sunrise: str | None = None
    sunset: str | None = None


class ForecastSeries(BaseModel):
    """An ordered forecast for one location and timestep."""

    model_config = _CAMEL

    location: WeatherLocation = Field(default_factory=WeatherLocation)
    timestep: Timestep
    intervals: list[ForecastInterval] = []


WeatherRecord = Union[WeatherObservation, ForecastSeries]


# ---------------------------------------------------------------------------
# Remote service envelopes & results
# ---------------------------------------------------------------------------


class ApiEnvelope(BaseModel):
    """Common ``{success, data?, message?}`` response body of both services."""

    model_config = {"populate_by_name": True}

    success: bool
    data: Any = None
    message: str | None = None


class BulkUpdateResult(BaseModel):
    """``data`` payload of the alerts store bulk-update endpoint.

    ``modified_ids`` is only present on store versions that report exactly
    which documents changed.
    """

    model_config = _CAMEL

    matched_count: int = 0
    modified_count: int = 0
    modified_ids: list[str] | None = None


class WriteBackResult(BaseModel):
    """Aggregate outcome of writing evaluated states back to the store."""

    model_config = {"populate_by_name": True}

    successful_ids: set[str] = set()
    failed_ids: set[str] = set()
    used_fallback: bool = False

    @property
    def total(self) -> int:
        return len(self.successful_ids) + len(self.failed_ids)

    def merge(self, other: WriteBackResult) -> WriteBackResult:
        return WriteBackResult(
            successful_ids=self.successful_ids | other.successful_ids,
            failed_ids=self.failed_ids | other.failed_ids,
            used_fallback=self.used_fallback or other.used_fallback,
        )


class CycleStats(BaseModel):
    """Summary of one completed evaluation cycle."""

    model_config = {"populate_by_name": True}

    total_alerts: int = 0
    unique_locations: int = 0
    weather_records: int = 0
    triggered: int = 0
    write_back: WriteBackResult = Field(default_factory=WriteBackResult)
    duration_ms: float = 0.0


class ServiceStats(BaseModel):
    """Health snapshot of the two remote dependencies."""

    model_config = {"populate_by_name": True}

    alerts_service_healthy: bool
    weather_api_healthy: bool
    checked_at: datetime
