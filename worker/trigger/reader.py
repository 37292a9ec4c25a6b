"""
Weather Reader: weather API access for the Alerts Trigger Worker.

Implements the ``WeatherReader`` interface on top of the weather API
microservice. Two record shapes are served:

    Realtime: ``GET api/v1/weather/realtime?lat=..&lon=..`` (or ``?city=..``)
        -> ``WeatherObservation``
    Forecast: ``GET api/v1/weather/forecast?...&timestep=1h|1d``
        -> ``ForecastSeries``

Locations are encoded as ``lat``/``lon`` when the alert has a valid
coordinate pair and as ``city`` otherwise, never both.

Every failure surfaces as ``WeatherFetchError``. The fan-out in
``worker.trigger.fetch`` tolerates it per location; nothing here retries.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pydantic import ValidationError

from worker.trigger.api_client import ApiResponseError, JsonApiClient
from worker.trigger.models import (
    AlertLocation,
    ForecastSeries,
    Timestep,
    WeatherObservation,
)

logger = logging.getLogger(__name__)

WEATHER_API_PREFIX = "api/v1/weather"


class WeatherFetchError(Exception):
    """Raised when weather data for one location/kind could not be fetched."""

    pass


# ---------------------------------------------------------------------------
# WeatherReader Interface
# ---------------------------------------------------------------------------


class WeatherReader(ABC):
    """Abstract source of realtime and forecast weather data.

    Usable as an async context manager; implementations that hold network
    resources open and release them there.
    """

    async def __aenter__(self) -> WeatherReader:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    @abstractmethod
    async def fetch_realtime(self, location: AlertLocation) -> WeatherObservation:
        """Fetch the current conditions at ``location``.

        Raises
        ------
        WeatherFetchError
            If the observation could not be fetched or parsed.
        """
        ...

    @abstractmethod
    async def fetch_forecast(
        self, location: AlertLocation, timestep: Timestep
    ) -> ForecastSeries:
        """Fetch the forecast series at ``location`` for ``timestep``.

        Raises
        ------
        WeatherFetchError
            If the forecast could not be fetched or parsed.
        """
        ...

    @abstractmethod
    async def check_health(self) -> bool:
        """Return True if the weather API is reachable."""
        ...


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


class HttpWeatherReader(WeatherReader):
    """``WeatherReader`` backed by the weather API microservice.

    Parameters
    ----------
    client : JsonApiClient
        Client bound to ``WEATHER_API_BASE_URL``.
    """

    def __init__(self, client: JsonApiClient) -> None:
        self._client = client

    async def __aenter__(self) -> HttpWeatherReader:
        await self._client.start_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._client.close_session()

    async def fetch_realtime(self, location: AlertLocation) -> WeatherObservation:
        data = await self._get(
            "realtime", location, extra_params=None, what="current weather"
        )
        try:
            return WeatherObservation.model_validate(data)
        except ValidationError as exc:
            raise WeatherFetchError(
                f"Invalid current weather payload for {location.model_dump()}: {exc}"
            ) from exc

    async def fetch_forecast(
        self, location: AlertLocation, timestep: Timestep
    ) -> ForecastSeries:
        data = await self._get(
            "forecast",
            location,
            extra_params={"timestep": timestep.value},
            what=f"{timestep.value} forecast",
        )
        try:
            return ForecastSeries.model_validate(data)
        except ValidationError as exc:
            raise WeatherFetchError(
                f"Invalid {timestep.value} forecast payload for "
                f"{location.model_dump()}: {exc}"
            ) from exc

    async def check_health(self) -> bool:
        return await self._client.check_health()

    async def _get(
        self,
        endpoint: str,
        location: AlertLocation,
        extra_params: dict[str, str] | None,
        what: str,
    ) -> dict:
        try:
            params = location.to_query_params()
        except ValueError as exc:
            raise WeatherFetchError(str(exc)) from exc
        if extra_params:
            params.update(extra_params)

        logger.info("Fetching %s for location %s", what, params)

        try:
            envelope = await self._client.request(
                "GET", f"{WEATHER_API_PREFIX}/{endpoint}", params=params
            )
        except ApiResponseError as exc:
            raise WeatherFetchError(f"Failed to fetch {what}: {exc}") from exc

        if not envelope.success or not isinstance(envelope.data, dict):
            raise WeatherFetchError(
                f"Failed to fetch {what}: invalid response format from weather "
                f"API ({envelope.message or 'no message'})"
            )
        return envelope.data


def create_weather_reader(
    base_url: str,
    timeout_seconds: float,
    user_agent: str,
) -> WeatherReader:
    """Create a ``WeatherReader`` for the weather API at ``base_url``."""
    client = JsonApiClient(
        base_url=base_url,
        name="weather-api",
        timeout_seconds=timeout_seconds,
        headers={"User-Agent": user_agent},
    )
    return HttpWeatherReader(client)
