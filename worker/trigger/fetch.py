"""
Weather fetch fan-out for one evaluation cycle.

For each location group the required fetches are planned:

    - one realtime fetch if any alert in the group is a realtime alert;
    - one forecast fetch per distinct timestep used by the group's
      forecast alerts.

All planned fetches across all groups run concurrently. The cycle waits for
every one of them to settle; a failure for one location never cancels or
fails the others, it just leaves that key absent from the result map.

Results land in a ``WeatherDataMap`` which is write-once per key: a second
completion for a key that is already populated is discarded with a warning
instead of overwriting the first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from worker.trigger.logic.grouping import weather_data_key
from worker.trigger.models import (
    Alert,
    AlertKind,
    AlertLocation,
    Timestep,
    WeatherRecord,
)
from worker.trigger.reader import WeatherReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchRequest:
    """One remote weather lookup: a location, a data kind, and a timestep."""

    location_key: str
    location: AlertLocation
    kind: AlertKind
    timestep: Timestep | None = None

    @property
    def key(self) -> str:
        return weather_data_key(self.kind, self.location_key, self.timestep)


class WeatherDataMap(Mapping[str, WeatherRecord]):
    """Per-cycle weather records keyed by ``weather_data_key``.

    Write-once per key. Insertion uses ``dict.setdefault`` so the check and
    the write are a single operation.
    """

    def __init__(self) -> None:
        self._data: dict[str, WeatherRecord] = {}
        self.duplicates: int = 0

    def put_if_absent(self, key: str, record: WeatherRecord) -> bool:
        """Store ``record`` under ``key`` unless the key is already set.

        Returns
        -------
        bool
            True if stored, False if a record already existed (the new one
            is discarded).
        """
        existing = self._data.setdefault(key, record)
        if existing is not record:
            self.duplicates += 1
            logger.warning(
                "Duplicate weather data for key=%s discarded; keeping first result",
                key,
            )
            return False
        return True

    def __getitem__(self, key: str) -> WeatherRecord:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


def plan_fetches(groups: dict[str, list[Alert]]) -> list[FetchRequest]:
    """Work out the distinct fetches needed for the grouped alerts.

    The location sent upstream is taken from the first alert of each group;
    all alerts of a group share the same canonical key.
    """
    requests: list[FetchRequest] = []

    for loc_key, alerts in groups.items():
        if not alerts:
            continue
        location = alerts[0].location

        if any(a.kind == AlertKind.REALTIME for a in alerts):
            requests.append(
                FetchRequest(
                    location_key=loc_key,
                    location=location,
                    kind=AlertKind.REALTIME,
                )
            )

        timesteps: list[Timestep] = []
        for a in alerts:
            if a.kind == AlertKind.FORECAST and a.effective_timestep not in timesteps:
                timesteps.append(a.effective_timestep)
        for ts in timesteps:
            requests.append(
                FetchRequest(
                    location_key=loc_key,
                    location=location,
                    kind=AlertKind.FORECAST,
                    timestep=ts,
                )
            )

    return requests


async def _run_request(reader: WeatherReader, req: FetchRequest) -> WeatherRecord:
    if req.kind == AlertKind.REALTIME:
        return await reader.fetch_realtime(req.location)
    return await reader.fetch_forecast(req.location, req.timestep or Timestep.HOURLY)


async def fetch_weather(
    reader: WeatherReader,
    groups: dict[str, list[Alert]],
) -> WeatherDataMap:
    """Fetch every record the grouped alerts need, concurrently.

    Parameters
    ----------
    reader : WeatherReader
        Weather data source.
    groups : dict[str, list[Alert]]
        Output of ``group_by_location``.

    Returns
    -------
    WeatherDataMap
        Records for every fetch that succeeded. Failed fetches are logged
        and simply absent.
    """
    requests = plan_fetches(groups)
    weather_data = WeatherDataMap()

    logger.info(
        "Fetching weather data: %d requests for %d unique locations",
        len(requests),
        len(groups),
    )

    async def _fetch_one(req: FetchRequest) -> None:
        try:
            record = await _run_request(reader, req)
        except Exception as exc:
            logger.error("Failed to fetch weather data for key=%s: %s", req.key, exc)
            return
        if weather_data.put_if_absent(req.key, record):
            logger.info("Fetched weather data for key=%s", req.key)

    await asyncio.gather(
        *(_fetch_one(req) for req in requests), return_exceptions=True
    )

    logger.info(
        "Weather data fetching completed: %d/%d location/type combinations",
        len(weather_data),
        len(requests),
    )
    return weather_data
