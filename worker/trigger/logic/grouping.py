"""
Location grouping for the Alerts Trigger Worker.

Partitions alerts by a canonical ``LocationKey`` so that the weather API is
called at most once per (location, data kind[, timestep]) in a cycle.

Key Format:
    Coordinates: ``"{lat},{lon}"`` using the exact float text (no rounding,
        so ``40.0,-74.0`` and ``40.00001,-74.0`` are distinct locations).
    City: lower-cased and trimmed, so ``" New York "`` and ``"new york"``
        share a key.

Coordinates take precedence when an alert carries both representations.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from worker.trigger.models import Alert, AlertKind, AlertLocation, Timestep

logger = logging.getLogger(__name__)


class InvalidLocationError(ValueError):
    """Raised when a location has neither valid coordinates nor a city."""

    pass


def location_key(location: AlertLocation) -> str:
    """Compute the canonical deduplication key for ``location``.

    Raises
    ------
    InvalidLocationError
        If the location has no in-range coordinate pair and no non-empty
        city. Such alerts must never fall back to a default location.
    """
    if location.has_valid_coordinates:
        # + 0.0 folds -0.0 into 0.0
        return f"{location.lat + 0.0},{location.lon + 0.0}"
    city = location.normalized_city
    if city:
        return city
    raise InvalidLocationError(
        f"Invalid location for key generation: {location.model_dump()}"
    )


def group_by_location(alerts: list[Alert]) -> dict[str, list[Alert]]:
    """Group alerts by location key.

    Groups are returned in first-seen order and each group keeps the
    original relative order of its alerts. Alerts with an invalid location
    are dropped with a warning rather than failing the cycle.
    """
    grouped: dict[str, list[Alert]] = defaultdict(list)
    skipped = 0

    for alert in alerts:
        try:
            key = location_key(alert.location)
        except InvalidLocationError as exc:
            skipped += 1
            logger.warning(
                "Skipping alert with invalid location: id=%s location=%s (%s)",
                alert.id,
                alert.location.model_dump(),
                exc,
            )
            continue
        grouped[key].append(alert)

    logger.info(
        "Grouped %d alerts into %d unique locations (%d skipped)",
        len(alerts),
        len(grouped),
        skipped,
    )
    return dict(grouped)


def weather_data_key(
    kind: AlertKind, loc_key: str, timestep: Timestep | None = None
) -> str:
    """Key of the per-cycle weather map for one fetched record.

    ``realtime:{loc_key}`` or ``forecast:{timestep}:{loc_key}``.
    """
    if kind == AlertKind.REALTIME:
        return f"realtime:{loc_key}"
    return f"forecast:{(timestep or Timestep.HOURLY).value}:{loc_key}"


def alert_data_key(alert: Alert) -> str:
    """Weather map key an alert is evaluated against."""
    return weather_data_key(
        alert.kind, location_key(alert.location), alert.effective_timestep
    )
