"""
Unit tests for location grouping and weather map keys.
"""

from __future__ import annotations

import pytest

from worker.trigger.logic.grouping import (
    InvalidLocationError,
    alert_data_key,
    group_by_location,
    location_key,
    weather_data_key,
)
from worker.trigger.models import (
    Alert,
    AlertKind,
    AlertLocation,
    Timestep,
)


def _make_alert(
    alert_id: str,
    location: AlertLocation,
    kind: AlertKind = AlertKind.REALTIME,
    timestep: Timestep | None = None,
) -> Alert:
    return Alert(
        id=alert_id,
        kind=kind,
        parameter="temperature",
        operator=">",
        threshold=30.0,
        location=location,
        timestep=timestep,
    )


class TestLocationKey:
    def test_coordinates(self) -> None:
        assert location_key(AlertLocation(lat=30.0, lon=31.0)) == "30.0,31.0"

    def test_coordinates_win_over_city(self) -> None:
        loc = AlertLocation(lat=30.0, lon=31.0, city="Cairo")
        assert location_key(loc) == "30.0,31.0"

    def test_city_is_normalized(self) -> None:
        assert location_key(AlertLocation(city="  New York ")) == "new york"
        assert location_key(AlertLocation(city="NEW YORK")) == "new york"

    def test_coordinates_are_not_rounded(self) -> None:
        a = location_key(AlertLocation(lat=40.0, lon=-74.0))
        b = location_key(AlertLocation(lat=40.00001, lon=-74.0))
        assert a != b

    def test_negative_zero_shares_key_with_zero(self) -> None:
        negative = location_key(AlertLocation(lat=-0.0, lon=31.0))
        positive = location_key(AlertLocation(lat=0.0, lon=31.0))
        assert negative == positive == "0.0,31.0"

    def test_out_of_range_coordinates_fall_back_to_city(self) -> None:
        loc = AlertLocation(lat=95.0, lon=31.0, city="Cairo")
        assert location_key(loc) == "cairo"

    @pytest.mark.parametrize(
        "location",
        [
            AlertLocation(),
            AlertLocation(city="   "),
            AlertLocation(lat=30.0),
            AlertLocation(lat=30.0, lon=181.0),
        ],
    )
    def test_invalid_location_raises(self, location: AlertLocation) -> None:
        with pytest.raises(InvalidLocationError):
            location_key(location)


class TestGroupByLocation:
    def test_groups_in_first_seen_order(self) -> None:
        alerts = [
            _make_alert("a1", AlertLocation(city="Cairo")),
            _make_alert("a2", AlertLocation(lat=30.0, lon=31.0)),
            _make_alert("a3", AlertLocation(city=" cairo")),
        ]
        groups = group_by_location(alerts)

        assert list(groups) == ["cairo", "30.0,31.0"]
        assert [a.id for a in groups["cairo"]] == ["a1", "a3"]
        assert [a.id for a in groups["30.0,31.0"]] == ["a2"]

    def test_invalid_locations_are_dropped(self) -> None:
        alerts = [
            _make_alert("bad", AlertLocation()),
            _make_alert("good", AlertLocation(city="Paris")),
        ]
        groups = group_by_location(alerts)
        assert list(groups) == ["paris"]

    def test_signed_zero_coordinates_share_a_group(self) -> None:
        alerts = [
            _make_alert("a1", AlertLocation(lat=0.0, lon=-0.0)),
            _make_alert("a2", AlertLocation(lat=-0.0, lon=0.0)),
        ]
        groups = group_by_location(alerts)
        assert list(groups) == ["0.0,0.0"]
        assert [a.id for a in groups["0.0,0.0"]] == ["a1", "a2"]

    def test_empty_input(self) -> None:
        assert group_by_location([]) == {}


class TestWeatherDataKey:
    def test_realtime_key(self) -> None:
        assert weather_data_key(AlertKind.REALTIME, "cairo") == "realtime:cairo"

    def test_forecast_key_includes_timestep(self) -> None:
        key = weather_data_key(AlertKind.FORECAST, "cairo", Timestep.DAILY)
        assert key == "forecast:1d:cairo"

    def test_forecast_key_defaults_to_hourly(self) -> None:
        assert weather_data_key(AlertKind.FORECAST, "cairo") == "forecast:1h:cairo"

    def test_alert_data_key(self) -> None:
        alert = _make_alert(
            "a1",
            AlertLocation(lat=30.0, lon=31.0),
            kind=AlertKind.FORECAST,
            timestep=Timestep.DAILY,
        )
        assert alert_data_key(alert) == "forecast:1d:30.0,31.0"
