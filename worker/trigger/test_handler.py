"""
Tests for the Alerts Trigger Worker Lambda Handler.

Validates:
1. Happy path: health -> pending -> group -> fetch -> evaluate -> write back.
2. Health check failure aborts the cycle before any alert is read.
3. Pending-alert fetch failure aborts the cycle with nothing written.
4. Empty pending set completes with zero remote weather/write calls.
5. Weather fetch failures are tolerated per location.
6. Only triggered alerts are written back.
7. Batch transport failure -> exactly one per-item fallback pass.
8. Write-back outcome sets are disjoint and cover every triggered id.
9. Metric emission and Lambda entrypoint routing (evaluate vs stats).

Uses in-memory ``AlertRepository``/``WeatherReader`` fakes.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

import worker.trigger.handler as handler_module
from worker.trigger.handler import (
    METRIC_ALERTS_TRIGGERED,
    METRIC_CYCLE_DURATION,
    METRIC_WRITE_BACK_FAILURES,
    DependencyUnavailableError,
    EvaluationCycleError,
    TriggerWorker,
    _default_metric_emitter,
)
from worker.trigger.models import (
    Alert,
    AlertKind,
    AlertLocation,
    AlertState,
    ForecastInterval,
    ForecastSeries,
    Precipitation,
    Timestep,
    WeatherObservation,
    WriteBackResult,
)
from worker.trigger.reader import WeatherFetchError, WeatherReader
from worker.trigger.repo import (
    AlertFetchError,
    AlertRepository,
    WriteBackTransportError,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NOW = datetime(2026, 2, 6, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeAlertRepository(AlertRepository):
    """In-memory alerts store recording every write."""

    def __init__(
        self,
        alerts: list[Alert] | None = None,
        healthy: bool = True,
        fetch_error: Exception | None = None,
        bulk_error: Exception | None = None,
        failing_item_ids: set[str] | None = None,
    ) -> None:
        self.alerts = alerts or []
        self.healthy = healthy
        self.fetch_error = fetch_error
        self.bulk_error = bulk_error
        self.failing_item_ids = failing_item_ids or set()

        self.fetch_calls = 0
        self.bulk_calls: list[tuple[list[str], AlertState]] = []
        self.item_calls: list[tuple[str, AlertState]] = []
        self.entered = 0
        self.exited = 0

    async def __aenter__(self) -> FakeAlertRepository:
        self.entered += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.exited += 1

    async def fetch_pending_alerts(self, kind=None, parameter=None) -> list[Alert]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.alerts)

    async def bulk_update_state(
        self, alert_ids: list[str], state: AlertState
    ) -> WriteBackResult:
        self.bulk_calls.append((list(alert_ids), state))
        if self.bulk_error is not None:
            raise self.bulk_error
        return WriteBackResult(successful_ids=set(alert_ids))

    async def update_state(self, alert_id: str, state: AlertState) -> bool:
        self.item_calls.append((alert_id, state))
        return alert_id not in self.failing_item_ids

    async def check_health(self) -> bool:
        return self.healthy


class FakeWeatherReader(WeatherReader):
    """In-memory weather API keyed by normalized city or "lat,lon"."""

    def __init__(
        self,
        realtime: dict[str, WeatherObservation] | None = None,
        forecast: dict[tuple[str, Timestep], ForecastSeries] | None = None,
        healthy: bool = True,
    ) -> None:
        self.realtime = realtime or {}
        self.forecast = forecast or {}
        self.healthy = healthy
        self.calls = 0
        self.requests: list[tuple[str, str]] = []

    @staticmethod
    def _where(location: AlertLocation) -> str:
        if location.has_valid_coordinates:
            return f"{location.lat},{location.lon}"
        return location.normalized_city

    async def fetch_realtime(self, location: AlertLocation) -> WeatherObservation:
        self.calls += 1
        self.requests.append(("realtime", self._where(location)))
        try:
            return self.realtime[self._where(location)]
        except KeyError:
            raise WeatherFetchError(f"no data for {self._where(location)}") from None

    async def fetch_forecast(
        self, location: AlertLocation, timestep: Timestep
    ) -> ForecastSeries:
        self.calls += 1
        self.requests.append((f"forecast:{timestep.value}", self._where(location)))
        try:
            return self.forecast[(self._where(location), timestep)]
        except KeyError:
            raise WeatherFetchError(f"no data for {self._where(location)}") from None

    async def check_health(self) -> bool:
        return self.healthy


class Rendezvous:
    """Releases waiters only once ``parties`` of them have arrived."""

    def __init__(self, parties: int) -> None:
        self.parties = parties
        self.arrived = 0
        self._all_arrived = asyncio.Event()

    async def arrive(self) -> None:
        self.arrived += 1
        if self.arrived >= self.parties:
            self._all_arrived.set()
        await self._all_arrived.wait()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_alert(
    alert_id: str,
    parameter: str = "temperature",
    operator: str = ">",
    threshold: float = 30.0,
    location: AlertLocation | None = None,
    kind: AlertKind = AlertKind.REALTIME,
    timestep: Timestep | None = None,
) -> Alert:
    return Alert(
        id=alert_id,
        kind=kind,
        parameter=parameter,
        operator=operator,
        threshold=threshold,
        location=location or AlertLocation(city="Cairo"),
        timestep=timestep,
    )


def _observation(temperature: float = 35.0, humidity: float = 40.0) -> WeatherObservation:
    return WeatherObservation(
        temperature=temperature,
        humidity=humidity,
        wind_speed=5.0,
        wind_direction=180.0,
        precipitation=Precipitation(intensity=0.0, probability=10.0),
        visibility=10000.0,
    )


def _forecast(precipitation_chance: float = 65.0) -> ForecastSeries:
    return ForecastSeries(
        timestep=Timestep.HOURLY,
        intervals=[
            ForecastInterval(
                time=NOW,
                temperature=27.0,
                humidity=60.0,
                cloud_cover=50.0,
                precipitation_chance=precipitation_chance,
                wind_speed=10.0,
                uv_index=4.0,
                weather_code=4001.0,
            )
        ],
    )


def _cairo_setup(**repo_kwargs: Any) -> tuple[FakeAlertRepository, FakeWeatherReader]:
    """Alerts A1 (triggered), A2 (not triggered), A3 (triggered)."""
    alerts = [
        _make_alert("a1", "temperature", ">", 30.0),
        _make_alert("a2", "humidity", "<", 20.0),
        _make_alert(
            "a3",
            "precipitation.probability",
            ">=",
            60.0,
            location=AlertLocation(lat=30.0, lon=31.0),
            kind=AlertKind.FORECAST,
        ),
    ]
    repo = FakeAlertRepository(alerts=alerts, **repo_kwargs)
    reader = FakeWeatherReader(
        realtime={"cairo": _observation(temperature=35.0, humidity=40.0)},
        forecast={("30.0,31.0", Timestep.HOURLY): _forecast(65.0)},
    )
    return repo, reader


def _make_worker(
    repo: AlertRepository,
    reader: WeatherReader,
    metric_emitter: Any | None = None,
) -> TriggerWorker:
    return TriggerWorker(
        repo=repo,
        reader=reader,
        metric_emitter=metric_emitter or MagicMock(),
    )


# ---------------------------------------------------------------------------
# run_cycle
# ---------------------------------------------------------------------------


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_cairo_end_to_end(self) -> None:
        repo, reader = _cairo_setup()
        worker = _make_worker(repo, reader)

        stats = await worker.run_cycle()

        assert stats.total_alerts == 3
        assert stats.unique_locations == 2
        assert stats.weather_records == 2
        assert stats.triggered == 2
        assert reader.calls == 2
        assert len(repo.bulk_calls) == 1
        ids, state = repo.bulk_calls[0]
        assert sorted(ids) == ["a1", "a3"]
        assert state == AlertState.TRIGGERED
        assert repo.item_calls == []
        assert stats.write_back.successful_ids == {"a1", "a3"}
        assert stats.write_back.used_fallback is False

    @staticmethod
    def _three_alert_scenario(
        forecast_available: bool,
    ) -> tuple[FakeAlertRepository, FakeWeatherReader]:
        coords = AlertLocation(lat=30.0, lon=31.0)
        alerts = [
            _make_alert("a", "temperature", ">", 30.0),
            _make_alert(
                "b", "humidity", "<", 20.0,
                location=coords, kind=AlertKind.FORECAST, timestep=Timestep.HOURLY,
            ),
            _make_alert("c", "uvIndex", ">=", 8.0, location=coords),
        ]
        humid = _forecast()
        humid.intervals[0].humidity = 15.0
        observation_at_coords = _observation()
        observation_at_coords.uv_index = 9.0

        reader = FakeWeatherReader(
            realtime={"cairo": _observation(temperature=35.0), "30.0,31.0": observation_at_coords},
            forecast={("30.0,31.0", Timestep.HOURLY): humid} if forecast_available else {},
        )
        return FakeAlertRepository(alerts=alerts), reader

    @pytest.mark.asyncio
    async def test_three_alert_scenario_with_forecast_failure(self) -> None:
        repo, reader = self._three_alert_scenario(forecast_available=False)

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.unique_locations == 2
        assert sorted(reader.requests) == [
            ("forecast:1h", "30.0,31.0"),
            ("realtime", "30.0,31.0"),
            ("realtime", "cairo"),
        ]
        assert stats.write_back.successful_ids == {"a", "c"}
        assert [sorted(ids) for ids, _ in repo.bulk_calls] == [["a", "c"]]

    @pytest.mark.asyncio
    async def test_three_alert_scenario_with_forecast(self) -> None:
        repo, reader = self._three_alert_scenario(forecast_available=True)

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.triggered == 3
        assert stats.write_back.successful_ids == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_sessions_are_opened_and_closed(self) -> None:
        repo, reader = _cairo_setup()
        await _make_worker(repo, reader).run_cycle()
        assert repo.entered == 1
        assert repo.exited == 1

    @pytest.mark.asyncio
    async def test_unhealthy_alerts_service_aborts(self) -> None:
        repo, reader = _cairo_setup(healthy=False)
        worker = _make_worker(repo, reader)

        with pytest.raises(EvaluationCycleError) as exc_info:
            await worker.run_cycle()

        assert exc_info.value.stage == "health_check"
        assert isinstance(exc_info.value.__cause__, DependencyUnavailableError)
        assert repo.fetch_calls == 0
        assert reader.calls == 0

    @pytest.mark.asyncio
    async def test_unhealthy_weather_api_aborts(self) -> None:
        repo, reader = _cairo_setup()
        reader.healthy = False

        with pytest.raises(EvaluationCycleError, match="Weather-api"):
            await _make_worker(repo, reader).run_cycle()
        assert repo.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_pending_fetch_failure_aborts_without_writes(self) -> None:
        repo, reader = _cairo_setup(fetch_error=AlertFetchError("HTTP 500"))

        with pytest.raises(EvaluationCycleError) as exc_info:
            await _make_worker(repo, reader).run_cycle()

        assert exc_info.value.stage == "fetch_pending"
        assert isinstance(exc_info.value.__cause__, AlertFetchError)
        assert repo.bulk_calls == []
        assert repo.item_calls == []
        assert reader.calls == 0

    @pytest.mark.asyncio
    async def test_no_pending_alerts(self) -> None:
        repo = FakeAlertRepository(alerts=[])
        reader = FakeWeatherReader()

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.total_alerts == 0
        assert reader.calls == 0
        assert repo.bulk_calls == []

    @pytest.mark.asyncio
    async def test_no_pending_alerts_still_emits_cycle_metrics(self) -> None:
        repo = FakeAlertRepository(alerts=[])
        emitter = MagicMock()

        await _make_worker(repo, FakeWeatherReader(), metric_emitter=emitter).run_cycle()

        emitted = {c.args[0]: c.args[1] for c in emitter.call_args_list}
        assert METRIC_CYCLE_DURATION in emitted
        assert emitted[METRIC_ALERTS_TRIGGERED] == 0.0
        assert emitted[METRIC_WRITE_BACK_FAILURES] == 0.0

    @pytest.mark.asyncio
    async def test_health_checks_run_concurrently(self) -> None:
        rendezvous = Rendezvous(parties=2)

        class WaitingRepo(FakeAlertRepository):
            async def check_health(self) -> bool:
                await rendezvous.arrive()
                return True

        class WaitingReader(FakeWeatherReader):
            async def check_health(self) -> bool:
                await rendezvous.arrive()
                return True

        worker = _make_worker(WaitingRepo(alerts=[]), WaitingReader())

        stats = await asyncio.wait_for(worker.run_cycle(), timeout=2.0)

        assert stats.total_alerts == 0
        assert rendezvous.arrived == 2

    @pytest.mark.asyncio
    async def test_location_fetches_run_concurrently(self) -> None:
        rendezvous = Rendezvous(parties=2)

        class WaitingReader(FakeWeatherReader):
            async def fetch_realtime(self, location: AlertLocation) -> WeatherObservation:
                await rendezvous.arrive()
                return await super().fetch_realtime(location)

        repo = FakeAlertRepository(
            alerts=[
                _make_alert("cairo-1", location=AlertLocation(city="Cairo")),
                _make_alert("paris-1", location=AlertLocation(city="Paris")),
            ]
        )
        reader = WaitingReader(
            realtime={
                "cairo": _observation(temperature=35.0),
                "paris": _observation(temperature=35.0),
            }
        )

        stats = await asyncio.wait_for(
            _make_worker(repo, reader).run_cycle(), timeout=2.0
        )

        assert stats.weather_records == 2
        assert stats.write_back.successful_ids == {"cairo-1", "paris-1"}

    @pytest.mark.asyncio
    async def test_nothing_triggered_makes_no_write_calls(self) -> None:
        repo = FakeAlertRepository(alerts=[_make_alert("a1", threshold=50.0)])
        reader = FakeWeatherReader(realtime={"cairo": _observation(temperature=35.0)})

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.triggered == 0
        assert repo.bulk_calls == []
        assert repo.item_calls == []
        assert stats.write_back.total == 0

    @pytest.mark.asyncio
    async def test_weather_failure_for_one_location_is_tolerated(self) -> None:
        repo = FakeAlertRepository(
            alerts=[
                _make_alert("cairo-1", location=AlertLocation(city="Cairo")),
                _make_alert("paris-1", location=AlertLocation(city="Paris")),
            ]
        )
        reader = FakeWeatherReader(realtime={"paris": _observation(temperature=35.0)})

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.weather_records == 1
        assert stats.triggered == 1
        assert repo.bulk_calls == [(["paris-1"], AlertState.TRIGGERED)]

    @pytest.mark.asyncio
    async def test_invalid_location_alert_is_skipped(self) -> None:
        repo = FakeAlertRepository(
            alerts=[
                _make_alert("bad", location=AlertLocation(lat=120.0, lon=0.0)),
                _make_alert("good"),
            ]
        )
        reader = FakeWeatherReader(realtime={"cairo": _observation()})

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.unique_locations == 1
        assert stats.write_back.successful_ids == {"good"}

    @pytest.mark.asyncio
    async def test_metrics_emitted(self) -> None:
        repo, reader = _cairo_setup()
        emitter = MagicMock()

        await _make_worker(repo, reader, metric_emitter=emitter).run_cycle()

        emitted = {c.args[0]: c.args[1] for c in emitter.call_args_list}
        assert METRIC_CYCLE_DURATION in emitted
        assert emitted[METRIC_ALERTS_TRIGGERED] == 2.0
        assert emitted[METRIC_WRITE_BACK_FAILURES] == 0.0

    @pytest.mark.asyncio
    async def test_metric_emitter_failure_does_not_fail_cycle(self) -> None:
        repo, reader = _cairo_setup()
        emitter = MagicMock(side_effect=RuntimeError("cloudwatch down"))

        stats = await _make_worker(repo, reader, metric_emitter=emitter).run_cycle()

        assert stats.triggered == 2


# ---------------------------------------------------------------------------
# Write-back fallback
# ---------------------------------------------------------------------------


class TestWriteBack:
    @pytest.mark.asyncio
    async def test_batch_transport_failure_falls_back_once(self) -> None:
        error = WriteBackTransportError("timed out", ["a1", "a3"], AlertState.TRIGGERED)
        repo, reader = _cairo_setup(bulk_error=error)

        stats = await _make_worker(repo, reader).run_cycle()

        assert len(repo.bulk_calls) == 1
        assert sorted(i for i, _ in repo.item_calls) == ["a1", "a3"]
        assert all(s == AlertState.TRIGGERED for _, s in repo.item_calls)
        assert stats.write_back.successful_ids == {"a1", "a3"}
        assert stats.write_back.used_fallback is True

    @pytest.mark.asyncio
    async def test_fallback_partial_failure(self) -> None:
        error = WriteBackTransportError("timed out", ["a1", "a3"], AlertState.TRIGGERED)
        repo, reader = _cairo_setup(bulk_error=error, failing_item_ids={"a3"})

        stats = await _make_worker(repo, reader).run_cycle()

        result = stats.write_back
        assert result.successful_ids == {"a1"}
        assert result.failed_ids == {"a3"}
        assert result.successful_ids.isdisjoint(result.failed_ids)
        assert len(repo.item_calls) == 2

    @pytest.mark.asyncio
    async def test_fallback_item_exception_counts_as_failed(self) -> None:
        class RaisingRepo(FakeAlertRepository):
            async def update_state(self, alert_id: str, state: AlertState) -> bool:
                self.item_calls.append((alert_id, state))
                if alert_id == "a1":
                    raise RuntimeError("socket closed")
                return True

        repo = RaisingRepo(
            alerts=[_make_alert("a1"), _make_alert("a2", parameter="humidity", threshold=10.0)],
            bulk_error=RuntimeError("unexpected"),
        )
        reader = FakeWeatherReader(realtime={"cairo": _observation()})

        stats = await _make_worker(repo, reader).run_cycle()

        assert stats.write_back.successful_ids == {"a2"}
        assert stats.write_back.failed_ids == {"a1"}

    @pytest.mark.asyncio
    async def test_fallback_item_updates_run_concurrently(self) -> None:
        rendezvous = Rendezvous(parties=2)

        class WaitingRepo(FakeAlertRepository):
            async def update_state(self, alert_id: str, state: AlertState) -> bool:
                await rendezvous.arrive()
                return await super().update_state(alert_id, state)

        repo = WaitingRepo(
            bulk_error=WriteBackTransportError("timed out", ["a1", "a2"], AlertState.TRIGGERED)
        )
        worker = _make_worker(repo, FakeWeatherReader())

        result = await asyncio.wait_for(
            worker._write_back({"a1": AlertState.TRIGGERED, "a2": AlertState.TRIGGERED}),
            timeout=2.0,
        )

        assert result.successful_ids == {"a1", "a2"}
        assert result.used_fallback is True

    @pytest.mark.asyncio
    async def test_write_back_filters_triggered_only(self) -> None:
        repo = FakeAlertRepository()
        worker = _make_worker(repo, FakeWeatherReader())

        result = await worker._write_back(
            {
                "a1": AlertState.TRIGGERED,
                "a2": AlertState.NOT_TRIGGERED,
                "a3": AlertState.TRIGGERED,
            }
        )

        assert repo.bulk_calls == [(["a1", "a3"], AlertState.TRIGGERED)]
        assert result.successful_ids == {"a1", "a3"}


# ---------------------------------------------------------------------------
# Service stats and Lambda entrypoint
# ---------------------------------------------------------------------------


class TestServiceStats:
    @pytest.mark.asyncio
    async def test_reports_both_dependencies(self) -> None:
        repo = FakeAlertRepository(healthy=True)
        reader = FakeWeatherReader(healthy=False)

        stats = await _make_worker(repo, reader).service_stats()

        assert stats.alerts_service_healthy is True
        assert stats.weather_api_healthy is False
        assert stats.checked_at.tzinfo is not None


class TestHandlerEntrypoint:
    def test_evaluate_action_returns_cycle_stats(self) -> None:
        repo, reader = _cairo_setup()
        worker = _make_worker(repo, reader)

        response = worker.handler({}, MagicMock())

        assert response["total_alerts"] == 3
        assert response["triggered"] == 2
        assert sorted(response["write_back"]["successful_ids"]) == ["a1", "a3"]

    def test_stats_action(self) -> None:
        repo, reader = _cairo_setup()
        worker = _make_worker(repo, reader)

        response = worker.handler({"action": "stats"}, MagicMock())

        assert response["alerts_service_healthy"] is True
        assert response["weather_api_healthy"] is True
        assert repo.fetch_calls == 0

    def test_cycle_failure_propagates(self) -> None:
        repo, reader = _cairo_setup(healthy=False)
        worker = _make_worker(repo, reader)

        with pytest.raises(EvaluationCycleError):
            worker.handler(None, MagicMock())

    def test_module_handler_creates_singleton_once(self) -> None:
        repo, reader = _cairo_setup()
        worker = _make_worker(repo, reader)

        with patch.object(handler_module, "_worker", None), patch.object(
            handler_module, "_create_worker", return_value=worker
        ) as create:
            handler_module.handler({"action": "stats"}, MagicMock())
            handler_module.handler({"action": "stats"}, MagicMock())

        create.assert_called_once()

    def test_default_metric_emitter_logs(self) -> None:
        with patch.object(handler_module.logger, "info") as info:
            _default_metric_emitter("CycleDuration", 12.5, "Milliseconds", {"Service": "x"})
        info.assert_called_once()
