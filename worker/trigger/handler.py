"""
Lambda handler for the Alerts Trigger Worker.

Implements the ``handler(event, context)`` entrypoint invoked on a schedule
(every 10 minutes by default). Each invocation runs one stateless
evaluation cycle:

    1. HealthCheck   -- both remote dependencies, concurrently. Fail-fast.
    2. FetchPending  -- alerts in state ``not_triggered``. Empty -> done.
    3. Group         -- partition alerts by canonical location key.
    4. FetchWeather  -- concurrent fan-out, partial-failure tolerant.
    5. Evaluate      -- pure, synchronous, fail-safe per alert.
    6. WriteBack     -- batched per target state, with a one-shot per-item
                        fallback for batches that fail at the transport level.

Key Design Decisions:
    - **Fatal vs. tolerated**: only steps 1-2 (and unexpected exceptions)
      abort the cycle. They surface as a single ``EvaluationCycleError``
      whose ``stage`` names the failing step; nothing is written back after
      a fatal failure. Per-location fetch failures and per-alert evaluation
      faults never abort the cycle.
    - **Triggered only**: write-back only sends ids whose new state is
      ``triggered``; ``not_triggered -> not_triggered`` is a no-op and makes
      no network call.
    - **Order-independent aggregation**: batch and fallback outcomes are
      combined as set unions, never by position.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from worker.trigger.config import load_settings
from worker.trigger.fetch import fetch_weather
from worker.trigger.logic.evaluator import evaluate_alerts
from worker.trigger.logic.grouping import group_by_location
from worker.trigger.models import (
    AlertState,
    CycleStats,
    ServiceStats,
    WriteBackResult,
)
from worker.trigger.reader import WeatherReader
from worker.trigger.repo import AlertRepository

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_CYCLE_DURATION = "CycleDuration"
METRIC_ALERTS_TRIGGERED = "AlertsTriggered"
METRIC_WRITE_BACK_FAILURES = "WriteBackFailures"

MetricEmitter = Callable[[str, float, str, dict[str, str]], None]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DependencyUnavailableError(Exception):
    """Raised when a remote dependency fails its health check."""

    pass


class EvaluationCycleError(Exception):
    """Single aggregate failure for a cycle that could not complete.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Log metrics when no CloudWatch emitter is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# TriggerWorker
# ---------------------------------------------------------------------------


class TriggerWorker:
    """Runs alert evaluation cycles against the alerts store and weather API.

    Parameters
    ----------
    repo : AlertRepository
        Alerts store access (pending alerts, state write-back).
    reader : WeatherReader
        Weather API access (realtime and forecast data).
    metric_emitter : callable or None
        Callback for emitting cycle metrics. If None, metrics are logged.
    service_name : str
        Dimension attached to emitted metrics.
    """

    def __init__(
        self,
        repo: AlertRepository,
        reader: WeatherReader,
        metric_emitter: MetricEmitter | None = None,
        service_name: str = "alerts-trigger",
    ) -> None:
        self._repo = repo
        self._reader = reader
        self._metric_emitter = metric_emitter or _default_metric_emitter
        self._service_name = service_name

    def handler(self, event: dict[str, Any] | None, context: Any) -> dict[str, Any]:
        """Synchronous Lambda entrypoint.

        ``{"action": "stats"}`` returns a dependency health snapshot; any
        other event runs one evaluation cycle and returns its statistics.
        ``EvaluationCycleError`` propagates so the invocation is marked
        failed.
        """
        action = (event or {}).get("action", "evaluate")
        if action == "stats":
            return asyncio.run(self.service_stats()).model_dump(mode="json")
        return asyncio.run(self.run_cycle()).model_dump(mode="json")

    async def run_cycle(self) -> CycleStats:
        """Run one complete evaluation cycle.

        Raises
        ------
        EvaluationCycleError
            If the health check or the pending-alert fetch fails, or an
            unexpected exception escapes any stage.
        """
        start = time.monotonic()
        logger.info("Starting alert evaluation cycle")

        stage = "health_check"
        try:
            async with self._repo, self._reader:
                await self._check_health()

                stage = "fetch_pending"
                alerts = await self._repo.fetch_pending_alerts()
                if not alerts:
                    logger.info("No alerts found to evaluate")
                    return self._complete_cycle(
                        CycleStats(duration_ms=_elapsed_ms(start))
                    )

                stage = "group"
                groups = group_by_location(alerts)

                stage = "fetch_weather"
                weather_data = await fetch_weather(self._reader, groups)

                stage = "evaluate"
                results = evaluate_alerts(alerts, weather_data)

                stage = "write_back"
                write_back = await self._write_back(results)

        except Exception as exc:
            duration_ms = _elapsed_ms(start)
            logger.exception(
                "Alert evaluation cycle failed at stage=%s after %.0fms: %s",
                stage,
                duration_ms,
                exc,
            )
            self._emit(METRIC_CYCLE_DURATION, duration_ms, "Milliseconds")
            raise EvaluationCycleError(
                f"Alert evaluation cycle failed at {stage}: {exc}", stage=stage
            ) from exc

        triggered = sum(1 for s in results.values() if s == AlertState.TRIGGERED)
        stats = CycleStats(
            total_alerts=len(alerts),
            unique_locations=len(groups),
            weather_records=len(weather_data),
            triggered=triggered,
            write_back=write_back,
            duration_ms=_elapsed_ms(start),
        )
        return self._complete_cycle(stats)

    def _complete_cycle(self, stats: CycleStats) -> CycleStats:
        """Log the cycle summary and emit its metrics."""
        write_back = stats.write_back
        logger.info(
            "Alert evaluation cycle completed: alerts=%d locations=%d "
            "weather_records=%d triggered=%d written=%d failed=%d duration=%.0fms",
            stats.total_alerts,
            stats.unique_locations,
            stats.weather_records,
            stats.triggered,
            len(write_back.successful_ids),
            len(write_back.failed_ids),
            stats.duration_ms,
        )
        self._emit(METRIC_CYCLE_DURATION, stats.duration_ms, "Milliseconds")
        self._emit(METRIC_ALERTS_TRIGGERED, float(stats.triggered), "Count")
        self._emit(
            METRIC_WRITE_BACK_FAILURES, float(len(write_back.failed_ids)), "Count"
        )
        return stats

    async def service_stats(self) -> ServiceStats:
        """Health snapshot of both dependencies, checked concurrently."""
        async with self._repo, self._reader:
            alerts_ok, weather_ok = await asyncio.gather(
                self._repo.check_health(),
                self._reader.check_health(),
            )
        return ServiceStats(
            alerts_service_healthy=alerts_ok,
            weather_api_healthy=weather_ok,
            checked_at=datetime.now(timezone.utc),
        )

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def _check_health(self) -> None:
        logger.info("Performing health checks")
        alerts_ok, weather_ok = await asyncio.gather(
            self._repo.check_health(),
            self._reader.check_health(),
        )
        if not alerts_ok:
            raise DependencyUnavailableError("Alerts-service is not healthy")
        if not weather_ok:
            raise DependencyUnavailableError("Weather-api is not healthy")
        logger.info("All dependent services are healthy")

    async def _write_back(self, results: dict[str, AlertState]) -> WriteBackResult:
        """Write triggered states back to the store.

        One bulk call per distinct target state, run concurrently. Ids of a
        bulk call that raises go through exactly one per-item fallback pass.
        """
        by_state: dict[AlertState, list[str]] = {}
        for alert_id, state in results.items():
            if state != AlertState.TRIGGERED:
                continue
            by_state.setdefault(state, []).append(alert_id)

        if not by_state:
            logger.info("No triggered alerts; nothing to write back")
            return WriteBackResult()

        logger.info(
            "Batch updating %d alerts in %d state groups",
            sum(len(ids) for ids in by_state.values()),
            len(by_state),
        )

        batches = list(by_state.items())
        outcomes = await asyncio.gather(
            *(self._repo.bulk_update_state(ids, state) for state, ids in batches),
            return_exceptions=True,
        )

        aggregate = WriteBackResult()
        fallback: dict[str, AlertState] = {}
        for (state, ids), outcome in zip(batches, outcomes):
            if isinstance(outcome, WriteBackResult):
                aggregate = aggregate.merge(outcome)
                continue
            logger.error(
                "Batch update to '%s' for %d alerts failed: %s. "
                "Falling back to individual updates.",
                state.value,
                len(ids),
                outcome,
            )
            for alert_id in ids:
                fallback[alert_id] = state

        if fallback:
            aggregate = aggregate.merge(await self._write_back_individually(fallback))

        if aggregate.failed_ids:
            logger.warning(
                "%d alert state updates failed: %s",
                len(aggregate.failed_ids),
                sorted(aggregate.failed_ids),
            )
        return aggregate

    async def _write_back_individually(
        self, updates: dict[str, AlertState]
    ) -> WriteBackResult:
        alert_ids = list(updates)
        outcomes = await asyncio.gather(
            *(self._repo.update_state(i, updates[i]) for i in alert_ids),
            return_exceptions=True,
        )

        successful = {i for i, ok in zip(alert_ids, outcomes) if ok is True}
        failed = set(alert_ids) - successful

        logger.info(
            "Individual alert state updates completed: total=%d successful=%d failed=%d",
            len(alert_ids),
            len(successful),
            len(failed),
        )
        return WriteBackResult(
            successful_ids=successful, failed_ids=failed, used_fallback=True
        )

    def _emit(self, name: str, value: float, unit: str) -> None:
        try:
            self._metric_emitter(
                name, value, unit, {"Service": self._service_name}
            )
        except Exception:
            logger.warning("Failed to emit metric %s", name, exc_info=True)


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------

# Singleton worker instance, initialized on first cold start.
_worker: TriggerWorker | None = None


def _create_worker() -> TriggerWorker:
    """Create the TriggerWorker singleton from ``Settings``."""
    from worker.trigger.reader import create_weather_reader
    from worker.trigger.repo import create_alert_repository

    settings = load_settings()
    token = (
        settings.alerts_api_token.get_secret_value()
        if settings.alerts_api_token is not None
        else None
    )

    repo = create_alert_repository(
        base_url=settings.alerts_api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
        user_agent=settings.user_agent,
        evaluated_by=settings.service_name,
        token=token,
        sort_by=settings.pending_sort_by,
        sort_order=settings.pending_sort_order,
    )
    reader = create_weather_reader(
        base_url=settings.weather_api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
        user_agent=settings.user_agent,
    )

    logger.info(
        "Service %s v%s: alerts_api=%s weather_api=%s timeout=%.1fs",
        settings.service_name,
        settings.service_version,
        settings.alerts_api_base_url,
        settings.weather_api_base_url,
        settings.request_timeout_seconds,
    )

    return TriggerWorker(
        repo=repo,
        reader=reader,
        service_name=settings.service_name,
    )


def handler(event: dict[str, Any] | None, context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint.

    Delegates to the ``TriggerWorker`` singleton.
    """
    global _worker
    if _worker is None:
        _worker = _create_worker()

    return _worker.handler(event, context)
