#!/usr/bin/env python3
"""
dev_runner.py -- Local development harness for the Alerts Trigger Worker.

In production the worker is a Lambda function invoked by a schedule rule.
Locally there is no scheduler, so this script plays that role:

1. Builds a ``TriggerWorker`` from ``Settings`` (env vars / ``.env``),
   pointed at the locally running alerts-service and weather API.
2. Invokes ``worker.handler(event, context)`` once immediately.
3. Repeats every ``EVALUATION_INTERVAL_SECONDS`` (default: 600) until
   SIGINT/SIGTERM.

A failed cycle is logged and the loop keeps going, the same way the
scheduler simply fires again on the next tick.

Environment Variables (with defaults for local dev):
    APP_ENV                      - Must be "local" (default: "local")
    ALERTS_API_BASE_URL          - Alerts store (default: http://localhost:3001/)
    WEATHER_API_BASE_URL         - Weather API (default: http://localhost:3000/)
    EVALUATION_INTERVAL_SECONDS  - Seconds between cycles (default: 600)
    REQUEST_TIMEOUT_SECONDS      - Per-request timeout (default: 10)

Usage:
    python -m worker.trigger.dev_runner

    # Every minute, against a remote alerts store:
    EVALUATION_INTERVAL_SECONDS=60 \\
    ALERTS_API_BASE_URL=https://alerts.example.com/ \\
    python -m worker.trigger.dev_runner
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Ensure project root is on sys.path so we can import worker modules.
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from worker.trigger.config import load_settings  # noqa: E402
from worker.trigger.handler import EvaluationCycleError, TriggerWorker  # noqa: E402
from worker.trigger.reader import create_weather_reader  # noqa: E402
from worker.trigger.repo import create_alert_repository  # noqa: E402

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("dev_runner")


def format_interval(seconds: int) -> str:
    """Human-readable description of a fixed evaluation interval.

    >>> format_interval(600)
    'every 10 minutes'
    >>> format_interval(3600)
    'every hour'
    >>> format_interval(90)
    'every 90 seconds'
    """
    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {seconds}")

    for unit_seconds, unit in ((3600, "hour"), (60, "minute")):
        if seconds % unit_seconds == 0:
            count = seconds // unit_seconds
            return f"every {unit}" if count == 1 else f"every {count} {unit}s"
    return "every second" if seconds == 1 else f"every {seconds} seconds"


# ---------------------------------------------------------------------------
# Mock Lambda Context
# ---------------------------------------------------------------------------


class MockLambdaContext:
    """Minimal stand-in for the AWS Lambda context object."""

    def __init__(self, timeout_ms: int = 300_000) -> None:
        self._timeout_ms = timeout_ms
        self._start_time = time.monotonic()

        self.function_name = "alerts-trigger-local"
        self.function_version = "$LATEST"
        self.aws_request_id = "local-dev-request-id"

    def get_remaining_time_in_millis(self) -> int:
        elapsed_ms = int((time.monotonic() - self._start_time) * 1000)
        return max(0, self._timeout_ms - elapsed_ms)


# ---------------------------------------------------------------------------
# Worker Initialization
# ---------------------------------------------------------------------------


def create_local_worker() -> TriggerWorker:
    """Create a TriggerWorker configured for local development."""
    settings = load_settings()
    logger.info("Initializing TriggerWorker for local development...")

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
    logger.info("  Alerts store: %s", settings.alerts_api_base_url)

    reader = create_weather_reader(
        base_url=settings.weather_api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
        user_agent=settings.user_agent,
    )
    logger.info("  Weather API:  %s", settings.weather_api_base_url)

    def local_metric_emitter(
        name: str, value: float, unit: str, dimensions: dict[str, str]
    ) -> None:
        logger.info("METRIC: %s=%.3f %s dimensions=%s", name, value, unit, dimensions)

    return TriggerWorker(
        repo=repo,
        reader=reader,
        metric_emitter=local_metric_emitter,
        service_name=settings.service_name,
    )


# ---------------------------------------------------------------------------
# Main Loop
# ---------------------------------------------------------------------------

# Global flag for graceful shutdown
_shutdown_requested = False


def _signal_handler(signum: int, frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global _shutdown_requested
    sig_name = signal.Signals(signum).name
    logger.info("Received %s. Requesting graceful shutdown...", sig_name)
    _shutdown_requested = True


def _sleep_until_next_cycle(interval_seconds: int) -> None:
    deadline = time.monotonic() + interval_seconds
    while not _shutdown_requested and time.monotonic() < deadline:
        time.sleep(min(1.0, deadline - time.monotonic()))


def main() -> None:
    """Run an evaluation cycle now and then on every interval until stopped."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    os.environ.setdefault("APP_ENV", "local")

    settings = load_settings()
    interval = settings.evaluation_interval_seconds
    schedule = format_interval(interval)

    worker = create_local_worker()
    logger.info(
        "%s v%s started; evaluating alerts now and %s (Ctrl+C to stop)",
        settings.service_name,
        settings.service_version,
        schedule,
    )

    cycles = 0
    failures = 0
    while not _shutdown_requested:
        cycles += 1
        try:
            stats = worker.handler({}, MockLambdaContext())
        except EvaluationCycleError as exc:
            failures += 1
            logger.error("Cycle %d failed at %s: %s", cycles, exc.stage, exc)
        else:
            logger.info(
                "Cycle %d done: triggered=%d of %d alerts in %.0fms",
                cycles,
                stats["triggered"],
                stats["total_alerts"],
                stats["duration_ms"],
            )
        _sleep_until_next_cycle(interval)

    logger.info("Shutting down after %d cycles (%d failed)", cycles, failures)


if __name__ == "__main__":
    main()
