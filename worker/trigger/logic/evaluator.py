"""
Core evaluation logic for the Alerts Trigger Worker.

Compares the value of an alert's weather parameter against its threshold
and decides whether the alert flips to ``triggered``.

Fail-Safe Policy:
    Evaluation never raises. An unsupported parameter for the alert kind,
    a missing weather record (failed fetch), an empty forecast, an invalid
    location or an unknown operator all resolve to ``not_triggered``. An
    alert is never left incorrectly marked as triggered.

Operators:
    ``>``, ``<``, ``>=``, ``<=`` are exact comparisons. ``==`` and ``!=``
    use an absolute tolerance of ``EQUALITY_TOLERANCE`` to absorb
    floating-point noise in upstream measurements.
"""

from __future__ import annotations

import logging
from typing import Mapping

from worker.trigger.logic.extractor import (
    describe_parameter,
    extract_parameter,
    is_parameter_supported,
)
from worker.trigger.logic.grouping import InvalidLocationError, alert_data_key
from worker.trigger.models import Alert, AlertState, WeatherRecord

logger = logging.getLogger(__name__)

EQUALITY_TOLERANCE: float = 0.01


# ---------------------------------------------------------------------------
# Condition Checking
# ---------------------------------------------------------------------------


def check_condition(actual: float, operator: str, threshold: float) -> bool:
    """Evaluate ``actual <operator> threshold``.

    Parameters
    ----------
    actual : float
        The observed or forecast value.
    operator : str
        One of ``>``, ``<``, ``>=``, ``<=``, ``==``, ``!=``.
    threshold : float
        The alert threshold.

    Returns
    -------
    bool
        True if the condition holds. An unknown operator is logged and
        treated as not holding.
    """
    if operator == ">":
        return actual > threshold
    elif operator == "<":
        return actual < threshold
    elif operator == ">=":
        return actual >= threshold
    elif operator == "<=":
        return actual <= threshold
    elif operator == "==":
        return abs(actual - threshold) < EQUALITY_TOLERANCE
    elif operator == "!=":
        return abs(actual - threshold) >= EQUALITY_TOLERANCE
    else:
        logger.error("Unknown operator '%s' in alert condition", operator)
        return False


# ---------------------------------------------------------------------------
# Alert Evaluation
# ---------------------------------------------------------------------------


def evaluate_alert(alert: Alert, record: WeatherRecord) -> AlertState:
    """Evaluate one alert against the weather record fetched for it.

    The support predicate is consulted before any extraction: an
    unsupported parameter for the alert kind resolves to ``not_triggered``
    without touching the record.
    """
    if not is_parameter_supported(alert.parameter, alert.kind):
        logger.warning(
            "Parameter '%s' not supported for %s alerts (alert=%s)",
            alert.parameter,
            alert.kind.value,
            alert.id,
        )
        return AlertState.NOT_TRIGGERED

    try:
        actual = extract_parameter(record, alert.parameter, alert.kind)
        triggered = check_condition(actual, alert.operator, alert.threshold)
    except Exception:
        logger.exception(
            "Failed to evaluate alert=%s parameter=%s",
            alert.id,
            alert.parameter,
        )
        return AlertState.NOT_TRIGGERED

    result = AlertState.TRIGGERED if triggered else AlertState.NOT_TRIGGERED
    logger.info(
        "Alert %s (%s): %s=%s %s %s -> %s",
        alert.id,
        alert.label,
        describe_parameter(alert.parameter, alert.kind),
        actual,
        alert.operator,
        alert.threshold,
        result.value,
    )
    return result


def evaluate_alerts(
    alerts: list[Alert],
    weather_data: Mapping[str, WeatherRecord],
) -> dict[str, AlertState]:
    """Evaluate every alert against the cycle's weather map.

    Pure and synchronous. Each alert is looked up under its weather data
    key; a missing record means its fetch failed and the alert resolves to
    ``not_triggered``.

    Parameters
    ----------
    alerts : list[Alert]
        All pending alerts of the cycle (including any with invalid
        locations, which resolve to ``not_triggered``).
    weather_data : Mapping[str, WeatherRecord]
        Records keyed by ``weather_data_key``.

    Returns
    -------
    dict[str, AlertState]
        New state per alert id.
    """
    results: dict[str, AlertState] = {}

    for alert in alerts:
        try:
            key = alert_data_key(alert)
        except InvalidLocationError:
            logger.warning("Alert %s has an invalid location", alert.id)
            results[alert.id] = AlertState.NOT_TRIGGERED
            continue

        record = weather_data.get(key)
        if record is None:
            logger.warning(
                "No weather data found for alert=%s key=%s", alert.id, key
            )
            results[alert.id] = AlertState.NOT_TRIGGERED
            continue

        results[alert.id] = evaluate_alert(alert, record)

    triggered = sum(1 for s in results.values() if s == AlertState.TRIGGERED)
    logger.info(
        "Batch evaluation completed: %d alerts, %d triggered, %d not triggered",
        len(results),
        triggered,
        len(results) - triggered,
    )
    return results
