"""
Core evaluation logic for the Alerts Trigger Worker.

This package is pure: no I/O, no shared state. It holds parameter
extraction, condition evaluation and location grouping.

Public API:
    - ``evaluate_alerts`` -- Evaluate a batch of alerts against weather data.
    - ``evaluate_alert`` -- Fail-safe evaluation of a single alert.
    - ``check_condition`` -- Single operator/threshold comparison.
    - ``group_by_location`` -- Partition alerts by canonical location key.
    - ``location_key`` / ``weather_data_key`` -- Deduplication keys.
    - ``extract_parameter`` / ``is_parameter_supported`` -- Record access.
"""

from worker.trigger.logic.evaluator import (
    check_condition,
    evaluate_alert,
    evaluate_alerts,
)
from worker.trigger.logic.extractor import (
    NoForecastDataError,
    UnsupportedParameterError,
    extract_parameter,
    is_parameter_supported,
)
from worker.trigger.logic.grouping import (
    InvalidLocationError,
    group_by_location,
    location_key,
    weather_data_key,
)

__all__ = [
    "check_condition",
    "evaluate_alert",
    "evaluate_alerts",
    "extract_parameter",
    "is_parameter_supported",
    "NoForecastDataError",
    "UnsupportedParameterError",
    "group_by_location",
    "location_key",
    "weather_data_key",
    "InvalidLocationError",
]
