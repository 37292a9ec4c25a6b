"""
Repository: alerts store access for the Alerts Trigger Worker.

Implements the ``AlertRepository`` interface on top of the alerts-service
REST API. The store owns the alert documents; this worker only reads the
pending ones and writes back ``lastState``.

Key Design Decisions:
    - **Pending only**: ``fetch_pending_alerts`` asks for
      ``lastState=not_triggered``; already triggered alerts are never
      re-evaluated.
    - **Per-record parsing**: one malformed alert document is logged and
      skipped instead of failing the whole page.
    - **Bulk attribution**: the bulk-update endpoint reports
      ``modifiedCount``. When the store also returns ``modifiedIds`` those
      are used directly; otherwise the first ``modifiedCount`` requested ids
      are counted as modified, which assumes the store processes ids in
      request order.
    - **Transport vs. refusal**: ``bulk_update_state`` raises
      ``WriteBackTransportError`` only when the call itself did not
      complete. A completed call that reports ``success: false`` or an HTTP
      4xx marks every id of the batch as failed without raising.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import ValidationError

from worker.trigger.api_client import (
    ApiResponseError,
    ApiTransportError,
    JsonApiClient,
)
from worker.trigger.models import (
    Alert,
    AlertKind,
    AlertState,
    BulkUpdateResult,
    WriteBackResult,
)

logger = logging.getLogger(__name__)

ALERTS_API_PREFIX = "api/v1/alerts"


class AlertFetchError(Exception):
    """Raised when the pending alerts could not be retrieved."""

    pass


class WriteBackTransportError(Exception):
    """Raised when a bulk state update did not complete at the transport level."""

    def __init__(self, message: str, alert_ids: list[str], state: AlertState) -> None:
        super().__init__(message)
        self.alert_ids = alert_ids
        self.state = state


# ---------------------------------------------------------------------------
# Repository Interface
# ---------------------------------------------------------------------------


class AlertRepository(ABC):
    """Abstract access to the alerts store."""

    async def __aenter__(self) -> AlertRepository:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    @abstractmethod
    async def fetch_pending_alerts(
        self,
        kind: AlertKind | None = None,
        parameter: str | None = None,
    ) -> list[Alert]:
        """Fetch all alerts whose state is ``not_triggered``.

        Parameters
        ----------
        kind : AlertKind or None
            Restrict to one alert kind.
        parameter : str or None
            Restrict to one weather parameter.

        Raises
        ------
        AlertFetchError
            If the store could not be queried.
        """
        ...

    @abstractmethod
    async def bulk_update_state(
        self, alert_ids: list[str], state: AlertState
    ) -> WriteBackResult:
        """Set ``state`` on all ``alert_ids`` in one call.

        Raises
        ------
        WriteBackTransportError
            If the call itself failed (network, timeout, server error).
        """
        ...

    @abstractmethod
    async def update_state(self, alert_id: str, state: AlertState) -> bool:
        """Set ``state`` on a single alert. Returns True on success."""
        ...

    @abstractmethod
    async def check_health(self) -> bool:
        """Return True if the alerts store is reachable."""
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_alerts(items: list) -> list[Alert]:
    """Parse raw alert documents, skipping the ones that do not validate."""
    alerts: list[Alert] = []
    for item in items:
        try:
            alerts.append(Alert.model_validate(item))
        except ValidationError as exc:
            raw_id = item.get("_id") if isinstance(item, dict) else None
            logger.warning(
                "Skipping malformed alert document id=%s: %s",
                raw_id,
                exc.errors()[:3],
            )
    return alerts


def attribute_bulk_result(
    alert_ids: list[str], result: BulkUpdateResult
) -> tuple[set[str], set[str]]:
    """Split requested ids into (modified, not modified).

    Uses ``result.modified_ids`` when present. Otherwise the first
    ``modified_count`` requested ids are counted as modified.
    """
    if result.modified_ids is not None:
        modified = set(result.modified_ids)
        successful = {i for i in alert_ids if i in modified}
    else:
        count = max(0, min(result.modified_count, len(alert_ids)))
        successful = set(alert_ids[:count])
    failed = set(alert_ids) - successful
    return successful, failed


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


class HttpAlertRepository(AlertRepository):
    """``AlertRepository`` backed by the alerts-service REST API.

    Parameters
    ----------
    client : JsonApiClient
        Client bound to ``ALERTS_API_BASE_URL``.
    evaluated_by : str
        Value written to ``evaluatedBy`` on bulk updates.
    sort_by : str
        Sort field for the pending alerts query.
    sort_order : str
        ``asc`` or ``desc``.
    """

    def __init__(
        self,
        client: JsonApiClient,
        evaluated_by: str = "alerts-trigger",
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> None:
        self._client = client
        self._evaluated_by = evaluated_by
        self._sort_by = sort_by
        self._sort_order = sort_order

    async def __aenter__(self) -> HttpAlertRepository:
        await self._client.start_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._client.close_session()

    async def fetch_pending_alerts(
        self,
        kind: AlertKind | None = None,
        parameter: str | None = None,
    ) -> list[Alert]:
        params = {
            "lastState": AlertState.NOT_TRIGGERED.value,
            "sortBy": self._sort_by,
            "sortOrder": self._sort_order,
        }
        if kind is not None:
            params["type"] = kind.value
        if parameter:
            params["parameter"] = parameter

        try:
            envelope = await self._client.request(
                "GET", ALERTS_API_PREFIX, params=params
            )
        except ApiResponseError as exc:
            logger.error(
                "Failed to fetch not-triggered alerts from alerts-service: %s "
                "(base_url=%s params=%s)",
                exc,
                self._client.base_url,
                params,
            )
            raise AlertFetchError(f"Failed to fetch not-triggered alerts: {exc}") from exc

        if not envelope.success or not isinstance(envelope.data, list):
            logger.warning(
                "Unexpected response format from alerts-service: success=%s "
                "message=%s",
                envelope.success,
                envelope.message,
            )
            return []

        alerts = _parse_alerts(envelope.data)
        logger.info(
            "Fetched %d not-triggered alerts (%d documents)",
            len(alerts),
            len(envelope.data),
        )
        return alerts

    async def bulk_update_state(
        self, alert_ids: list[str], state: AlertState
    ) -> WriteBackResult:
        if not alert_ids:
            return WriteBackResult()

        body = {
            "filter": {"ids": alert_ids},
            "update": {
                "lastState": state.value,
                "lastEvaluated": datetime.now(timezone.utc).isoformat(),
                "evaluatedBy": self._evaluated_by,
            },
        }

        try:
            envelope = await self._client.request(
                "PATCH", f"{ALERTS_API_PREFIX}/bulk-update", json=body
            )
        except ApiTransportError as exc:
            raise WriteBackTransportError(
                f"Bulk update to '{state.value}' failed: {exc}", alert_ids, state
            ) from exc
        except ApiResponseError as exc:
            logger.error(
                "Bulk update to '%s' rejected for %d alerts: %s",
                state.value,
                len(alert_ids),
                exc,
            )
            return WriteBackResult(failed_ids=set(alert_ids))

        if not envelope.success:
            logger.error(
                "Bulk update to '%s' reported failure for %d alerts: %s",
                state.value,
                len(alert_ids),
                envelope.message,
            )
            return WriteBackResult(failed_ids=set(alert_ids))

        try:
            result = BulkUpdateResult.model_validate(envelope.data or {})
        except ValidationError:
            logger.error(
                "Bulk update to '%s' returned an unreadable result: %s",
                state.value,
                envelope.data,
            )
            return WriteBackResult(failed_ids=set(alert_ids))

        successful, failed = attribute_bulk_result(alert_ids, result)
        logger.info(
            "Bulk update to '%s' completed: requested=%d matched=%d modified=%d",
            state.value,
            len(alert_ids),
            result.matched_count,
            result.modified_count,
        )
        if failed:
            logger.warning(
                "%d alerts not modified by bulk update to '%s': %s",
                len(failed),
                state.value,
                sorted(failed),
            )
        return WriteBackResult(successful_ids=successful, failed_ids=failed)

    async def update_state(self, alert_id: str, state: AlertState) -> bool:
        try:
            envelope = await self._client.request(
                "PUT",
                f"{ALERTS_API_PREFIX}/{alert_id}",
                json={"lastState": state.value},
            )
        except ApiResponseError as exc:
            logger.error("Failed to update alert %s -> %s: %s", alert_id, state.value, exc)
            return False

        if not envelope.success:
            logger.warning(
                "Alerts-service refused update of alert %s -> %s: %s",
                alert_id,
                state.value,
                envelope.message,
            )
            return False

        logger.info("Updated alert %s -> %s", alert_id, state.value)
        return True

    async def check_health(self) -> bool:
        return await self._client.check_health()


def create_alert_repository(
    base_url: str,
    timeout_seconds: float,
    user_agent: str,
    evaluated_by: str,
    token: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> AlertRepository:
    """Create an ``AlertRepository`` for the alerts store at ``base_url``."""
    headers = {"User-Agent": user_agent}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    client = JsonApiClient(
        base_url=base_url,
        name="alerts-service",
        timeout_seconds=timeout_seconds,
        headers=headers,
    )
    return HttpAlertRepository(
        client,
        evaluated_by=evaluated_by,
        sort_by=sort_by,
        sort_order=sort_order,
    )
