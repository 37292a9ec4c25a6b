"""
Shared JSON HTTP client for the alerts store and the weather API.

Both services wrap every response body in the same envelope::

    {"success": bool, "data": ..., "message": "..."}

``JsonApiClient`` owns one ``aiohttp.ClientSession`` per ``async with``
block, applies a bounded total timeout to every call, and classifies
failures so callers can tell "the call never completed" apart from "the
service answered but refused":

    ApiTransportError: connection error, timeout, or HTTP 5xx.
    ApiResponseError:  HTTP 4xx or a body that is not a JSON envelope.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from aiohttp import ClientError, ClientTimeout
from pydantic import ValidationError

from worker.trigger.models import ApiEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS: float = 10.0


class ApiResponseError(Exception):
    """The remote service answered with an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiTransportError(ApiResponseError):
    """The request did not complete (network, timeout, or server error)."""

    pass


class JsonApiClient:
    """Minimal async client for a ``{success, data, message}`` JSON API.

    Parameters
    ----------
    base_url : str
        Service root, e.g. ``http://localhost:3001/``.
    name : str
        Service name used in log lines.
    timeout_seconds : float
        Total timeout applied to every request.
    headers : dict or None
        Extra default headers (User-Agent, Authorization, ...).
    """

    def __init__(
        self,
        base_url: str,
        name: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.name = name
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> JsonApiClient:
        await self.start_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_session()

    async def start_session(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=self._timeout, headers=self._headers
            )

    async def close_session(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> ApiEnvelope:
        """Send a request and parse the response envelope.

        Returns the envelope for any 2xx answer, including
        ``success: false``; interpreting ``success`` is the caller's job.

        Raises
        ------
        ApiTransportError
            On connection errors, timeouts and HTTP 5xx.
        ApiResponseError
            On any other non-2xx status or an unparseable body.
        """
        if self.session is None or self.session.closed:
            await self.start_session()

        url = self.url(path)
        logger.debug("%s request: %s %s params=%s", self.name, method, url, params)

        try:
            async with self.session.request(
                method, url, params=params, json=json
            ) as response:
                status = response.status
                if status >= 500:
                    raise ApiTransportError(
                        f"{self.name} server error (HTTP {status}) for {method} {url}",
                        status_code=status,
                    )
                if status >= 400:
                    raise ApiResponseError(
                        f"{self.name} rejected {method} {url} (HTTP {status})",
                        status_code=status,
                    )
                try:
                    body = await response.json(content_type=None)
                except ValueError as exc:
                    raise ApiResponseError(
                        f"{self.name} returned invalid JSON for {method} {url}: {exc}",
                        status_code=status,
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise ApiTransportError(
                f"{self.name} request timed out: {method} {url}"
            ) from exc
        except ClientError as exc:
            raise ApiTransportError(
                f"{self.name} request failed: {method} {url}: {exc}"
            ) from exc

        logger.debug("%s response: %d %s", self.name, status, url)

        try:
            return ApiEnvelope.model_validate(body)
        except ValidationError as exc:
            raise ApiResponseError(
                f"{self.name} returned an unexpected response format for "
                f"{method} {url}",
                status_code=status,
            ) from exc

    async def check_health(self) -> bool:
        """Return True if ``GET /health`` answers HTTP 200."""
        if self.session is None or self.session.closed:
            await self.start_session()

        try:
            async with self.session.get(self.url("health")) as response:
                healthy = response.status == 200
        except (ClientError, asyncio.TimeoutError) as exc:
            logger.error(
                "%s health check failed: %s (base_url=%s)",
                self.name,
                exc,
                self.base_url,
            )
            return False

        if healthy:
            logger.info("%s health check passed", self.name)
        else:
            logger.warning(
                "%s health check failed with status %d",
                self.name,
                response.status,
            )
        return healthy
