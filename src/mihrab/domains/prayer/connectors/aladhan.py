"""HTTP time-table provider for the Aladhan prayer-times API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from mihrab.core.resilience.retry import retry_async
from mihrab.domains.prayer.connectors.providers import TimetableError, extract_timings

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 500, 502, 503, 504}


class _TransientTimetableError(TimetableError):
    """A failure worth retrying (network error, timeout, 429/5xx)."""


class AladhanTimetableProvider:
    """Fetches daily timings from ``GET {base_url}/{timestamp}``.

    Usage::

        provider = AladhanTimetableProvider()
        timings = await provider.get_timings(21.42, 39.83, 1709280000)
        timings["Fajr"]  # "05:21"
    """

    def __init__(
        self,
        base_url: str = "https://api.aladhan.com/v1/timings",
        *,
        method: int = 2,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._method = method
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds

    @property
    def source(self) -> str:
        return "aladhan"

    async def get_timings(
        self, latitude: float, longitude: float, timestamp: int
    ) -> dict[str, str]:
        """Fetch timings for the day containing ``timestamp``.

        Raises:
            TimetableError: After retries are exhausted, or on a malformed
                response.
        """
        payload = await retry_async(
            lambda: self._fetch_json(latitude, longitude, timestamp),
            attempts=self._max_attempts,
            base_delay=self._backoff,
            retry_on=(_TransientTimetableError,),
            description="Aladhan timings fetch",
        )
        return parse_timings_response(payload)

    async def _fetch_json(
        self, latitude: float, longitude: float, timestamp: int
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{timestamp}"
        params = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "method": str(self._method),
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status in _RETRY_STATUSES:
                        raise _TransientTimetableError(
                            f"Aladhan returned HTTP {response.status}"
                        )
                    if response.status != 200:
                        raise TimetableError(f"Aladhan returned HTTP {response.status}")
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise _TransientTimetableError(f"Aladhan request failed: {exc}") from exc
        except ValueError as exc:
            raise TimetableError(f"Aladhan sent invalid JSON: {exc}") from exc


def parse_timings_response(payload: Any) -> dict[str, str]:
    """Extract the five prayers from an Aladhan ``/timings`` response body.

    Raises:
        TimetableError: If the body does not have ``data.timings``.
    """
    if not isinstance(payload, dict):
        raise TimetableError("Aladhan response is not a JSON object")
    data = payload.get("data")
    timings = data.get("timings") if isinstance(data, dict) else None
    if not isinstance(timings, dict):
        raise TimetableError(f"Aladhan response has no timings (code={payload.get('code')!r})")
    return extract_timings(timings)
