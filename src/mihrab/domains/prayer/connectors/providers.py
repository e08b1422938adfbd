"""Time-table provider implementations that need no network."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from mihrab.domains.prayer.connectors import TimetableProvider
from mihrab.domains.prayer.domain_logic.models import PrayerName
from mihrab.domains.prayer.domain_logic.timeutil import normalize_clock

logger = logging.getLogger(__name__)

DEFAULT_TIMINGS: dict[str, str] = {
    "Fajr": "05:00",
    "Dhuhr": "12:30",
    "Asr": "15:45",
    "Maghrib": "18:15",
    "Isha": "19:45",
}


class TimetableError(Exception):
    """The time-table provider failed, rate-limited us, or sent bad data."""


def extract_timings(raw: dict[str, object]) -> dict[str, str]:
    """Pick the five prayers out of a timings mapping, as 24h ``HH:MM``.

    Raises:
        TimetableError: If a prayer is missing or its time is unparseable.
    """
    timings: dict[str, str] = {}
    for prayer in PrayerName:
        value = raw.get(prayer.value)
        if not isinstance(value, str):
            raise TimetableError(f"Time-table is missing {prayer.value}")
        try:
            timings[prayer.value] = normalize_clock(value)
        except ValueError as exc:
            raise TimetableError(f"Bad time for {prayer.value}: {value!r}") from exc
    return timings


class StaticTimetableProvider:
    """Returns the same timings for every day and place. Always available."""

    def __init__(self, timings: dict[str, str] | None = None) -> None:
        self._timings = extract_timings(dict(timings or DEFAULT_TIMINGS))
        self.calls = 0

    async def get_timings(
        self, latitude: float, longitude: float, timestamp: int
    ) -> dict[str, str]:
        self.calls += 1
        return dict(self._timings)

    @property
    def source(self) -> str:
        return "static"


class CachedTimetableProvider:
    """Caches another provider's results per coordinate and UTC day.

    Time-table services rate-limit, and a day's timings do not change, so
    repeated lookups for the same day are served from memory until ``ttl``
    seconds have passed.
    """

    def __init__(
        self,
        provider: TimetableProvider,
        *,
        ttl_seconds: float = 12 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[float, float, str], tuple[float, dict[str, str]]] = {}

    @staticmethod
    def _key(latitude: float, longitude: float, timestamp: int) -> tuple[float, float, str]:
        day = datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()
        return (round(latitude, 4), round(longitude, 4), day)

    async def get_timings(
        self, latitude: float, longitude: float, timestamp: int
    ) -> dict[str, str]:
        key = self._key(latitude, longitude, timestamp)
        now = self._clock()
        cached = self._entries.get(key)
        if cached is not None and now - cached[0] < self._ttl:
            return dict(cached[1])

        timings = await self._provider.get_timings(latitude, longitude, timestamp)
        self._entries[key] = (now, dict(timings))
        logger.debug("Cached timings for %s", key)
        return dict(timings)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def source(self) -> str:
        return self._provider.source
