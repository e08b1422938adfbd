"""Clock implementations."""

from __future__ import annotations

from datetime import datetime, timedelta

from mihrab.domains.prayer.domain_logic.timeutil import offset_tz, utc_offset_minutes


class SystemClock:
    """Wall clock in the host's local timezone."""

    def now(self) -> datetime:
        return datetime.now().astimezone()

    def utc_offset_minutes(self) -> int:
        return utc_offset_minutes(self.now())


class FixedClock:
    """A settable clock, for tests and replaying a day's schedule.

    Usage::

        clock = FixedClock(datetime(2024, 3, 1, 6, 10), offset_minutes=180)
        clock.advance(minutes=30)
    """

    def __init__(self, moment: datetime, offset_minutes: int = 0) -> None:
        self._offset = offset_minutes
        self._now = self._attach(moment)

    def _attach(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=offset_tz(self._offset))
        return moment.astimezone(offset_tz(self._offset))

    def now(self) -> datetime:
        return self._now

    def utc_offset_minutes(self) -> int:
        return self._offset

    def set(self, moment: datetime) -> None:
        self._now = self._attach(moment)

    def advance(self, **delta: float) -> None:
        self._now = self._now + timedelta(**delta)

    def move_to_offset(self, offset_minutes: int) -> None:
        """Simulate the device changing timezone; the instant is unchanged."""
        self._offset = offset_minutes
        self._now = self._now.astimezone(offset_tz(offset_minutes))

    def epoch(self) -> float:
        """Epoch seconds, for components that keep wall-clock timestamps."""
        return self._now.timestamp()
