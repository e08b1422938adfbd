"""Streak and completion summaries computed from reconciled history."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from mihrab.domains.prayer.domain_logic.models import (
    AUTOMATIC_STATUSES,
    COMPLETED_STATUSES,
    PrayerName,
    PrayerRecord,
    PrayerStatus,
)
from mihrab.domains.prayer.domain_logic.timeutil import format_date, parse_date

# Fajr streaks count only prayers made on time (or excused); late Fajr breaks it.
_FAJR_KEPT = frozenset({PrayerStatus.ONTIME, PrayerStatus.EXCUSED})

# Statuses that leave today open for a prayer streak.
_NOT_YET_BROKEN = COMPLETED_STATUSES | AUTOMATIC_STATUSES


@dataclass(frozen=True)
class StreakSummary:
    prayer_streak: int
    fajr_streak: int
    status_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "prayer_streak": self.prayer_streak,
            "fajr_streak": self.fajr_streak,
            "status_counts": dict(self.status_counts),
        }


class ProgressAggregator:
    """Computes badge-facing streaks from a history window.

    Usage::

        summary = ProgressAggregator().summarize(view.history, today="2024-03-10")
        summary.prayer_streak
    """

    def summarize(self, records: Iterable[PrayerRecord], *, today: str) -> StreakSummary:
        by_day: dict[str, dict[PrayerName, PrayerRecord]] = {}
        counts: Counter[str] = Counter()
        for record in records:
            by_day.setdefault(record.date, {})[record.prayer_name] = record
            counts[record.status.value] += 1

        return StreakSummary(
            prayer_streak=self._prayer_streak(by_day, today),
            fajr_streak=self._fajr_streak(by_day, today),
            status_counts=dict(sorted(counts.items())),
        )

    @staticmethod
    def _prayer_streak(by_day: dict[str, dict[PrayerName, PrayerRecord]], today: str) -> int:
        """Consecutive days with all five prayers kept.

        Today counts once complete; while it still has unmarked prayers and
        nothing missed, counting starts from yesterday.
        """
        day = parse_date(today)
        todays = by_day.get(today, {})
        if not _day_kept(todays) and all(
            r.status in _NOT_YET_BROKEN for r in todays.values()
        ):
            day -= timedelta(days=1)

        streak = 0
        while _day_kept(by_day.get(format_date(day), {})):
            streak += 1
            day -= timedelta(days=1)
        return streak

    @staticmethod
    def _fajr_streak(by_day: dict[str, dict[PrayerName, PrayerRecord]], today: str) -> int:
        """Consecutive days of Fajr kept; today is skipped until it is marked."""
        day = parse_date(today)
        todays = by_day.get(today, {}).get(PrayerName.FAJR)
        if todays is None or todays.status not in _FAJR_KEPT:
            day -= timedelta(days=1)

        streak = 0
        while True:
            fajr = by_day.get(format_date(day), {}).get(PrayerName.FAJR)
            if fajr is None or fajr.status not in _FAJR_KEPT:
                return streak
            streak += 1
            day -= timedelta(days=1)


def _day_kept(prayers: dict[PrayerName, PrayerRecord]) -> bool:
    return len(prayers) == len(PrayerName) and all(
        r.status in COMPLETED_STATUSES for r in prayers.values()
    )
