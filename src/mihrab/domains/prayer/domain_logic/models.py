"""Data model for prayer history, excused periods and the history cache."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

PRAYER_COLLECTION = "prayer_history"
EXCUSED_COLLECTION = "excused_periods"


class UnknownPrayerError(ValueError):
    """Raised for a prayer name outside the five daily prayers."""


class InvalidStatusError(ValueError):
    """Raised for an unknown status, or one not allowed at the call site."""


class PrayerName(str, Enum):
    """The five daily prayers, declared in their daily order."""

    FAJR = "Fajr"
    DHUHR = "Dhuhr"
    ASR = "Asr"
    MAGHRIB = "Maghrib"
    ISHA = "Isha"

    @property
    def order(self) -> int:
        return _PRAYER_ORDER.index(self)

    @classmethod
    def parse(cls, value: str | PrayerName) -> PrayerName:
        """Case-insensitive lookup by name.

        Raises:
            UnknownPrayerError: If ``value`` is not one of the five prayers.
        """
        if isinstance(value, PrayerName):
            return value
        for prayer in cls:
            if isinstance(value, str) and value.strip().lower() == prayer.value.lower():
                return prayer
        raise UnknownPrayerError(f"Unknown prayer name: {value!r}")


_PRAYER_ORDER = list(PrayerName)


class PrayerStatus(str, Enum):
    NONE = "none"
    UPCOMING = "upcoming"
    PENDING = "pending"
    ONTIME = "ontime"
    LATE = "late"
    MISSED = "missed"
    EXCUSED = "excused"

    @classmethod
    def parse(cls, value: str | PrayerStatus) -> PrayerStatus:
        if isinstance(value, PrayerStatus):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidStatusError(f"Unknown prayer status: {value!r}") from None


# Statuses automatic reconciliation may overwrite.
AUTOMATIC_STATUSES = frozenset({PrayerStatus.NONE, PrayerStatus.UPCOMING, PrayerStatus.PENDING})

# Statuses a user may set explicitly.
USER_STATUSES = frozenset({
    PrayerStatus.ONTIME,
    PrayerStatus.LATE,
    PrayerStatus.MISSED,
    PrayerStatus.EXCUSED,
})

# Statuses that count as "kept" for streaks.
COMPLETED_STATUSES = frozenset({PrayerStatus.ONTIME, PrayerStatus.LATE, PrayerStatus.EXCUSED})


class PeriodStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"


def record_key(user_id: str, date: str, prayer: PrayerName) -> str:
    """Deterministic document key for one user's prayer on one date."""
    return f"{user_id}:{date}:{prayer.value.lower()}"


@dataclass(frozen=True)
class PrayerRecord:
    """One prayer on one local calendar date for one user.

    ``date`` and ``scheduled_time`` are fixed at creation; status changes
    produce a new record via :meth:`with_status`.
    """

    user_id: str
    date: str                    # local YYYY-MM-DD
    prayer_name: PrayerName
    scheduled_time: str          # wall clock, "HH:MM" (24h) or "h:MM AM"
    timezone_offset: int         # minutes east of UTC when created
    status: PrayerStatus = PrayerStatus.NONE
    confirmed: bool = False      # set by explicit user action
    updated_at: str = ""

    @property
    def key(self) -> str:
        return record_key(self.user_id, self.date, self.prayer_name)

    def with_status(
        self, status: PrayerStatus, *, confirmed: bool | None = None, updated_at: str = ""
    ) -> PrayerRecord:
        return replace(
            self,
            status=status,
            confirmed=self.confirmed if confirmed is None else confirmed,
            updated_at=updated_at or self.updated_at,
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "date": self.date,
            "prayer_name": self.prayer_name.value,
            "prayer_index": self.prayer_name.order,
            "scheduled_time": self.scheduled_time,
            "timezone_offset": self.timezone_offset,
            "status": self.status.value,
            "confirmed": self.confirmed,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> PrayerRecord:
        """Build a record from a stored body.

        Raises:
            UnknownPrayerError / InvalidStatusError: On values outside the
                closed enums.
        """
        return cls(
            user_id=str(data.get("user_id", "")),
            date=str(data.get("date", "")),
            prayer_name=PrayerName.parse(data.get("prayer_name", "")),
            scheduled_time=str(data.get("scheduled_time") or ""),
            timezone_offset=int(data.get("timezone_offset") or 0),
            status=PrayerStatus.parse(data.get("status") or PrayerStatus.NONE),
            confirmed=bool(data.get("confirmed", False)),
            updated_at=str(data.get("updated_at") or ""),
        )


@dataclass(frozen=True)
class ExcusedPeriod:
    """A user-declared span during which missed prayers are forgiven.

    An open-ended period has ``end_date`` and ``end_prayer`` unset.
    """

    id: str
    user_id: str
    start_date: str
    start_prayer: PrayerName
    end_date: str | None = None
    end_prayer: PrayerName | None = None
    status: PeriodStatus = PeriodStatus.ONGOING
    created_at: str = ""
    updated_at: str = ""

    def covers(self, date: str, prayer: PrayerName) -> bool:
        """True if ``prayer`` on ``date`` falls inside this period.

        Boundary days are partial: the start day covers prayers from
        ``start_prayer`` onward, the end day covers prayers up to and
        including ``end_prayer``.
        """
        if date < self.start_date:
            return False
        if self.end_date is not None and date > self.end_date:
            return False
        if date == self.start_date and prayer.order < self.start_prayer.order:
            return False
        if (
            self.end_date is not None
            and date == self.end_date
            and self.end_prayer is not None
            and prayer.order > self.end_prayer.order
        ):
            return False
        return True

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "start_date": self.start_date,
            "start_prayer": self.start_prayer.value,
            "end_date": self.end_date,
            "end_prayer": self.end_prayer.value if self.end_prayer else None,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> ExcusedPeriod:
        end_prayer = data.get("end_prayer")
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("user_id", "")),
            start_date=str(data["start_date"]),
            start_prayer=PrayerName.parse(data["start_prayer"]),
            end_date=data.get("end_date") or None,
            end_prayer=PrayerName.parse(end_prayer) if end_prayer else None,
            status=PeriodStatus(data.get("status", PeriodStatus.ONGOING.value)),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )


@dataclass(frozen=True)
class HistoryView:
    """The ``{history, pending_by_date, missed_by_date}`` triple served to readers.

    Views are replaced whole, never mutated in place.
    """

    history: tuple[PrayerRecord, ...] = ()
    pending_by_date: dict[str, tuple[PrayerRecord, ...]] = field(default_factory=dict)
    missed_by_date: dict[str, tuple[PrayerRecord, ...]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> HistoryView:
        return cls()

    def is_empty(self) -> bool:
        return not self.history

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": [r.to_document() for r in self.history],
            "pending_by_date": {
                d: [r.to_document() for r in records]
                for d, records in self.pending_by_date.items()
            },
            "missed_by_date": {
                d: [r.to_document() for r in records]
                for d, records in self.missed_by_date.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryView:
        def _records(items: list[dict[str, Any]]) -> tuple[PrayerRecord, ...]:
            return tuple(PrayerRecord.from_document(item) for item in items)

        return cls(
            history=_records(data.get("history", [])),
            pending_by_date={
                d: _records(items) for d, items in data.get("pending_by_date", {}).items()
            },
            missed_by_date={
                d: _records(items) for d, items in data.get("missed_by_date", {}).items()
            },
        )


@dataclass(frozen=True)
class CacheEntry:
    """A cached view with its fetch time (epoch seconds) and content hash."""

    data: HistoryView
    timestamp: float
    content_hash: str
