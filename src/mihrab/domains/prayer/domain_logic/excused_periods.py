"""Excused periods: coverage logic and lifecycle management.

An excused period forgives missed prayers for a span such as travel or
illness. Coverage is partial on the boundary days: a period starting at
Dhuhr does not cover that morning's Fajr.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator

from mihrab.core.storage.document_store import Filter, WriteOp
from mihrab.domains.prayer.connectors import RecordStore
from mihrab.domains.prayer.domain_logic.models import (
    EXCUSED_COLLECTION,
    PRAYER_COLLECTION,
    ExcusedPeriod,
    PeriodStatus,
    PrayerName,
    PrayerStatus,
    record_key,
)
from mihrab.domains.prayer.domain_logic.timeutil import date_range, parse_date

logger = logging.getLogger(__name__)

# Statuses an excuse may forgive after the fact. Confirmed ontime/late
# (and anything already excused) is left alone.
_FORGIVABLE = [PrayerStatus.MISSED.value, PrayerStatus.PENDING.value]

# Status a confirmed record held before an excuse flipped it.
EXCUSED_FROM = "excused_from"


class ExcusedPeriodError(Exception):
    """Base class for rejected excused-period operations."""


class OngoingPeriodExistsError(ExcusedPeriodError):
    """A user may have only one ongoing period at a time."""


class PeriodNotFoundError(ExcusedPeriodError):
    """No period with that id belongs to the user."""


class InvalidPeriodRangeError(ExcusedPeriodError):
    """The end point precedes the start point, or the period is closed."""


def is_excused(date: str, prayer_name: str | PrayerName, periods: Iterable[ExcusedPeriod]) -> bool:
    """True if ``prayer_name`` on ``date`` is covered by any of ``periods``.

    Raises:
        UnknownPrayerError: If ``prayer_name`` is not one of the five prayers.
    """
    prayer = PrayerName.parse(prayer_name)
    return any(period.covers(date, prayer) for period in periods)


def covered_slots(
    start_date: str,
    start_prayer: PrayerName,
    end_date: str,
    end_prayer: PrayerName | None = None,
) -> Iterator[tuple[str, PrayerName]]:
    """Yield every (date, prayer) from the start point through the end point.

    ``end_prayer`` of None means the whole of ``end_date``.
    """
    last_order = end_prayer.order if end_prayer is not None else PrayerName.ISHA.order
    for day in date_range(start_date, end_date):
        for prayer in PrayerName:
            if day == start_date and prayer.order < start_prayer.order:
                continue
            if day == end_date and prayer.order > last_order:
                continue
            yield day, prayer


def _slots_after(
    end_date: str, end_prayer: PrayerName, until: str
) -> Iterator[tuple[str, PrayerName]]:
    """Yield every (date, prayer) strictly after the end point through ``until``."""
    for day in date_range(end_date, until):
        for prayer in PrayerName:
            if day == end_date and prayer.order <= end_prayer.order:
                continue
            yield day, prayer


class ExcusedPeriodManager:
    """Creates and closes excused periods and re-aligns affected records.

    Each lifecycle change and its record updates go to the store as one
    batch, so a failed write leaves neither half applied. Record updates
    are conditional writes: a status the user confirmed as ``ontime`` or
    ``late`` is never replaced.

    Usage::

        manager = ExcusedPeriodManager(store)
        period, flipped = await manager.start_period(
            "u1", "2024-03-05", PrayerName.MAGHRIB, today="2024-03-06", now_iso=...
        )
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def list_periods(self, user_id: str) -> list[ExcusedPeriod]:
        """All of the user's periods, oldest start first."""
        docs = await self._store.query(
            EXCUSED_COLLECTION,
            [Filter("user_id", "==", user_id)],
            order_by=["start_date", "created_at"],
        )
        return [ExcusedPeriod.from_document(doc.data) for doc in docs]

    async def get_ongoing(self, user_id: str) -> ExcusedPeriod | None:
        docs = await self._store.query(
            EXCUSED_COLLECTION,
            [
                Filter("user_id", "==", user_id),
                Filter("status", "==", PeriodStatus.ONGOING.value),
            ],
        )
        if len(docs) > 1:
            logger.warning("User has %d ongoing excused periods; using the first", len(docs))
        return ExcusedPeriod.from_document(docs[0].data) if docs else None

    async def start_period(
        self,
        user_id: str,
        start_date: str,
        start_prayer: str | PrayerName,
        *,
        today: str,
        now_iso: str,
    ) -> tuple[ExcusedPeriod, int]:
        """Open a new period and excuse already-missed prayers inside it.

        Returns:
            The created period and the number of records flipped to excused.

        Raises:
            OngoingPeriodExistsError: If the user already has an ongoing period.
            InvalidPeriodRangeError: If ``start_date`` is not a valid date.
            UnknownPrayerError: If ``start_prayer`` is not a prayer name.
        """
        prayer = PrayerName.parse(start_prayer)
        _validate_date(start_date)

        if await self.get_ongoing(user_id) is not None:
            raise OngoingPeriodExistsError("An excused period is already ongoing")

        period = ExcusedPeriod(
            id=str(uuid.uuid4()),
            user_id=user_id,
            start_date=start_date,
            start_prayer=prayer,
            status=PeriodStatus.ONGOING,
            created_at=now_iso,
            updated_at=now_iso,
        )

        ops = [WriteOp.create(EXCUSED_COLLECTION, period.id, period.to_document())]
        if start_date <= today:
            ops.extend(
                op
                for day, p in covered_slots(start_date, prayer, today)
                for op in _excuse_ops(user_id, day, p, now_iso)
            )

        applied = await self._store.batch_write(ops)
        flipped = len(applied) - 1
        logger.info(
            "Excused period %s started at %s/%s; %d record(s) excused",
            period.id, start_date, prayer.value, flipped,
        )
        return period, flipped

    async def end_period(
        self,
        user_id: str,
        period_id: str,
        end_date: str,
        end_prayer: str | PrayerName,
        *,
        today: str,
        now_iso: str,
    ) -> tuple[ExcusedPeriod, int]:
        """Close an ongoing period at ``end_date``/``end_prayer``.

        Records after the end point that no other period covers are released:
        automatic excuses go back to reconciliation, and a confirmed status
        the excuse replaced is restored.

        Returns:
            The completed period and the number of records released.

        Raises:
            PeriodNotFoundError: Unknown id, or a period of another user.
            InvalidPeriodRangeError: Already completed, or end before start.
        """
        prayer = PrayerName.parse(end_prayer)
        _validate_date(end_date)

        data = await self._store.get(EXCUSED_COLLECTION, period_id)
        if data is None or data.get("user_id") != user_id:
            raise PeriodNotFoundError(f"No excused period {period_id!r}")
        period = ExcusedPeriod.from_document(data)

        if period.status is PeriodStatus.COMPLETED:
            raise InvalidPeriodRangeError("Excused period is already completed")
        if (end_date, prayer.order) < (period.start_date, period.start_prayer.order):
            raise InvalidPeriodRangeError("Excused period cannot end before it starts")

        closed = ExcusedPeriod(
            id=period.id,
            user_id=user_id,
            start_date=period.start_date,
            start_prayer=period.start_prayer,
            end_date=end_date,
            end_prayer=prayer,
            status=PeriodStatus.COMPLETED,
            created_at=period.created_at,
            updated_at=now_iso,
        )

        ops = [
            WriteOp.update_if(
                EXCUSED_COLLECTION,
                period.id,
                closed.to_document(),
                {"status": [PeriodStatus.ONGOING.value]},
            )
        ]
        if end_date <= today:
            others = [p for p in await self.list_periods(user_id) if p.id != period.id]
            ops.extend(
                op
                for day, p in _slots_after(end_date, prayer, today)
                if not is_excused(day, p, others)
                for op in _release_ops(user_id, day, p, now_iso)
            )

        applied = await self._store.batch_write(ops)
        if period.id not in applied:
            raise InvalidPeriodRangeError("Excused period was closed concurrently")

        released = len(applied) - 1
        logger.info(
            "Excused period %s ended at %s/%s; %d record(s) released",
            period.id, end_date, prayer.value, released,
        )
        return closed, released


def _validate_date(value: str) -> None:
    try:
        parse_date(value)
    except ValueError as exc:
        raise InvalidPeriodRangeError(f"Invalid date {value!r}: {exc}") from exc


def _excuse_ops(user_id: str, day: str, prayer: PrayerName, now_iso: str) -> list[WriteOp]:
    """Flip a forgivable record to excused; at most one of these ops applies.

    A user-confirmed status is remembered in ``excused_from`` so that ending
    the period early can hand it back.
    """
    key = record_key(user_id, day, prayer)
    ops = [
        WriteOp.update_if(
            PRAYER_COLLECTION,
            key,
            {"status": PrayerStatus.EXCUSED.value, "updated_at": now_iso},
            {"status": _FORGIVABLE, "confirmed": [False]},
        )
    ]
    ops.extend(
        WriteOp.update_if(
            PRAYER_COLLECTION,
            key,
            {"status": PrayerStatus.EXCUSED.value, EXCUSED_FROM: prior, "updated_at": now_iso},
            {"status": [prior], "confirmed": [True]},
        )
        for prior in _FORGIVABLE
    )
    return ops


def _release_ops(user_id: str, day: str, prayer: PrayerName, now_iso: str) -> list[WriteOp]:
    """Undo an excuse: automatic records go back to ``none`` for reconciliation,
    confirmed ones get their remembered status back."""
    key = record_key(user_id, day, prayer)
    excused = [PrayerStatus.EXCUSED.value]
    ops = [
        WriteOp.update_if(
            PRAYER_COLLECTION,
            key,
            {"status": PrayerStatus.NONE.value, EXCUSED_FROM: None, "updated_at": now_iso},
            {"status": excused, "confirmed": [False]},
        )
    ]
    ops.extend(
        WriteOp.update_if(
            PRAYER_COLLECTION,
            key,
            {"status": prior, EXCUSED_FROM: None, "updated_at": now_iso},
            {"status": excused, "confirmed": [True], EXCUSED_FROM: [prior]},
        )
        for prior in _FORGIVABLE
    )
    return ops
