"""Prayer history service: the single entry point for history consumers.

Wires the record store, history cache, status reconciler, excused-period
manager and time-table together for the current user. One instance is
built per process (see ``mihrab.core.server.app``) and shared by every tool.

With no authenticated user every operation is a no-op or an empty result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import timedelta

from mihrab.core.resilience.throttle import Throttle
from mihrab.core.storage.document_store import Filter, RecordStoreError, WriteOp
from mihrab.domains.prayer.connectors import Clock, RecordStore, TimetableProvider
from mihrab.domains.prayer.connectors.providers import TimetableError
from mihrab.domains.prayer.domain_logic.excused_periods import EXCUSED_FROM, ExcusedPeriodManager
from mihrab.domains.prayer.domain_logic.history_cache import HistoryCache, build_view
from mihrab.domains.prayer.domain_logic.models import (
    PRAYER_COLLECTION,
    USER_STATUSES,
    ExcusedPeriod,
    HistoryView,
    InvalidStatusError,
    PrayerName,
    PrayerRecord,
    PrayerStatus,
    record_key,
)
from mihrab.domains.prayer.domain_logic.reconciler import StatusReconciler, derive_status
from mihrab.domains.prayer.domain_logic.streaks import ProgressAggregator, StreakSummary
from mihrab.domains.prayer.domain_logic.timeutil import (
    format_date,
    noon_timestamp,
    parse_date,
)

logger = logging.getLogger(__name__)

MAX_PREFILL_DAYS = 30


class PrayerHistoryService:
    """History reads, explicit marks, excused periods and record upkeep.

    Usage::

        service = PrayerHistoryService(
            store, cache,
            timetable=CachedTimetableProvider(AladhanTimetableProvider()),
            clock=SystemClock(),
            current_user=lambda: "u1",
            latitude=21.42, longitude=39.83,
        )
        await service.ensure_records()
        view = await service.get_history()
        await service.save_status("Fajr", "ontime")
    """

    def __init__(
        self,
        store: RecordStore,
        cache: HistoryCache,
        *,
        timetable: TimetableProvider,
        clock: Clock,
        current_user: Callable[[], str | None],
        reconciler: StatusReconciler | None = None,
        excuses: ExcusedPeriodManager | None = None,
        aggregator: ProgressAggregator | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        history_days: int = 30,
        prefill_days: int = 7,
        throttle_seconds: float = 2.0,
        throttle_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._cache = cache
        self._timetable = timetable
        self._clock = clock
        self._current_user = current_user
        self._reconciler = reconciler or StatusReconciler(store)
        self._excuses = excuses or ExcusedPeriodManager(store)
        self._aggregator = aggregator or ProgressAggregator()
        self._latitude = latitude if latitude is not None else 0.0
        self._longitude = longitude if longitude is not None else 0.0
        self._history_days = history_days
        self._prefill_days = prefill_days
        self._reconcile_throttle = Throttle(throttle_seconds, clock=throttle_clock)

    @property
    def cache(self) -> HistoryCache:
        return self._cache

    @property
    def user_id(self) -> str | None:
        """The authenticated user, or None when logged out."""
        return self._current_user() or None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_history(self) -> HistoryView:
        """Return ``{history, pending_by_date, missed_by_date}`` for the user."""
        user_id = self._user()
        if user_id is None:
            return HistoryView.empty()
        return await self._cache.get(user_id, lambda: self._fetch_history(user_id))

    async def get_streaks(self) -> StreakSummary:
        view = await self.get_history()
        return self._aggregator.summarize(view.history, today=self._today())

    async def list_excused_periods(self) -> list[ExcusedPeriod]:
        user_id = self._user()
        if user_id is None:
            return []
        return await self._excuses.list_periods(user_id)

    # ------------------------------------------------------------------
    # Reconciliation and record upkeep
    # ------------------------------------------------------------------

    async def refresh_statuses(self) -> list[PrayerRecord]:
        """Reconcile the user's records now (throttled).

        Returns:
            Records whose status changed; empty when throttled, logged out,
            or the store could not be reached.
        """
        user_id = self._user()
        if user_id is None:
            return []
        if not self._reconcile_throttle.try_acquire(user_id):
            logger.debug("Status refresh for %s throttled", user_id)
            return []

        try:
            records = await self._load_records(user_id)
            periods = await self._excuses.list_periods(user_id)
            changed = await self._reconciler.reconcile(
                self._clock.now(),
                records,
                periods,
                current_offset=self._clock.utc_offset_minutes(),
            )
        except RecordStoreError as exc:
            logger.warning("Status refresh failed; will retry next tick: %s", exc)
            return []

        if changed:
            await self._cache.invalidate(user_id)
            logger.info("Status refresh updated %d record(s)", len(changed))
        return changed

    async def ensure_records(self, days: int | None = None) -> int:
        """Create missing records for today and the following days.

        Existing records are never rewritten. Days whose timings cannot be
        fetched are skipped.

        Returns:
            Number of records created.
        """
        user_id = self._user()
        if user_id is None:
            return 0

        span = max(1, min(days or self._prefill_days, MAX_PREFILL_DAYS))
        now = self._clock.now()
        offset = self._clock.utc_offset_minutes()
        first = parse_date(self._today())
        dates = [format_date(first + timedelta(days=i)) for i in range(span)]

        try:
            existing = await self._store.query(
                PRAYER_COLLECTION,
                [
                    Filter("user_id", "==", user_id),
                    Filter("date", ">=", dates[0]),
                    Filter("date", "<=", dates[-1]),
                ],
            )
            periods = await self._excuses.list_periods(user_id)
        except RecordStoreError as exc:
            logger.warning("Could not read existing records: %s", exc)
            return 0
        existing_keys = {doc.key for doc in existing}

        ops: list[WriteOp] = []
        for day in dates:
            missing = [p for p in PrayerName if record_key(user_id, day, p) not in existing_keys]
            if not missing:
                continue
            try:
                timings = await self._timings_for(day, offset)
            except TimetableError as exc:
                logger.warning("No timings for %s; skipping record creation: %s", day, exc)
                continue

            for prayer in missing:
                record = PrayerRecord(
                    user_id=user_id,
                    date=day,
                    prayer_name=prayer,
                    scheduled_time=timings[prayer.value],
                    timezone_offset=offset,
                    updated_at=now.isoformat(),
                )
                status = derive_status(
                    record,
                    now,
                    current_offset=offset,
                    periods=periods,
                    grace=self._reconciler.grace,
                )
                ops.append(
                    WriteOp.create(PRAYER_COLLECTION, record.key, record.with_status(status).to_document())
                )

        try:
            created = await self._store.batch_write(ops)
        except RecordStoreError as exc:
            logger.warning("Record creation failed: %s", exc)
            return 0

        if created:
            await self._cache.invalidate(user_id)
            logger.info("Created %d prayer record(s) across %d day(s)", len(created), span)
        return len(created)

    async def run_periodic(self, interval_seconds: float) -> None:
        """Background loop: keep today's records present and statuses current."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.ensure_records(1)
                await self.refresh_statuses()
            except Exception:
                logger.exception("Periodic reconciliation tick failed")

    # ------------------------------------------------------------------
    # Explicit user actions
    # ------------------------------------------------------------------

    async def save_status(
        self,
        prayer_name: str | PrayerName,
        status: str | PrayerStatus,
        date: str | None = None,
    ) -> bool:
        """Record the user's own mark for a prayer. Always wins over automation.

        Returns:
            True if saved; False when logged out or the store failed.

        Raises:
            UnknownPrayerError: Unknown prayer name.
            InvalidStatusError: Unknown status, or one users cannot set.
            ValueError: Malformed ``date``.
        """
        prayer = PrayerName.parse(prayer_name)
        new_status = PrayerStatus.parse(status)
        if new_status not in USER_STATUSES:
            raise InvalidStatusError(f"Status {new_status.value!r} cannot be set explicitly")
        day = format_date(parse_date(date)) if date else self._today()

        user_id = self._user()
        if user_id is None:
            return False

        now_iso = self._clock.now().isoformat()
        offset = self._clock.utc_offset_minutes()
        key = record_key(user_id, day, prayer)

        try:
            existing = await self._store.get(PRAYER_COLLECTION, key)
            if existing is None:
                record = PrayerRecord(
                    user_id=user_id,
                    date=day,
                    prayer_name=prayer,
                    scheduled_time=await self._scheduled_time_or_blank(day, prayer, offset),
                    timezone_offset=offset,
                    status=new_status,
                    confirmed=True,
                    updated_at=now_iso,
                )
                await self._store.set(PRAYER_COLLECTION, key, record.to_document())
            else:
                await self._store.set(
                    PRAYER_COLLECTION,
                    key,
                    {
                        "status": new_status.value,
                        "confirmed": True,
                        EXCUSED_FROM: None,
                        "updated_at": now_iso,
                    },
                    merge=True,
                )
        except RecordStoreError as exc:
            logger.error("Could not save %s on %s: %s", prayer.value, day, exc)
            return False

        await self._cache.invalidate(user_id)
        logger.info("Saved %s on %s as %s", prayer.value, day, new_status.value)
        return True

    async def start_excused_period(
        self, start_date: str, start_prayer: str | PrayerName
    ) -> tuple[ExcusedPeriod, int] | None:
        """Open an excused period; returns ``(period, records_excused)``.

        Raises:
            ExcusedPeriodError: When the period is rejected.
            RecordStoreError: When the store write fails.
        """
        user_id = self._user()
        if user_id is None:
            return None
        result = await self._excuses.start_period(
            user_id,
            start_date,
            start_prayer,
            today=self._today(),
            now_iso=self._clock.now().isoformat(),
        )
        await self._cache.invalidate(user_id)
        return result

    async def end_excused_period(
        self, period_id: str, end_date: str, end_prayer: str | PrayerName
    ) -> tuple[ExcusedPeriod, int] | None:
        """Close an excused period; returns ``(period, records_released)``."""
        user_id = self._user()
        if user_id is None:
            return None
        result = await self._excuses.end_period(
            user_id,
            period_id,
            end_date,
            end_prayer,
            today=self._today(),
            now_iso=self._clock.now().isoformat(),
        )
        await self._cache.invalidate(user_id)
        # Released records go back through reconciliation straight away.
        self._reconcile_throttle.reset(user_id)
        await self.refresh_statuses()
        return result

    async def invalidate_cache(self) -> bool:
        user_id = self._user()
        if user_id is None:
            return False
        await self._cache.invalidate(user_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _user(self) -> str | None:
        user_id = self._current_user()
        if not user_id:
            logger.debug("No authenticated user; skipping prayer history operation")
            return None
        return user_id

    def _today(self) -> str:
        return self._clock.now().date().isoformat()

    async def _load_records(self, user_id: str) -> list[PrayerRecord]:
        today = parse_date(self._today())
        since = format_date(today - timedelta(days=self._history_days - 1))
        docs = await self._store.query(
            PRAYER_COLLECTION,
            [
                Filter("user_id", "==", user_id),
                Filter("date", ">=", since),
                Filter("date", "<=", format_date(today)),
            ],
            order_by=["date", "prayer_index"],
        )
        return [PrayerRecord.from_document(doc.data) for doc in docs]

    async def _fetch_history(self, user_id: str) -> HistoryView:
        records = await self._load_records(user_id)
        periods = await self._excuses.list_periods(user_id)

        try:
            changed = await self._reconciler.reconcile(
                self._clock.now(),
                records,
                periods,
                current_offset=self._clock.utc_offset_minutes(),
            )
        except RecordStoreError as exc:
            logger.warning("Reconciliation write failed; serving stored statuses: %s", exc)
            changed = []

        updated = {record.key: record for record in changed}
        return build_view(updated.get(record.key, record) for record in records)

    async def _timings_for(self, day: str, offset: int) -> dict[str, str]:
        return await self._timetable.get_timings(
            self._latitude, self._longitude, noon_timestamp(day, offset)
        )

    async def _scheduled_time_or_blank(self, day: str, prayer: PrayerName, offset: int) -> str:
        try:
            timings = await self._timings_for(day, offset)
        except TimetableError as exc:
            logger.warning("No timings for %s; saving mark without a schedule: %s", day, exc)
            return ""
        return timings.get(prayer.value, "")
