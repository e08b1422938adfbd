"""Tests for PrayerHistoryService, the facade used by the MCP tools."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from conftest import make_record, put_records

from mihrab.core.storage.document_store import Filter, RecordStoreError
from mihrab.domains.prayer.connectors.providers import StaticTimetableProvider, TimetableError
from mihrab.domains.prayer.domain_logic.excused_periods import OngoingPeriodExistsError
from mihrab.domains.prayer.domain_logic.history_service import PrayerHistoryService
from mihrab.domains.prayer.domain_logic.models import (
    PRAYER_COLLECTION,
    InvalidStatusError,
    PeriodStatus,
    PrayerName,
    PrayerRecord,
    PrayerStatus,
    UnknownPrayerError,
)


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _stored(store, date, prayer):
    data = await store.get(PRAYER_COLLECTION, make_record(date, prayer).key)
    return PrayerRecord.from_document(data) if data else None


class _FailingWrites:
    """Delegates reads to a real store; every batch write fails."""

    def __init__(self, store):
        self._store = store

    async def get(self, collection, key):
        return await self._store.get(collection, key)

    async def query(self, collection, filters=None, order_by=None):
        return await self._store.query(collection, filters, order_by)

    async def set(self, collection, key, fields, *, merge=False):
        raise RecordStoreError("write rejected")

    async def batch_write(self, ops):
        raise RecordStoreError("write rejected")


class _GappyTimetable(StaticTimetableProvider):
    """Fails for one specific day."""

    def __init__(self, bad_timestamp: int) -> None:
        super().__init__()
        self._bad = bad_timestamp

    async def get_timings(self, latitude, longitude, timestamp):
        if timestamp == self._bad:
            raise TimetableError("rate limited")
        return await super().get_timings(latitude, longitude, timestamp)


# ---------------------------------------------------------------------------
# Logged out
# ---------------------------------------------------------------------------

class TestNoUser:
    def test_every_operation_is_a_noop(self, service, session, store):
        session["user"] = None

        async def _check():
            return (
                await service.get_history(),
                await service.save_status("Fajr", "ontime"),
                await service.ensure_records(),
                await service.refresh_statuses(),
                await service.start_excused_period("2024-03-01", "Fajr"),
                await service.end_excused_period("p", "2024-03-01", "Isha"),
                await service.list_excused_periods(),
                await service.invalidate_cache(),
                await service.get_streaks(),
                await store.count(PRAYER_COLLECTION),
            )
        view, saved, created, changed, started, ended, periods, invalidated, streaks, count = _run(_check())
        assert view.is_empty()
        assert saved is False
        assert created == 0
        assert changed == []
        assert started is None and ended is None
        assert periods == []
        assert invalidated is False
        assert streaks.prayer_streak == 0
        assert count == 0
        assert service.user_id is None

    def test_bad_input_still_fails_loudly(self, service, session):
        session["user"] = None
        with pytest.raises(UnknownPrayerError):
            _run(service.save_status("Witr", "ontime"))


# ---------------------------------------------------------------------------
# Record creation
# ---------------------------------------------------------------------------

class TestEnsureRecords:
    def test_creates_today_with_derived_statuses(self, service, store):
        async def _check():
            created = await service.ensure_records(1)
            return created, [await _stored(store, "2024-03-01", p) for p in PrayerName]
        created, records = _run(_check())
        assert created == 5
        assert [r.status for r in records] == [
            PrayerStatus.MISSED,
            PrayerStatus.PENDING,
            PrayerStatus.UPCOMING,
            PrayerStatus.UPCOMING,
            PrayerStatus.UPCOMING,
        ]
        assert records[0].scheduled_time == "05:00"
        assert records[0].timezone_offset == 180
        assert all(not r.confirmed for r in records)

    def test_prefill_window_and_idempotence(self, service, store):
        async def _check():
            first = await service.ensure_records(3)
            second = await service.ensure_records(3)
            tomorrow = await _stored(store, "2024-03-02", PrayerName.FAJR)
            return first, second, tomorrow, await store.count(PRAYER_COLLECTION)
        first, second, tomorrow, count = _run(_check())
        assert first == 15
        assert second == 0
        assert count == 15
        assert tomorrow.status is PrayerStatus.UPCOMING

    def test_default_and_clamped_window(self, service, store):
        assert _run(service.ensure_records()) == 35
        assert _run(service.ensure_records(500)) == 150 - 35

    def test_existing_records_not_rewritten(self, service, store):
        async def _check():
            await put_records(
                store,
                make_record("2024-03-01", PrayerName.FAJR, status=PrayerStatus.ONTIME, confirmed=True),
            )
            created = await service.ensure_records(1)
            return created, await _stored(store, "2024-03-01", PrayerName.FAJR)
        created, fajr = _run(_check())
        assert created == 4
        assert fajr.status is PrayerStatus.ONTIME

    def test_day_without_timings_is_skipped(self, store, history_cache, clock, session):
        from mihrab.domains.prayer.domain_logic.timeutil import noon_timestamp

        service = PrayerHistoryService(
            store,
            history_cache,
            timetable=_GappyTimetable(noon_timestamp("2024-03-02", 180)),
            clock=clock,
            current_user=lambda: session["user"],
        )

        async def _check():
            created = await service.ensure_records(3)
            return created, await _stored(store, "2024-03-02", PrayerName.FAJR)
        created, missing = _run(_check())
        assert created == 10
        assert missing is None

    def test_open_excused_period_applies_to_new_records(self, service, store):
        async def _check():
            await service.start_excused_period("2024-03-01", "Fajr")
            await service.ensure_records(1)
            return await _stored(store, "2024-03-01", PrayerName.FAJR)
        assert _run(_check()).status is PrayerStatus.EXCUSED


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestGetHistory:
    def test_history_view_after_prepare(self, service):
        async def _check():
            await service.ensure_records(2)
            return await service.get_history()
        view = _run(_check())
        assert len(view.history) == 5  # tomorrow is outside the read window
        assert [r.prayer_name for r in view.pending_by_date["2024-03-01"]] == [PrayerName.DHUHR]
        assert [r.prayer_name for r in view.missed_by_date["2024-03-01"]] == [PrayerName.FAJR]

    def test_read_reconciles_and_persists(self, service, store):
        async def _check():
            await put_records(store, *(make_record("2024-02-29", p) for p in PrayerName))
            view = await service.get_history()
            return view, await _stored(store, "2024-02-29", PrayerName.ISHA)
        view, isha = _run(_check())
        assert {r.status for r in view.history} == {PrayerStatus.MISSED}
        assert isha.status is PrayerStatus.MISSED

    def test_window_excludes_old_records(self, service, store):
        async def _check():
            await put_records(
                store,
                make_record("2024-01-01", PrayerName.FAJR, status=PrayerStatus.ONTIME),
                make_record("2024-02-01", PrayerName.FAJR, status=PrayerStatus.ONTIME),
            )
            return await service.get_history()
        view = _run(_check())
        assert [r.date for r in view.history] == ["2024-02-01"]

    def test_only_current_users_records(self, service, store):
        async def _check():
            await put_records(store, make_record(user_id="user-2", status=PrayerStatus.ONTIME))
            return await service.get_history()
        assert _run(_check()).is_empty()

    def test_reconcile_write_failure_serves_stored_statuses(self, store, history_cache, clock, session):
        service = PrayerHistoryService(
            _FailingWrites(store),
            history_cache,
            timetable=StaticTimetableProvider(),
            clock=clock,
            current_user=lambda: session["user"],
        )

        async def _check():
            await put_records(store, make_record("2024-03-01", PrayerName.FAJR))
            return await service.get_history()
        view = _run(_check())
        assert view.history[0].status is PrayerStatus.NONE

    def test_streaks(self, service, clock):
        async def _check():
            await service.ensure_records(1)
            await service.save_status("Fajr", "ontime")
            return await service.get_streaks()
        summary = _run(_check())
        assert summary.fajr_streak == 1
        assert summary.prayer_streak == 0
        assert summary.status_counts["ontime"] == 1


# ---------------------------------------------------------------------------
# Explicit marks
# ---------------------------------------------------------------------------

class TestSaveStatus:
    def test_mark_existing_record(self, service, store):
        async def _check():
            await service.ensure_records(1)
            await service.get_history()
            saved = await service.save_status("fajr", "late")
            fajr = await _stored(store, "2024-03-01", PrayerName.FAJR)
            view = await service.get_history()
            return saved, fajr, view
        saved, fajr, view = _run(_check())
        assert saved is True
        assert fajr.status is PrayerStatus.LATE
        assert fajr.confirmed is True
        assert fajr.scheduled_time == "05:00"
        assert view.history[0].status is PrayerStatus.LATE
        assert "2024-03-01" not in view.missed_by_date

    def test_mark_creates_missing_record(self, service, store):
        async def _check():
            saved = await service.save_status(PrayerName.ASR, PrayerStatus.ONTIME, "2024-02-28")
            return saved, await _stored(store, "2024-02-28", PrayerName.ASR)
        saved, asr = _run(_check())
        assert saved is True
        assert asr.status is PrayerStatus.ONTIME
        assert asr.confirmed is True
        assert asr.scheduled_time == "15:45"

    @pytest.mark.parametrize("status", ["pending", "upcoming", "none"])
    def test_automatic_status_rejected(self, service, status):
        with pytest.raises(InvalidStatusError):
            _run(service.save_status("Fajr", status))

    def test_unknown_values_rejected(self, service):
        with pytest.raises(InvalidStatusError):
            _run(service.save_status("Fajr", "prayed"))
        with pytest.raises(UnknownPrayerError):
            _run(service.save_status("Sunrise", "ontime"))
        with pytest.raises(ValueError):
            _run(service.save_status("Fajr", "ontime", "yesterday"))

    def test_store_failure_returns_false(self, store, history_cache, clock, session):
        service = PrayerHistoryService(
            _FailingWrites(store),
            history_cache,
            timetable=StaticTimetableProvider(),
            clock=clock,
            current_user=lambda: session["user"],
        )
        assert _run(service.save_status("Fajr", "ontime")) is False

    def test_ontime_fajr_survives_evening_reconciliation(self, service, store, clock):
        clock.set(datetime(2024, 3, 1, 6, 10))

        async def _check():
            await service.ensure_records(1)
            await service.save_status("Fajr", "ontime", "2024-03-01")
            clock.set(datetime(2024, 3, 1, 23, 0))
            changed = await service.refresh_statuses()
            return changed, await _stored(store, "2024-03-01", PrayerName.FAJR)
        changed, fajr = _run(_check())
        assert {r.prayer_name for r in changed} == set(PrayerName) - {PrayerName.FAJR}
        assert fajr.status is PrayerStatus.ONTIME


# ---------------------------------------------------------------------------
# Background reconciliation
# ---------------------------------------------------------------------------

class TestRefreshStatuses:
    def test_time_passing_finalizes_pending(self, service, store, clock):
        async def _check():
            await service.ensure_records(1)
            clock.advance(hours=2)
            changed = await service.refresh_statuses()
            again = await service.refresh_statuses()
            return changed, again, await _stored(store, "2024-03-01", PrayerName.DHUHR)
        changed, again, dhuhr = _run(_check())
        assert [r.prayer_name for r in changed] == [PrayerName.DHUHR]
        assert again == []
        assert dhuhr.status is PrayerStatus.MISSED

    def test_refresh_invalidates_cached_view(self, service, clock):
        async def _check():
            await service.ensure_records(1)
            before = await service.get_history()
            clock.advance(hours=2)
            await service.refresh_statuses()
            return before, await service.get_history()
        before, after = _run(_check())
        assert before.pending_by_date
        assert not after.pending_by_date

    def test_throttled(self, store, history_cache, clock, session):
        service = PrayerHistoryService(
            store,
            history_cache,
            timetable=StaticTimetableProvider(),
            clock=clock,
            current_user=lambda: session["user"],
            throttle_seconds=60,
            throttle_clock=lambda: 0.0,
        )

        async def _check():
            await put_records(store, make_record("2024-03-01", PrayerName.FAJR))
            first = await service.refresh_statuses()
            await put_records(store, make_record("2024-03-01", PrayerName.DHUHR))
            second = await service.refresh_statuses()
            return first, second
        first, second = _run(_check())
        assert len(first) == 1
        assert second == []

    def test_store_failure_is_swallowed(self, store, history_cache, clock, session):
        service = PrayerHistoryService(
            _FailingWrites(store),
            history_cache,
            timetable=StaticTimetableProvider(),
            clock=clock,
            current_user=lambda: session["user"],
        )
        _run(put_records(store, make_record("2024-03-01", PrayerName.FAJR)))
        assert _run(service.refresh_statuses()) == []

    def test_run_periodic_prepares_and_reconciles(self, service, store):
        async def _check():
            task = asyncio.create_task(service.run_periodic(0.01))
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return await store.count(PRAYER_COLLECTION)
        assert _run(_check()) == 5


# ---------------------------------------------------------------------------
# Excused periods through the facade
# ---------------------------------------------------------------------------

class TestExcusedPeriods:
    def test_start_excuses_missed_and_refreshes_view(self, service):
        async def _check():
            await service.ensure_records(1)
            before = await service.get_history()
            period, excused = await service.start_excused_period("2024-03-01", "Fajr")
            after = await service.get_history()
            return before, period, excused, after
        before, period, excused, after = _run(_check())
        assert excused == 2  # Fajr missed, Dhuhr pending
        assert period.status is PeriodStatus.ONGOING
        assert before.missed_by_date
        assert not after.missed_by_date
        assert not after.pending_by_date

    def test_second_ongoing_period_rejected(self, service):
        async def _check():
            await service.start_excused_period("2024-02-20", "Fajr")
            await service.start_excused_period("2024-02-25", "Fajr")
        with pytest.raises(OngoingPeriodExistsError):
            _run(_check())

    def test_end_releases_and_rederives(self, service, store):
        async def _check():
            await service.ensure_records(1)
            period, _ = await service.start_excused_period("2024-02-29", "Fajr")
            _, released = await service.end_excused_period(period.id, "2024-02-29", "Isha")
            return released, await _stored(store, "2024-03-01", PrayerName.FAJR), await service.list_excused_periods()
        released, fajr, periods = _run(_check())
        assert released == 2
        assert fajr.status is PrayerStatus.MISSED
        assert [p.status for p in periods] == [PeriodStatus.COMPLETED]

    def test_explicit_excuse_is_kept_when_period_shrinks(self, service, store):
        async def _check():
            await put_records(
                store,
                make_record("2024-02-29", PrayerName.ISHA, status=PrayerStatus.MISSED, confirmed=True),
                make_record("2024-02-29", PrayerName.MAGHRIB, status=PrayerStatus.MISSED, confirmed=True),
            )
            period, excused = await service.start_excused_period("2024-02-28", "Fajr")
            await service.save_status("Isha", "excused", "2024-02-29")
            _, released = await service.end_excused_period(period.id, "2024-02-28", "Isha")
            return (
                excused,
                released,
                await _stored(store, "2024-02-29", PrayerName.ISHA),
                await _stored(store, "2024-02-29", PrayerName.MAGHRIB),
            )
        excused, released, isha, maghrib = _run(_check())
        assert excused == 2
        assert released == 1
        assert isha.status is PrayerStatus.EXCUSED
        assert maghrib.status is PrayerStatus.MISSED
        assert maghrib.confirmed is True

    def test_records_filter_by_user(self, service, store):
        async def _check():
            await service.ensure_records(1)
            return await store.query(PRAYER_COLLECTION, [Filter("user_id", "==", "user-1")])
        assert len(_run(_check())) == 5
