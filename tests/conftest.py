"""Shared test fixtures for Mihrab tests."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MIHRAB_USER_ID", "user-1")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("RECONCILE_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("THROTTLE_SECONDS", "0")
    monkeypatch.delenv("LATITUDE", raising=False)
    monkeypatch.delenv("LONGITUDE", raising=False)

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from mihrab.core.storage.database import RecordDatabase  # noqa: E402
from mihrab.core.storage.document_store import DocumentStore  # noqa: E402
from mihrab.core.storage.local_cache import LocalSnapshotStore  # noqa: E402
from mihrab.domains.prayer.connectors.clock import FixedClock  # noqa: E402
from mihrab.domains.prayer.connectors.providers import StaticTimetableProvider  # noqa: E402
from mihrab.domains.prayer.domain_logic.history_cache import HistoryCache  # noqa: E402
from mihrab.domains.prayer.domain_logic.history_service import (  # noqa: E402
    PrayerHistoryService,
)
from mihrab.domains.prayer.domain_logic.models import (  # noqa: E402
    PrayerName,
    PrayerRecord,
    PrayerStatus,
)

# Static timings used throughout: Fajr 05:00, Dhuhr 12:30, Asr 15:45,
# Maghrib 18:15, Isha 19:45 (local time, UTC+3 unless a test says otherwise).
TEST_OFFSET = 180


def make_record(
    date: str = "2024-03-01",
    prayer: PrayerName = PrayerName.FAJR,
    *,
    user_id: str = "user-1",
    scheduled_time: str | None = None,
    offset: int = TEST_OFFSET,
    status: PrayerStatus = PrayerStatus.NONE,
    confirmed: bool = False,
) -> PrayerRecord:
    """Create a prayer record with the static schedule by default."""
    from mihrab.domains.prayer.connectors.providers import DEFAULT_TIMINGS

    return PrayerRecord(
        user_id=user_id,
        date=date,
        prayer_name=prayer,
        scheduled_time=scheduled_time if scheduled_time is not None else DEFAULT_TIMINGS[prayer.value],
        timezone_offset=offset,
        status=status,
        confirmed=confirmed,
    )


async def put_records(store: DocumentStore, *records: PrayerRecord) -> None:
    for record in records:
        await store.set("prayer_history", record.key, record.to_document())


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def record_db():
    """Create an in-memory RecordDatabase for testing."""
    db = RecordDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def store(record_db) -> DocumentStore:
    return DocumentStore(record_db)


@pytest.fixture
def snapshot_store(tmp_path) -> LocalSnapshotStore:
    return LocalSnapshotStore(tmp_path / "snapshots")


@pytest.fixture
def field_key() -> str:
    from cryptography.fernet import Fernet

    return Fernet.generate_key().decode()


# ---------------------------------------------------------------------------
# Clock and time-table fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FixedClock:
    """2024-03-01 13:00 at UTC+3: Fajr and Dhuhr are due, Asr is not."""
    return FixedClock(datetime(2024, 3, 1, 13, 0), offset_minutes=TEST_OFFSET)


@pytest.fixture
def timetable() -> StaticTimetableProvider:
    return StaticTimetableProvider()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def history_cache(snapshot_store, clock) -> HistoryCache:
    async def _no_sleep(_seconds: float) -> None:
        return None

    return HistoryCache(
        snapshot_store,
        fresh_seconds=300,
        throttle_seconds=0,
        backoff_seconds=0,
        clock=clock.epoch,
        sleep=_no_sleep,
    )


@pytest.fixture
def session() -> dict[str, str | None]:
    """Mutable session; set ``session["user"] = None`` to log out."""
    return {"user": "user-1"}


@pytest.fixture
def service(store, history_cache, timetable, clock, session) -> PrayerHistoryService:
    return PrayerHistoryService(
        store,
        history_cache,
        timetable=timetable,
        clock=clock,
        current_user=lambda: session["user"],
        throttle_seconds=0,
    )
