"""History cache: memory, on-device snapshot, then the record store.

Read path for one key:

1. A fresh memory entry is served as-is.
2. Otherwise an entry (memory or on-device snapshot) younger than twice the
   freshness window is served immediately while a background refetch runs
   (stale-while-revalidate).
3. Otherwise the store is fetched synchronously with bounded retry; if that
   fails, the last snapshot of any age is served, else an empty view.

Entries are replaced whole. Listeners hear about a view only when its
content hash differs from the last one they were given, so identical
refetches cause no downstream updates.

State lives on the instance and is not locked; it relies on a single event
loop driving all calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from mihrab.core.resilience.retry import retry_async
from mihrab.core.resilience.throttle import Throttle
from mihrab.core.storage.document_store import RecordStoreError
from mihrab.domains.prayer.connectors import SnapshotStore
from mihrab.domains.prayer.domain_logic.models import (
    CacheEntry,
    HistoryView,
    PrayerRecord,
    PrayerStatus,
)

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[HistoryView]]
Listener = Callable[[str, HistoryView], None]

# Failures that degrade to cached data instead of failing the read.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    RecordStoreError,
    OSError,
    asyncio.TimeoutError,
)


def content_hash(records: Iterable[PrayerRecord]) -> str:
    """Stable fingerprint over ``(date, prayer, status)`` triples."""
    triples = sorted(
        (r.date, r.prayer_name.order, r.prayer_name.value, r.status.value) for r in records
    )
    canonical = json.dumps(
        [[d, name, status] for d, _, name, status in triples], separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_view(records: Iterable[PrayerRecord]) -> HistoryView:
    """Group records into the history / pending / missed triple.

    History is ordered by date then prayer. Pending prayers are listed in
    daily order; missed prayers latest first within each date.
    """
    history = sorted(records, key=lambda r: (r.date, r.prayer_name.order))
    pending: dict[str, list[PrayerRecord]] = {}
    missed: dict[str, list[PrayerRecord]] = {}

    for record in history:
        if record.status is PrayerStatus.PENDING:
            pending.setdefault(record.date, []).append(record)
        elif record.status is PrayerStatus.MISSED:
            missed.setdefault(record.date, []).append(record)

    return HistoryView(
        history=tuple(history),
        pending_by_date={d: tuple(items) for d, items in pending.items()},
        missed_by_date={d: tuple(reversed(items)) for d, items in missed.items()},
    )


class HistoryCache:
    """Multi-tier cache for per-user history views.

    Usage::

        cache = HistoryCache(snapshot_store, fresh_seconds=300)
        cache.subscribe(lambda key, view: print(key, len(view.history)))
        view = await cache.get("u1", fetch_history_for_u1)
    """

    def __init__(
        self,
        snapshots: SnapshotStore,
        *,
        fresh_seconds: float = 300.0,
        throttle_seconds: float = 2.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        fetch_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._snapshots = snapshots
        self._fresh = fresh_seconds
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._fetch_timeout = fetch_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._throttle = Throttle(throttle_seconds, clock=clock)

        self._entries: dict[str, CacheEntry] = {}
        self._emitted: dict[str, str] = {}
        self._generation: dict[str, int] = {}
        self._inflight: dict[str, asyncio.Task[HistoryView | None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for changed views. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def entry(self, key: str) -> CacheEntry | None:
        """The current memory entry for ``key``, if any."""
        return self._entries.get(key)

    async def get(self, key: str, fetch: Fetcher) -> HistoryView:
        """Return the view for ``key``, fetching through ``fetch`` as needed."""
        now = self._clock()
        entry = self._entries.get(key)

        if entry is not None and now - entry.timestamp < self._fresh:
            self._emit(key, entry)
            return entry.data

        if entry is None:
            entry = await self._load_snapshot(key)
            if entry is not None and now - entry.timestamp < 2 * self._fresh:
                logger.debug("Hydrated history for %s from on-device snapshot", key)
                self._entries[key] = entry

        if entry is not None and now - entry.timestamp < 2 * self._fresh:
            self._emit(key, entry)
            self._revalidate_in_background(key, fetch)
            return entry.data

        if key in self._inflight:
            result = await self._inflight[key]
        else:
            if not self._throttle.try_acquire(key) and entry is not None:
                logger.debug("History fetch for %s throttled; serving stale entry", key)
                return entry.data
            result = await self._start_fetch(key, fetch)

        if result is not None:
            return result
        return await self._fallback(key, entry)

    async def invalidate(self, key: str) -> None:
        """Drop memory entry, snapshot and hash so the next read refetches.

        A fetch already in flight still answers the callers waiting on it,
        but is neither committed nor shared with readers arriving later.
        """
        self._generation[key] = self._generation.get(key, 0) + 1
        # Later readers must not join a fetch that predates this call.
        self._inflight.pop(key, None)
        self._entries.pop(key, None)
        self._emitted.pop(key, None)
        self._throttle.reset(key)
        await self._snapshots.delete(self._snapshot_key(key))
        logger.debug("History cache invalidated for %s", key)

    async def wait_idle(self) -> None:
        """Wait for background revalidations to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot_key(key: str) -> str:
        return f"prayer_history:{key}"

    def _start_fetch(self, key: str, fetch: Fetcher) -> asyncio.Task[HistoryView | None]:
        generation = self._generation.get(key, 0)
        task = asyncio.create_task(self._fetch_and_commit(key, fetch, generation))
        self._inflight[key] = task

        def _forget(done: asyncio.Task[HistoryView | None]) -> None:
            # invalidate() may already have replaced this task with a newer one.
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return task

    def _revalidate_in_background(self, key: str, fetch: Fetcher) -> None:
        if key in self._inflight:
            return
        if not self._throttle.try_acquire(key):
            return
        task = self._start_fetch(key, fetch)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_background_failure)

    async def _fetch_and_commit(
        self, key: str, fetch: Fetcher, generation: int
    ) -> HistoryView | None:
        async def _attempt() -> HistoryView:
            return await asyncio.wait_for(fetch(), timeout=self._fetch_timeout)

        try:
            view = await retry_async(
                _attempt,
                attempts=self._max_attempts,
                base_delay=self._backoff,
                retry_on=TRANSIENT_ERRORS,
                description=f"history fetch for {key}",
                sleep=self._sleep,
            )
        except TRANSIENT_ERRORS as exc:
            logger.warning("History fetch for %s failed; degrading to cache: %s", key, exc)
            return None

        if self._generation.get(key, 0) != generation:
            logger.debug("Discarding history fetched before invalidation of %s", key)
            return view

        await self._commit(key, view)
        return view

    async def _commit(self, key: str, view: HistoryView) -> None:
        entry = CacheEntry(
            data=view,
            timestamp=self._clock(),
            content_hash=content_hash(view.history),
        )
        self._entries[key] = entry
        await self._snapshots.write(
            self._snapshot_key(key),
            {
                "timestamp": entry.timestamp,
                "content_hash": entry.content_hash,
                "data": view.to_dict(),
            },
        )
        self._emit(key, entry)

    async def _load_snapshot(self, key: str) -> CacheEntry | None:
        payload = await self._snapshots.read(self._snapshot_key(key))
        if payload is None:
            return None
        try:
            view = HistoryView.from_dict(payload["data"])
            return CacheEntry(
                data=view,
                timestamp=float(payload["timestamp"]),
                content_hash=str(payload.get("content_hash") or content_hash(view.history)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed history snapshot for %s: %s", key, exc)
            return None

    async def _fallback(self, key: str, entry: CacheEntry | None) -> HistoryView:
        snapshot = await self._load_snapshot(key)
        candidates = [e for e in (entry, snapshot) if e is not None]
        if not candidates:
            logger.warning("No cached history for %s; serving empty result", key)
            return HistoryView.empty()
        best = max(candidates, key=lambda e: e.timestamp)
        self._entries.setdefault(key, best)
        self._emit(key, best)
        return best.data

    def _emit(self, key: str, entry: CacheEntry) -> None:
        if self._emitted.get(key) == entry.content_hash:
            return
        self._emitted[key] = entry.content_hash
        for listener in list(self._listeners):
            try:
                listener(key, entry.data)
            except Exception:
                logger.exception("History listener failed for %s", key)


def _log_background_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background history revalidation failed", exc_info=exc)
