"""Mihrab prayer-history MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import timedelta

from fastmcp import FastMCP

from mihrab.core.audit.logger import ActionLogger
from mihrab.core.config.settings import get_settings
from mihrab.core.storage.database import RecordDatabase
from mihrab.core.storage.document_store import DocumentStore
from mihrab.core.storage.encryption import BlobEncryptor, EncryptionError
from mihrab.core.storage.local_cache import LocalSnapshotStore
from mihrab.domains.prayer.connectors import Clock, SnapshotStore, TimetableProvider
from mihrab.domains.prayer.connectors.aladhan import AladhanTimetableProvider
from mihrab.domains.prayer.connectors.clock import SystemClock
from mihrab.domains.prayer.connectors.providers import (
    CachedTimetableProvider,
    StaticTimetableProvider,
)
from mihrab.domains.prayer.domain_logic.history_cache import HistoryCache
from mihrab.domains.prayer.domain_logic.history_service import PrayerHistoryService
from mihrab.domains.prayer.domain_logic.models import PRAYER_COLLECTION
from mihrab.domains.prayer.domain_logic.reconciler import StatusReconciler
from mihrab.domains.prayer.tools.excused_period_tools import register_excused_period_tools
from mihrab.domains.prayer.tools.prayer_history_tools import register_prayer_history_tools

logger = logging.getLogger(__name__)


def create_app(
    *,
    timetable_override: TimetableProvider | None = None,
    database_override: RecordDatabase | None = None,
    snapshot_store_override: SnapshotStore | None = None,
    clock_override: Clock | None = None,
) -> FastMCP:
    """Create and configure the Mihrab MCP server.

    This is the main application factory. It:
    1. Initializes the record database and document store
    2. Initializes the on-device snapshot store (encrypted when a key is set)
    3. Chooses the time-table provider (Aladhan, or static without a location)
    4. Builds the history cache, reconciler and history service
    5. Creates the FastMCP server with a periodic reconciliation lifespan
    6. Registers all tools
    """
    settings = get_settings()

    # --- Record store ---
    if database_override is not None:
        database = database_override
    else:
        database = RecordDatabase(settings.db_path)
    database.initialize()
    store = DocumentStore(database)
    action_logger = ActionLogger(database)
    logger.info(
        "Record store ready: %s (schema v%d)",
        settings.db_path,
        database.get_schema_version(),
    )

    # --- On-device snapshots ---
    if snapshot_store_override is not None:
        snapshots = snapshot_store_override
    else:
        encryptor: BlobEncryptor | None = None
        if settings.encryption_key:
            try:
                encryptor = BlobEncryptor(settings.encryption_key)
            except EncryptionError as exc:
                logger.error("Invalid ENCRYPTION_KEY: %s", exc)
                logger.warning("Continuing with unencrypted history snapshots")
        snapshots = LocalSnapshotStore(settings.cache_dir, encryptor)

    # --- Time-table provider ---
    if timetable_override is not None:
        timetable = timetable_override
    elif settings.latitude is None or settings.longitude is None:
        logger.warning(
            "LATITUDE/LONGITUDE not configured; using static prayer timings. "
            "Set both to fetch real timings."
        )
        timetable = StaticTimetableProvider()
    else:
        timetable = CachedTimetableProvider(
            AladhanTimetableProvider(
                settings.timetable_url,
                method=settings.timetable_method,
                timeout_seconds=settings.timetable_timeout_seconds,
                max_attempts=settings.fetch_max_attempts,
                backoff_seconds=settings.fetch_backoff_seconds,
            ),
            ttl_seconds=settings.timetable_cache_hours * 3600,
        )
        logger.info("Using Aladhan time-table at %s", settings.timetable_url)

    # --- History service ---
    clock = clock_override or SystemClock()
    cache = HistoryCache(
        snapshots,
        fresh_seconds=settings.history_fresh_seconds,
        throttle_seconds=settings.throttle_seconds,
        max_attempts=settings.fetch_max_attempts,
        backoff_seconds=settings.fetch_backoff_seconds,
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
    )
    service = PrayerHistoryService(
        store,
        cache,
        timetable=timetable,
        clock=clock,
        current_user=lambda: settings.mihrab_user_id,
        reconciler=StatusReconciler(
            store, grace=timedelta(minutes=settings.pending_grace_minutes)
        ),
        latitude=settings.latitude,
        longitude=settings.longitude,
        history_days=settings.history_days,
        prefill_days=settings.prefill_days,
        throttle_seconds=settings.throttle_seconds,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        interval = settings.reconcile_interval_seconds
        if interval <= 0:
            yield
            return
        task = asyncio.create_task(service.run_periodic(interval))
        logger.info("Periodic reconciliation every %.0fs", interval)
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # --- Server instance ---
    server = FastMCP(
        "Mihrab Prayer History",
        instructions=(
            "Mihrab prayer-history server. Tracks the five daily prayers, "
            "keeps their statuses reconciled against the clock, and manages "
            "excused periods, streaks and explicit prayer marks."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "Mihrab Prayer History",
            "version": "0.1.0",
            "timetable_source": timetable.source,
            "authenticated": service.user_id is not None,
            "records_stored": await store.count(PRAYER_COLLECTION),
            "actions_logged": action_logger.count_events(),
        }

    register_prayer_history_tools(server, service, action_logger)
    register_excused_period_tools(server, service, action_logger)
    logger.info("Prayer history and excused period tools registered")

    return server


# Module-level instance for FastMCP discovery ("...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
