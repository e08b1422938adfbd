"""Integration tests for the Mihrab prayer-history MCP server."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import pytest
from conftest import TEST_OFFSET
from fastmcp import Client
from fastmcp.exceptions import ToolError

from mihrab.core.audit.logger import ActionLogger
from mihrab.core.server.app import create_app
from mihrab.core.storage.database import RecordDatabase
from mihrab.domains.prayer.connectors.clock import FixedClock
from mihrab.domains.prayer.connectors.providers import StaticTimetableProvider


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(result) -> dict:
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "get_prayer_history",
    "mark_prayer",
    "refresh_prayer_statuses",
    "prepare_prayer_records",
    "invalidate_history_cache",
    "get_prayer_streaks",
    "start_excused_period",
    "end_excused_period",
    "list_excused_periods",
]


@pytest.fixture
def database():
    db = RecordDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def server_clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 13, 0), offset_minutes=TEST_OFFSET)


@pytest.fixture
def client(database, server_clock):
    mcp = create_app(
        timetable_override=StaticTimetableProvider(),
        database_override=database,
        clock_override=server_clock,
    )
    return Client(mcp)


def test_server_starts_and_lists_tools(client):
    """Server should start and expose all registered tools."""
    async def _check():
        async with client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_returns_ok(client):
    async def _check():
        async with client:
            return _payload(await client.call_tool("health_check", {}))
    health = _run(_check())
    assert health["status"] == "ok"
    assert health["timetable_source"] == "static"
    assert health["authenticated"] is True
    assert health["records_stored"] == 0


def test_prepare_then_read_history(client):
    async def _check():
        async with client:
            prepared = _payload(await client.call_tool("prepare_prayer_records", {"days": 2}))
            history = _payload(await client.call_tool("get_prayer_history", {}))
            health = _payload(await client.call_tool("health_check", {}))
            return prepared, history, health
    prepared, history, health = _run(_check())
    assert prepared == {"status": "ok", "created": 10}
    assert history["status"] == "ok"
    assert history["count"] == 5
    assert [r["prayer_name"] for r in history["pending_by_date"]["2024-03-01"]] == ["Dhuhr"]
    assert [r["prayer_name"] for r in history["missed_by_date"]["2024-03-01"]] == ["Fajr"]
    assert health["records_stored"] == 10


def test_history_date_filter(client):
    async def _check():
        async with client:
            await client.call_tool("mark_prayer", {"prayer_name": "Asr", "status": "late", "date": "2024-02-28"})
            await client.call_tool("prepare_prayer_records", {"days": 1})
            return _payload(await client.call_tool("get_prayer_history", {"date": "2024-02-28"}))
    history = _run(_check())
    assert history["count"] == 1
    assert history["history"][0]["status"] == "late"
    assert history["pending_by_date"] == {}


def test_mark_prayer_wins_and_is_audited(client, database):
    async def _check():
        async with client:
            await client.call_tool("prepare_prayer_records", {"days": 1})
            saved = _payload(await client.call_tool(
                "mark_prayer", {"prayer_name": "Dhuhr", "status": "ontime"}
            ))
            refreshed = _payload(await client.call_tool("refresh_prayer_statuses", {}))
            history = _payload(await client.call_tool("get_prayer_history", {}))
            return saved, refreshed, history
    saved, refreshed, history = _run(_check())
    assert saved["status"] == "saved"
    assert refreshed == {"status": "ok", "updated": 0, "records": []}
    dhuhr = history["history"][1]
    assert (dhuhr["prayer_name"], dhuhr["status"], dhuhr["confirmed"]) == ("Dhuhr", "ontime", True)
    assert history["pending_by_date"] == {}
    assert ActionLogger(database).count_events(action="mark_prayer") == 1


def test_mark_prayer_rejects_unknown_values(client):
    async def _check():
        async with client:
            with pytest.raises(ToolError):
                await client.call_tool("mark_prayer", {"prayer_name": "Witr", "status": "ontime"})
            with pytest.raises(ToolError):
                await client.call_tool("mark_prayer", {"prayer_name": "Fajr", "status": "pending"})
    _run(_check())


def test_excused_period_lifecycle(client, database):
    async def _check():
        async with client:
            await client.call_tool("prepare_prayer_records", {"days": 1})
            started = _payload(await client.call_tool(
                "start_excused_period", {"start_date": "2024-03-01", "start_prayer": "Fajr"}
            ))
            duplicate = _payload(await client.call_tool(
                "start_excused_period", {"start_date": "2024-03-01", "start_prayer": "Asr"}
            ))
            ended = _payload(await client.call_tool(
                "end_excused_period",
                {"period_id": started["period"]["id"], "end_date": "2024-03-01", "end_prayer": "Isha"},
            ))
            listed = _payload(await client.call_tool("list_excused_periods", {}))
            history = _payload(await client.call_tool("get_prayer_history", {}))
            return started, duplicate, ended, listed, history
    started, duplicate, ended, listed, history = _run(_check())
    assert started["status"] == "started"
    assert started["records_excused"] == 2
    assert duplicate["status"] == "error"
    assert ended["status"] == "ended"
    assert ended["records_released"] == 0
    assert listed["count"] == 1
    assert listed["periods"][0]["status"] == "completed"
    assert history["missed_by_date"] == {}

    audit = ActionLogger(database)
    assert audit.count_events(action="excused_period_start") == 2
    assert audit.count_events(action="excused_period_end") == 1


def test_end_unknown_period_is_an_error(client):
    async def _check():
        async with client:
            return _payload(await client.call_tool(
                "end_excused_period",
                {"period_id": "nope", "end_date": "2024-03-01", "end_prayer": "Isha"},
            ))
    assert _run(_check())["status"] == "error"


def test_streaks_and_cache_invalidation(client, server_clock):
    async def _check():
        async with client:
            await client.call_tool("prepare_prayer_records", {"days": 1})
            await client.call_tool("mark_prayer", {"prayer_name": "Fajr", "status": "ontime"})
            streaks = _payload(await client.call_tool("get_prayer_streaks", {}))
            invalidated = _payload(await client.call_tool("invalidate_history_cache", {}))
            return streaks, invalidated
    streaks, invalidated = _run(_check())
    assert streaks["status"] == "ok"
    assert streaks["fajr_streak"] == 1
    assert streaks["prayer_streak"] == 0
    assert invalidated == {"status": "invalidated"}


def test_tools_report_no_user_when_logged_out(monkeypatch, database, server_clock):
    monkeypatch.setenv("MIHRAB_USER_ID", "")
    mcp = create_app(
        timetable_override=StaticTimetableProvider(),
        database_override=database,
        clock_override=server_clock,
    )

    async def _check():
        async with Client(mcp) as client:
            return [
                _payload(await client.call_tool("get_prayer_history", {})),
                _payload(await client.call_tool("mark_prayer", {"prayer_name": "Fajr", "status": "ontime"})),
                _payload(await client.call_tool("prepare_prayer_records", {})),
                _payload(await client.call_tool("list_excused_periods", {})),
                _payload(await client.call_tool("health_check", {})),
            ]
    *results, health = _run(_check())
    assert all(r["status"] == "no_user" for r in results)
    assert health["authenticated"] is False
    assert health["records_stored"] == 0
