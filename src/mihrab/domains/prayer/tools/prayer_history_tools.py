"""MCP tools for reading and marking prayer history.

Reads go through the history cache; marks and refreshes write to the
record store and invalidate it. Explicit user actions are written to the
action audit trail when one is configured.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from mihrab.core.audit.logger import ActionLogger
    from mihrab.domains.prayer.domain_logic.history_service import PrayerHistoryService

logger = logging.getLogger(__name__)

_NO_USER = {"status": "no_user", "message": "No authenticated user."}


def register_prayer_history_tools(
    mcp: FastMCP,
    service: PrayerHistoryService,
    action_logger: ActionLogger | None = None,
) -> None:
    """Register prayer history tools on the MCP server."""

    def _audit(action: str, tool_input: dict[str, Any], start_time: float, **kwargs: Any) -> None:
        if action_logger is None:
            return
        action_logger.log_action(
            action,
            user_id=service.user_id,
            tool_name=action,
            tool_input=tool_input,
            duration_ms=(time.monotonic() - start_time) * 1000,
            **kwargs,
        )

    @mcp.tool
    async def get_prayer_history(ctx: Context, date: str = "") -> str:
        """Show the prayer history for the rolling window, grouped for display.

        Returns every record ordered by date and prayer, plus the pending
        prayers (daily order) and missed prayers (latest first) per date.

        Args:
            date: Optional YYYY-MM-DD; limit the result to that date.
        """
        if service.user_id is None:
            return json.dumps(_NO_USER)

        view = (await service.get_history()).to_dict()
        if date:
            view = {
                "history": [r for r in view["history"] if r["date"] == date],
                "pending_by_date": {
                    d: items for d, items in view["pending_by_date"].items() if d == date
                },
                "missed_by_date": {
                    d: items for d, items in view["missed_by_date"].items() if d == date
                },
            }
        return json.dumps({"status": "ok", "count": len(view["history"]), **view}, indent=2)

    @mcp.tool
    async def mark_prayer(
        ctx: Context,
        prayer_name: str,
        status: str,
        date: str = "",
    ) -> str:
        """Mark a prayer as prayed on time, late, missed, or excused.

        Your own mark always takes precedence over automatic status updates.

        Args:
            prayer_name: One of Fajr, Dhuhr, Asr, Maghrib, Isha.
            status: One of ontime, late, missed, excused.
            date: Date of the prayer (YYYY-MM-DD). Defaults to today.
        """
        start_time = time.monotonic()
        tool_input = {"prayer_name": prayer_name, "status": status, "date": date}

        saved = await service.save_status(prayer_name, status, date or None)
        if not saved:
            _audit("mark_prayer", tool_input, start_time, status="failure", error_type="not_saved")
            if service.user_id is None:
                return json.dumps(_NO_USER)
            return json.dumps({
                "status": "error",
                "message": "Could not save the prayer status. Please try again.",
            })

        _audit("mark_prayer", tool_input, start_time)
        return json.dumps({
            "status": "saved",
            "prayer_name": prayer_name,
            "prayer_status": status,
            "date": date or "today",
        })

    @mcp.tool
    async def refresh_prayer_statuses(ctx: Context) -> str:
        """Bring automatic prayer statuses up to date now.

        Prayers past their time become pending, then missed once the grace
        window passes, unless an excused period covers them.
        """
        if service.user_id is None:
            return json.dumps(_NO_USER)
        changed = await service.refresh_statuses()
        return json.dumps({
            "status": "ok",
            "updated": len(changed),
            "records": [r.to_document() for r in changed],
        })

    @mcp.tool
    async def prepare_prayer_records(ctx: Context, days: int = 0) -> str:
        """Create missing prayer records for today and the coming days.

        Args:
            days: Number of days to prepare, 1-30 (default: configured window).
        """
        if service.user_id is None:
            return json.dumps(_NO_USER)
        created = await service.ensure_records(days or None)
        return json.dumps({"status": "ok", "created": created})

    @mcp.tool
    async def invalidate_history_cache(ctx: Context) -> str:
        """Discard cached history so the next read comes from storage."""
        start_time = time.monotonic()
        if not await service.invalidate_cache():
            return json.dumps(_NO_USER)
        _audit("invalidate_history_cache", {}, start_time)
        return json.dumps({"status": "invalidated"})

    @mcp.tool
    async def get_prayer_streaks(ctx: Context) -> str:
        """Show the current prayer streak, Fajr streak, and status counts."""
        if service.user_id is None:
            return json.dumps(_NO_USER)
        summary = await service.get_streaks()
        return json.dumps({"status": "ok", **summary.to_dict()})
