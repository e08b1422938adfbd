"""MCP tools for excused periods (travel, illness and similar spans)."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from mihrab.core.storage.document_store import RecordStoreError
from mihrab.domains.prayer.domain_logic.excused_periods import ExcusedPeriodError

if TYPE_CHECKING:
    from mihrab.core.audit.logger import ActionLogger
    from mihrab.domains.prayer.domain_logic.history_service import PrayerHistoryService

logger = logging.getLogger(__name__)

_NO_USER = {"status": "no_user", "message": "No authenticated user."}


def register_excused_period_tools(
    mcp: FastMCP,
    service: PrayerHistoryService,
    action_logger: ActionLogger | None = None,
) -> None:
    """Register excused period tools on the MCP server."""

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
    async def start_excused_period(
        ctx: Context,
        start_date: str,
        start_prayer: str,
    ) -> str:
        """Start an excused period. Missed prayers inside it are forgiven.

        Prayers already marked missed from the start point onward are
        re-marked as excused.

        Args:
            start_date: First day of the period (YYYY-MM-DD).
            start_prayer: First prayer covered on that day (e.g., 'Dhuhr').
        """
        start_time = time.monotonic()
        tool_input = {"start_date": start_date, "start_prayer": start_prayer}
        try:
            result = await service.start_excused_period(start_date, start_prayer)
        except (ExcusedPeriodError, RecordStoreError) as exc:
            logger.info("Excused period not started: %s", exc)
            _audit(
                "excused_period_start", tool_input, start_time,
                status="failure", error_type=type(exc).__name__,
            )
            return json.dumps({"status": "error", "message": str(exc)})

        if result is None:
            return json.dumps(_NO_USER)
        period, excused = result
        _audit(
            "excused_period_start", tool_input, start_time,
            metadata={"records_excused": excused},
        )
        return json.dumps({
            "status": "started",
            "period": period.to_document(),
            "records_excused": excused,
        })

    @mcp.tool
    async def end_excused_period(
        ctx: Context,
        period_id: str,
        end_date: str,
        end_prayer: str,
    ) -> str:
        """End an ongoing excused period.

        If the end is in the past, prayers after it that were excused
        automatically are re-evaluated.

        Args:
            period_id: The id returned when the period was started.
            end_date: Last day of the period (YYYY-MM-DD).
            end_prayer: Last prayer covered on that day (e.g., 'Asr').
        """
        start_time = time.monotonic()
        tool_input = {"period_id": period_id, "end_date": end_date, "end_prayer": end_prayer}
        try:
            result = await service.end_excused_period(period_id, end_date, end_prayer)
        except (ExcusedPeriodError, RecordStoreError) as exc:
            logger.info("Excused period %s not ended: %s", period_id, exc)
            _audit(
                "excused_period_end", tool_input, start_time,
                status="failure", error_type=type(exc).__name__,
            )
            return json.dumps({"status": "error", "message": str(exc)})

        if result is None:
            return json.dumps(_NO_USER)
        period, released = result
        _audit(
            "excused_period_end", tool_input, start_time,
            metadata={"records_released": released},
        )
        return json.dumps({
            "status": "ended",
            "period": period.to_document(),
            "records_released": released,
        })

    @mcp.tool
    async def list_excused_periods(ctx: Context) -> str:
        """List your excused periods, oldest first."""
        if service.user_id is None:
            return json.dumps(_NO_USER)
        periods = await service.list_excused_periods()
        return json.dumps({
            "status": "ok",
            "count": len(periods),
            "periods": [p.to_document() for p in periods],
        }, indent=2)
