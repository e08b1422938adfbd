"""Action audit trail for explicit user actions.

Records prayer marks, excused-period changes and cache invalidations issued
through the tool surface. Inputs are stored only as a SHA-256 hash of their
canonical JSON and the user id only as a hash, so the log says *what kind*
of thing happened and when, not the content.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mihrab.core.storage.database import RecordDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON, or empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class ActionEvent:
    """A single action log entry."""

    action: str                          # 'mark_prayer' | 'excused_period_start' | ...
    tool_name: str = ""
    user_hash: str = ""
    tool_input_hash: str = ""
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ActionLogger:
    """Writes action events to the ``action_log`` table.

    Writes are committed immediately. A failed write is logged and reported
    as an empty event id; it never fails the action being recorded.

    Usage::

        actions = ActionLogger(db)
        actions.log_action(
            "mark_prayer",
            user_id="u1",
            tool_input={"prayer_name": "Fajr", "status": "ontime"},
        )
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._db = database

    def log_event(self, event: ActionEvent) -> str:
        """Insert an event and return its id (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":")) if event.metadata else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO action_log
                   (id, timestamp, action, tool_name, user_hash, tool_input_hash,
                    duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.tool_name or None,
                    event.user_hash or None,
                    event.tool_input_hash or None,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write action event %s", event.action)
            return ""

        return event_id

    def log_action(
        self,
        action: str,
        *,
        user_id: str | None = None,
        tool_name: str = "",
        tool_input: Any = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper that hashes the user id and tool input."""
        return self.log_event(ActionEvent(
            action=action,
            tool_name=tool_name or action,
            user_hash=_hash_input(user_id) if user_id else "",
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def get_events(
        self,
        *,
        action: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Return events newest first, optionally filtered by action and time."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM action_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None) -> int:
        """Count logged events, optionally for a single action."""
        if action:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM action_log WHERE action = ?", (action,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM action_log").fetchone()
        return row[0]
