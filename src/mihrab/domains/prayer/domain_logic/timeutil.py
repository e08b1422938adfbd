"""Date and wall-clock helpers for prayer records.

Historical records can hold malformed dates or times. The ``*_or_now``
helpers never raise: they log and fall back to the current time so a single
bad record cannot stop reconciliation.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone

logger = logging.getLogger(__name__)

# "05:12", "5:12 AM", "05:12:30", "05:12 (EET)"
_CLOCK_RE = re.compile(
    r"^\s*(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?"
    r"\s*(?P<period>[AaPp][Mm])?\s*(?:\([^)]*\))?\s*$"
)


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` local calendar date.

    Raises:
        ValueError: If the string is not a valid ISO date.
    """
    return date.fromisoformat(value.strip())


def format_date(value: date) -> str:
    return value.isoformat()


def parse_clock(value: str) -> time:
    """Parse a wall-clock time in 24h or 12h (AM/PM) notation.

    A trailing parenthesised timezone label, as some time-table services
    append, is ignored.

    Raises:
        ValueError: If the string is not a recognisable time.
    """
    match = _CLOCK_RE.match(value or "")
    if match is None:
        raise ValueError(f"Unrecognised time: {value!r}")

    hour = int(match["hour"])
    minute = int(match["minute"])
    second = int(match["second"] or 0)
    period = (match["period"] or "").upper()

    if period:
        if not 1 <= hour <= 12:
            raise ValueError(f"Hour out of range for 12h time: {value!r}")
        if period == "PM" and hour != 12:
            hour += 12
        elif period == "AM" and hour == 12:
            hour = 0

    # time() raises ValueError for out-of-range components
    return time(hour, minute, second)


def normalize_clock(value: str) -> str:
    """Return ``value`` as a zero-padded 24h ``HH:MM`` string."""
    return parse_clock(value).strftime("%H:%M")


def offset_tz(offset_minutes: int) -> timezone:
    """Fixed-offset tzinfo for minutes east of UTC."""
    return timezone(timedelta(minutes=offset_minutes))


def utc_offset_minutes(moment: datetime) -> int:
    """Minutes east of UTC for an aware datetime (0 for naive)."""
    offset = moment.utcoffset()
    if offset is None:
        return 0
    return int(offset.total_seconds() // 60)


def scheduled_instant(
    record_date: str,
    scheduled_time: str,
    *,
    created_offset: int,
    current_offset: int,
) -> datetime:
    """Combine a record's date and wall-clock time into an aware instant.

    The wall clock is interpreted in the offset the record was created
    under, then expressed in the caller's current offset, so a user who has
    since crossed timezones is compared against the instant the prayer
    actually fell due.

    Raises:
        ValueError: If the date or time cannot be parsed.
    """
    local = datetime.combine(parse_date(record_date), parse_clock(scheduled_time))
    instant = local.replace(tzinfo=offset_tz(created_offset))
    return instant.astimezone(offset_tz(current_offset))


def scheduled_instant_or_now(
    record_date: str,
    scheduled_time: str,
    *,
    created_offset: int,
    current_offset: int,
    now: datetime,
) -> datetime:
    """Like :func:`scheduled_instant`, but falls back to ``now`` on bad input."""
    try:
        return scheduled_instant(
            record_date,
            scheduled_time,
            created_offset=created_offset,
            current_offset=current_offset,
        )
    except ValueError as exc:
        logger.warning(
            "Bad schedule for %s %r, using current time: %s",
            record_date, scheduled_time, exc,
        )
        return now


def ensure_aware(moment: datetime, offset_minutes: int) -> datetime:
    """Attach ``offset_minutes`` to a naive datetime; leave aware ones alone."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=offset_tz(offset_minutes))
    return moment


def date_range(start: str, end: str) -> list[str]:
    """Inclusive list of ISO dates from ``start`` to ``end`` (empty if reversed)."""
    first = parse_date(start)
    last = parse_date(end)
    days = (last - first).days
    return [format_date(first + timedelta(days=i)) for i in range(days + 1)]


def noon_timestamp(day: str, offset_minutes: int) -> int:
    """Unix timestamp of local noon on ``day``; a safe per-day lookup key."""
    local_noon = datetime.combine(parse_date(day), time(12, 0), tzinfo=offset_tz(offset_minutes))
    return int(local_noon.timestamp())
