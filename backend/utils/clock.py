"""
Time helpers shared by the coaching pipeline.

All timestamps are stored as UTC ISO-8601 strings so that range queries
compare correctly as plain strings in both MongoDB and the in-memory store.
"""
from datetime import datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Normalize an aware datetime to a UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def start_of_day(now: datetime, tz_name: str = "UTC") -> datetime:
    """
    Midnight of the calendar day containing `now` in the given timezone,
    returned in UTC.
    """
    local = now.astimezone(ZoneInfo(tz_name))
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)
