"""
Timezone Utility Module
All engine timestamps are UTC and carry millisecond precision, matching what
MongoDB stores for a BSON datetime.
"""
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

UTC_TZ = ZoneInfo("UTC")

# Smallest distinguishable step between two stored timestamps
TICK = timedelta(milliseconds=1)


def truncate_ms(dt: datetime) -> datetime:
    """Drop sub-millisecond precision so values survive a BSON round trip."""
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def now_utc() -> datetime:
    """Get current datetime in UTC, truncated to milliseconds."""
    return truncate_ms(datetime.now(UTC_TZ))


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert any datetime to UTC. Naive values are taken to be UTC already
    (pymongo returns naive UTC datetimes unless tz_aware=True)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC_TZ)
    return dt.astimezone(UTC_TZ)


def parse_iso_to_utc(iso_string: str) -> Optional[datetime]:
    """Parse ISO string to UTC datetime.

    Args:
        iso_string: ISO format datetime string (e.g., '2025-11-29T18:00:00Z')

    Returns:
        datetime object in UTC or None if parsing fails
    """
    if not iso_string:
        return None

    try:
        iso_string = iso_string.replace('Z', '+00:00')
        return to_utc(datetime.fromisoformat(iso_string))
    except ValueError:
        return None


def coerce_utc(value) -> Optional[datetime]:
    """Accept a datetime or an ISO string from a collaborator-owned document."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return parse_iso_to_utc(str(value))
