"""
Time helpers.

All timestamps are stored in UTC. SQLite hands datetimes back without
tzinfo, so anything read from the database goes through ``ensure_utc``
before arithmetic.
"""

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_date(moment: datetime, tz: ZoneInfo) -> date:
    """Local calendar day of ``moment``; takeaway tokens reset when it changes."""
    return ensure_utc(moment).astimezone(tz).date()
