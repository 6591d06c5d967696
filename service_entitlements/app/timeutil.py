"""
UTC time helpers shared by the resolvers.
"""

from datetime import datetime, timezone
from typing import Callable, Optional


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(now: datetime) -> datetime:
    """First instant of the calendar month containing ``now`` (UTC)."""
    now = as_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
