"""
Shared helpers
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support

    Args:
        value: Datetime or None

    Returns:
        Aware datetime (unchanged if it already carries a tzinfo)
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_past_due(due_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True if a due date is set and already passed"""
    if due_date is None:
        return False
    return as_utc(due_date) < (now or utcnow())
