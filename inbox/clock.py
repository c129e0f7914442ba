from datetime import datetime, timedelta, timezone
from typing import Optional

TICK = timedelta(microseconds=1)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def next_tick(last: Optional[datetime]) -> datetime:
    """Wall-clock now, pushed forward so it is strictly after ``last``."""
    now = utcnow()
    last = as_utc(last)
    if last is not None and now <= last:
        return last + TICK
    return now
