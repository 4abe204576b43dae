"""Time helpers shared by the API and the worker."""
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return a timezone-naive UTC timestamp (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    return now if now is not None else utcnow()


def as_date(value) -> Optional[date]:
    """Coerce a stored date/datetime/ISO string into a ``date``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)).date()
