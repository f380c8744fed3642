"""
Time helpers.

All persisted timestamps are naive UTC so SQLite and PostgreSQL compare them the same way.
"""
from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_timestamp(value: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp with a trailing Z."""
    value = value or utcnow()
    return value.isoformat(timespec="milliseconds") + "Z"


def iso_date(value: Union[str, date, datetime, None]) -> Optional[str]:
    """Return the YYYY-MM-DD prefix of a date-like value, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value)
    if len(text) >= 10 and text[4] == "-" and text[7] == "-" and text[:4].isdigit():
        return text[:10]
    return None
