"""Shared time and input helpers.

utcnow:          timezone-aware "now" used for every engine timestamp
as_utc:          normalise a datetime to aware UTC (naive ⇒ already UTC)
parse_datetime:  ISO date / datetime input → aware UTC datetime
"""
import logging
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands timestamps back without tzinfo; every stored value is UTC,
    so a naive datetime is taken to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value, *, end_of_day=False):
    """Parse an ISO date or datetime to an aware UTC datetime.

    Supports:
    - datetime / date instances
    - YYYY-MM-DD (midnight, or 23:59:59.999999 when ``end_of_day``)
    - YYYY-MM-DDTHH:MM:SS[.ffffff][±HH:MM|Z]

    Raises ValueError on empty or unparseable input.
    """
    if value is None or value == "":
        raise ValueError("datetime value is required")
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)

    text = str(value).strip()
    if len(text) == 10:
        day = date.fromisoformat(text)
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))
