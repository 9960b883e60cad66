"""Timestamp helpers.

Everything stored or compared by the billing core is a timezone-aware UTC
datetime. SQLite hands back naive values for ``DateTime(timezone=True)``
columns, so reads go through ``as_utc`` before comparison.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: Union[int, float, str, datetime, None]) -> Optional[datetime]:
    """Parse a unix timestamp, ISO 8601 string or datetime into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))
