# Overview: UTC-naive datetime helpers shared by models, services and routes.

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime; every stored timestamp uses this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _strip_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 text to a naive UTC datetime.

    Blank input is None. A bare date is midnight. Naive values are taken as
    UTC; offsets (including a trailing "Z") are converted.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _strip_tz(datetime.fromisoformat(text))


def normalize_datetime(value) -> Optional[datetime]:
    """Coerce datetime/date/ISO string input to a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _strip_tz(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return parse_iso_datetime(value)
    raise ValueError("invalid datetime")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize for JSON: second precision with a trailing 'Z'."""
    if dt is None:
        return None
    return _strip_tz(dt).replace(microsecond=0).isoformat() + "Z"
