"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def to_utc_datetime(value: Any) -> datetime | None:
    """Coerce mixed timestamp inputs into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        dt = _parse_datetime_token(value)
        if dt is None:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage_timestamp(value: Any) -> str | None:
    """Render a timestamp as fixed-width ISO text so MIN/MAX on TEXT columns sort correctly.

    SQLite stores timestamps as TEXT; every row must use the same width and
    suffix or lexicographic ordering diverges from chronological ordering.
    """
    dt = to_utc_datetime(value)
    if dt is None:
        return None
    return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")
