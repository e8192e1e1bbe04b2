"""Time helpers. Services take a ``clock`` callable so tests can control time."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """UTC ISO-8601 with microseconds, so stored strings sort chronologically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value) -> datetime | None:
    """Parse a stored timestamp (ISO string or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        # SQLite CURRENT_TIMESTAMP uses a space separator
        if len(text) >= 19 and text[10] == " ":
            text = text[:10] + "T" + text[11:]
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def month_key(dt: datetime) -> str:
    """``YYYY-MM`` usage period for a moment in time."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m")
