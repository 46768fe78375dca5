"""Time utilities for UTC-aware timestamps.

All engine timestamps must be timezone-aware (UTC).
Use utc_now() instead of datetime.now() / datetime.utcnow().
"""
from datetime import date, datetime, timezone
from typing import Union

import pandas as pd

__all__ = ["utc_now", "interval_minutes", "parse_datetime", "to_iso", "TIMEFRAME_MINUTES"]

# Bar interval in minutes for every supported timeframe
TIMEFRAME_MINUTES: dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime.

    Example ISO format: 2025-11-17T18:45:04.891604+00:00
    """
    return datetime.now(timezone.utc)


def interval_minutes(timeframe: str) -> int:
    """Convert a timeframe label ("15m", "1h", ...) to minutes.

    Raises:
        ValueError: if the timeframe is not supported
    """
    value = getattr(timeframe, "value", timeframe)
    try:
        return TIMEFRAME_MINUTES[value]
    except KeyError:
        raise ValueError(f"Unsupported timeframe: {timeframe}") from None


def parse_datetime(value: Union[str, date, datetime, pd.Timestamp]) -> datetime:
    """Parse ISO-8601 strings / dates into a UTC-aware datetime.

    Naive values are interpreted as UTC.
    """
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    elif isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string."""
    return parse_datetime(value).isoformat()
