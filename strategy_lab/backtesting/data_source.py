"""
Historical Data Sources

The engine reads bars through the HistoricalDataSource protocol:

    fetch(symbol, timeframe, start, end) -> DataFrame[open, high, low, close, volume]

Implementations:
- InMemoryDataSource: frames registered per (symbol, timeframe)
- MockDataSource: deterministic seeded random walk for development and tests
- FallbackDataSource: primary source when it covers enough of the range,
  otherwise the fallback (e.g. cached DB data, then mock data)
"""

import math
from datetime import datetime, timedelta
from typing import Optional, Protocol, Union

import pandas as pd
from loguru import logger

from strategy_lab.utils.time import interval_minutes, parse_datetime

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]

DateLike = Union[str, datetime, pd.Timestamp]


class HistoricalDataSource(Protocol):
    """Source of ascending, duplicate-free OHLCV bars."""

    def fetch(self, symbol: str, timeframe: str, start: DateLike, end: DateLike) -> pd.DataFrame: ...


def validate_ohlcv(ohlcv: pd.DataFrame) -> pd.DataFrame:
    """
    Validate and normalize OHLCV data.

    - lowercases column names
    - moves a 'timestamp' column into a UTC DatetimeIndex
    - sorts ascending and drops duplicate timestamps (first wins)

    Raises:
        ValueError: missing OHLCV columns or no usable time index
    """
    ohlcv = ohlcv.copy()
    ohlcv.columns = [str(c).lower() for c in ohlcv.columns]

    missing = set(OHLCV_COLUMNS) - set(ohlcv.columns)
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    if not isinstance(ohlcv.index, pd.DatetimeIndex):
        if "timestamp" in ohlcv.columns:
            ohlcv = ohlcv.set_index(pd.to_datetime(ohlcv.pop("timestamp"), utc=True))
        else:
            raise ValueError("OHLCV data needs a DatetimeIndex or a 'timestamp' column")

    if ohlcv.index.tz is None:
        ohlcv.index = ohlcv.index.tz_localize("UTC")
    else:
        ohlcv.index = ohlcv.index.tz_convert("UTC")
    ohlcv.index.name = "timestamp"

    ohlcv = ohlcv.sort_index()
    ohlcv = ohlcv[~ohlcv.index.duplicated(keep="first")]

    return ohlcv[OHLCV_COLUMNS].astype(float)


def slice_range(ohlcv: pd.DataFrame, start: DateLike, end: DateLike) -> pd.DataFrame:
    """Bars with start <= timestamp <= end."""
    start_ts = pd.Timestamp(parse_datetime(start))
    end_ts = pd.Timestamp(parse_datetime(end))
    return ohlcv.loc[(ohlcv.index >= start_ts) & (ohlcv.index <= end_ts)]


def expected_bar_count(timeframe: str, start: DateLike, end: DateLike) -> int:
    span = parse_datetime(end) - parse_datetime(start)
    return max(math.ceil(span.total_seconds() / (interval_minutes(timeframe) * 60)), 0)


class InMemoryDataSource:
    """Serves frames registered per (symbol, timeframe)."""

    def __init__(self, frames: Optional[dict[tuple[str, str], pd.DataFrame]] = None):
        self._frames: dict[tuple[str, str], pd.DataFrame] = {}
        for (symbol, timeframe), frame in (frames or {}).items():
            self.add(symbol, timeframe, frame)

    def add(self, symbol: str, timeframe: str, ohlcv: pd.DataFrame) -> None:
        self._frames[(symbol, getattr(timeframe, "value", timeframe))] = validate_ohlcv(ohlcv)

    def fetch(self, symbol: str, timeframe: str, start: DateLike, end: DateLike) -> pd.DataFrame:
        frame = self._frames.get((symbol, getattr(timeframe, "value", timeframe)))
        if frame is None:
            return pd.DataFrame(columns=OHLCV_COLUMNS, index=pd.DatetimeIndex([], tz="UTC", name="timestamp"))
        return slice_range(frame, start, end)


class MockDataSource:
    """
    Deterministic random-walk bars.

    The walk is driven by a linear congruential generator
    (seed = (seed * 9301 + 49297) % 233280) seeded from the start time in
    epoch milliseconds plus the character code of the symbol's first letter,
    so the same request always yields the same bars.
    JPY pairs start at 150.0 with volatility 0.5, everything else at 1.1
    with volatility 0.005.
    """

    def fetch(self, symbol: str, timeframe: str, start: DateLike, end: DateLike) -> pd.DataFrame:
        start_dt = parse_datetime(start)
        end_dt = parse_datetime(end)
        step = timedelta(minutes=interval_minutes(timeframe))

        is_jpy = "JPY" in symbol
        price = 150.0 if is_jpy else 1.1
        volatility = 0.5 if is_jpy else 0.005

        seed = int(start_dt.timestamp() * 1000) + (ord(symbol[0]) if symbol else 0)

        def seeded_random() -> float:
            nonlocal seed
            seed = (seed * 9301 + 49297) % 233280
            return seed / 233280

        rows = []
        timestamps = []
        current = start_dt
        while current <= end_dt:
            change = (seeded_random() - 0.5) * volatility
            open_ = price
            close = price + change
            high = max(open_, close) + seeded_random() * volatility * 0.5
            low = min(open_, close) - seeded_random() * volatility * 0.5
            volume = math.floor(seeded_random() * 10000) + 1000

            rows.append((open_, high, low, close, float(volume)))
            timestamps.append(current)
            price = close
            current += step

        index = pd.DatetimeIndex(timestamps, name="timestamp")
        if index.tz is None:
            index = index.tz_localize("UTC")
        return pd.DataFrame(rows, columns=OHLCV_COLUMNS, index=index)


class FallbackDataSource:
    """
    Primary source first, fallback when its coverage is too thin.

    Coverage = primary bars / expected bars for the range; the primary is
    used when coverage >= min_coverage and it returned at least one bar.
    """

    def __init__(
        self,
        primary: HistoricalDataSource,
        fallback: HistoricalDataSource,
        min_coverage: float = 0.8,
    ):
        self.primary = primary
        self.fallback = fallback
        self.min_coverage = min_coverage

    def fetch(self, symbol: str, timeframe: str, start: DateLike, end: DateLike) -> pd.DataFrame:
        cached = self.primary.fetch(symbol, timeframe, start, end)
        expected = expected_bar_count(timeframe, start, end) or 1
        coverage = len(cached) / expected

        if len(cached) > 0 and coverage >= self.min_coverage:
            logger.debug(
                f"Using primary data for {symbol}/{timeframe}: "
                f"{len(cached)}/{expected} bars ({coverage:.1%})"
            )
            return cached

        logger.info(
            f"Primary data insufficient for {symbol}/{timeframe} "
            f"({len(cached)}/{expected} bars), using fallback source"
        )
        return self.fallback.fetch(symbol, timeframe, start, end)


__all__ = [
    "OHLCV_COLUMNS",
    "HistoricalDataSource",
    "validate_ohlcv",
    "slice_range",
    "expected_bar_count",
    "InMemoryDataSource",
    "MockDataSource",
    "FallbackDataSource",
]
