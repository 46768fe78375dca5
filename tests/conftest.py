"""
Shared fixtures: synthetic OHLCV frames, trades and strategies.
"""

import uuid
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from strategy_lab.backtesting.conditions import parse_condition
from strategy_lab.backtesting.models import ExitLevel, ExitSettings, StrategyDefinition, TradeEvent

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_bars(closes, start=START, freq="1h", opens=None, spread=0.0, highs=None, lows=None) -> pd.DataFrame:
    """
    OHLCV frame from close prices.

    Opens default to the previous close (first bar: its own close); highs and
    lows default to the body +/- spread.
    """
    closes = np.asarray(closes, dtype=float)
    if opens is None:
        opens = np.concatenate([[closes[0]], closes[:-1]])
    opens = np.asarray(opens, dtype=float)
    if highs is None:
        highs = np.maximum(opens, closes) + spread
    if lows is None:
        lows = np.minimum(opens, closes) - spread

    index = pd.date_range(start=start, periods=len(closes), freq=freq, tz="UTC", name="timestamp")
    return pd.DataFrame(
        {
            "open": opens,
            "high": np.asarray(highs, dtype=float),
            "low": np.asarray(lows, dtype=float),
            "close": closes,
            "volume": np.full(len(closes), 1000.0),
        },
        index=index,
    )


def price_condition(operator: str, value: float, field: str = "close") -> dict:
    """Leaf comparing a raw price column with a constant."""
    return {
        "indicatorId": "price",
        "field": field,
        "operator": operator,
        "compareTarget": {"type": "fixed", "value": value},
    }


@pytest.fixture
def make_bars():
    return build_bars


@pytest.fixture
def price_leaf():
    return price_condition


@pytest.fixture
def random_bars():
    """500 hourly bars of a seeded random walk around 150 (JPY-like)."""
    np.random.seed(42)
    closes = 150.0 + np.cumsum(np.random.normal(0, 0.3, 500))
    return build_bars(closes, spread=0.15)


@pytest.fixture
def make_trade():
    """Factory for closed trades."""

    def _make(pnl, pnl_percent=None, entry_time=None, side="buy", exit_reason=None):
        entry_time = entry_time or START
        return TradeEvent(
            id=str(uuid.uuid4()),
            entry_time=entry_time,
            entry_price=100.0,
            exit_time=entry_time + timedelta(hours=1),
            exit_price=100.0 + pnl,
            side=side,
            lot_size=1.0,
            pnl=pnl,
            pnl_percent=pnl if pnl_percent is None else pnl_percent,
            exit_reason=exit_reason or ("take_profit" if pnl > 0 else "stop_loss"),
        )

    return _make


@pytest.fixture
def make_strategy():
    """Factory for strategies on USDJPY with percent exits."""

    def _make(entry_conditions, side="buy", take_profit=1.0, stop_loss=1.0, max_holding_minutes=None, **kwargs):
        return StrategyDefinition(
            id=kwargs.pop("id", "strategy-1"),
            name=kwargs.pop("name", "Test strategy"),
            symbol=kwargs.pop("symbol", "USDJPY"),
            side=side,
            version_id="v1",
            version_number=1,
            entry_conditions=parse_condition(entry_conditions) if isinstance(entry_conditions, dict) else entry_conditions,
            exit_settings=ExitSettings(
                take_profit=ExitLevel(value=take_profit),
                stop_loss=ExitLevel(value=stop_loss),
                max_holding_minutes=max_holding_minutes,
            ),
            **kwargs,
        )

    return _make
