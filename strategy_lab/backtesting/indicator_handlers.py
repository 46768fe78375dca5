"""
Indicator handlers for condition evaluation.

Maps an indicator id from a stored condition tree to a function that
computes the whole-series values for one (params, field) combination.
Each indicator accepts a fixed set of output fields (INDICATOR_FIELDS); any
other field yields None, which the evaluator treats as "value unavailable".
Bollinger "value" is the middle band.
"""

from collections.abc import Callable
from typing import Any, Optional

import numpy as np
import pandas as pd
from loguru import logger

from strategy_lab.indicators import (
    calculate_bollinger_bands,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_sma,
)

IndicatorHandler = Callable[[pd.DataFrame, dict[str, Any], str], Optional[np.ndarray]]


def _param(params: dict[str, Any], default: Any, *keys: str) -> Any:
    """Return the first param among keys that is set and not None, else default."""
    for key in keys:
        if key in params and params[key] is not None:
            return params[key]
    return default


def _period(params: dict[str, Any], default: int, *keys: str) -> int:
    value = int(_param(params, default, *keys))
    if value < 1:
        logger.warning("Indicator period {} < 1, using {}", value, default)
        return default
    return value


def _calc_rsi(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    period = _period(params, 14, "period", "length")
    return calculate_rsi(bars, period).to_numpy(dtype=float)


def _calc_sma(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    period = _period(params, 20, "period", "length")
    return calculate_sma(bars, period).to_numpy(dtype=float)


def _calc_ema(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    period = _period(params, 20, "period", "length")
    return calculate_ema(bars, period).to_numpy(dtype=float)


def _calc_macd(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    fast = _period(params, 12, "fastPeriod", "fast_period", "fast")
    slow = _period(params, 26, "slowPeriod", "slow_period", "slow")
    signal = _period(params, 9, "signalPeriod", "signal_period", "signal")
    macd = calculate_macd(bars, fast, slow, signal)
    return macd[field].to_numpy(dtype=float)


def _calc_bollinger(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    period = _period(params, 20, "period", "length")
    std_dev = float(_param(params, 2.0, "stdDev", "std_dev", "multiplier"))
    bands = calculate_bollinger_bands(bars, period, std_dev)
    column = "middle" if field == "value" else field
    return bands[column].to_numpy(dtype=float)


def _calc_price(bars: pd.DataFrame, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
    column = "close" if field == "value" else field
    if column not in bars.columns:
        return None
    return bars[column].to_numpy(dtype=float)


INDICATOR_DISPATCH: dict[str, IndicatorHandler] = {
    "rsi": _calc_rsi,
    "sma": _calc_sma,
    "ema": _calc_ema,
    "macd": _calc_macd,
    "bb": _calc_bollinger,
    "bollinger": _calc_bollinger,
    "price": _calc_price,
}

_BANDS = frozenset({"upper", "lower", "middle", "value"})

INDICATOR_FIELDS: dict[str, frozenset[str]] = {
    "rsi": frozenset({"value"}),
    "sma": frozenset({"value"}),
    "ema": frozenset({"value"}),
    "macd": frozenset({"value", "signal", "histogram"}),
    "bb": _BANDS,
    "bollinger": _BANDS,
    "price": frozenset({"value", "open", "high", "low", "close", "volume"}),
}


def compute_indicator(
    bars: pd.DataFrame,
    indicator_id: str,
    params: dict[str, Any],
    field: str,
) -> Optional[np.ndarray]:
    """
    Compute one indicator series over the whole frame.

    Args:
        bars: Validated OHLCV frame
        indicator_id: Indicator id (case-insensitive), see INDICATOR_DISPATCH
        params: Indicator parameters (period, fastPeriod, ...)
        field: Output field (value, signal, histogram, upper, lower, middle)

    Returns:
        float array aligned with bars, or None for unknown indicators and fields
    """
    key = indicator_id.lower()
    handler = INDICATOR_DISPATCH.get(key)
    if handler is None:
        logger.warning("Unsupported indicator: {}", indicator_id)
        return None

    field = field or "value"
    if field not in INDICATOR_FIELDS[key]:
        logger.warning("Unsupported field {!r} for indicator {}", field, indicator_id)
        return None
    return handler(bars, params or {}, field)


__all__ = ["INDICATOR_DISPATCH", "INDICATOR_FIELDS", "compute_indicator"]
