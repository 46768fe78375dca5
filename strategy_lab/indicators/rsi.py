"""
RSI (Relative Strength Index) Indicator
Standard 14-period RSI implementation using Wilder's smoothing
"""

import numpy as np
import pandas as pd


def calculate_rsi(data: pd.DataFrame, period: int = 14, price_col: str = "close") -> pd.Series:
    """
    Calculate RSI (Relative Strength Index)

    Args:
        data: DataFrame with OHLCV data
        period: RSI period (default 14)
        price_col: Column name for price (default 'close')

    Returns:
        Series with RSI values (0-100), NaN until `period` price changes exist

    Formula:
        RS = Average Gain / Average Loss (using Wilder's smoothing)
        RSI = 100 - (100 / (1 + RS))
    """
    close = data[price_col].to_numpy(dtype=float)
    rsi_values = np.full(len(close), np.nan)

    if len(close) < period + 1:
        return pd.Series(rsi_values, index=data.index)

    # Calculate price changes
    deltas = np.diff(close)

    # Separate gains and losses
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    # Seed with simple averages of the first `period` changes
    avg_gain = np.mean(gains[:period])
    avg_loss = np.mean(losses[:period])
    rsi_values[period] = _rsi_from_averages(avg_gain, avg_loss)

    # Wilder's smoothing (exponential moving average with alpha = 1/period)
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        rsi_values[i + 1] = _rsi_from_averages(avg_gain, avg_loss)

    return pd.Series(rsi_values, index=data.index)


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))
