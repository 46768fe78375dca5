"""
Simple and exponential moving averages.
"""

import pandas as pd


def calculate_sma(data: pd.DataFrame, period: int = 20, price_col: str = "close") -> pd.Series:
    """
    Calculate SMA (Simple Moving Average)

    Args:
        data: DataFrame with OHLCV data
        period: Averaging window (default 20)
        price_col: Column name for price (default 'close')

    Returns:
        Series with SMA values, NaN for the first period-1 bars
    """
    return data[price_col].rolling(period, min_periods=period).mean()


def calculate_ema(data: pd.DataFrame, period: int = 20, price_col: str = "close") -> pd.Series:
    """
    Calculate EMA (Exponential Moving Average), alpha = 2 / (period + 1).

    Returns:
        Series with EMA values, NaN for the first period-1 bars
    """
    return data[price_col].ewm(span=period, adjust=False, min_periods=period).mean()
