"""
MACD (Moving Average Convergence Divergence)
"""

import pandas as pd


def calculate_macd(
    data: pd.DataFrame,
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
    price_col: str = "close",
) -> pd.DataFrame:
    """
    Calculate MACD line, signal line and histogram.

    Args:
        data: DataFrame with OHLCV data
        fast_period: Fast EMA period (default 12)
        slow_period: Slow EMA period (default 26)
        signal_period: Signal EMA period over the MACD line (default 9)
        price_col: Column name for price (default 'close')

    Returns:
        DataFrame with columns: value (MACD line), signal, histogram
    """
    src = data[price_col]
    fast = src.ewm(span=fast_period, adjust=False, min_periods=fast_period).mean()
    slow = src.ewm(span=slow_period, adjust=False, min_periods=slow_period).mean()
    macd_line = fast - slow
    signal = macd_line.ewm(span=signal_period, adjust=False, min_periods=signal_period).mean()

    return pd.DataFrame(
        {
            "value": macd_line,
            "signal": signal,
            "histogram": macd_line - signal,
        },
        index=data.index,
    )
