"""
Technical indicators computed over whole OHLCV frames.

Every function returns series aligned to the input index; bars inside the
warm-up window are NaN.
"""

from .bollinger import calculate_bollinger_bands, calculate_bollinger_position
from .macd import calculate_macd
from .moving_averages import calculate_ema, calculate_sma
from .rsi import calculate_rsi

__all__ = [
    "calculate_sma",
    "calculate_ema",
    "calculate_rsi",
    "calculate_macd",
    "calculate_bollinger_bands",
    "calculate_bollinger_position",
]
