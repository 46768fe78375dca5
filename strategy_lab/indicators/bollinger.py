"""
Bollinger Bands
"""

import numpy as np
import pandas as pd


def calculate_bollinger_bands(
    data: pd.DataFrame,
    period: int = 20,
    std_dev: float = 2.0,
    price_col: str = "close",
) -> pd.DataFrame:
    """
    Calculate Bollinger Bands (population standard deviation).

    Returns:
        DataFrame with columns: upper, middle, lower
    """
    src = data[price_col]
    middle = src.rolling(period, min_periods=period).mean()
    deviation = src.rolling(period, min_periods=period).std(ddof=0)

    return pd.DataFrame(
        {
            "upper": middle + std_dev * deviation,
            "middle": middle,
            "lower": middle - std_dev * deviation,
        },
        index=data.index,
    )


def calculate_bollinger_position(
    data: pd.DataFrame,
    period: int = 20,
    std_dev: float = 2.0,
    price_col: str = "close",
) -> pd.Series:
    """
    Position of price inside the band: 0 = lower band, 1 = upper band.

    Degenerate bands (NaN or zero width) map to the neutral 0.5.
    """
    bands = calculate_bollinger_bands(data, period, std_dev, price_col)
    width = bands["upper"] - bands["lower"]
    position = (data[price_col] - bands["lower"]) / width.replace(0.0, np.nan)
    return position.fillna(0.5)
