"""
Core engine infrastructure: errors, logging, statistical approximations.
"""

from .exceptions import (
    DataUnavailable,
    InsufficientData,
    InvalidFilterCount,
    InvalidStrategyConfig,
    StrategyLabError,
    StrategyNotFound,
)

__all__ = [
    "StrategyLabError",
    "InvalidStrategyConfig",
    "StrategyNotFound",
    "DataUnavailable",
    "InsufficientData",
    "InvalidFilterCount",
]
