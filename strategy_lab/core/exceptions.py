"""
Custom exceptions for backtesting and validation runs.

Provides specific exception types for the different failure scenarios,
so callers can tell a malformed strategy from missing market data.
Numeric degenerate cases (zero trades, zero losses, zero variance) are
deliberately absent: they resolve to sentinel values, never to errors.
"""

from typing import Any, Optional


class StrategyLabError(Exception):
    """
    Base engine error.
    """

    default_message = "Strategy engine error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.__class__.__name__}: {self.message} {self.details}"
        return f"{self.__class__.__name__}: {self.message}"


class InvalidStrategyConfig(StrategyLabError):
    """
    Empty or malformed entry condition tree.

    Raised before any bar is scanned.
    """

    default_message = "Strategy has no usable entry condition"


class StrategyNotFound(StrategyLabError):
    """
    Strategy id is not known to the strategy repository.
    """

    default_message = "Strategy not found"


class DataUnavailable(StrategyLabError):
    """
    No historical bars for the requested symbol / timeframe / range.
    """

    default_message = "No historical data available for the requested range"


class InsufficientData(StrategyLabError):
    """
    Bars exist but are too few to split or simulate meaningfully.

    Walk-forward: no split satisfies the minimum record counts.
    Monte Carlo: fewer than the minimum number of bars.
    """

    default_message = "Not enough historical data for this validation"


class InvalidFilterCount(StrategyLabError):
    """
    Filter verification called with fewer than 1 or more than 5 predicates.
    """

    default_message = "Select between 1 and 5 filters"


__all__ = [
    "StrategyLabError",
    "InvalidStrategyConfig",
    "StrategyNotFound",
    "DataUnavailable",
    "InsufficientData",
    "InvalidFilterCount",
]
