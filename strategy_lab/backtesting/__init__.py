"""
Backtesting Module

Bar-by-bar strategy backtesting with statistical validation.
Provides the two-stage backtest engine, walk-forward and Monte Carlo
validators, and indicator filter analysis.

Validators are not imported here; import them directly when needed:

    from strategy_lab.backtesting.walk_forward import WalkForwardValidator
    from strategy_lab.backtesting.monte_carlo import MonteCarloValidator
    from strategy_lab.backtesting.filter_analysis import FilterAnalyzer
"""

from strategy_lab.backtesting.calculations import calculate_pnl, calculate_summary, create_empty_summary
from strategy_lab.backtesting.conditions import (
    CompareTarget,
    ConditionGroup,
    ConditionNode,
    IfThenCondition,
    IndicatorCondition,
    SequenceCondition,
    parse_condition,
)
from strategy_lab.backtesting.data_source import (
    FallbackDataSource,
    HistoricalDataSource,
    InMemoryDataSource,
    MockDataSource,
)
from strategy_lab.backtesting.engine import BacktestEngine, get_engine, scan_bars
from strategy_lab.backtesting.models import (
    BacktestRequest,
    BacktestRun,
    BacktestStage,
    BacktestStatus,
    ExitLevel,
    ExitSettings,
    PerformanceSummary,
    StrategyDefinition,
    Timeframe,
    TradeEvent,
    TradeSide,
)
from strategy_lab.backtesting.repository import InMemoryBacktestRunRepository, InMemoryStrategyRepository

__all__ = [
    # Engine
    "BacktestEngine",
    "get_engine",
    "scan_bars",
    # Models
    "BacktestRequest",
    "BacktestRun",
    "BacktestStage",
    "BacktestStatus",
    "ExitLevel",
    "ExitSettings",
    "PerformanceSummary",
    "StrategyDefinition",
    "Timeframe",
    "TradeEvent",
    "TradeSide",
    # Conditions
    "CompareTarget",
    "ConditionGroup",
    "ConditionNode",
    "IfThenCondition",
    "IndicatorCondition",
    "SequenceCondition",
    "parse_condition",
    # Data & storage
    "HistoricalDataSource",
    "InMemoryDataSource",
    "MockDataSource",
    "FallbackDataSource",
    "InMemoryStrategyRepository",
    "InMemoryBacktestRunRepository",
    # Calculations
    "calculate_pnl",
    "calculate_summary",
    "create_empty_summary",
]
