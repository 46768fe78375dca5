"""
Monte Carlo Random-Entry Validation

Answers "is the strategy better than luck?" by simulating many
random-entry strategies over the same bars and ranking the actual
strategy's results inside the simulated distributions.

Random-entry model:
- on every flat bar, enter with probability `entry_probability` (5%)
  on a uniformly random side
- entries fill at the next bar's open, exactly like the backtest engine
- exits use the engine's take-profit / stop-loss / timeout rules and P&L

Every simulation owns a numpy Generator spawned from one SeedSequence,
so a fixed seed reproduces the whole run regardless of thread count.

Example Usage:
    from strategy_lab.backtesting.monte_carlo import MonteCarloRequest, MonteCarloValidator

    validator = MonteCarloValidator(data_source)
    result = validator.run(MonteCarloRequest(
        symbol="USDJPY",
        timeframe="1h",
        start_date="2024-01-01",
        end_date="2024-03-01",
        iterations=500,
        take_profit=0.5,
        stop_loss=0.3,
        max_holding_minutes=1440,
        actual_summary=backtest_run.summary,
        seed=42,
    ))
    print(result.comparison.overall_assessment)
"""

import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from strategy_lab.backtesting.calculations import calculate_summary
from strategy_lab.backtesting.data_source import HistoricalDataSource, MockDataSource, validate_ohlcv
from strategy_lab.backtesting.engine import make_trade
from strategy_lab.backtesting.exit_rules import check_exit
from strategy_lab.backtesting.models import (
    ExitLevel,
    ExitSettings,
    PerformanceSummary,
    PriceUnit,
    Timeframe,
    TradeEvent,
    TradeSide,
)
from strategy_lab.core.exceptions import InsufficientData
from strategy_lab.settings import SETTINGS, MonteCarloSettings
from strategy_lab.utils.time import parse_datetime, to_iso, utc_now

# Metrics compared between the actual strategy and the simulations
METRICS = ("win_rate", "profit_factor", "max_drawdown_rate", "net_profit_rate")

PERCENTILES = (5, 25, 50, 75, 95)

PROGRESS_LOG_INTERVAL = 100


class OverallAssessment(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    POOR = "poor"
    VERY_POOR = "very_poor"


# (minimum average rank, assessment, comment), best first
ASSESSMENT_TIERS = (
    (
        90.0,
        OverallAssessment.EXCELLENT,
        "The strategy significantly outperforms random entries; a statistically meaningful edge is likely.",
    ),
    (75.0, OverallAssessment.GOOD, "The strategy performs better than random entries; an edge is probable."),
    (50.0, OverallAssessment.AVERAGE, "Performance is comparable to random entries; the edge is unclear."),
    (25.0, OverallAssessment.POOR, "The strategy underperforms random entries; consider revisiting its parameters."),
    (
        -math.inf,
        OverallAssessment.VERY_POOR,
        "The strategy performs far worse than random entries; a fundamental redesign is needed.",
    ),
)


class MonteCarloRequest(BaseModel):
    """Input of a Monte Carlo validation"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    symbol: str
    timeframe: Timeframe = Timeframe.H1
    start_date: datetime
    end_date: datetime
    iterations: Literal[100, 500, 1000] = 100
    take_profit: float = Field(..., gt=0, description="Take-profit distance in percent of entry price")
    stop_loss: float = Field(..., gt=0, description="Stop-loss distance in percent of entry price")
    max_holding_minutes: Optional[int] = Field(default=None, gt=0)
    initial_capital: float = Field(default_factory=lambda: SETTINGS.backtest.default_initial_capital, gt=0)
    lot_size: float = Field(default_factory=lambda: SETTINGS.backtest.default_lot_size, gt=0)
    leverage: float = Field(1.0, ge=1, le=1000)
    entry_probability: float = Field(default_factory=lambda: SETTINGS.monte_carlo.entry_probability, gt=0, le=1)
    seed: Optional[int] = Field(default_factory=lambda: SETTINGS.monte_carlo.seed)
    actual_summary: Optional[PerformanceSummary] = None

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return parse_datetime(value)

    @model_validator(mode="after")
    def _check_period(self) -> "MonteCarloRequest":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be earlier than end_date")
        return self

    @property
    def exit_settings(self) -> ExitSettings:
        return ExitSettings(
            take_profit=ExitLevel(value=self.take_profit, unit=PriceUnit.PERCENT),
            stop_loss=ExitLevel(value=self.stop_loss, unit=PriceUnit.PERCENT),
            max_holding_minutes=self.max_holding_minutes,
        )


@dataclass
class SimulationResult:
    """Lightweight result of one random-entry simulation"""

    id: int
    win_rate: float
    profit_factor: float
    max_drawdown_rate: float
    net_profit_rate: float
    total_trades: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "win_rate": round(self.win_rate, 4),
            "profit_factor": round(self.profit_factor, 4),
            "max_drawdown_rate": round(self.max_drawdown_rate, 6),
            "net_profit_rate": round(self.net_profit_rate, 6),
            "total_trades": self.total_trades,
        }


@dataclass
class HistogramBin:
    min: float
    max: float
    count: int
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": round(self.min, 6),
            "max": round(self.max, 6),
            "count": self.count,
            "percentage": round(self.percentage, 2),
        }


@dataclass
class DistributionStats:
    """Distribution of one metric across all simulations"""

    mean: float
    median: float
    std_dev: float
    min: float
    max: float
    percentiles: dict[str, float] = field(default_factory=dict)
    histogram: list[HistogramBin] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean": round(self.mean, 6),
            "median": round(self.median, 6),
            "std_dev": round(self.std_dev, 6),
            "min": round(self.min, 6),
            "max": round(self.max, 6),
            "percentiles": {k: round(v, 6) for k, v in self.percentiles.items()},
            "histogram": [b.to_dict() for b in self.histogram],
        }


@dataclass
class StrategyComparison:
    """
    Where the actual strategy ranks among the simulations.

    Each percentile is the share of simulations strictly worse than the
    actual value. For drawdown, worse means a higher drawdown.
    """

    win_rate_percentile: float
    profit_factor_percentile: float
    max_drawdown_percentile: float
    net_profit_rate_percentile: float
    average_percentile: float
    overall_assessment: OverallAssessment
    comment: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "win_rate_percentile": round(self.win_rate_percentile, 2),
            "profit_factor_percentile": round(self.profit_factor_percentile, 2),
            "max_drawdown_percentile": round(self.max_drawdown_percentile, 2),
            "net_profit_rate_percentile": round(self.net_profit_rate_percentile, 2),
            "average_percentile": round(self.average_percentile, 2),
            "overall_assessment": self.overall_assessment.value,
            "comment": self.comment,
        }


@dataclass
class MonteCarloResult:
    """Complete Monte Carlo validation result"""

    id: str
    iterations: int
    bars: int
    simulations: list[SimulationResult] = field(default_factory=list)
    statistics: dict[str, DistributionStats] = field(default_factory=dict)
    comparison: Optional[StrategyComparison] = None
    executed_at: datetime = field(default_factory=utc_now)

    def to_dict(self, include_simulations: bool = True) -> dict[str, Any]:
        data = {
            "id": self.id,
            "iterations": self.iterations,
            "bars": self.bars,
            "statistics": {k: v.to_dict() for k, v in self.statistics.items()},
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "executed_at": to_iso(self.executed_at),
        }
        if include_simulations:
            data["simulations"] = [s.to_dict() for s in self.simulations]
        return data


class MonteCarloValidator:
    """
    Random-entry Monte Carlo validator.

    Simulations are independent; with max_workers > 1 they run on a
    thread pool and the result order is preserved.
    """

    def __init__(
        self,
        data_source: Optional[HistoricalDataSource] = None,
        settings: Optional[MonteCarloSettings] = None,
        max_workers: Optional[int] = None,
    ):
        self.data_source = data_source or MockDataSource()
        self.settings = settings or SETTINGS.monte_carlo
        self.max_workers = max_workers or self.settings.max_workers

    def run(self, request: MonteCarloRequest) -> MonteCarloResult:
        """
        Run the simulations and, when an actual summary is given, rank it.

        Raises:
            InsufficientData: fewer than `min_bars` bars in the range
        """
        run_id = str(uuid.uuid4())
        log = logger.bind(run_id=run_id)
        log.info(f"Starting Monte Carlo {run_id}: {request.iterations} iterations on {request.symbol} {request.timeframe}")

        bars = self._load_bars(request)
        if len(bars) < self.settings.min_bars:
            raise InsufficientData(
                f"Not enough bars for Monte Carlo: {len(bars)}",
                {"required": self.settings.min_bars, "symbol": request.symbol},
            )
        log.info(f"Loaded {len(bars)} bars")

        rows = list(bars.itertuples())
        exit_settings = request.exit_settings
        seeds = np.random.SeedSequence(request.seed).spawn(request.iterations)

        def simulate(sim_id: int) -> SimulationResult:
            return self.run_single_simulation(rows, request, exit_settings, np.random.default_rng(seeds[sim_id]), sim_id)

        simulations: list[SimulationResult] = []
        if self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for result in executor.map(simulate, range(request.iterations)):
                    simulations.append(result)
                    self._log_progress(log, len(simulations), request.iterations)
        else:
            for sim_id in range(request.iterations):
                simulations.append(simulate(sim_id))
                self._log_progress(log, len(simulations), request.iterations)

        statistics = {
            metric: self.calculate_distribution([getattr(s, metric) for s in simulations]) for metric in METRICS
        }

        comparison = None
        if request.actual_summary is not None:
            comparison = self.compare_with_actual(simulations, request.actual_summary)
            log.info(
                f"Actual strategy ranks at {comparison.average_percentile:.1f} "
                f"({comparison.overall_assessment.value})"
            )

        log.info(f"Monte Carlo {run_id} completed")
        return MonteCarloResult(
            id=run_id,
            iterations=request.iterations,
            bars=len(bars),
            simulations=simulations,
            statistics=statistics,
            comparison=comparison,
        )

    def _load_bars(self, request: MonteCarloRequest) -> pd.DataFrame:
        raw = self.data_source.fetch(request.symbol, request.timeframe, request.start_date, request.end_date)
        if raw is None or len(raw) == 0:
            return pd.DataFrame()
        return validate_ohlcv(raw)

    @staticmethod
    def _log_progress(log, done: int, total: int) -> None:
        if done % PROGRESS_LOG_INTERVAL == 0:
            log.info(f"Monte Carlo progress: {done}/{total}")

    def run_single_simulation(
        self,
        rows: Sequence[Any],
        request: MonteCarloRequest,
        exit_settings: ExitSettings,
        rng: np.random.Generator,
        sim_id: int = 0,
    ) -> SimulationResult:
        """
        Run one random-entry simulation.

        Args:
            rows: Bars as namedtuples (Index, open, high, low, close, volume)
            request: Simulation parameters
            exit_settings: Exit rules derived from the request
            rng: Private generator of this simulation
            sim_id: Simulation number
        """
        trades: list[TradeEvent] = []
        in_position = False
        side = TradeSide.BUY
        entry_price = 0.0
        entry_time = None
        entry_index = 0

        for i in range(len(rows)):
            if not in_position:
                if rng.random() < request.entry_probability and i + 1 < len(rows):
                    side = TradeSide.BUY if rng.random() < 0.5 else TradeSide.SELL
                    entry_index = i + 1
                    entry_price = float(rows[entry_index].open)
                    entry_time = rows[entry_index].Index.to_pydatetime()
                    in_position = True
                continue

            decision = check_exit(rows[i], entry_price, side, exit_settings, i - entry_index, request.timeframe)
            if decision.should_exit:
                trades.append(
                    make_trade(
                        side,
                        entry_time,
                        entry_price,
                        rows[i].Index.to_pydatetime(),
                        decision.exit_price,
                        request.lot_size,
                        request.leverage,
                        decision.reason,
                    )
                )
                in_position = False

        summary = calculate_summary(trades, request.initial_capital)
        return SimulationResult(
            id=sim_id,
            win_rate=summary.win_rate,
            profit_factor=self._cap_profit_factor(summary.profit_factor),
            max_drawdown_rate=summary.max_drawdown_rate,
            net_profit_rate=summary.net_profit_rate,
            total_trades=summary.total_trades,
        )

    def _cap_profit_factor(self, profit_factor: float) -> float:
        if math.isinf(profit_factor):
            return self.settings.profit_factor_cap
        return profit_factor

    def calculate_distribution(self, values: Sequence[float]) -> DistributionStats:
        """
        Distribution statistics of one metric.

        Population standard deviation; median = sorted[n // 2];
        percentile p = sorted[floor(p / 100 * (n - 1))]. The histogram has
        equal-width bins over [min, max], the last bin closed on both ends.
        """
        arr = np.asarray(values, dtype=float)
        ordered = np.sort(arr)
        n = len(ordered)

        lo = float(ordered[0])
        hi = float(ordered[-1])
        bins = self.settings.histogram_bins
        width = (hi - lo) / bins or 0.1

        histogram = []
        for i in range(bins):
            bin_min = lo + width * i
            bin_max = lo + width * (i + 1)
            if i == bins - 1:
                # Closed at max; lo + width * bins may round below it
                count = int(np.count_nonzero(arr >= bin_min))
            else:
                count = int(np.count_nonzero((arr >= bin_min) & (arr < bin_max)))
            histogram.append(HistogramBin(min=bin_min, max=bin_max, count=count, percentage=count / n * 100))

        return DistributionStats(
            mean=float(arr.mean()),
            median=float(ordered[n // 2]),
            std_dev=float(arr.std()),
            min=lo,
            max=hi,
            percentiles={f"p{p}": float(ordered[math.floor(p / 100 * (n - 1))]) for p in PERCENTILES},
            histogram=histogram,
        )

    @staticmethod
    def percentile_rank(values: Sequence[float], target: float, lower_is_better: bool = False) -> float:
        """Percentage of values strictly worse than target."""
        if not values:
            return 0.0
        arr = np.asarray(values, dtype=float)
        worse = arr > target if lower_is_better else arr < target
        return float(np.count_nonzero(worse)) / len(arr) * 100

    def compare_with_actual(
        self, simulations: Sequence[SimulationResult], actual: PerformanceSummary
    ) -> StrategyComparison:
        """
        Rank the actual strategy inside the simulated distributions.

        The overall score averages the four ranks with the drawdown rank
        flipped (100 - rank), then maps to a fixed assessment tier.
        """
        win_rate_pct = self.percentile_rank([s.win_rate for s in simulations], actual.win_rate)
        profit_factor_pct = self.percentile_rank(
            [s.profit_factor for s in simulations], self._cap_profit_factor(actual.profit_factor)
        )
        drawdown_pct = self.percentile_rank(
            [s.max_drawdown_rate for s in simulations], actual.max_drawdown_rate, lower_is_better=True
        )
        net_profit_pct = self.percentile_rank([s.net_profit_rate for s in simulations], actual.net_profit_rate)

        average = (win_rate_pct + profit_factor_pct + (100 - drawdown_pct) + net_profit_pct) / 4
        assessment, comment = assess(average)

        return StrategyComparison(
            win_rate_percentile=win_rate_pct,
            profit_factor_percentile=profit_factor_pct,
            max_drawdown_percentile=drawdown_pct,
            net_profit_rate_percentile=net_profit_pct,
            average_percentile=average,
            overall_assessment=assessment,
            comment=comment,
        )


def assess(average_percentile: float) -> tuple[OverallAssessment, str]:
    for threshold, assessment, comment in ASSESSMENT_TIERS:
        if average_percentile >= threshold:
            return assessment, comment
    return ASSESSMENT_TIERS[-1][1], ASSESSMENT_TIERS[-1][2]


__all__ = [
    "OverallAssessment",
    "MonteCarloRequest",
    "SimulationResult",
    "HistogramBin",
    "DistributionStats",
    "StrategyComparison",
    "MonteCarloResult",
    "MonteCarloValidator",
    "assess",
]
