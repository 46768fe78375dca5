"""
Filter Analysis

Looks for indicator filters that separate winning from losing trades of a
finished backtest, and verifies the effect of a chosen filter set.

Both operations work on a fixed catalogue of indicators computed once over
the whole bar series. A trade is matched to its entry bar by exact
timestamp; trades without a matching bar are ignored by the analysis and
dropped by the verification.

The improvement estimates in the recommendations are heuristics, not
re-simulations: use verify() to measure the real effect on the trade list.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, field_validator

from strategy_lab.backtesting.calculations import calculate_profit_factor
from strategy_lab.backtesting.condition_evaluator import compare_values
from strategy_lab.backtesting.models import TradeEvent
from strategy_lab.core.exceptions import InvalidFilterCount
from strategy_lab.indicators import (
    calculate_bollinger_bands,
    calculate_bollinger_position,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_sma,
)
from strategy_lab.utils.time import parse_datetime

MAX_FILTERS = 5

# Upper bound of the estimated improvement of a single filter (percentage points)
MAX_ESTIMATED_IMPROVEMENT = 30.0


@dataclass(frozen=True)
class FilterIndicator:
    id: str
    name: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "description": self.description}


FILTER_INDICATORS: dict[str, FilterIndicator] = {
    ind.id: ind
    for ind in (
        FilterIndicator("SMA_20", "SMA(20)", "20-period simple moving average"),
        FilterIndicator("SMA_50", "SMA(50)", "50-period simple moving average (medium-term trend)"),
        FilterIndicator("SMA_200", "SMA(200)", "200-period simple moving average (long-term trend)"),
        FilterIndicator("EMA_20", "EMA(20)", "20-period exponential moving average"),
        FilterIndicator("EMA_50", "EMA(50)", "50-period exponential moving average"),
        FilterIndicator("RSI_14", "RSI(14)", "14-period RSI (0-100)"),
        FilterIndicator("MACD_HIST", "MACD Histogram", "MACD line minus signal line"),
        FilterIndicator("BB_UPPER", "BB Upper", "Upper Bollinger Band (20, 2)"),
        FilterIndicator("BB_LOWER", "BB Lower", "Lower Bollinger Band (20, 2)"),
        FilterIndicator("BB_POSITION", "BB Position (0-1)", "Price position inside the band (0 = lower, 1 = upper)"),
    )
}


def get_available_filter_indicators() -> list[dict[str, str]]:
    """Catalogue of filter indicators, in display order."""
    return [ind.to_dict() for ind in FILTER_INDICATORS.values()]


def calculate_filter_indicators(bars: pd.DataFrame) -> dict[str, np.ndarray]:
    """Compute every catalogue indicator over the full bar series."""
    macd = calculate_macd(bars)
    bands = calculate_bollinger_bands(bars, period=20, std_dev=2.0)

    series = {
        "SMA_20": calculate_sma(bars, 20),
        "SMA_50": calculate_sma(bars, 50),
        "SMA_200": calculate_sma(bars, 200),
        "EMA_20": calculate_ema(bars, 20),
        "EMA_50": calculate_ema(bars, 50),
        "RSI_14": calculate_rsi(bars, 14),
        "MACD_HIST": macd["histogram"],
        "BB_UPPER": bands["upper"],
        "BB_LOWER": bands["lower"],
        "BB_POSITION": calculate_bollinger_position(bars, period=20, std_dev=2.0),
    }
    return {key: s.to_numpy(dtype=float) for key, s in series.items()}


def map_entry_indices(trades: Sequence[TradeEvent], bars: pd.DataFrame) -> list[Optional[int]]:
    """Bar position of each trade's entry time (exact match), None when absent."""
    lookup = {ts: i for i, ts in enumerate(bars.index)}
    return [lookup.get(pd.Timestamp(parse_datetime(t.entry_time))) for t in trades]


def _values_at(values: np.ndarray, indices: Sequence[Optional[int]]) -> list[float]:
    return [float(values[i]) for i in indices if i is not None and not math.isnan(values[i])]


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class IndicatorAnalysis:
    """How one indicator differs between winning and losing entries"""

    indicator: str
    display_name: str
    win_average: float
    lose_average: float
    difference: float
    significance_score: float
    suggested_condition: str
    estimated_improvement: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator,
            "display_name": self.display_name,
            "win_average": round(self.win_average, 6),
            "lose_average": round(self.lose_average, 6),
            "difference": round(self.difference, 6),
            "significance_score": round(self.significance_score, 4),
            "suggested_condition": self.suggested_condition,
            "estimated_improvement": round(self.estimated_improvement, 4),
        }


@dataclass
class FilterSuggestion:
    """Recommended filter combination with heuristic estimates"""

    filters: list[str]
    display_name: str
    estimated_win_rate: float
    estimated_profit_factor: float
    estimated_trade_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "filters": list(self.filters),
            "display_name": self.display_name,
            "estimated_win_rate": round(self.estimated_win_rate, 2),
            "estimated_profit_factor": round(self.estimated_profit_factor, 4),
            "estimated_trade_count": self.estimated_trade_count,
        }


@dataclass
class FilterAnalysisResult:
    total_trades: int = 0
    win_trades: int = 0
    lose_trades: int = 0
    indicators: list[IndicatorAnalysis] = field(default_factory=list)
    recommended_filters: list[FilterSuggestion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "win_trades": self.win_trades,
            "lose_trades": self.lose_trades,
            "indicators": [a.to_dict() for a in self.indicators],
            "recommended_filters": [s.to_dict() for s in self.recommended_filters],
        }


class FilterCondition(BaseModel):
    """Predicate on a catalogue indicator at the trade's entry bar"""

    model_config = ConfigDict(frozen=True)

    indicator: str
    operator: Literal["<", "<=", ">", ">=", "="]
    value: float

    @field_validator("indicator")
    @classmethod
    def _known_indicator(cls, value: str) -> str:
        if value not in FILTER_INDICATORS:
            raise ValueError(f"Unknown filter indicator: {value}")
        return value

    def matches(self, indicator_value: float) -> bool:
        return compare_values(indicator_value, self.value, self.operator)


@dataclass
class TradeSetStats:
    total_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    net_profit: float = 0.0

    @classmethod
    def from_trades(cls, trades: Sequence[TradeEvent]) -> "TradeSetStats":
        """Breakeven trades (pnl == 0) count as losers."""
        if not trades:
            return cls()
        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [t.pnl for t in trades if t.pnl <= 0]
        gross_profit = sum(wins)
        gross_loss = abs(sum(losses))
        return cls(
            total_trades=len(trades),
            win_rate=len(wins) / len(trades),
            profit_factor=calculate_profit_factor(gross_profit, gross_loss),
            net_profit=gross_profit - gross_loss,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "win_rate": round(self.win_rate, 4),
            "profit_factor": round(self.profit_factor, 4) if math.isfinite(self.profit_factor) else None,
            "net_profit": round(self.net_profit, 2),
        }


@dataclass
class FilterImprovement:
    win_rate_change: float
    pf_change: float
    trade_reduction: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "win_rate_change": round(self.win_rate_change, 4),
            "pf_change": round(self.pf_change, 4) if math.isfinite(self.pf_change) else None,
            "trade_reduction": round(self.trade_reduction, 4),
        }


@dataclass
class FilterVerificationResult:
    before: TradeSetStats
    after: TradeSetStats
    filtered_out_trades: int
    improvement: FilterImprovement

    def to_dict(self) -> dict[str, Any]:
        return {
            "before": self.before.to_dict(),
            "after": {**self.after.to_dict(), "filtered_out_trades": self.filtered_out_trades},
            "improvement": self.improvement.to_dict(),
        }


# =============================================================================
# ANALYZER
# =============================================================================


class FilterAnalyzer:
    """
    Filter analyzer over a finished trade list and its bars.

    Example:
        analyzer = FilterAnalyzer()
        analysis = analyzer.analyze(run.trades, bars)
        check = analyzer.verify(run.trades, bars, [
            FilterCondition(indicator="RSI_14", operator="<", value=40),
        ])
    """

    def analyze(self, trades: Sequence[TradeEvent], bars: pd.DataFrame) -> FilterAnalysisResult:
        """Rank catalogue indicators by how well they separate winners from losers."""
        if not trades:
            return FilterAnalysisResult()

        indicators = calculate_filter_indicators(bars)
        entry_indices = map_entry_indices(trades, bars)

        win_indices = [idx for t, idx in zip(trades, entry_indices) if t.pnl > 0]
        lose_indices = [idx for t, idx in zip(trades, entry_indices) if t.pnl <= 0]

        analyses: list[IndicatorAnalysis] = []
        for key, values in indicators.items():
            win_values = _values_at(values, win_indices)
            lose_values = _values_at(values, lose_indices)
            if not win_values or not lose_values:
                continue
            analyses.append(self._analyze_indicator(key, values, win_values, lose_values))

        analyses.sort(key=lambda a: a.significance_score, reverse=True)

        win_rate_pct = len(win_indices) / len(trades) * 100
        recommendations = self._recommend(analyses, win_rate_pct, len(trades))

        logger.info(
            f"Filter analysis: {len(trades)} trades, {len(analyses)} indicators usable, "
            f"{len(recommendations)} recommendations"
        )
        return FilterAnalysisResult(
            total_trades=len(trades),
            win_trades=len(win_indices),
            lose_trades=len(lose_indices),
            indicators=analyses,
            recommended_filters=recommendations,
        )

    @staticmethod
    def _analyze_indicator(
        key: str, values: np.ndarray, win_values: list[float], lose_values: list[float]
    ) -> IndicatorAnalysis:
        name = FILTER_INDICATORS[key].name
        win_avg = sum(win_values) / len(win_values)
        lose_avg = sum(lose_values) / len(lose_values)
        difference = win_avg - lose_avg

        finite = values[~np.isnan(values)]
        value_range = float(finite.max() - finite.min()) or 1.0
        significance = abs(difference) / value_range * 100

        # Winners enter higher -> require a high value, and vice versa
        if difference > 0:
            suggestion = f"{name} > {win_avg * 0.8 + lose_avg * 0.2:.2f}"
        else:
            suggestion = f"{name} < {win_avg * 0.2 + lose_avg * 0.8:.2f}"

        return IndicatorAnalysis(
            indicator=key,
            display_name=name,
            win_average=win_avg,
            lose_average=lose_avg,
            difference=difference,
            significance_score=significance,
            suggested_condition=suggestion,
            estimated_improvement=min(significance * 0.5, MAX_ESTIMATED_IMPROVEMENT),
        )

    @staticmethod
    def _recommend(analyses: list[IndicatorAnalysis], win_rate_pct: float, trade_count: int) -> list[FilterSuggestion]:
        # (filters combined, win rate weight, win rate cap, pf weight, share of trades kept)
        tiers = (
            (1, 0.5, 70.0, 0.02, 0.7),
            (2, 0.4, 75.0, 0.015, 0.5),
            (3, 0.3, 80.0, 0.012, 0.35),
        )
        suggestions = []
        for size, wr_weight, wr_cap, pf_weight, kept in tiers:
            if len(analyses) < size:
                break
            combined = analyses[:size]
            improvement = sum(a.estimated_improvement for a in combined)
            suggestions.append(
                FilterSuggestion(
                    filters=[a.indicator for a in combined],
                    display_name=" AND ".join(a.suggested_condition for a in combined),
                    estimated_win_rate=min(win_rate_pct + improvement * wr_weight, wr_cap),
                    estimated_profit_factor=1.0 + improvement * pf_weight,
                    estimated_trade_count=math.floor(trade_count * kept),
                )
            )
        return suggestions

    def verify(
        self,
        trades: Sequence[TradeEvent],
        bars: pd.DataFrame,
        filters: Sequence[FilterCondition],
    ) -> FilterVerificationResult:
        """
        Apply 1-5 filters to the trade list and compare before / after.

        A trade survives only when its entry bar exists and every filter
        holds on a non-NaN indicator value.

        Raises:
            InvalidFilterCount: zero or more than 5 filters
        """
        if not 1 <= len(filters) <= MAX_FILTERS:
            raise InvalidFilterCount(
                f"Select between 1 and {MAX_FILTERS} filters",
                {"count": len(filters)},
            )

        indicators = calculate_filter_indicators(bars)
        entry_indices = map_entry_indices(trades, bars)

        kept = [t for t, idx in zip(trades, entry_indices) if self._passes(indicators, idx, filters)]

        before = TradeSetStats.from_trades(trades)
        after = TradeSetStats.from_trades(kept)
        filtered_out = len(trades) - len(kept)

        if math.isinf(before.profit_factor) and math.isinf(after.profit_factor):
            pf_change = math.nan
        else:
            pf_change = after.profit_factor - before.profit_factor

        logger.info(f"Filter verification: {len(kept)}/{len(trades)} trades kept by {len(filters)} filters")
        return FilterVerificationResult(
            before=before,
            after=after,
            filtered_out_trades=filtered_out,
            improvement=FilterImprovement(
                win_rate_change=after.win_rate - before.win_rate,
                pf_change=pf_change,
                trade_reduction=filtered_out / len(trades) if trades else 0.0,
            ),
        )

    @staticmethod
    def _passes(
        indicators: dict[str, np.ndarray], index: Optional[int], filters: Sequence[FilterCondition]
    ) -> bool:
        if index is None:
            return False
        for condition in filters:
            value = indicators[condition.indicator][index]
            if math.isnan(value) or not condition.matches(float(value)):
                return False
        return True


__all__ = [
    "FILTER_INDICATORS",
    "FilterIndicator",
    "get_available_filter_indicators",
    "calculate_filter_indicators",
    "map_entry_indices",
    "IndicatorAnalysis",
    "FilterSuggestion",
    "FilterAnalysisResult",
    "FilterCondition",
    "TradeSetStats",
    "FilterImprovement",
    "FilterVerificationResult",
    "FilterAnalyzer",
]
