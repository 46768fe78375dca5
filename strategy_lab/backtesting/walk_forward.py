"""
Walk-Forward Validation

Detects overfitting by splitting the test period into consecutive
in-sample (IS) / out-of-sample (OOS) pairs and comparing the strategy's
win rate on both sides.

Splitting:
- By bar timestamps (preferred): splits follow the actual bars, so
  weekends and holidays never produce empty periods. At most 3 splits,
  each needing at least 30 IS + 15 OOS bars, IS:OOS = 70:30.
- By calendar days (fallback when the source has no bars for the range):
  same 70:30 ratio, at least 3 IS days and 2 OOS days.

Overfit score:
    mean(max(0, is_win_rate - oos_win_rate)) / 0.15, clamped to [0, 1]

    0.0 - 0.2   no sign of overfitting
    0.2 - 0.4   mild overfitting possible
    0.4 - 0.6   moderate overfitting (warning)
    0.6+        severe overfitting suspected
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from strategy_lab.backtesting.condition_evaluator import validate_condition_tree
from strategy_lab.backtesting.data_source import OHLCV_COLUMNS
from strategy_lab.backtesting.engine import BacktestEngine, StageResult
from strategy_lab.backtesting.models import (
    BacktestStage,
    PerformanceSummary,
    StrategyDefinition,
    Timeframe,
)
from strategy_lab.core.exceptions import DataUnavailable, InsufficientData
from strategy_lab.settings import SETTINGS, WalkForwardSettings
from strategy_lab.utils.time import parse_datetime, to_iso, utc_now


class WalkForwardRequest(BaseModel):
    """Input of a walk-forward validation"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    strategy_id: str
    start_date: datetime
    end_date: datetime
    split_count: int = Field(default_factory=lambda: SETTINGS.walk_forward.default_split_count, ge=1, le=10)
    in_sample_days: Optional[int] = Field(default=None, ge=1)
    out_of_sample_days: Optional[int] = Field(default=None, ge=1)
    timeframe: Timeframe = Field(default_factory=lambda: SETTINGS.walk_forward.default_timeframe)
    initial_capital: float = Field(default_factory=lambda: SETTINGS.backtest.default_initial_capital, gt=0)
    lot_size: float = Field(default_factory=lambda: SETTINGS.backtest.default_lot_size, gt=0)
    leverage: float = Field(default_factory=lambda: SETTINGS.backtest.default_leverage, ge=1, le=1000)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return parse_datetime(value)

    @model_validator(mode="after")
    def _check_period(self) -> "WalkForwardRequest":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be earlier than end_date")
        return self


@dataclass
class PeriodSplit:
    """
    One IS/OOS pair.

    Timestamp splits also carry inclusive bar index ranges into the
    fetched series; day splits leave them None.
    """

    in_sample_start: datetime
    in_sample_end: datetime
    out_of_sample_start: datetime
    out_of_sample_end: datetime
    in_sample_range: Optional[tuple[int, int]] = None
    out_of_sample_range: Optional[tuple[int, int]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_sample": {"start": to_iso(self.in_sample_start), "end": to_iso(self.in_sample_end)},
            "out_of_sample": {"start": to_iso(self.out_of_sample_start), "end": to_iso(self.out_of_sample_end)},
        }


@dataclass
class SplitStats:
    win_rate: float = 0.0
    trade_count: int = 0
    profit_factor: float = 0.0

    @classmethod
    def from_summary(cls, summary: PerformanceSummary) -> "SplitStats":
        return cls(
            win_rate=summary.win_rate,
            trade_count=summary.total_trades,
            profit_factor=summary.profit_factor,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "win_rate": round(self.win_rate, 4),
            "trade_count": self.trade_count,
            # JSON has no infinity
            "profit_factor": round(self.profit_factor, 4) if math.isfinite(self.profit_factor) else None,
        }


@dataclass
class WalkForwardSplit:
    """Result of one split"""

    split_number: int
    period: PeriodSplit
    in_sample: SplitStats
    out_of_sample: SplitStats

    @property
    def win_rate_diff(self) -> float:
        return self.in_sample.win_rate - self.out_of_sample.win_rate

    @property
    def is_valid(self) -> bool:
        """Both sides traded at least once"""
        return self.in_sample.trade_count > 0 and self.out_of_sample.trade_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "split_number": self.split_number,
            **self.period.to_dict(),
            "in_sample_stats": self.in_sample.to_dict(),
            "out_of_sample_stats": self.out_of_sample.to_dict(),
            "win_rate_diff": round(self.win_rate_diff, 4),
        }


@dataclass
class WalkForwardSummary:
    avg_in_sample_win_rate: float = 0.0
    avg_out_of_sample_win_rate: float = 0.0
    avg_win_rate_diff: float = 0.0
    total_in_sample_trades: int = 0
    total_out_of_sample_trades: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "avg_in_sample_win_rate": round(self.avg_in_sample_win_rate, 4),
            "avg_out_of_sample_win_rate": round(self.avg_out_of_sample_win_rate, 4),
            "avg_win_rate_diff": round(self.avg_win_rate_diff, 4),
            "total_in_sample_trades": self.total_in_sample_trades,
            "total_out_of_sample_trades": self.total_out_of_sample_trades,
        }


@dataclass
class WalkForwardResult:
    """Complete walk-forward validation result"""

    id: str
    strategy_id: str
    timeframe: str
    split_count: int
    splits: list[WalkForwardSplit] = field(default_factory=list)
    overfit_score: float = 0.0
    overfit_warning: bool = False
    summary: WalkForwardSummary = field(default_factory=WalkForwardSummary)
    executed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "timeframe": self.timeframe,
            "split_count": self.split_count,
            "splits": [s.to_dict() for s in self.splits],
            "overfit_score": self.overfit_score,
            "overfit_warning": self.overfit_warning,
            "summary": self.summary.to_dict(),
            "executed_at": to_iso(self.executed_at),
        }


class WalkForwardValidator:
    """
    Walk-forward validator.

    Every IS and OOS run is a Stage 1 scan with its own capital and
    position state. Timestamp splits scan only their own bar range; the
    bars preceding the range serve as indicator warm-up.

    Example:
        validator = WalkForwardValidator(engine)
        result = validator.run(WalkForwardRequest(
            strategy_id="rsi-reversal",
            start_date="2024-01-01",
            end_date="2024-06-30",
            split_count=3,
        ))
        if result.overfit_warning:
            ...
    """

    def __init__(self, engine: Optional[BacktestEngine] = None, settings: Optional[WalkForwardSettings] = None):
        self.engine = engine or BacktestEngine()
        self.settings = settings or SETTINGS.walk_forward

    # =========================================================================
    # SPLITTING
    # =========================================================================

    def split_by_timestamps(self, timestamps: Sequence[Any], split_count: int) -> list[PeriodSplit]:
        """
        Split ordered bar timestamps into IS/OOS pairs.

        Args:
            timestamps: Ascending bar timestamps
            split_count: Requested number of splits (capped by data volume and max_splits)

        Returns:
            Period splits; empty when there are fewer than 45 bars
        """
        s = self.settings
        total = len(timestamps)
        min_per_split = s.min_in_sample_records + s.min_out_of_sample_records

        effective = min(split_count, total // min_per_split, s.max_splits)
        if effective < 1:
            logger.info(f"Not enough bars to split: {total} (need at least {min_per_split})")
            return []
        if effective < split_count:
            logger.info(f"Split count reduced from {split_count} to {effective} ({total} bars)")

        records_per_split = total // effective
        in_records = max(math.floor(records_per_split * s.in_sample_ratio), s.min_in_sample_records)
        out_records = max(math.floor(records_per_split * (1 - s.in_sample_ratio)), s.min_out_of_sample_records)

        splits: list[PeriodSplit] = []
        current = 0

        for i in range(effective):
            remaining = total - current
            is_last = i == effective - 1

            if not is_last and remaining < in_records + out_records:
                logger.debug(f"Split {i + 1}: only {remaining} bars left, stopping")
                break

            actual_in, actual_out = in_records, out_records
            if is_last and remaining > 0:
                actual_in = math.floor(remaining * s.in_sample_ratio)
                actual_out = remaining - actual_in

            if actual_in < 1 or actual_out < 1:
                break

            is_start = current
            is_end = current + actual_in - 1
            oos_start = is_end + 1
            oos_end = min(oos_start + actual_out - 1, total - 1)

            splits.append(
                PeriodSplit(
                    in_sample_start=_to_datetime(timestamps[is_start]),
                    in_sample_end=_to_datetime(timestamps[is_end]),
                    out_of_sample_start=_to_datetime(timestamps[oos_start]),
                    out_of_sample_end=_to_datetime(timestamps[oos_end]),
                    in_sample_range=(is_start, is_end),
                    out_of_sample_range=(oos_start, oos_end),
                )
            )
            logger.debug(f"Split {i + 1}: IS[{is_start}-{is_end}] OOS[{oos_start}-{oos_end}]")

            current = oos_end + 1

        return splits

    def split_by_days(
        self,
        start: datetime,
        end: datetime,
        split_count: int,
        in_sample_days: Optional[int] = None,
        out_of_sample_days: Optional[int] = None,
    ) -> list[PeriodSplit]:
        """
        Split a calendar range into IS/OOS pairs.

        Each period ends on the last instant of its final day; the last
        OOS period is clamped to `end`. Splitting stops once the cursor
        reaches `end`.
        """
        s = self.settings
        start = parse_datetime(start)
        end = parse_datetime(end)

        total_days = (end - start).days
        days_per_split = total_days // split_count

        in_days = in_sample_days if in_sample_days is not None else math.floor(days_per_split * s.in_sample_ratio)
        out_days = (
            out_of_sample_days
            if out_of_sample_days is not None
            else math.floor(days_per_split * (1 - s.in_sample_ratio))
        )
        in_days = max(in_days, s.min_in_sample_days)
        out_days = max(out_days, s.min_out_of_sample_days)

        logger.info(f"Day-based split: {total_days} days, {split_count} splits, IS={in_days}d, OOS={out_days}d")

        instant = timedelta(microseconds=1)
        splits: list[PeriodSplit] = []
        cursor = start

        for _ in range(split_count):
            is_end = cursor + timedelta(days=in_days) - instant
            oos_start = is_end + instant
            if oos_start > end:
                break
            oos_end = min(oos_start + timedelta(days=out_days) - instant, end)

            splits.append(
                PeriodSplit(
                    in_sample_start=cursor,
                    in_sample_end=is_end,
                    out_of_sample_start=oos_start,
                    out_of_sample_end=oos_end,
                )
            )

            cursor = oos_end + instant
            if cursor >= end:
                break

        return splits

    # =========================================================================
    # SCORING
    # =========================================================================

    def calculate_overfit_score(self, splits: Sequence[WalkForwardSplit]) -> float:
        """
        Normalized positive IS-OOS win rate gap, 0.0 (robust) to 1.0 (overfit).

        Only splits with trades on both sides count; without any the score is 0.
        """
        valid = [sp for sp in splits if sp.is_valid]
        if not valid:
            return 0.0

        avg_diff = sum(max(0.0, sp.win_rate_diff) for sp in valid) / len(valid)
        score = min(1.0, max(0.0, avg_diff / self.settings.overfit_normalizer))
        return round(score, 2)

    @staticmethod
    def summarize(splits: Sequence[WalkForwardSplit]) -> WalkForwardSummary:
        if not splits:
            return WalkForwardSummary()

        n = len(splits)
        avg_is = sum(sp.in_sample.win_rate for sp in splits) / n
        avg_oos = sum(sp.out_of_sample.win_rate for sp in splits) / n
        return WalkForwardSummary(
            avg_in_sample_win_rate=avg_is,
            avg_out_of_sample_win_rate=avg_oos,
            avg_win_rate_diff=avg_is - avg_oos,
            total_in_sample_trades=sum(sp.in_sample.trade_count for sp in splits),
            total_out_of_sample_trades=sum(sp.out_of_sample.trade_count for sp in splits),
        )

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def run(self, request: WalkForwardRequest) -> WalkForwardResult:
        """
        Run the walk-forward validation.

        Raises:
            StrategyNotFound: unknown strategy
            InvalidStrategyConfig: unusable condition tree
            InsufficientData: no split could be formed
            DataUnavailable: a day-based split has no bars
        """
        run_id = str(uuid.uuid4())
        log = logger.bind(run_id=run_id)

        strategy = self.engine.get_strategy(request.strategy_id)
        validate_condition_tree(strategy.entry_conditions)

        log.info(
            f"Starting walk-forward {run_id}: strategy={strategy.id} {request.timeframe} "
            f"{request.split_count} splits from {request.start_date} to {request.end_date}"
        )

        bars = self._load_bars(strategy.symbol, request)

        if len(bars) > 0:
            log.info(f"Splitting on {len(bars)} bars")
            periods = self.split_by_timestamps(bars.index, request.split_count)
        else:
            log.info("No bars for the range, splitting by calendar days")
            periods = self.split_by_days(
                request.start_date,
                request.end_date,
                request.split_count,
                request.in_sample_days,
                request.out_of_sample_days,
            )

        if not periods:
            raise InsufficientData(
                "Could not split the period; not enough data",
                {"bars": len(bars), "split_count": request.split_count},
            )

        splits: list[WalkForwardSplit] = []
        for number, period in enumerate(periods, start=1):
            log.info(f"Split {number}/{len(periods)}")
            in_sample = self._run_period(
                strategy, bars, period.in_sample_range, period.in_sample_start, period.in_sample_end, request
            )
            out_of_sample = self._run_period(
                strategy,
                bars,
                period.out_of_sample_range,
                period.out_of_sample_start,
                period.out_of_sample_end,
                request,
            )
            splits.append(
                WalkForwardSplit(
                    split_number=number,
                    period=period,
                    in_sample=SplitStats.from_summary(in_sample.summary),
                    out_of_sample=SplitStats.from_summary(out_of_sample.summary),
                )
            )

        score = self.calculate_overfit_score(splits)
        warning = score >= self.settings.overfit_warning_threshold

        log.info(f"Walk-forward {run_id} completed: overfit_score={score}, warning={warning}, splits={len(splits)}")
        if warning:
            log.warning(f"Strategy {strategy.id} shows signs of overfitting (score {score})")

        return WalkForwardResult(
            id=run_id,
            strategy_id=strategy.id,
            timeframe=request.timeframe,
            split_count=len(splits),
            splits=splits,
            overfit_score=score,
            overfit_warning=warning,
            summary=self.summarize(splits),
        )

    def _load_bars(self, symbol: str, request: WalkForwardRequest) -> pd.DataFrame:
        """Bars for the whole range; empty (not an error) when the source has none."""
        try:
            return self.engine.fetch_bars(symbol, request.timeframe, request.start_date, request.end_date)
        except DataUnavailable as e:
            logger.info(f"No bars for walk-forward range: {e.message}")
            return pd.DataFrame(columns=OHLCV_COLUMNS)

    def _run_period(
        self,
        strategy: StrategyDefinition,
        bars: pd.DataFrame,
        index_range: Optional[tuple[int, int]],
        start: datetime,
        end: datetime,
        request: WalkForwardRequest,
    ) -> StageResult:
        if index_range is None:
            return self.engine.run_stage(
                strategy,
                start,
                end,
                timeframe=request.timeframe,
                stage=BacktestStage.STAGE1,
                initial_capital=request.initial_capital,
                lot_size=request.lot_size,
                leverage=request.leverage,
            )

        range_start, range_end = index_range
        return self.engine.evaluate_stage(
            strategy,
            bars.iloc[: range_end + 1],
            timeframe=request.timeframe,
            stage=BacktestStage.STAGE1,
            initial_capital=request.initial_capital,
            lot_size=request.lot_size,
            leverage=request.leverage,
            start_index=max(SETTINGS.backtest.warmup_bars, range_start),
        )


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    return parse_datetime(value)


__all__ = [
    "WalkForwardRequest",
    "PeriodSplit",
    "SplitStats",
    "WalkForwardSplit",
    "WalkForwardSummary",
    "WalkForwardResult",
    "WalkForwardValidator",
]
