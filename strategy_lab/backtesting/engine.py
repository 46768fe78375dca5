"""
Backtest Execution Engine

Replays a strategy bar-by-bar over historical data:

- the first `warmup_bars` bars are skipped (indicator warm-up)
- flat: the entry tree is evaluated; on a signal the position opens at the
  NEXT bar's open
- in a position: the exit rules decide take-profit / stop-loss / timeout
- the scan halts once capital falls to `bankruptcy_ratio` of the initial
  capital; the run still completes, with stopped_reason="bankruptcy"

Two-stage protocol: Stage 1 scans a coarse timeframe; when it produces
trades and refinement is requested, Stage 2 repeats the scan on 1-minute
bars and its result replaces Stage 1.

All mutable scan state lives in a ScanState created per scan, so parallel
runs (walk-forward splits, Monte Carlo) never interfere.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import pandas as pd
from loguru import logger

from strategy_lab.backtesting.calculations import calculate_pnl, calculate_summary
from strategy_lab.backtesting.condition_evaluator import EvaluationContext, evaluate, validate_condition_tree
from strategy_lab.backtesting.conditions import ConditionNode
from strategy_lab.backtesting.data_source import HistoricalDataSource, MockDataSource, validate_ohlcv
from strategy_lab.backtesting.exit_rules import check_exit
from strategy_lab.backtesting.models import (
    STAGE2_TIMEFRAME,
    BacktestRequest,
    BacktestRun,
    BacktestStage,
    ExitSettings,
    PerformanceSummary,
    StoppedReason,
    StrategyDefinition,
    TradeEvent,
)
from strategy_lab.backtesting.repository import (
    BacktestRunRepository,
    InMemoryBacktestRunRepository,
    InMemoryStrategyRepository,
    StrategyRepository,
)
from strategy_lab.core.exceptions import DataUnavailable, StrategyLabError, StrategyNotFound
from strategy_lab.settings import SETTINGS


def required_margin(lot_size: float, entry_price: float, leverage: float) -> float:
    return lot_size * entry_price / leverage


def make_trade(
    side: str,
    entry_time: datetime,
    entry_price: float,
    exit_time: datetime,
    exit_price: float,
    lot_size: float,
    leverage: float,
    exit_reason: str,
) -> TradeEvent:
    """Close a position into a TradeEvent; pnl_percent is relative to the required margin."""
    pnl = calculate_pnl(side, entry_price, exit_price, lot_size)
    margin = required_margin(lot_size, entry_price, leverage)
    return TradeEvent(
        id=str(uuid.uuid4()),
        entry_time=entry_time,
        entry_price=entry_price,
        exit_time=exit_time,
        exit_price=exit_price,
        side=side,
        lot_size=lot_size,
        pnl=pnl,
        pnl_percent=pnl / margin * 100 if margin else 0.0,
        exit_reason=exit_reason,
    )


@dataclass
class ScanState:
    """Mutable state of one scan. Never shared between scans."""

    current_capital: float
    in_position: bool = False
    entry_price: float = 0.0
    entry_time: Optional[datetime] = None
    entry_index: int = 0
    bankrupt: bool = False

    def open_position(self, price: float, time: datetime, index: int) -> None:
        self.in_position = True
        self.entry_price = price
        self.entry_time = time
        self.entry_index = index

    def close_position(self, pnl: float) -> None:
        self.current_capital += pnl
        self.in_position = False
        self.entry_price = 0.0
        self.entry_time = None
        self.entry_index = 0


@dataclass
class ScanResult:
    trades: list[TradeEvent]
    final_capital: float
    stopped_reason: StoppedReason
    bars_scanned: int = 0


@dataclass
class StageResult:
    """Outcome of one stage (one timeframe) of a backtest"""

    timeframe: str
    stage: BacktestStage
    summary: PerformanceSummary
    trades: list[TradeEvent] = field(default_factory=list)
    bars: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "stage": getattr(self.stage, "value", self.stage),
            "bars": self.bars,
            "summary": self.summary.to_dict(),
            "trades": len(self.trades),
        }


def _bar_time(ts: pd.Timestamp) -> datetime:
    return ts.to_pydatetime()


def scan_bars(
    bars: pd.DataFrame,
    entry_conditions: Optional[ConditionNode],
    exit_settings: ExitSettings,
    side: str,
    timeframe: str,
    initial_capital: float,
    lot_size: float,
    leverage: float,
    start_index: Optional[int] = None,
    bankruptcy_ratio: Optional[float] = None,
) -> ScanResult:
    """
    Scan bars with one strategy and collect closed trades.

    Args:
        bars: Validated OHLCV frame (ascending DatetimeIndex)
        entry_conditions: Root of the entry condition tree
        exit_settings: Take-profit / stop-loss / holding-time rules
        side: Direction of every position ("buy" / "sell")
        timeframe: Bar timeframe (for holding-time conversion)
        initial_capital: Starting capital
        lot_size: Units per trade
        leverage: Leverage used for the margin-relative pnl_percent
        start_index: First scanned bar (default: warm-up bar count)
        bankruptcy_ratio: Halt once capital <= initial * ratio

    Returns:
        ScanResult; a position still open at the end is discarded

    Raises:
        InvalidStrategyConfig: the tree cannot produce entry signals
    """
    validate_condition_tree(entry_conditions)

    if start_index is None:
        start_index = SETTINGS.backtest.warmup_bars
    if bankruptcy_ratio is None:
        bankruptcy_ratio = SETTINGS.backtest.bankruptcy_ratio

    ctx = EvaluationContext(bars=bars)
    state = ScanState(current_capital=initial_capital)
    bankruptcy_threshold = initial_capital * bankruptcy_ratio
    trades: list[TradeEvent] = []

    rows = list(bars.itertuples())
    scanned = 0

    for i in range(start_index, len(rows)):
        if state.current_capital <= bankruptcy_threshold:
            state.bankrupt = True
            logger.info(
                f"Bankruptcy stop at bar {i}: capital {state.current_capital:,.0f} "
                f"({state.current_capital / initial_capital:.0%} of initial)"
            )
            break

        scanned += 1
        ctx.current_index = i
        bar = rows[i]

        if not state.in_position:
            if evaluate(ctx, entry_conditions) and i + 1 < len(rows):
                next_bar = rows[i + 1]
                state.open_position(float(next_bar.open), _bar_time(next_bar.Index), i + 1)
            continue

        decision = check_exit(bar, state.entry_price, side, exit_settings, i - state.entry_index, timeframe)
        if decision.should_exit:
            trade = make_trade(
                side,
                state.entry_time,
                state.entry_price,
                _bar_time(bar.Index),
                decision.exit_price,
                lot_size,
                leverage,
                decision.reason,
            )
            trades.append(trade)
            state.close_position(trade.pnl)

    return ScanResult(
        trades=trades,
        final_capital=state.current_capital,
        stopped_reason=StoppedReason.BANKRUPTCY if state.bankrupt else StoppedReason.COMPLETED,
        bars_scanned=scanned,
    )


class BacktestEngine:
    """
    Strategy backtesting engine.

    Example:
        engine = BacktestEngine(data_source=MockDataSource(), strategies=repo)
        run = engine.run(BacktestRequest(
            strategy_id="rsi-reversal",
            start_date="2024-01-01",
            end_date="2024-03-01",
            stage1_timeframe="1h",
            run_stage2=True,
        ))
    """

    def __init__(
        self,
        data_source: Optional[HistoricalDataSource] = None,
        strategies: Optional[StrategyRepository] = None,
        runs: Optional[BacktestRunRepository] = None,
    ):
        self.data_source = data_source or MockDataSource()
        self.strategies = strategies or InMemoryStrategyRepository()
        self.runs = runs or InMemoryBacktestRunRepository()

    def run(self, request: BacktestRequest) -> BacktestRun:
        """
        Run a complete backtest.

        Errors never escape: a missing strategy, an invalid condition tree,
        missing data or any unexpected failure yields status="failed" with
        an empty trade list, a zeroed summary and error_message set.

        Args:
            request: Backtest request

        Returns:
            Finalized BacktestRun (completed or failed), also saved to the run repository
        """
        run = BacktestRun(
            id=str(uuid.uuid4()),
            strategy_id=request.strategy_id,
            start_date=request.start_date,
            end_date=request.end_date,
            timeframe=request.stage1_timeframe,
            stage=BacktestStage.STAGE1,
        )
        log = logger.bind(run_id=run.id)
        log.info(
            f"Starting backtest {run.id}: strategy={request.strategy_id} {request.stage1_timeframe} "
            f"from {request.start_date} to {request.end_date} (stage2={request.run_stage2})"
        )
        self.runs.save(run)

        try:
            strategy = self.get_strategy(request.strategy_id)
            run.strategy_version_id = strategy.version_id
            run.version_number = strategy.version_number

            # Fail fast before any data is fetched
            validate_condition_tree(strategy.entry_conditions)

            result = self.run_stage(
                strategy,
                request.start_date,
                request.end_date,
                timeframe=request.stage1_timeframe,
                stage=BacktestStage.STAGE1,
                initial_capital=request.initial_capital,
                lot_size=request.lot_size,
                leverage=request.leverage,
            )

            if request.run_stage2 and result.trades:
                log.info(f"Stage 1 produced {len(result.trades)} trades, refining on {STAGE2_TIMEFRAME.value}")
                result = self.run_stage(
                    strategy,
                    request.start_date,
                    request.end_date,
                    timeframe=STAGE2_TIMEFRAME.value,
                    stage=BacktestStage.STAGE2,
                    initial_capital=request.initial_capital,
                    lot_size=request.lot_size,
                    leverage=request.leverage,
                )

            run.complete(result.summary, result.trades, result.timeframe, result.stage)
            log.info(
                f"Backtest {run.id} completed: trades={result.summary.total_trades}, "
                f"win_rate={result.summary.win_rate:.2%}, net_profit={result.summary.net_profit:,.2f}"
            )
        except StrategyLabError as e:
            log.warning(f"Backtest {run.id} failed: {e}")
            run.fail(e.message)
        except Exception as e:
            log.exception(f"Backtest {run.id} failed: {e}")
            run.fail(str(e))

        self.runs.save(run)
        return run

    def get_strategy(self, strategy_id: str) -> StrategyDefinition:
        strategy = self.strategies.get(strategy_id)
        if strategy is None:
            raise StrategyNotFound(f"Strategy {strategy_id} not found")
        return strategy

    def fetch_bars(self, symbol: str, timeframe: str, start: Any, end: Any) -> pd.DataFrame:
        """
        Fetch and validate bars.

        Raises:
            DataUnavailable: the source returned no bars
        """
        raw = self.data_source.fetch(symbol, timeframe, start, end)
        if raw is None or len(raw) == 0:
            raise DataUnavailable(
                f"No historical data for {symbol} {timeframe}",
                {"start": str(start), "end": str(end)},
            )
        return validate_ohlcv(raw)

    def run_stage(
        self,
        strategy: StrategyDefinition,
        start: Any,
        end: Any,
        timeframe: str,
        stage: BacktestStage,
        initial_capital: float,
        lot_size: float,
        leverage: float,
    ) -> StageResult:
        """Fetch bars for the period and evaluate one stage. Raises on failure."""
        bars = self.fetch_bars(strategy.symbol, timeframe, start, end)
        return self.evaluate_stage(strategy, bars, timeframe, stage, initial_capital, lot_size, leverage)

    def evaluate_stage(
        self,
        strategy: StrategyDefinition,
        bars: pd.DataFrame,
        timeframe: str,
        stage: BacktestStage,
        initial_capital: float,
        lot_size: float,
        leverage: float,
        start_index: Optional[int] = None,
    ) -> StageResult:
        """
        Scan already-loaded bars and summarize the trades.

        The summary carries stopped_reason / final_capital only when the
        bankruptcy stop fired.
        """
        scan = scan_bars(
            bars,
            strategy.entry_conditions,
            strategy.exit_settings,
            strategy.side,
            timeframe,
            initial_capital,
            lot_size,
            leverage,
            start_index=start_index,
        )

        summary = calculate_summary(scan.trades, initial_capital)
        if scan.stopped_reason == StoppedReason.BANKRUPTCY:
            summary.stopped_reason = StoppedReason.BANKRUPTCY
            summary.final_capital = scan.final_capital

        return StageResult(
            timeframe=getattr(timeframe, "value", timeframe),
            stage=stage,
            summary=summary,
            trades=scan.trades,
            bars=len(bars),
        )


_engine: Optional[BacktestEngine] = None


def get_engine() -> BacktestEngine:
    """Get the process-wide default engine (mock data, in-memory repositories)."""
    global _engine
    if _engine is None:
        _engine = BacktestEngine()
    return _engine


__all__ = [
    "ScanState",
    "ScanResult",
    "StageResult",
    "BacktestEngine",
    "scan_bars",
    "make_trade",
    "required_margin",
    "get_engine",
]
