"""
Backtesting Models

Pydantic models for strategies, backtest requests, trades, performance
summaries and run records.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from strategy_lab.backtesting.conditions import ConditionNode
from strategy_lab.settings import SETTINGS
from strategy_lab.utils.time import TIMEFRAME_MINUTES, parse_datetime, utc_now


class TradeSide(str, Enum):
    """Position direction"""

    BUY = "buy"
    SELL = "sell"


class ExitReason(str, Enum):
    """Why a position was closed"""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIMEOUT = "timeout"
    SIGNAL = "signal"


class TradeOutcome(str, Enum):
    """Result class of a closed trade"""

    WIN = "win"
    LOSS = "loss"
    TIMEOUT = "timeout"


class PriceUnit(str, Enum):
    """Unit of take-profit / stop-loss distances"""

    PERCENT = "percent"
    PIPS = "pips"


class BacktestStatus(str, Enum):
    """Backtest run lifecycle status"""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BacktestStage(str, Enum):
    """Stage 1 = coarse timeframe scan, Stage 2 = 1-minute refinement"""

    STAGE1 = "stage1"
    STAGE2 = "stage2"


class Timeframe(str, Enum):
    """Supported bar timeframes"""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def minutes(self) -> int:
        return TIMEFRAME_MINUTES[self.value]


# Timeframes allowed for the Stage 1 scan
STAGE1_TIMEFRAMES = frozenset({Timeframe.M15, Timeframe.M30, Timeframe.H1, Timeframe.H4, Timeframe.D1})

# Timeframe of the Stage 2 refinement scan
STAGE2_TIMEFRAME = Timeframe.M1


class ConfidenceLevel(str, Enum):
    """Sample-size based confidence in the summary statistics"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StoppedReason(str, Enum):
    BANKRUPTCY = "bankruptcy"
    COMPLETED = "completed"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


def _round_float(value: float) -> Optional[float]:
    return round(value, 6) if math.isfinite(value) else None


# =============================================================================
# STRATEGY
# =============================================================================


class ExitLevel(_CamelModel):
    """Take-profit or stop-loss distance from the entry price"""

    value: float = Field(..., gt=0, description="Distance, in percent of entry price or in pips")
    unit: PriceUnit = PriceUnit.PERCENT


class ExitSettings(_CamelModel):
    """Exit rules applied to every open position"""

    take_profit: ExitLevel
    stop_loss: ExitLevel
    max_holding_minutes: Optional[int] = Field(
        default=None,
        gt=0,
        description="Close at bar close once the position has been held this long",
    )


class StrategyDefinition(_CamelModel):
    """Current version of a stored strategy"""

    id: str
    name: str = ""
    symbol: str
    side: TradeSide = TradeSide.BUY
    version_id: str = ""
    version_number: int = 1
    entry_conditions: Optional[ConditionNode] = None
    exit_settings: ExitSettings


# =============================================================================
# TRADES & SUMMARY
# =============================================================================


class TradeEvent(_CamelModel):
    """Closed simulated trade. Immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True, frozen=True)

    id: str
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    side: TradeSide
    lot_size: float
    pnl: float
    pnl_percent: float = Field(0.0, description="P&L relative to required margin (%)")
    exit_reason: ExitReason

    @property
    def outcome(self) -> TradeOutcome:
        """Timeout exits keep their own class; otherwise the sign of pnl decides."""
        if self.exit_reason == ExitReason.TIMEOUT:
            return TradeOutcome.TIMEOUT
        return TradeOutcome.WIN if self.pnl > 0 else TradeOutcome.LOSS


class PerformanceSummary(_CamelModel):
    """Aggregate statistics derived from a trade list and the initial capital"""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = Field(0.0, description="Fraction 0-1, not percent")
    net_profit: float = 0.0
    net_profit_rate: float = Field(0.0, description="net_profit / initial_capital")
    max_drawdown: float = 0.0
    max_drawdown_rate: float = Field(0.0, description="max_drawdown / initial_capital")
    profit_factor: float = Field(0.0, description="gross profit / gross loss; inf when no losses")
    average_win: float = 0.0
    average_loss: float = Field(0.0, description="Average losing amount as a positive magnitude")
    risk_reward_ratio: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0

    # Statistical metrics (require >= 2 trades)
    sharpe_ratio: Optional[float] = None
    sortino_ratio: Optional[float] = None
    p_value: Optional[float] = None
    is_statistically_significant: Optional[bool] = None
    confidence_level: ConfidenceLevel = ConfidenceLevel.LOW

    # Early termination
    stopped_reason: Optional[StoppedReason] = None
    final_capital: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Plain dict with floats rounded; inf / nan become None."""
        data = self.model_dump()
        return {k: _round_float(v) if isinstance(v, float) else v for k, v in data.items()}


# =============================================================================
# REQUESTS & RUNS
# =============================================================================


class BacktestRequest(_CamelModel):
    """Input of a single backtest run"""

    strategy_id: str
    start_date: datetime
    end_date: datetime
    stage1_timeframe: Timeframe = Timeframe.H1
    run_stage2: bool = False
    initial_capital: float = Field(default_factory=lambda: SETTINGS.backtest.default_initial_capital, gt=0)
    lot_size: float = Field(default_factory=lambda: SETTINGS.backtest.default_lot_size, gt=0)
    leverage: float = Field(default_factory=lambda: SETTINGS.backtest.default_leverage, ge=1, le=1000)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return parse_datetime(value)

    @field_validator("stage1_timeframe", mode="after")
    @classmethod
    def _coarse_timeframe(cls, value: Any) -> Any:
        if Timeframe(value) not in STAGE1_TIMEFRAMES:
            raise ValueError(f"Stage 1 timeframe must be one of {sorted(t.value for t in STAGE1_TIMEFRAMES)}")
        return value

    @model_validator(mode="after")
    def _check_period(self) -> "BacktestRequest":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be earlier than end_date")
        return self


class BacktestRun(_CamelModel):
    """
    Backtest run record.

    Created with status=running at run start and finalized exactly once,
    to completed or failed.
    """

    id: str
    strategy_id: str
    strategy_version_id: str = ""
    version_number: int = 0
    executed_at: datetime = Field(default_factory=utc_now)
    start_date: datetime
    end_date: datetime
    timeframe: Timeframe
    stage: BacktestStage = BacktestStage.STAGE1
    summary: PerformanceSummary = Field(default_factory=PerformanceSummary)
    trades: list[TradeEvent] = Field(default_factory=list)
    status: BacktestStatus = BacktestStatus.RUNNING
    error_message: Optional[str] = None

    def complete(
        self,
        summary: PerformanceSummary,
        trades: list[TradeEvent],
        timeframe: Timeframe,
        stage: BacktestStage,
    ) -> None:
        self._ensure_running()
        self.summary = summary
        self.trades = list(trades)
        self.timeframe = timeframe
        self.stage = stage
        self.status = BacktestStatus.COMPLETED

    def fail(self, error_message: str) -> None:
        self._ensure_running()
        self.summary = PerformanceSummary()
        self.trades = []
        self.status = BacktestStatus.FAILED
        self.error_message = error_message

    def _ensure_running(self) -> None:
        if self.status != BacktestStatus.RUNNING:
            raise RuntimeError(f"Backtest run {self.id} is already {self.status}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "version_number": self.version_number,
            "executed_at": self.executed_at.isoformat(),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "timeframe": self.timeframe,
            "stage": self.stage,
            "status": self.status,
            "summary": self.summary.to_dict(),
            "trades": [t.model_dump(mode="json") for t in self.trades],
            "error_message": self.error_message,
        }


__all__ = [
    "TradeSide",
    "ExitReason",
    "TradeOutcome",
    "PriceUnit",
    "BacktestStatus",
    "BacktestStage",
    "Timeframe",
    "STAGE1_TIMEFRAMES",
    "STAGE2_TIMEFRAME",
    "ConfidenceLevel",
    "StoppedReason",
    "ExitLevel",
    "ExitSettings",
    "StrategyDefinition",
    "TradeEvent",
    "PerformanceSummary",
    "BacktestRequest",
    "BacktestRun",
]
