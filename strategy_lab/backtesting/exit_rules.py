"""
Exit Rule Evaluator

Decides whether an open position closes on the current bar:
take-profit, stop-loss, holding-time timeout, or no exit.

Modelling notes:
- When a bar's range touches both levels, take-profit wins (optimistic
  intrabar fill order). Bar data cannot tell which level was hit first.
- Pip size follows the FX convention: 0.01 for prices above 50 (JPY
  quotes), 0.0001 otherwise.
"""

from dataclasses import dataclass
from typing import Any

from strategy_lab.backtesting.models import ExitLevel, ExitReason, ExitSettings, PriceUnit, TradeSide
from strategy_lab.utils.time import interval_minutes

# Prices above this are quoted with 2-decimal pips
PIP_PRICE_THRESHOLD = 50.0


@dataclass(frozen=True)
class ExitDecision:
    """Result of an exit check"""

    should_exit: bool
    exit_price: float
    reason: ExitReason

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_exit": self.should_exit,
            "exit_price": self.exit_price,
            "reason": getattr(self.reason, "value", self.reason),
        }


NO_EXIT = ExitDecision(should_exit=False, exit_price=0.0, reason=ExitReason.SIGNAL)


def pip_size(entry_price: float) -> float:
    return 0.01 if entry_price > PIP_PRICE_THRESHOLD else 0.0001


def _distance(level: ExitLevel, entry_price: float) -> float:
    if level.unit == PriceUnit.PERCENT:
        return entry_price * (level.value / 100.0)
    return level.value * pip_size(entry_price)


def exit_prices(entry_price: float, side: str, exit_settings: ExitSettings) -> tuple[float, float]:
    """
    Absolute take-profit and stop-loss prices for a position.

    Returns:
        (take_profit_price, stop_loss_price)
    """
    tp_diff = _distance(exit_settings.take_profit, entry_price)
    sl_diff = _distance(exit_settings.stop_loss, entry_price)

    if side == TradeSide.BUY:
        return entry_price + tp_diff, entry_price - sl_diff
    return entry_price - tp_diff, entry_price + sl_diff


def check_exit(
    bar: Any,
    entry_price: float,
    side: str,
    exit_settings: ExitSettings,
    bars_held: int,
    timeframe: str,
) -> ExitDecision:
    """
    Check the exit rules against one bar.

    Args:
        bar: Object or row with high / low / close (pandas row, namedtuple, ...)
        entry_price: Position entry price
        side: "buy" or "sell"
        exit_settings: Take-profit / stop-loss / max holding time
        bars_held: Bars since the entry bar (0 on the entry bar itself)
        timeframe: Bar timeframe, used to convert bars_held into minutes

    Returns:
        ExitDecision; exits fill at the level price, timeouts at the bar close
    """
    tp_price, sl_price = exit_prices(entry_price, side, exit_settings)
    high = float(bar.high)
    low = float(bar.low)

    if side == TradeSide.BUY:
        if high >= tp_price:
            return ExitDecision(True, tp_price, ExitReason.TAKE_PROFIT)
        if low <= sl_price:
            return ExitDecision(True, sl_price, ExitReason.STOP_LOSS)
    else:
        if low <= tp_price:
            return ExitDecision(True, tp_price, ExitReason.TAKE_PROFIT)
        if high >= sl_price:
            return ExitDecision(True, sl_price, ExitReason.STOP_LOSS)

    max_minutes = exit_settings.max_holding_minutes
    if max_minutes and bars_held * interval_minutes(timeframe) >= max_minutes:
        return ExitDecision(True, float(bar.close), ExitReason.TIMEOUT)

    return NO_EXIT


__all__ = ["ExitDecision", "NO_EXIT", "pip_size", "exit_prices", "check_exit"]
