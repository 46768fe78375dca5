"""
PnL & Summary Calculator

Pure functions turning a trade list into realized P&L and a performance
summary. No I/O, no logging.

Numeric edge cases never raise:
- no trades           -> all-zero summary, confidence "low", ratios None
- no losing trades    -> profit_factor = inf (0 when there is no profit either)
- zero return variance -> sharpe_ratio None, t statistic 0
"""

import math
from typing import Optional, Sequence

from strategy_lab.backtesting.models import (
    ConfidenceLevel,
    PerformanceSummary,
    TradeEvent,
    TradeSide,
)
from strategy_lab.core.statistics import PValueApproximation, two_sided_p_value

# Trading days per year used to annualize per-trade ratios
ANNUALIZATION_DAYS = 252

SIGNIFICANCE_LEVEL = 0.05

HIGH_CONFIDENCE_TRADES = 30
MEDIUM_CONFIDENCE_TRADES = 10


def calculate_pnl(side: str, entry_price: float, exit_price: float, lot_size: float) -> float:
    """
    Realized P&L of a closed position.

    Args:
        side: "buy" or "sell"
        entry_price: Entry fill price
        exit_price: Exit fill price
        lot_size: Units traded (e.g. 10000 = 10k currency units)
    """
    if side == TradeSide.BUY:
        return (exit_price - entry_price) * lot_size
    return (entry_price - exit_price) * lot_size


def calculate_profit_factor(gross_profit: float, gross_loss: float) -> float:
    """gross profit / gross loss with inf / 0 sentinels for zero losses."""
    if gross_loss > 0:
        return gross_profit / gross_loss
    return math.inf if gross_profit > 0 else 0.0


def create_empty_summary() -> PerformanceSummary:
    """Summary of an empty trade list."""
    return PerformanceSummary(confidence_level=ConfidenceLevel.LOW)


def calculate_summary(
    trades: Sequence[TradeEvent],
    initial_capital: float,
    approximation: PValueApproximation = two_sided_p_value,
) -> PerformanceSummary:
    """
    Build the performance summary of a trade list.

    Args:
        trades: Closed trades in chronological order
        initial_capital: Starting capital, denominator of every *_rate field
        approximation: Two-sided p-value function for the t statistic

    Returns:
        PerformanceSummary (rates are fractions, not percentages)
    """
    if not trades:
        return create_empty_summary()

    winning = [t for t in trades if t.pnl > 0]
    losing = [t for t in trades if t.pnl < 0]

    net_profit = sum(t.pnl for t in trades)
    gross_profit = sum(t.pnl for t in winning)
    gross_loss = abs(sum(t.pnl for t in losing))

    max_drawdown = calculate_max_drawdown([t.pnl for t in trades], initial_capital)
    max_wins, max_losses = calculate_streaks([t.pnl for t in trades])

    average_win = gross_profit / len(winning) if winning else 0.0
    average_loss = gross_loss / len(losing) if losing else 0.0
    risk_reward = average_win / average_loss if winning and losing and average_loss > 0 else 0.0

    stats = calculate_statistical_metrics([t.pnl_percent for t in trades], approximation)

    return PerformanceSummary(
        total_trades=len(trades),
        winning_trades=len(winning),
        losing_trades=len(losing),
        win_rate=len(winning) / len(trades),
        net_profit=net_profit,
        net_profit_rate=net_profit / initial_capital,
        max_drawdown=max_drawdown,
        max_drawdown_rate=max_drawdown / initial_capital,
        profit_factor=calculate_profit_factor(gross_profit, gross_loss),
        average_win=average_win,
        average_loss=average_loss,
        risk_reward_ratio=risk_reward,
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
        **stats,
    )


def calculate_max_drawdown(pnls: Sequence[float], initial_capital: float) -> float:
    """Largest peak-to-trough capital decline, the peak starting at initial_capital."""
    peak = initial_capital
    capital = initial_capital
    max_drawdown = 0.0
    for pnl in pnls:
        capital += pnl
        peak = max(peak, capital)
        max_drawdown = max(max_drawdown, peak - capital)
    return max_drawdown


def calculate_streaks(pnls: Sequence[float]) -> tuple[int, int]:
    """
    Longest winning and losing streaks.

    A trade with pnl > 0 is a win; anything else (including breakeven)
    breaks a winning streak and extends the losing one.
    """
    max_wins = max_losses = 0
    current_wins = current_losses = 0
    for pnl in pnls:
        if pnl > 0:
            current_wins += 1
            current_losses = 0
            max_wins = max(max_wins, current_wins)
        else:
            current_losses += 1
            current_wins = 0
            max_losses = max(max_losses, current_losses)
    return max_wins, max_losses


def confidence_for(trade_count: int) -> ConfidenceLevel:
    if trade_count >= HIGH_CONFIDENCE_TRADES:
        return ConfidenceLevel.HIGH
    if trade_count >= MEDIUM_CONFIDENCE_TRADES:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def calculate_statistical_metrics(
    returns: Sequence[float],
    approximation: PValueApproximation = two_sided_p_value,
) -> dict:
    """
    Sharpe / Sortino / t-test over per-trade percentage returns.

    Requires at least 2 returns; otherwise only confidence_level is set.
    Ratios are annualized with sqrt(252), assuming roughly one trade per
    trading day, and a zero risk-free rate.
    The p-value comes from ``approximation(t_stat, n - 1)``.
    """
    n = len(returns)
    if n < 2:
        return {"confidence_level": ConfidenceLevel.LOW}

    mean = sum(returns) / n
    variance = sum((r - mean) ** 2 for r in returns) / (n - 1)
    std_dev = math.sqrt(variance)

    negative = [r for r in returns if r < 0]
    down_variance = sum(r * r for r in negative) / len(negative) if negative else 0.0
    down_std_dev = math.sqrt(down_variance)

    annualization = math.sqrt(ANNUALIZATION_DAYS)
    sharpe: Optional[float] = mean / std_dev * annualization if std_dev > 0 else None
    sortino: Optional[float] = mean / down_std_dev * annualization if down_std_dev > 0 else None

    t_stat = mean / (std_dev / math.sqrt(n)) if std_dev > 0 else 0.0
    p_value = approximation(t_stat, n - 1)

    return {
        "sharpe_ratio": sharpe,
        "sortino_ratio": sortino,
        "p_value": p_value,
        "is_statistically_significant": p_value < SIGNIFICANCE_LEVEL,
        "confidence_level": confidence_for(n),
    }


__all__ = [
    "calculate_pnl",
    "calculate_profit_factor",
    "calculate_summary",
    "calculate_max_drawdown",
    "calculate_streaks",
    "calculate_statistical_metrics",
    "create_empty_summary",
    "confidence_for",
]
