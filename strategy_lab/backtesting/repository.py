"""
Strategy and run repositories.

The engine depends on these two narrow interfaces; persistence backends
implement them. In-memory implementations are provided for tests,
notebooks and single-process use.
"""

import threading
from typing import Optional, Protocol

from loguru import logger

from strategy_lab.backtesting.models import BacktestRun, StrategyDefinition


class StrategyRepository(Protocol):
    def get(self, strategy_id: str) -> Optional[StrategyDefinition]: ...


class BacktestRunRepository(Protocol):
    def save(self, run: BacktestRun) -> None: ...

    def get(self, run_id: str) -> Optional[BacktestRun]: ...

    def history(self, strategy_id: str, limit: int = 20) -> list[BacktestRun]: ...


class InMemoryStrategyRepository:
    """Strategies keyed by id."""

    def __init__(self, strategies: Optional[list[StrategyDefinition]] = None):
        self._strategies: dict[str, StrategyDefinition] = {}
        for strategy in strategies or []:
            self.save(strategy)

    def save(self, strategy: StrategyDefinition) -> None:
        self._strategies[strategy.id] = strategy

    def get(self, strategy_id: str) -> Optional[StrategyDefinition]:
        return self._strategies.get(strategy_id)


class InMemoryBacktestRunRepository:
    """Finished backtest runs, thread-safe."""

    def __init__(self):
        self._runs: dict[str, BacktestRun] = {}
        self._lock = threading.Lock()

    def save(self, run: BacktestRun) -> None:
        with self._lock:
            self._runs[run.id] = run
        logger.debug(f"Saved backtest run {run.id} ({run.status})")

    def get(self, run_id: str) -> Optional[BacktestRun]:
        with self._lock:
            return self._runs.get(run_id)

    def history(self, strategy_id: str, limit: int = 20) -> list[BacktestRun]:
        """Runs of a strategy, newest first."""
        with self._lock:
            runs = [r for r in self._runs.values() if r.strategy_id == strategy_id]
        runs.sort(key=lambda r: r.executed_at, reverse=True)
        return runs[:limit]


__all__ = [
    "StrategyRepository",
    "BacktestRunRepository",
    "InMemoryStrategyRepository",
    "InMemoryBacktestRunRepository",
]
