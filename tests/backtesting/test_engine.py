"""
Tests for the bar-by-bar backtest engine.
"""

import pytest
from pydantic import ValidationError

from strategy_lab.backtesting.engine import BacktestEngine, get_engine, scan_bars
from strategy_lab.backtesting.data_source import InMemoryDataSource
from strategy_lab.backtesting.models import (
    BacktestRequest,
    BacktestStage,
    BacktestStatus,
    ExitLevel,
    ExitSettings,
    PerformanceSummary,
    StoppedReason,
)
from strategy_lab.backtesting.repository import InMemoryStrategyRepository
from strategy_lab.backtesting.conditions import parse_condition
from strategy_lab.core.exceptions import InvalidStrategyConfig

WARMUP = 50


def cycle_bars(make_bars, cycles, win=True, freq="1h", warmup=WARMUP):
    """
    Flat bars at 100 followed by 2-bar cycles: a flat signal bar, then a bar
    whose high (win) or low (loss) reaches a 10% exit.
    """
    n = warmup + 2 * cycles
    highs = [100.0] * n
    lows = [100.0] * n
    for k in range(cycles):
        j = warmup + 2 * k + 1
        if win:
            highs[j] = 111.0
        else:
            lows[j] = 89.0
    return make_bars([100.0] * n, freq=freq, highs=highs, lows=lows)


class RecordingDataSource(InMemoryDataSource):
    def __init__(self, frames=None):
        super().__init__(frames)
        self.calls = []

    def fetch(self, symbol, timeframe, start, end):
        self.calls.append((symbol, timeframe))
        return super().fetch(symbol, timeframe, start, end)


@pytest.fixture
def always():
    return parse_condition({"indicatorId": "price", "field": "close", "operator": ">", "compareTarget": {"value": 0}})


@pytest.fixture
def ten_percent_exits():
    return ExitSettings(take_profit=ExitLevel(value=10), stop_loss=ExitLevel(value=10))


def make_request(**overrides):
    params = {
        "strategy_id": "strategy-1",
        "start_date": "2024-01-01T00:00:00Z",
        "end_date": "2024-01-10T00:00:00Z",
        "stage1_timeframe": "1h",
    }
    params.update(overrides)
    return BacktestRequest(**params)


class TestScanBars:
    def test_entry_at_next_bar_open(self, make_bars, always):
        bars = make_bars(
            [100.0, 101.0, 102.0, 102.0, 102.0],
            opens=[100.0, 101.0, 101.0, 102.0, 102.0],
            highs=[100.0, 101.0, 103.0, 102.0, 102.0],
            lows=[100.0, 101.0, 101.0, 102.0, 102.0],
        )
        exits = ExitSettings(take_profit=ExitLevel(value=1), stop_loss=ExitLevel(value=1))

        result = scan_bars(bars, always, exits, "buy", "1h", 1_000_000, 1, 1, start_index=0)

        # Signal on bar 0 fills at bar 1's open; the position opened on bar 3 is still open at the end
        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.entry_time == bars.index[1].to_pydatetime()
        assert trade.entry_price == pytest.approx(101.0)
        assert trade.exit_time == bars.index[2].to_pydatetime()
        assert trade.exit_price == pytest.approx(102.01)
        assert trade.exit_reason == "take_profit"
        assert trade.pnl == pytest.approx(1.01)
        # Margin = lot * entry / leverage = 101
        assert trade.pnl_percent == pytest.approx(1.0)
        assert result.stopped_reason == StoppedReason.COMPLETED

    def test_no_entry_on_last_bar(self, make_bars, always, ten_percent_exits):
        result = scan_bars(make_bars([100.0]), always, ten_percent_exits, "buy", "1h", 1000, 1, 1, start_index=0)

        assert result.trades == []

    def test_warmup_bars_are_skipped(self, make_bars, always, ten_percent_exits):
        bars = cycle_bars(make_bars, cycles=2, warmup=WARMUP)

        result = scan_bars(bars, always, ten_percent_exits, "buy", "1h", 1_000_000, 1, 1)

        assert len(result.trades) == 2
        assert result.trades[0].entry_time == bars.index[WARMUP + 1].to_pydatetime()

    def test_bankruptcy_stop(self, make_bars, always, ten_percent_exits):
        # Every cycle loses 10 * 10 = 100 of 1000 initial capital
        bars = cycle_bars(make_bars, cycles=10, win=False, warmup=0)

        result = scan_bars(bars, always, ten_percent_exits, "buy", "1h", 1000, 10, 1, start_index=0)

        assert len(result.trades) == 5
        assert result.stopped_reason == StoppedReason.BANKRUPTCY
        assert result.final_capital == pytest.approx(500.0)
        assert all(t.exit_reason == "stop_loss" for t in result.trades)

    def test_sell_side(self, make_bars, always, ten_percent_exits):
        bars = cycle_bars(make_bars, cycles=1, win=False, warmup=0)

        result = scan_bars(bars, always, ten_percent_exits, "sell", "1h", 1000, 1, 1, start_index=0)

        # A drop to 89 is the sell take-profit at 90
        assert len(result.trades) == 1
        assert result.trades[0].exit_reason == "take_profit"
        assert result.trades[0].pnl == pytest.approx(10.0)

    def test_invalid_tree_fails_before_scanning(self, make_bars, ten_percent_exits):
        with pytest.raises(InvalidStrategyConfig):
            scan_bars(make_bars([100.0] * 5), None, ten_percent_exits, "buy", "1h", 1000, 1, 1)


class TestBacktestRequest:
    def test_defaults(self):
        request = make_request()

        assert request.stage1_timeframe == "1h"
        assert request.run_stage2 is False
        assert request.initial_capital == 1_000_000
        assert request.lot_size == 10_000
        assert request.leverage == 25
        assert request.start_date.tzinfo is not None

    def test_camel_case_input(self):
        request = BacktestRequest.model_validate(
            {
                "strategyId": "s",
                "startDate": "2024-01-01",
                "endDate": "2024-02-01",
                "stage1Timeframe": "4h",
                "runStage2": True,
            }
        )

        assert request.stage1_timeframe == "4h"
        assert request.run_stage2 is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"start_date": "2024-02-01", "end_date": "2024-01-01"},
            {"stage1_timeframe": "1m"},
            {"initial_capital": 0},
            {"lot_size": -1},
            {"leverage": 1001},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ValidationError):
            make_request(**overrides)


class TestBacktestEngine:
    @pytest.fixture
    def strategies(self, make_strategy, price_leaf):
        return InMemoryStrategyRepository([make_strategy(price_leaf(">", 0.0), take_profit=10, stop_loss=10)])

    def test_completed_run(self, make_bars, strategies):
        source = InMemoryDataSource({("USDJPY", "1h"): cycle_bars(make_bars, cycles=3)})
        engine = BacktestEngine(data_source=source, strategies=strategies)

        run = engine.run(make_request(lot_size=1))

        assert run.status == BacktestStatus.COMPLETED
        assert run.error_message is None
        assert run.stage == BacktestStage.STAGE1
        assert run.timeframe == "1h"
        assert run.version_number == 1
        assert run.summary.total_trades == 3
        assert run.summary.win_rate == 1.0
        assert run.summary.net_profit == pytest.approx(30.0)
        assert engine.runs.get(run.id) is run

    def test_stage2_replaces_stage1(self, make_bars, strategies):
        source = InMemoryDataSource(
            {
                ("USDJPY", "1h"): cycle_bars(make_bars, cycles=2),
                ("USDJPY", "1m"): cycle_bars(make_bars, cycles=3, win=False, freq="1min"),
            }
        )
        engine = BacktestEngine(data_source=source, strategies=strategies)

        run = engine.run(make_request(run_stage2=True, lot_size=1))

        assert run.status == BacktestStatus.COMPLETED
        assert run.stage == BacktestStage.STAGE2
        assert run.timeframe == "1m"
        assert run.summary.total_trades == 3
        assert run.summary.losing_trades == 3

    def test_stage2_skipped_without_stage1_trades(self, make_bars, strategies):
        source = RecordingDataSource(
            {
                ("USDJPY", "1h"): make_bars([100.0] * 60),
                ("USDJPY", "1m"): cycle_bars(make_bars, cycles=3, freq="1min"),
            }
        )
        engine = BacktestEngine(data_source=source, strategies=strategies)

        run = engine.run(make_request(run_stage2=True))

        assert run.stage == BacktestStage.STAGE1
        assert run.summary.total_trades == 0
        assert source.calls == [("USDJPY", "1h")]

    def test_bankruptcy_in_summary(self, make_bars, make_strategy, price_leaf):
        strategies = InMemoryStrategyRepository([make_strategy(price_leaf(">", 0.0), take_profit=10, stop_loss=10)])
        source = InMemoryDataSource({("USDJPY", "1h"): cycle_bars(make_bars, cycles=10, win=False)})
        engine = BacktestEngine(data_source=source, strategies=strategies)

        run = engine.run(make_request(initial_capital=1000, lot_size=10))

        assert run.status == BacktestStatus.COMPLETED
        assert run.summary.total_trades == 5
        assert run.summary.stopped_reason == "bankruptcy"
        assert run.summary.final_capital == pytest.approx(500.0)

    def test_invalid_tree_fails_before_fetching(self, make_strategy):
        source = RecordingDataSource()
        strategies = InMemoryStrategyRepository([make_strategy({"operator": "AND", "conditions": []})])
        engine = BacktestEngine(data_source=source, strategies=strategies)

        run = engine.run(make_request())

        assert run.status == BacktestStatus.FAILED
        assert run.error_message
        assert run.trades == []
        assert run.summary == PerformanceSummary()
        assert source.calls == []

    def test_unknown_strategy(self):
        engine = BacktestEngine(data_source=InMemoryDataSource())

        run = engine.run(make_request(strategy_id="missing"))

        assert run.status == BacktestStatus.FAILED
        assert "missing" in run.error_message

    def test_no_data(self, strategies):
        engine = BacktestEngine(data_source=InMemoryDataSource(), strategies=strategies)

        run = engine.run(make_request())

        assert run.status == BacktestStatus.FAILED
        assert run.summary.total_trades == 0

    def test_unexpected_error_becomes_failed_run(self, strategies):
        class BrokenSource:
            def fetch(self, symbol, timeframe, start, end):
                raise RuntimeError("connection reset")

        engine = BacktestEngine(data_source=BrokenSource(), strategies=strategies)

        run = engine.run(make_request())

        assert run.status == BacktestStatus.FAILED
        assert run.error_message == "connection reset"

    def test_history_newest_first(self, make_bars, strategies):
        source = InMemoryDataSource({("USDJPY", "1h"): cycle_bars(make_bars, cycles=1)})
        engine = BacktestEngine(data_source=source, strategies=strategies)

        first = engine.run(make_request())
        second = engine.run(make_request())

        history = engine.runs.history("strategy-1")
        assert {r.id for r in history} == {first.id, second.id}
        assert history[0].executed_at >= history[1].executed_at
        assert engine.runs.history("other") == []

    def test_finalized_run_cannot_change(self, make_bars, strategies):
        source = InMemoryDataSource({("USDJPY", "1h"): cycle_bars(make_bars, cycles=1)})
        run = BacktestEngine(data_source=source, strategies=strategies).run(make_request())

        with pytest.raises(RuntimeError):
            run.fail("late failure")

    def test_to_dict(self, make_bars, strategies):
        source = InMemoryDataSource({("USDJPY", "1h"): cycle_bars(make_bars, cycles=1)})
        data = BacktestEngine(data_source=source, strategies=strategies).run(make_request()).to_dict()

        assert data["status"] == "completed"
        assert data["summary"]["total_trades"] == 1
        assert data["trades"][0]["exit_reason"] == "take_profit"


def test_get_engine_is_shared():
    assert get_engine() is get_engine()
