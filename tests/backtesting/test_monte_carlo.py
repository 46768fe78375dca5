"""
Tests for Monte Carlo random-entry validation.
"""

import math

import numpy as np
import pytest
from pydantic import ValidationError

from strategy_lab.backtesting.data_source import InMemoryDataSource
from strategy_lab.backtesting.models import PerformanceSummary
from strategy_lab.backtesting.monte_carlo import (
    METRICS,
    MonteCarloRequest,
    MonteCarloValidator,
    OverallAssessment,
    SimulationResult,
    assess,
)
from strategy_lab.core.exceptions import InsufficientData


def make_request(**overrides):
    params = {
        "symbol": "USDJPY",
        "timeframe": "1h",
        "start_date": "2024-01-01T00:00:00Z",
        "end_date": "2024-02-01T00:00:00Z",
        "iterations": 100,
        "take_profit": 0.3,
        "stop_loss": 0.3,
        "lot_size": 1,
        "seed": 42,
    }
    params.update(overrides)
    return MonteCarloRequest(**params)


@pytest.fixture
def validator(random_bars):
    return MonteCarloValidator(InMemoryDataSource({("USDJPY", "1h"): random_bars}))


class TestMonteCarloRequest:
    def test_defaults(self):
        request = MonteCarloRequest(
            symbol="EURUSD", start_date="2024-01-01", end_date="2024-01-02", take_profit=1, stop_loss=1
        )

        assert request.iterations == 100
        assert request.leverage == 1.0
        assert request.entry_probability == 0.05
        assert request.actual_summary is None

    def test_iterations_are_fixed_choices(self):
        with pytest.raises(ValidationError):
            make_request(iterations=200)

    def test_exit_settings(self):
        settings = make_request(take_profit=0.5, stop_loss=0.2, max_holding_minutes=60).exit_settings

        assert settings.take_profit.value == 0.5
        assert settings.stop_loss.value == 0.2
        assert settings.take_profit.unit == "percent"
        assert settings.max_holding_minutes == 60

    def test_camel_case(self):
        request = MonteCarloRequest.model_validate(
            {
                "symbol": "USDJPY",
                "startDate": "2024-01-01",
                "endDate": "2024-01-02",
                "takeProfit": 1,
                "stopLoss": 1,
                "maxHoldingMinutes": 120,
                "actualSummary": {"winRate": 0.6, "totalTrades": 10},
            }
        )

        assert request.max_holding_minutes == 120
        assert request.actual_summary.win_rate == 0.6


class TestMonteCarloRun:
    def test_not_enough_bars(self, make_bars):
        validator = MonteCarloValidator(InMemoryDataSource({("USDJPY", "1h"): make_bars([100.0] * 9)}))

        with pytest.raises(InsufficientData):
            validator.run(make_request())

    def test_no_bars(self):
        with pytest.raises(InsufficientData):
            MonteCarloValidator(InMemoryDataSource()).run(make_request())

    def test_result_shape(self, validator):
        result = validator.run(make_request())

        assert result.iterations == 100
        assert result.bars == 500
        assert [s.id for s in result.simulations] == list(range(100))
        assert set(result.statistics) == set(METRICS)
        assert sum(b.count for b in result.statistics["win_rate"].histogram) == 100
        assert result.comparison is None

    def test_seed_is_reproducible(self, validator):
        first = validator.run(make_request(seed=7))
        second = validator.run(make_request(seed=7))

        assert [s.to_dict() for s in first.simulations] == [s.to_dict() for s in second.simulations]

    def test_different_seeds_differ(self, validator):
        first = validator.run(make_request(seed=1))
        second = validator.run(make_request(seed=2))

        assert [s.to_dict() for s in first.simulations] != [s.to_dict() for s in second.simulations]

    def test_thread_pool_matches_sequential(self, random_bars):
        source = InMemoryDataSource({("USDJPY", "1h"): random_bars})
        sequential = MonteCarloValidator(source, max_workers=1).run(make_request(seed=3))
        parallel = MonteCarloValidator(source, max_workers=4).run(make_request(seed=3))

        assert [s.to_dict() for s in sequential.simulations] == [s.to_dict() for s in parallel.simulations]

    def test_always_entering(self, validator):
        result = validator.run(make_request(entry_probability=1.0))

        assert all(s.total_trades > 0 for s in result.simulations)
        assert all(0.0 <= s.win_rate <= 1.0 for s in result.simulations)
        assert all(s.profit_factor <= 10 for s in result.simulations)

    def test_with_actual_summary(self, validator):
        actual = PerformanceSummary(
            total_trades=20, win_rate=0.9, profit_factor=5.0, max_drawdown_rate=0.0, net_profit_rate=0.5
        )

        result = validator.run(make_request(actual_summary=actual))

        assert result.comparison is not None
        assert 0.0 <= result.comparison.average_percentile <= 100.0
        data = result.to_dict(include_simulations=False)
        assert "simulations" not in data
        assert data["comparison"]["overall_assessment"] in {a.value for a in OverallAssessment}


class TestDistribution:
    def test_statistics(self, validator):
        stats = validator.calculate_distribution([float(v) for v in range(1, 11)])

        assert stats.mean == pytest.approx(5.5)
        assert stats.median == 6.0
        assert stats.std_dev == pytest.approx(math.sqrt(8.25))
        assert stats.min == 1.0
        assert stats.max == 10.0
        assert stats.percentiles == {"p5": 1.0, "p25": 3.0, "p50": 5.0, "p75": 7.0, "p95": 9.0}

    def test_histogram(self, validator):
        values = np.linspace(0.0, 1.0, 101)

        stats = validator.calculate_distribution(values)

        assert len(stats.histogram) == 10
        assert sum(b.count for b in stats.histogram) == 101
        assert stats.histogram[0].min == 0.0
        assert stats.histogram[-1].max == pytest.approx(1.0)
        assert sum(b.percentage for b in stats.histogram) == pytest.approx(100.0)

    def test_constant_values(self, validator):
        stats = validator.calculate_distribution([0.5] * 5)

        assert stats.std_dev == 0.0
        assert stats.histogram[0].max - stats.histogram[0].min == pytest.approx(0.1)
        assert stats.histogram[0].count == 5


class TestComparison:
    @staticmethod
    def simulations():
        return [
            SimulationResult(id=i, win_rate=wr, profit_factor=pf, max_drawdown_rate=dd, net_profit_rate=np_, total_trades=10)
            for i, (wr, pf, dd, np_) in enumerate(
                [(0.3, 0.8, 0.05, -0.01), (0.4, 1.0, 0.10, 0.0), (0.5, 1.2, 0.15, 0.01), (0.6, 1.5, 0.20, 0.02)]
            )
        ]

    def test_median_rank(self):
        values = list(range(1000))

        assert MonteCarloValidator.percentile_rank(values, 500) == pytest.approx(50.0, abs=1.0)

    def test_drawdown_rank_is_inverted(self):
        drawdowns = [0.1, 0.2, 0.3, 0.4]

        assert MonteCarloValidator.percentile_rank(drawdowns, 0.15, lower_is_better=True) == 75.0
        assert MonteCarloValidator.percentile_rank(drawdowns, 0.15) == 25.0

    def test_empty_values(self):
        assert MonteCarloValidator.percentile_rank([], 1.0) == 0.0

    def test_compare_with_actual(self, validator):
        actual = PerformanceSummary(win_rate=0.55, profit_factor=1.3, max_drawdown_rate=0.12, net_profit_rate=0.015)

        comparison = validator.compare_with_actual(self.simulations(), actual)

        assert comparison.win_rate_percentile == 75.0
        assert comparison.profit_factor_percentile == 75.0
        assert comparison.max_drawdown_percentile == 50.0
        assert comparison.net_profit_rate_percentile == 75.0
        assert comparison.average_percentile == pytest.approx(68.75)
        assert comparison.overall_assessment == OverallAssessment.AVERAGE

    def test_infinite_profit_factor_is_capped(self, validator):
        actual = PerformanceSummary(profit_factor=math.inf)
        simulations = self.simulations()
        simulations[0].profit_factor = 10.0

        comparison = validator.compare_with_actual(simulations, actual)

        # Capped at 10: strictly better than the three others, tied with one
        assert comparison.profit_factor_percentile == 75.0


class TestAssess:
    @pytest.mark.parametrize(
        "average,expected",
        [
            (95.0, OverallAssessment.EXCELLENT),
            (90.0, OverallAssessment.EXCELLENT),
            (89.9, OverallAssessment.GOOD),
            (75.0, OverallAssessment.GOOD),
            (50.0, OverallAssessment.AVERAGE),
            (25.0, OverallAssessment.POOR),
            (24.9, OverallAssessment.VERY_POOR),
            (0.0, OverallAssessment.VERY_POOR),
        ],
    )
    def test_tiers(self, average, expected):
        assessment, comment = assess(average)

        assert assessment == expected
        assert comment
