"""
Tests for settings, errors, logging setup and time helpers.
"""

import sys
from datetime import date, datetime, timedelta, timezone

import pandas as pd
import pytest
from loguru import logger

from strategy_lab.core.exceptions import DataUnavailable, InvalidStrategyConfig, StrategyLabError
from strategy_lab.core.logging_config import setup_logging
from strategy_lab.settings import SETTINGS, BacktestSettings, MonteCarloSettings
from strategy_lab.utils.time import interval_minutes, parse_datetime, to_iso, utc_now


class TestSettings:
    def test_defaults(self):
        assert SETTINGS.backtest.warmup_bars == 50
        assert SETTINGS.backtest.bankruptcy_ratio == 0.5
        assert SETTINGS.walk_forward.max_splits == 3
        assert SETTINGS.monte_carlo.profit_factor_cap == 10.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("BACKTEST_WARMUP_BARS", "10")
        monkeypatch.setenv("MONTE_CARLO_SEED", "123")

        assert BacktestSettings().warmup_bars == 10
        assert MonteCarloSettings().seed == 123


class TestExceptions:
    def test_default_message(self):
        error = InvalidStrategyConfig()

        assert error.message == InvalidStrategyConfig.default_message
        assert error.details == {}
        assert isinstance(error, StrategyLabError)

    def test_details_in_str(self):
        error = DataUnavailable("No bars", {"symbol": "USDJPY"})

        assert str(error) == "DataUnavailable: No bars {'symbol': 'USDJPY'}"


class TestLogging:
    def test_file_records_carry_run_id(self, tmp_path):
        log_file = tmp_path / "engine.log"
        try:
            setup_logging(log_level="debug", log_file=str(log_file))
            logger.bind(run_id="run-42").info("scan finished")
            logger.info("no run bound")
        finally:
            logger.remove()
            logger.add(sys.stderr)

        content = log_file.read_text(encoding="utf-8")
        assert "run=run-42" in content
        assert "scan finished" in content
        assert "run=- " in content


class TestTime:
    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is not None

    @pytest.mark.parametrize(
        "value",
        [
            "2024-01-01T09:00:00+09:00",
            "2024-01-01T00:00:00Z",
            datetime(2024, 1, 1),
            pd.Timestamp("2024-01-01", tz="UTC"),
        ],
    )
    def test_parse_datetime(self, value):
        assert parse_datetime(value) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_parse_date(self):
        assert parse_datetime(date(2024, 1, 2)) == datetime(2024, 1, 2, tzinfo=timezone.utc)

    def test_to_iso(self):
        tz = timezone(timedelta(hours=9))
        assert to_iso(datetime(2024, 1, 1, 9, tzinfo=tz)) == "2024-01-01T00:00:00+00:00"

    def test_interval_minutes(self):
        assert interval_minutes("4h") == 240
        with pytest.raises(ValueError):
            interval_minutes("2h")
