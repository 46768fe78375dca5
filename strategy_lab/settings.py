"""
Settings (pydantic-settings).

Expose a unified SETTINGS object used across the engine. Every section
reads its own environment prefix and the project's .env file.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestSettings(BaseSettings):
    warmup_bars: int = Field(50, ge=0, description="Bars skipped for indicator warm-up")
    bankruptcy_ratio: float = Field(0.5, gt=0, lt=1, description="Stop when capital <= initial * ratio")
    default_initial_capital: float = Field(1_000_000.0, gt=0)
    default_lot_size: float = Field(10_000.0, gt=0)
    default_leverage: float = Field(25.0, ge=1, le=1000)
    model_config = SettingsConfigDict(env_prefix="BACKTEST_", env_file=".env", extra="ignore")


class WalkForwardSettings(BaseSettings):
    default_split_count: int = Field(4, ge=1)
    default_timeframe: str = "1h"
    max_splits: int = Field(3, ge=1)
    min_in_sample_records: int = 30
    min_out_of_sample_records: int = 15
    in_sample_ratio: float = Field(0.7, gt=0, lt=1)
    min_in_sample_days: int = 3
    min_out_of_sample_days: int = 2
    overfit_normalizer: float = Field(0.15, gt=0)
    overfit_warning_threshold: float = Field(0.4, ge=0, le=1)
    model_config = SettingsConfigDict(env_prefix="WALK_FORWARD_", env_file=".env", extra="ignore")


class MonteCarloSettings(BaseSettings):
    entry_probability: float = Field(0.05, gt=0, le=1)
    profit_factor_cap: float = Field(10.0, gt=0)
    min_bars: int = Field(10, ge=1)
    histogram_bins: int = Field(10, ge=1)
    seed: Optional[int] = None
    max_workers: int = Field(1, ge=1)
    model_config = SettingsConfigDict(env_prefix="MONTE_CARLO_", env_file=".env", extra="ignore")


class LoggingSettings(BaseSettings):
    level: str = "INFO"
    file: Optional[str] = None
    serialize: bool = False
    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", extra="ignore")


class AppSettings(BaseSettings):
    backtest: BacktestSettings = BacktestSettings()
    walk_forward: WalkForwardSettings = WalkForwardSettings()
    monte_carlo: MonteCarloSettings = MonteCarloSettings()
    logging: LoggingSettings = LoggingSettings()
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


SETTINGS = AppSettings()

__all__ = [
    "SETTINGS",
    "AppSettings",
    "BacktestSettings",
    "WalkForwardSettings",
    "MonteCarloSettings",
    "LoggingSettings",
]
