"""
Strategy Lab

Backtesting and statistical validation engine for rule-based trading
strategies: bar-by-bar replay, performance summaries, walk-forward
overfitting checks, Monte Carlo random-entry baselines and post-hoc
filter analysis.
"""

__version__ = "1.0.0"
