"""
Strategy Lab Utils Package

Helper functions shared across the engine.
"""

from .time import interval_minutes, parse_datetime, to_iso, utc_now

__all__ = [
    "interval_minutes",
    "parse_datetime",
    "to_iso",
    "utc_now",
]
