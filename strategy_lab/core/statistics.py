"""
Statistical Helpers

Two-sided p-value for a one-sample t statistic, built on scipy.stats.
Student's t survival function is used for small samples; from
NORMAL_APPROXIMATION_DF degrees of freedom onward the standard normal
is used instead.

Callers that need a different approximation can pass any callable
matching PValueApproximation.
"""

from typing import Protocol

from scipy import stats

# Degrees of freedom from which the t distribution is treated as normal
NORMAL_APPROXIMATION_DF = 30


class PValueApproximation(Protocol):
    """Two-sided p-value for a t statistic with ``df`` degrees of freedom."""

    def __call__(self, t_stat: float, df: int) -> float: ...


def two_sided_p_value(t_stat: float, df: int) -> float:
    """Two-sided p-value of ``t_stat``; 1.0 when df < 1."""
    if df < 1:
        return 1.0

    abs_t = abs(t_stat)
    if df >= NORMAL_APPROXIMATION_DF:
        p_value = stats.norm.sf(abs_t) * 2
    else:
        p_value = stats.t.sf(abs_t, df) * 2

    return float(min(1.0, max(0.0, p_value)))


__all__ = [
    "NORMAL_APPROXIMATION_DF",
    "PValueApproximation",
    "two_sided_p_value",
]
