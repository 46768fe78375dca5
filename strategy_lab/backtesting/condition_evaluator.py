"""
Condition Evaluator

Evaluates an entry condition tree at a bar index.

Each run owns one EvaluationContext. The context holds the bar frame, the
current index, a write-once indicator cache (one array per indicator key
for the whole run) and the armed state of SEQUENCE nodes. Nothing is shared
between contexts, so concurrent scans stay independent.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import pandas as pd
from loguru import logger

from strategy_lab.backtesting.conditions import (
    CompareTarget,
    ConditionGroup,
    ConditionNode,
    IfThenCondition,
    IndicatorCondition,
    SequenceCondition,
    iter_children,
    iter_leaves,
)
from strategy_lab.backtesting.indicator_handlers import compute_indicator
from strategy_lab.core.exceptions import InvalidStrategyConfig

# Tolerance of the "=" operator
EQUALITY_TOLERANCE = 1e-4


class IndicatorCache:
    """
    Per-run indicator arena.

    Maps (indicator_id, params, field) to a precomputed value array indexed
    by bar position. Each key is computed at most once.
    """

    def __init__(self, bars: pd.DataFrame):
        self._bars = bars
        self._series: dict[str, Optional[np.ndarray]] = {}

    @staticmethod
    def key(indicator_id: str, params: dict[str, Any], field: str) -> str:
        return f"{indicator_id.lower()}_{json.dumps(params or {}, sort_keys=True)}_{field}"

    def get(self, indicator_id: str, params: dict[str, Any], field: str) -> Optional[np.ndarray]:
        cache_key = self.key(indicator_id, params, field)
        if cache_key not in self._series:
            try:
                values = compute_indicator(self._bars, indicator_id, params, field)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Indicator calculation failed for {}: {}", cache_key, e)
                values = None
            self._series[cache_key] = values
        return self._series[cache_key]

    def value_at(self, indicator_id: str, params: dict[str, Any], field: str, index: int) -> Optional[float]:
        values = self.get(indicator_id, params, field)
        if values is None or index < 0 or index >= len(values):
            return None
        value = float(values[index])
        return None if math.isnan(value) else value

    def __len__(self) -> int:
        return len(self._series)


@dataclass
class SequenceState:
    """Progress of one SEQUENCE node inside one evaluation context."""

    current_step: int = 0
    last_step_index: int = -1


@dataclass
class EvaluationContext:
    """Evaluation state owned by a single run."""

    bars: pd.DataFrame
    current_index: int = 0
    cache: Optional[IndicatorCache] = None
    sequence_states: dict[int, SequenceState] = field(default_factory=dict)

    def __post_init__(self):
        if self.cache is None:
            self.cache = IndicatorCache(self.bars)

    def price_at(self, price_type: str, index: Optional[int] = None) -> Optional[float]:
        idx = self.current_index if index is None else index
        if idx < 0 or idx >= len(self.bars):
            return None
        value = float(self.bars[price_type].iat[idx])
        return None if math.isnan(value) else value


# =============================================================================
# VALIDATION
# =============================================================================


def validate_condition_tree(node: Optional[ConditionNode]) -> None:
    """
    Reject trees that cannot produce an entry signal.

    Raises:
        InvalidStrategyConfig: missing root, empty AND/OR group, NOT without
            a child, IF_THEN without both branches, empty SEQUENCE, or no
            leaf anywhere in the tree
    """
    if node is None:
        raise InvalidStrategyConfig("Strategy has no entry conditions")

    _validate_node(node)

    if next(iter_leaves(node), None) is None:
        raise InvalidStrategyConfig("Entry condition tree contains no indicator condition")


def _validate_node(node: ConditionNode) -> None:
    if isinstance(node, ConditionGroup):
        if not node.conditions:
            raise InvalidStrategyConfig(f"{node.operator} group has no conditions", {"group_id": node.group_id})
    elif isinstance(node, IfThenCondition):
        if node.if_condition is None or node.then_condition is None:
            raise InvalidStrategyConfig("IF_THEN requires both ifCondition and thenCondition", {"group_id": node.group_id})
    elif isinstance(node, SequenceCondition):
        if not node.steps:
            raise InvalidStrategyConfig("SEQUENCE has no steps", {"group_id": node.group_id})

    for child in iter_children(node):
        _validate_node(child)


# =============================================================================
# EVALUATION
# =============================================================================


def evaluate(ctx: EvaluationContext, node: ConditionNode) -> bool:
    """Evaluate a condition node at ctx.current_index."""
    if isinstance(node, IndicatorCondition):
        return evaluate_leaf(ctx, node)
    if isinstance(node, ConditionGroup):
        return _evaluate_group(ctx, node)
    if isinstance(node, IfThenCondition):
        return _evaluate_if_then(ctx, node)
    if isinstance(node, SequenceCondition):
        return _evaluate_sequence(ctx, node)
    raise TypeError(f"Unknown condition node: {type(node).__name__}")


def compare_values(
    left: float,
    right: float,
    operator: str,
    prev_left: Optional[float] = None,
    prev_right: Optional[float] = None,
) -> bool:
    if operator == "<":
        return left < right
    if operator == "<=":
        return left <= right
    if operator == "=":
        return abs(left - right) < EQUALITY_TOLERANCE
    if operator == ">=":
        return left >= right
    if operator == ">":
        return left > right
    if operator == "cross_above":
        if prev_left is None or prev_right is None:
            return False
        return prev_left < prev_right and left > right
    if operator == "cross_below":
        if prev_left is None or prev_right is None:
            return False
        return prev_left > prev_right and left < right
    return False


def _resolve_target(ctx: EvaluationContext, target: CompareTarget, index: int) -> Optional[float]:
    if target.type == "fixed":
        return target.value
    if target.type == "indicator":
        if not target.indicator_id:
            return None
        return ctx.cache.value_at(target.indicator_id, target.params, target.field or "value", index)
    return ctx.price_at(target.price_type or "close", index)


def evaluate_leaf(ctx: EvaluationContext, condition: IndicatorCondition) -> bool:
    """Leaf comparison; unavailable (warm-up / NaN / unknown) values yield False."""
    index = ctx.current_index
    left = ctx.cache.value_at(condition.indicator_id, condition.params, condition.field, index)
    if left is None:
        return False

    right = _resolve_target(ctx, condition.compare_target, index)
    if right is None:
        return False

    prev_left: Optional[float] = None
    prev_right: Optional[float] = None
    if condition.operator in ("cross_above", "cross_below") and index > 0:
        prev_left = ctx.cache.value_at(condition.indicator_id, condition.params, condition.field, index - 1)
        prev_right = _resolve_target(ctx, condition.compare_target, index - 1)

    return compare_values(left, right, condition.operator, prev_left, prev_right)


def _evaluate_group(ctx: EvaluationContext, group: ConditionGroup) -> bool:
    # Every child is evaluated so stateful SEQUENCE children see every bar
    results = [evaluate(ctx, child) for child in group.conditions]

    if group.operator == "AND":
        return bool(results) and all(results)
    if group.operator == "OR":
        return any(results)
    if group.operator == "NOT":
        return bool(results) and not results[0]
    return False


def _evaluate_if_then(ctx: EvaluationContext, node: IfThenCondition) -> bool:
    if node.if_condition is None or node.then_condition is None:
        return False
    if not evaluate(ctx, node.if_condition):
        return False
    return evaluate(ctx, node.then_condition)


def _evaluate_sequence(ctx: EvaluationContext, node: SequenceCondition) -> bool:
    if not node.steps:
        return False

    state = ctx.sequence_states.setdefault(id(node), SequenceState())
    index = ctx.current_index

    # Too long since the previous step: start over
    if state.last_step_index >= 0 and index - state.last_step_index > node.within_bars:
        state.current_step = 0
        state.last_step_index = -1

    # One step per bar: steps need strictly increasing indices
    if state.last_step_index >= index:
        return False

    if not evaluate(ctx, node.steps[state.current_step]):
        return False

    state.current_step += 1
    state.last_step_index = index

    if state.current_step >= len(node.steps):
        state.current_step = 0
        state.last_step_index = -1
        return True
    return False


__all__ = [
    "EQUALITY_TOLERANCE",
    "IndicatorCache",
    "SequenceState",
    "EvaluationContext",
    "validate_condition_tree",
    "evaluate",
    "evaluate_leaf",
    "compare_values",
]
