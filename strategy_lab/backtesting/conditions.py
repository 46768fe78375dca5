"""
Entry condition tree.

A strategy's entry rule is a tree of four node kinds:

- IndicatorCondition: leaf comparing an indicator value with a constant,
  another indicator or a price field of the current bar
- ConditionGroup: AND / OR / NOT over child nodes
- IfThenCondition: THEN is evaluated only on bars where IF holds
- SequenceCondition: steps that must hold on successive bars

Nodes form a discriminated union (ConditionNode). Stored strategies use the
camelCase shape (indicatorId, compareTarget, ifCondition, sequence, ...);
both camelCase and snake_case keys are accepted.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    model_validator,
)
from pydantic.alias_generators import to_camel

ComparisonOperator = Literal["<", "<=", "=", ">=", ">", "cross_above", "cross_below"]
PriceType = Literal["open", "high", "low", "close"]


class _ConditionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CompareTarget(_ConditionModel):
    """Right-hand side of a leaf comparison."""

    type: Literal["fixed", "indicator", "price"] = "fixed"
    value: Optional[float] = None
    indicator_id: Optional[str] = None
    params: dict[str, float] = Field(default_factory=dict)
    field: str = "value"
    price_type: PriceType = "close"


class IndicatorCondition(_ConditionModel):
    """Leaf: ``indicator(params).field <operator> compare_target``."""

    kind: ClassVar[str] = "leaf"

    condition_id: str = ""
    indicator_id: str
    params: dict[str, float] = Field(default_factory=dict)
    field: str = "value"
    operator: ComparisonOperator
    compare_target: CompareTarget = Field(default_factory=CompareTarget)


class ConditionGroup(_ConditionModel):
    """Boolean composition of child nodes."""

    kind: ClassVar[str] = "group"

    group_id: str = ""
    operator: Literal["AND", "OR", "NOT"]
    conditions: list[ConditionNode] = Field(default_factory=list)


class IfThenCondition(_ConditionModel):
    """THEN is evaluated on the same bar, only when IF holds."""

    kind: ClassVar[str] = "if_then"

    group_id: str = ""
    operator: Literal["IF_THEN"] = "IF_THEN"
    if_condition: Optional[ConditionNode] = None
    then_condition: Optional[ConditionNode] = None
    max_bars_to_wait: int = Field(5, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _children_from_conditions(cls, data: Any) -> Any:
        # Stored strategies may carry IF / THEN as conditions[0] / conditions[1]
        if isinstance(data, dict) and data.get("conditions"):
            data = dict(data)
            children = data.pop("conditions")
            if not any(k in data for k in ("ifCondition", "if_condition")) and len(children) > 0:
                data["if_condition"] = children[0]
            if not any(k in data for k in ("thenCondition", "then_condition")) and len(children) > 1:
                data["then_condition"] = children[1]
        return data


class SequenceCondition(_ConditionModel):
    """Steps that must become true, in order, on strictly increasing bars."""

    kind: ClassVar[str] = "sequence"

    group_id: str = ""
    operator: Literal["SEQUENCE"] = "SEQUENCE"
    steps: list[ConditionNode] = Field(
        default_factory=list,
        validation_alias=AliasChoices("steps", "sequence"),
    )
    within_bars: int = Field(
        10,
        ge=1,
        validation_alias=AliasChoices(
            "within_bars", "withinBars", "max_bars_between_steps", "maxBarsBetweenSteps"
        ),
        description="Maximum bars allowed between two consecutive satisfied steps",
    )

    @model_validator(mode="before")
    @classmethod
    def _steps_from_conditions(cls, data: Any) -> Any:
        if isinstance(data, dict) and "conditions" in data and not ("steps" in data or "sequence" in data):
            data = dict(data)
            data["steps"] = data.pop("conditions")
        return data


def _condition_tag(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        if "indicatorId" in value or "indicator_id" in value:
            return "leaf"
        operator = str(value.get("operator", "")).upper()
        if operator == "IF_THEN":
            return "if_then"
        if operator == "SEQUENCE":
            return "sequence"
        return "group"
    return getattr(value, "kind", None)


ConditionNode = Annotated[
    Union[
        Annotated[IndicatorCondition, Tag("leaf")],
        Annotated[ConditionGroup, Tag("group")],
        Annotated[IfThenCondition, Tag("if_then")],
        Annotated[SequenceCondition, Tag("sequence")],
    ],
    Discriminator(_condition_tag),
]

ConditionGroup.model_rebuild()
IfThenCondition.model_rebuild()
SequenceCondition.model_rebuild()

_NODE_ADAPTER: TypeAdapter = TypeAdapter(ConditionNode)


def parse_condition(data: Any) -> ConditionNode:
    """Validate a stored (dict) condition tree into typed nodes."""
    return _NODE_ADAPTER.validate_python(data)


def iter_children(node: ConditionNode) -> Iterator[ConditionNode]:
    """Direct children of a node (leaves have none)."""
    if isinstance(node, ConditionGroup):
        yield from node.conditions
    elif isinstance(node, IfThenCondition):
        if node.if_condition is not None:
            yield node.if_condition
        if node.then_condition is not None:
            yield node.then_condition
    elif isinstance(node, SequenceCondition):
        yield from node.steps


def iter_leaves(node: Optional[ConditionNode]) -> Iterator[IndicatorCondition]:
    """Depth-first iteration over every leaf of the tree."""
    if node is None:
        return
    if isinstance(node, IndicatorCondition):
        yield node
        return
    for child in iter_children(node):
        yield from iter_leaves(child)


__all__ = [
    "ComparisonOperator",
    "CompareTarget",
    "IndicatorCondition",
    "ConditionGroup",
    "IfThenCondition",
    "SequenceCondition",
    "ConditionNode",
    "parse_condition",
    "iter_children",
    "iter_leaves",
]
