"""
Trigger evaluator: resolves operands against a snapshot and compares them.

Pure functions with no session state. An operand that cannot be resolved
makes the condition non-evaluable and failed; it never raises.
"""

from dataclasses import dataclass
from typing import Optional

from autoentry.data.models import (
    Literal,
    Operand,
    Operator,
    Reference,
    ReferenceKind,
    Strategy,
    Timeframe,
    describe_operand,
)
from autoentry.market.snapshot import MarketSnapshot

DEFAULT_TOLERANCE = 0.01


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of evaluating one trigger, invalidation or warning condition."""
    id: str
    description: str
    timeframe: str
    passed: bool
    evaluable: bool
    left_value: Optional[float] = None
    right_value: Optional[float] = None
    warning: Optional[str] = None
    condition_met: bool = False         # comparison result before occurrence rules
    bars_elapsed: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "condition": self.description,
            "timeframe": self.timeframe,
            "passed": self.passed,
            "evaluable": self.evaluable,
            "left_value": self.left_value,
            "right_value": self.right_value,
            "warning": self.warning,
            "bars_elapsed": self.bars_elapsed,
        }


def resolve_operand(
    operand: Operand,
    timeframe: Timeframe,
    snapshot: MarketSnapshot,
    strategy: Optional[Strategy] = None,
) -> Optional[float]:
    """
    Resolve an operand to a number.

    Args:
        operand: Literal or reference
        timeframe: Condition timeframe, used unless the reference overrides it
        snapshot: Normalized market snapshot
        strategy: Owning strategy, for entry/stop-loss/target references

    Returns:
        The value with the reference offset applied, or None if unresolved
    """
    if isinstance(operand, Literal):
        return operand.value
    if not isinstance(operand, Reference):
        return None

    if operand.kind.is_strategy_level:
        value = strategy.level(operand.kind) if strategy is not None else None
        return None if value is None else value + operand.offset

    data = snapshot.get(operand.timeframe or timeframe)
    value: Optional[float] = None
    if operand.kind == ReferenceKind.PRICE:
        value = snapshot.current_price
        if value is None and data is not None:
            value = data.close
    elif data is not None:
        value = data.value(operand)

    return None if value is None else value + operand.offset


def compare(left: float, operator: Operator, right: float,
            tolerance: float = DEFAULT_TOLERANCE) -> bool:
    """Apply ``operator``; equality checks absorb floating-point drift."""
    if operator == Operator.GT:
        return left > right
    if operator == Operator.GTE:
        return left >= right
    if operator == Operator.LT:
        return left < right
    if operator == Operator.LTE:
        return left <= right
    if operator == Operator.EQ:
        return abs(left - right) <= tolerance
    if operator == Operator.NE:
        return abs(left - right) > tolerance
    return False


def evaluate_condition(
    condition,
    snapshot: MarketSnapshot,
    strategy: Optional[Strategy] = None,
    condition_id: Optional[str] = None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> ConditionResult:
    """
    Evaluate a trigger, invalidation or warning condition.

    ``condition`` is anything with ``timeframe``, ``left``, ``operator`` and
    ``right`` attributes.
    """
    cid = condition_id or getattr(condition, "id", "") or ""
    description = condition.describe()
    left = resolve_operand(condition.left, condition.timeframe, snapshot, strategy)
    right = resolve_operand(condition.right, condition.timeframe, snapshot, strategy)

    if left is None or right is None:
        missing = [describe_operand(op) for op, value in
                   ((condition.left, left), (condition.right, right)) if value is None]
        return ConditionResult(
            id=cid,
            description=description,
            timeframe=condition.timeframe.value,
            passed=False,
            evaluable=False,
            left_value=left,
            right_value=right,
            warning=f"Unresolved reference {', '.join(missing)} on {condition.timeframe.value}",
        )

    met = compare(left, condition.operator, right, tolerance)
    return ConditionResult(
        id=cid,
        description=description,
        timeframe=condition.timeframe.value,
        passed=met,
        evaluable=True,
        left_value=left,
        right_value=right,
        condition_met=met,
    )
