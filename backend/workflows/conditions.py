"""
Workflow condition evaluation.

Conditions are a flat list evaluated left to right. The first result seeds
the running value; each later condition is folded in with the logical
operator stored on the condition *before* it:

    [A(AND), B(OR), C]  ->  (A and B) or C

Field paths are dotted (``item.stock.on_hand``) and resolve against nested
dicts, sequences (numeric segments) and object attributes. A missing
segment resolves to None instead of raising.
"""

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from db.domain import ConditionOperator, LogicalOperator, WorkflowCondition

_MISSING = object()


def resolve_path(context: Any, path: str) -> Any:
    current = context
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                current = _MISSING
        else:
            current = getattr(current, segment, _MISSING)
        if current is _MISSING:
            return None
    return current


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    try:
        return op(left, right)
    except TypeError:
        pass
    try:
        return op(float(left), float(right))
    except (TypeError, ValueError):
        return False


def _membership(left: Any, right: Any) -> bool:
    if not isinstance(right, (list, tuple, set, frozenset)):
        return False
    return left in right


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda left, right: left == right,
    ConditionOperator.NOT_EQUALS: lambda left, right: left != right,
    ConditionOperator.GREATER_THAN: lambda left, right: _compare(left, right, lambda a, b: a > b),
    ConditionOperator.LESS_THAN: lambda left, right: _compare(left, right, lambda a, b: a < b),
    ConditionOperator.CONTAINS: lambda left, right: left is not None and str(right) in str(left),
    ConditionOperator.STARTS_WITH: lambda left, right: left is not None and str(left).startswith(str(right)),
    ConditionOperator.ENDS_WITH: lambda left, right: left is not None and str(left).endswith(str(right)),
    ConditionOperator.IN: _membership,
    ConditionOperator.NOT_IN: lambda left, right: isinstance(right, (list, tuple, set, frozenset))
    and left not in right,
    ConditionOperator.IS_NULL: lambda left, right: left is None,
    ConditionOperator.IS_NOT_NULL: lambda left, right: left is not None,
}

_missing_ops = set(ConditionOperator) - set(_OPERATORS)
if _missing_ops:
    raise RuntimeError(f"Unhandled condition operators: {sorted(op.value for op in _missing_ops)}")


def evaluate_condition(condition: WorkflowCondition, context: Any) -> bool:
    value = resolve_path(context, condition.field)
    return bool(_OPERATORS[ConditionOperator(condition.operator)](value, condition.value))


def evaluate_conditions(conditions: Sequence[WorkflowCondition], context: Any) -> bool:
    if not conditions:
        return True

    result = evaluate_condition(conditions[0], context)
    for previous, condition in zip(conditions, conditions[1:]):
        current = evaluate_condition(condition, context)
        if LogicalOperator(previous.logical_operator) == LogicalOperator.OR:
            result = result or current
        else:
            result = result and current
    return result
