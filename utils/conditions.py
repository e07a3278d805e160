"""
Condition evaluator for condition nodes.

Compares a conversation variable against a literal. All comparisons are
case-insensitive string comparisons; an unset variable reads as "".
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from models.schemas import ConditionOperator


OPERATORS: dict[str, Callable[[str, str], bool]] = {
    ConditionOperator.CONTAINS.value: lambda a, b: b in a,
    ConditionOperator.EQUALS.value: lambda a, b: a == b,
    ConditionOperator.STARTS_WITH.value: lambda a, b: a.startswith(b),
}


def _fold(value: Any) -> str:
    if value is None:
        return ""
    return str(value).casefold()


def evaluate_condition(variable_value: Optional[str], operator: ConditionOperator | str, value: Any) -> bool:
    """Evaluate `variable_value <operator> value`. Unknown operators are False."""
    key = operator.value if isinstance(operator, ConditionOperator) else str(operator)
    fn = OPERATORS.get(key)
    if fn is None:
        return False
    return fn(_fold(variable_value), _fold(value))
