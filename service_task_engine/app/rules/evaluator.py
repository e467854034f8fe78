"""
Condition evaluation over entity snapshots.

Every operator fails closed: an absent field, a type mismatch or a
non-numeric operand to a numeric comparison yields False instead of an
exception. Only a structurally malformed condition (unknown operator or
non-path field) raises, so the caller can skip the whole rule.
"""

from typing import Any, Iterable, Mapping

from shared.errors import ConditionEvaluationSkipped

from ..snapshot import MISSING, resolve_path
from ..store.base import is_number, strict_equals
from .models import ConditionLogic, ConditionOperator, RuleCondition

_COLLECTION_TYPES = (list, tuple, set, frozenset)


def _numeric(op: str, left: Any, right: Any) -> bool:
    if not (is_number(left) and is_number(right)):
        return False
    if op == ConditionOperator.GT.value:
        return left > right
    if op == ConditionOperator.LT.value:
        return left < right
    if op == ConditionOperator.GTE.value:
        return left >= right
    return left <= right


def _member(value: Any, operand: Any) -> bool:
    return any(strict_equals(value, candidate) for candidate in operand)


def _contains(value: Any, operand: Any) -> bool:
    if isinstance(value, str):
        return isinstance(operand, str) and operand in value
    if isinstance(value, _COLLECTION_TYPES):
        return _member(operand, value)
    return False


def evaluate(entity: Mapping, condition: RuleCondition) -> bool:
    """Evaluate one condition against an entity snapshot."""
    op = condition.operator
    try:
        known = ConditionOperator(op)
    except ValueError:
        raise ConditionEvaluationSkipped(
            f"Unknown condition operator: {op}",
            {"field": condition.field, "operator": op},
        )
    if not isinstance(condition.field, str) or not condition.field:
        raise ConditionEvaluationSkipped(
            "Condition field must be a non-empty path",
            {"field": repr(condition.field), "operator": op},
        )

    value = resolve_path(entity, condition.field)
    if value is MISSING:
        return False

    operand = condition.value

    if known is ConditionOperator.EQ:
        return strict_equals(value, operand)
    if known is ConditionOperator.NE:
        return not strict_equals(value, operand)
    if known is ConditionOperator.IN:
        return isinstance(operand, _COLLECTION_TYPES) and _member(value, operand)
    if known is ConditionOperator.NIN:
        return isinstance(operand, _COLLECTION_TYPES) and not _member(value, operand)
    if known is ConditionOperator.CONTAINS:
        return _contains(value, operand)
    return _numeric(op, value, operand)


def evaluate_all(entity: Mapping, conditions: Iterable[RuleCondition],
                 logic: ConditionLogic = ConditionLogic.AND) -> bool:
    """Combine conditions with and/or logic; an empty list never matches.

    Every condition is evaluated, even after the outcome is known, so that
    a malformed condition anywhere in the rule is always reported.
    """
    results = [evaluate(entity, condition) for condition in conditions]
    if not results:
        return False
    if ConditionLogic(logic) is ConditionLogic.OR:
        return any(results)
    return all(results)
