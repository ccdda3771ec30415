"""Condition evaluation for Conditional nodes.

Supported operators:
    - equals / not_equals: numeric comparison when both sides are numeric
      (numeric strings included), opaque equality otherwise
    - contains: substring for strings, membership for collections
    - greater_than / less_than: numeric operands only
    - exists: true when the left operand resolves
"""

from collections.abc import Collection, Mapping
from typing import Any

from flowstudio.core.errors import EvaluationError, UnresolvedReferenceError
from flowstudio.core.graph import Condition, Literal, Operand, Ref
from flowstudio.core.scope import VariableScope, as_number, resolve
from flowstudio.core.types import Operator


def _operand_value(operand: Operand | None, scope: VariableScope, role: str) -> Any:
    match operand:
        case Ref(reference=reference):
            try:
                return resolve(reference, scope)
            except UnresolvedReferenceError as e:
                raise EvaluationError(f"Cannot resolve {role} operand: {e}") from e
        case Literal(value=value):
            return value
        case None:
            raise EvaluationError(f"Missing {role} operand")
    raise EvaluationError(f"Unsupported {role} operand: {operand!r}")


def _equals(left: Any, right: Any) -> bool:
    left_number, right_number = as_number(left), as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return left == right


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        if not isinstance(right, str):
            right = str(right)
        return right in left
    if isinstance(left, Mapping) or (isinstance(left, Collection) and not isinstance(left, (bytes, bytearray))):
        return right in left
    raise EvaluationError(f"'contains' needs a string or collection on the left, got {type(left).__name__}")


def _numbers(operator: Operator, left: Any, right: Any) -> tuple[float, float]:
    left_number, right_number = as_number(left), as_number(right)
    if left_number is None or right_number is None:
        raise EvaluationError(
            f"'{operator.value}' needs numeric operands, got {left!r} and {right!r}"
        )
    return left_number, right_number


def evaluate(condition: Condition, scope: VariableScope) -> bool:
    """
    Evaluate a condition against a scope.

    Args:
        condition: The condition to evaluate
        scope: The run's variable scope

    Returns:
        The boolean outcome.

    Raises:
        EvaluationError: When an operand cannot be resolved (except for
            ``exists``), or the operand types do not suit the operator.
    """
    if condition.operator is Operator.EXISTS:
        match condition.left:
            case Ref(reference=reference):
                try:
                    resolve(reference, scope)
                except UnresolvedReferenceError:
                    return False
                return True
            case Literal(value=value):
                return value is not None
        raise EvaluationError(f"Unsupported left operand: {condition.left!r}")

    left = _operand_value(condition.left, scope, "left")
    right = _operand_value(condition.right, scope, "right")

    match condition.operator:
        case Operator.EQUALS:
            return _equals(left, right)
        case Operator.NOT_EQUALS:
            return not _equals(left, right)
        case Operator.CONTAINS:
            return _contains(left, right)
        case Operator.GREATER_THAN:
            a, b = _numbers(condition.operator, left, right)
            return a > b
        case Operator.LESS_THAN:
            a, b = _numbers(condition.operator, left, right)
            return a < b
    raise EvaluationError(f"Unsupported operator: {condition.operator!r}")


__all__ = ["evaluate"]
