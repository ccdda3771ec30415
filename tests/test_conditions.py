"""Tests for condition evaluation."""

import pytest
from flowstudio import Condition, EvaluationError, Literal, Ref, VariableScope, evaluate


@pytest.fixture
def scope() -> VariableScope:
    return VariableScope(
        inputs={
            "x": "5",
            "name": "Ada Lovelace",
            "tags": ["math", "poetry"],
            "profile": {"age": 36},
            "word": "abc",
        }
    )


@pytest.mark.parametrize(
    "left, operator, right, expected",
    [
        (Ref("x"), "equals", Literal(5), True),
        (Ref("x"), "equals", Literal("5.0"), True),
        (Ref("x"), "equals", Literal(6), False),
        (Ref("x"), "not_equals", Literal(6), True),
        (Ref("word"), "equals", Literal("abc"), True),
        (Ref("word"), "equals", Literal("ABC"), False),
        (Ref("name"), "contains", Literal("Love"), True),
        (Ref("tags"), "contains", Literal("poetry"), True),
        (Ref("tags"), "contains", Literal("chess"), False),
        (Ref("profile"), "contains", Literal("age"), True),
        (Ref("x"), "greater_than", Literal(4), True),
        (Ref("x"), "less_than", Literal("10"), True),
        (Ref("profile.age"), "greater_than", Literal(40), False),
    ],
)
def test_operators(scope, left, operator, right, expected):
    assert evaluate(Condition(left, operator, right), scope) is expected


def test_exists(scope):
    assert evaluate(Condition(Ref("name"), "exists"), scope) is True
    assert evaluate(Condition(Ref("nope"), "exists"), scope) is False
    assert evaluate(Condition(Literal(None), "exists"), scope) is False


def test_non_numeric_comparison_is_an_error(scope):
    with pytest.raises(EvaluationError):
        evaluate(Condition(Ref("word"), "greater_than", Literal(1)), scope)


def test_contains_on_number_is_an_error(scope):
    with pytest.raises(EvaluationError):
        evaluate(Condition(Ref("profile.age"), "contains", Literal(3)), scope)


def test_unresolved_operand_is_an_evaluation_error(scope):
    with pytest.raises(EvaluationError) as exc_info:
        evaluate(Condition(Ref("missing"), "equals", Literal(1)), scope)
    assert "missing" in str(exc_info.value)


def test_missing_right_operand(scope):
    with pytest.raises(EvaluationError):
        evaluate(Condition(Ref("x"), "equals"), scope)
