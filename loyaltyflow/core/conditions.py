# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Condition evaluator for LoyaltyFlow workflows.

Evaluates AND/OR trees of leaf comparisons against scoped variables.
Each group declares its own operator, so there is no precedence to resolve.

Leaf operators:
- equals / not_equals (numeric when both sides are numbers)
- contains / not_contains (substring, list item, dict key)
- greater / less / greater_equal / less_equal
- regex, in_array, is_empty, is_not_empty

An undefined variable makes every comparison false.
"""

import re
from typing import Any, Callable, Dict, Optional

from .exceptions import ExpressionError
from .models import ConditionExpression, ConditionGroup, ConditionOperator, ConditionRule
from .templates import render_value
from .variables import MISSING, ScopedVariables


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any, case_sensitive: bool) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif value is None:
        text = ""
    else:
        text = str(value)
    return text if case_sensitive else text.casefold()


def _equals(actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    a, b = _to_number(actual), _to_number(expected)
    if a is not None and b is not None:
        return a == b
    if isinstance(actual, (list, dict)) or isinstance(expected, (list, dict)):
        return actual == expected
    return _as_text(actual, case_sensitive) == _as_text(expected, case_sensitive)


def _contains(actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    if isinstance(actual, list):
        return any(_equals(item, expected, case_sensitive) for item in actual)
    if isinstance(actual, dict):
        return str(expected) in actual
    return _as_text(expected, case_sensitive) in _as_text(actual, case_sensitive)


def _numeric(op: Callable[[float, float], bool]) -> Callable[[Any, Any, bool], bool]:
    def compare(actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
        a, b = _to_number(actual), _to_number(expected)
        if a is None or b is None:
            return False
        return op(a, b)
    return compare


def _regex(actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        pattern = re.compile(str(expected), flags)
    except re.error as e:
        raise ExpressionError(f"Invalid regex pattern {expected!r}: {e}", expression=str(expected))
    return pattern.search(_as_text(actual, True)) is not None


def _in_array(actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    if isinstance(expected, str):
        expected = [item.strip() for item in expected.split(",")]
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(_equals(actual, item, case_sensitive) for item in expected)


def _is_empty(actual: Any, expected: Any = None, case_sensitive: bool = False) -> bool:
    if actual is None:
        return True
    if isinstance(actual, str):
        return actual.strip() == ""
    if isinstance(actual, (list, dict, tuple, set)):
        return len(actual) == 0
    return False


OPERATORS: Dict[ConditionOperator, Callable[[Any, Any, bool], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda a, b, cs=False: not _equals(a, b, cs),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, b, cs=False: not _contains(a, b, cs),
    ConditionOperator.GREATER: _numeric(lambda a, b: a > b),
    ConditionOperator.LESS: _numeric(lambda a, b: a < b),
    ConditionOperator.GREATER_EQUAL: _numeric(lambda a, b: a >= b),
    ConditionOperator.LESS_EQUAL: _numeric(lambda a, b: a <= b),
    ConditionOperator.REGEX: _regex,
    ConditionOperator.IN_ARRAY: _in_array,
    ConditionOperator.IS_EMPTY: _is_empty,
    ConditionOperator.IS_NOT_EMPTY: lambda a, b=None, cs=False: not _is_empty(a),
}


class ConditionEvaluator:
    """Evaluator for condition trees used by condition nodes and operation gates"""

    @staticmethod
    def evaluate(expression: ConditionExpression, variables: ScopedVariables) -> bool:
        """
        Evaluate a condition tree.

        Args:
            expression: ConditionGroup or ConditionRule
            variables: Working set the rules read from

        Returns:
            True or False, never undefined

        Raises:
            ExpressionError: If a rule cannot be evaluated (e.g. bad regex)
        """
        if isinstance(expression, ConditionGroup):
            results = (
                ConditionEvaluator.evaluate(child, variables)
                for child in expression.conditions
            )
            if expression.operator == "or":
                return any(results)
            return all(results)
        return ConditionEvaluator.evaluate_rule(expression, variables)

    @staticmethod
    def evaluate_rule(rule: ConditionRule, variables: ScopedVariables) -> bool:
        actual = variables.resolve(rule.variable)
        if actual is MISSING:
            return False

        expected = render_value(rule.value, variables)
        return ConditionEvaluator.compare(rule.operator, actual, expected, rule.case_sensitive)

    @staticmethod
    def compare(
        operator: ConditionOperator,
        actual: Any,
        expected: Any,
        case_sensitive: bool = False,
    ) -> bool:
        """Apply one leaf operator to a defined value"""
        return bool(OPERATORS[operator](actual, expected, case_sensitive))


def referenced_variables(expression: ConditionExpression) -> list:
    """Variable references used by a condition tree, in order"""
    if isinstance(expression, ConditionGroup):
        refs: list = []
        for child in expression.conditions:
            for ref in referenced_variables(child):
                if ref not in refs:
                    refs.append(ref)
        return refs
    return [expression.variable]
