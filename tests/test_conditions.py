# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for the condition evaluator"""

import pytest
from pydantic import ValidationError

from loyaltyflow.core.conditions import ConditionEvaluator, referenced_variables
from loyaltyflow.core.exceptions import ExpressionError
from loyaltyflow.core.models import ConditionGroup, ConditionOperator, ConditionRule
from loyaltyflow.core.variables import ScopedVariables, VariableScope


def make_variables(session=None, user=None, project=None, global_=None):
    return ScopedVariables(
        {VariableScope.SESSION: "s1", VariableScope.USER: "u1", VariableScope.PROJECT: "p1"},
        {
            VariableScope.SESSION: session or {},
            VariableScope.USER: user or {},
            VariableScope.PROJECT: project or {},
            VariableScope.GLOBAL: global_ or {},
        },
    )


def rule(variable, operator, value=None, **kwargs):
    return ConditionRule(variable=variable, operator=operator, value=value, **kwargs)


class TestOperators:
    """Leaf operator semantics"""

    @pytest.mark.parametrize(
        "operator,actual,expected,result",
        [
            ("equals", 3, 3, True),
            ("equals", "3", 3, True),
            ("equals", "Gold", "gold", True),
            ("equals", "gold", "silver", False),
            ("not_equals", "gold", "silver", True),
            ("contains", "welcome bonus", "BONUS", True),
            ("contains", ["a", "b"], "b", True),
            ("not_contains", ["a", "b"], "c", True),
            ("greater", 10, 5, True),
            ("greater", "10", "5", True),
            ("greater", "many", 5, False),
            ("less", 2, 5, True),
            ("greater_equal", 5, 5, True),
            ("less_equal", 6, 5, False),
            ("regex", "order-123", r"^order-\d+$", True),
            ("regex", "ORDER-1", r"^order", True),
            ("in_array", "gold", ["silver", "gold"], True),
            ("in_array", "gold", "silver, gold", True),
            ("in_array", "bronze", ["silver", "gold"], False),
            ("is_empty", "   ", None, True),
            ("is_empty", [], None, True),
            ("is_empty", 0, None, False),
            ("is_not_empty", {"a": 1}, None, True),
        ],
    )
    def test_operator(self, operator, actual, expected, result):
        """Test each operator on a defined value"""
        variables = make_variables(session={"x": actual})
        assert ConditionEvaluator.evaluate(rule("x", operator, expected), variables) is result

    def test_case_sensitive_equals(self):
        """Test case_sensitive disables case folding"""
        variables = make_variables(session={"tier": "Gold"})
        assert not ConditionEvaluator.evaluate(
            rule("tier", "equals", "gold", case_sensitive=True), variables
        )

    def test_booleans_are_not_numbers(self):
        """Test True does not compare numerically"""
        variables = make_variables(session={"flag": True})
        assert not ConditionEvaluator.evaluate(rule("flag", "greater", 0), variables)
        assert ConditionEvaluator.evaluate(rule("flag", "equals", "true"), variables)

    @pytest.mark.parametrize("operator", [op.value for op in ConditionOperator])
    def test_undefined_variable_is_false(self, operator):
        """Test every operator yields false for an undefined variable"""
        value = "x" if operator == "regex" else 3
        assert ConditionEvaluator.evaluate(rule("session.step", operator, value), make_variables()) is False


# ============================================================================
# Trees and references
# ============================================================================


class TestConditionTrees:
    """Groups, scopes and templated values"""

    def test_and_or_groups(self):
        """Test nested AND/OR groups"""
        expression = ConditionGroup.model_validate(
            {
                "operator": "OR",
                "conditions": [
                    {"variable": "tier", "operator": "equals", "value": "platinum"},
                    {
                        "operator": "and",
                        "conditions": [
                            {"variable": "tier", "operator": "equals", "value": "gold"},
                            {"variable": "points", "operator": "greater_equal", "value": 100},
                        ],
                    },
                ],
            }
        )
        assert ConditionEvaluator.evaluate(expression, make_variables(session={"tier": "gold", "points": 150}))
        assert not ConditionEvaluator.evaluate(expression, make_variables(session={"tier": "gold", "points": 50}))

    @pytest.mark.parametrize("operator", ["and", "or"])
    def test_empty_groups_are_invalid(self, operator):
        with pytest.raises(ValidationError):
            ConditionGroup(operator=operator, conditions=[])
        with pytest.raises(ValidationError):
            ConditionGroup(operator=operator)

    def test_unqualified_reference_falls_back(self):
        """Test session shadows user, user shadows global"""
        variables = make_variables(user={"tier": "gold"}, global_={"tier": "basic", "season": "winter"})
        assert ConditionEvaluator.evaluate(rule("tier", "equals", "gold"), variables)
        assert ConditionEvaluator.evaluate(rule("season", "equals", "winter"), variables)
        assert not ConditionEvaluator.evaluate(rule("session.tier", "is_not_empty"), variables)

    def test_templated_value(self):
        """Test rule values are rendered before comparing"""
        variables = make_variables(session={"points": 120}, project={"threshold": 100})
        condition = rule("points", "greater", "{{ project.threshold }}")
        assert ConditionEvaluator.evaluate(condition, variables)

    def test_nested_path(self):
        """Test dotted paths read into stored mappings"""
        variables = make_variables(user={"profile": {"city": "Berlin"}})
        assert ConditionEvaluator.evaluate(rule("user.profile.city", "equals", "berlin"), variables)

    def test_invalid_regex_rejected_on_load(self):
        """Test a literal invalid pattern fails validation"""
        with pytest.raises(ValidationError):
            rule("x", "regex", "[unclosed")

    def test_invalid_regex_at_runtime(self):
        """Test a rendered invalid pattern raises ExpressionError"""
        variables = make_variables(session={"x": "abc", "pattern": "[unclosed"})
        with pytest.raises(ExpressionError):
            ConditionEvaluator.evaluate(rule("x", "regex", "{{ pattern }}"), variables)

    def test_referenced_variables(self):
        """Test references are collected once, in order"""
        expression = ConditionGroup.model_validate(
            {
                "conditions": [
                    {"variable": "a", "operator": "is_empty"},
                    {"operator": "or", "conditions": [
                        {"variable": "b", "operator": "is_empty"},
                        {"variable": "a", "operator": "is_empty"},
                    ]},
                ],
            }
        )
        assert referenced_variables(expression) == ["a", "b"]
