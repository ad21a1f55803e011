# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for template rendering"""

import pytest

from loyaltyflow.core.exceptions import ExpressionError
from loyaltyflow.core import templates
from loyaltyflow.core.templates import evaluate_expression, is_template, render_string, render_value
from loyaltyflow.core.variables import ScopedVariables, VariableScope


@pytest.fixture
def variables():
    return ScopedVariables(
        {VariableScope.SESSION: "s1", VariableScope.USER: "u1"},
        {
            VariableScope.SESSION: {"name": "Ann", "points": 40, "tags": ["new"]},
            VariableScope.USER: {"tier": "gold", "name": "shadowed"},
        },
    )


def test_is_template():
    assert is_template("Hi {{ name }}")
    assert is_template("{% if x %}y{% endif %}")
    assert not is_template("plain text")
    assert not is_template(42)


def test_text_rendering(variables):
    """Test merged names and explicit scopes"""
    assert render_string("Hi {{ name }}, tier {{ user.tier }}", variables) == "Hi Ann, tier gold"


def test_single_expression_keeps_type(variables):
    """Test a lone expression returns the native value"""
    assert render_string("{{ points + 10 }}", variables) == 50
    assert render_string("{{ tags }}", variables) == ["new"]


def test_single_expression_is_compiled_once(variables):
    templates._compile_text_expression.cache_clear()
    for _ in range(3):
        assert render_string("{{ points * 2 }}", variables) == 80

    info = templates._compile_text_expression.cache_info()
    assert (info.misses, info.hits) == (1, 2)


def test_undefined_names(variables):
    """Test missing names render empty in text and None alone"""
    assert render_string("Hi {{ nickname }}!", variables) == "Hi !"
    assert render_string("{{ nickname }}", variables) is None


def test_render_value_recurses(variables):
    """Test dicts and lists are rendered leaf by leaf"""
    value = {"user": "{{ name }}", "items": ["{{ points }}", 3], "fixed": True}
    assert render_value(value, variables) == {"user": "Ann", "items": [40, 3], "fixed": True}


def test_extra_names(variables):
    """Test extra names such as the execution block"""
    extra = {"execution": {"session_id": "tg:42"}}
    assert render_string("{{ execution.session_id }}", variables, extra) == "tg:42"


def test_evaluate_expression(variables):
    assert evaluate_expression("points * 2", variables) == 80
    assert evaluate_expression("name | upper", variables) == "ANN"


def test_evaluate_expression_strict(variables):
    """Test undefined names and bad syntax raise ExpressionError"""
    with pytest.raises(ExpressionError):
        evaluate_expression("missing * 2", variables)
    with pytest.raises(ExpressionError):
        evaluate_expression("points *", variables)


def test_sandbox_hides_internals(variables):
    """Test unsafe attribute access does not reach Python internals"""
    assert evaluate_expression("name.__class__", variables) is not str
    with pytest.raises(ExpressionError):
        evaluate_expression("name.__class__ ~ ''", variables)
