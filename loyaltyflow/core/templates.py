# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Template rendering for node configs.

Strings may contain Jinja2 expressions such as ``{{ user.first_name }}``.
A string that is exactly one ``{{ expr }}`` evaluates to the native value,
so ``"{{ session.points }}"`` stays a number. Rendering runs in a sandboxed
environment.
"""

import re
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from .exceptions import ExpressionError
from .variables import ScopedVariables, VariableScope

_SINGLE_EXPRESSION = re.compile(r"^\{\{\s*(.+?)\s*\}\}$", re.DOTALL)

# Text templates tolerate missing values; expressions do not
_text_env = SandboxedEnvironment(undefined=jinja2.ChainableUndefined, autoescape=False)
_expr_env = SandboxedEnvironment(undefined=jinja2.StrictUndefined, autoescape=False)


@lru_cache(maxsize=512)
def _compile_template(source: str) -> jinja2.Template:
    return _text_env.from_string(source)


@lru_cache(maxsize=512)
def _compile_text_expression(source: str) -> Callable[..., Any]:
    return _text_env.compile_expression(source, undefined_to_none=False)


@lru_cache(maxsize=512)
def _compile_expression(source: str) -> Callable[..., Any]:
    return _expr_env.compile_expression(source, undefined_to_none=False)


def is_template(value: Any) -> bool:
    return isinstance(value, str) and ("{{" in value or "{%" in value)


def template_context(
    variables: ScopedVariables, extra: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Names visible to templates.

    The merged view is exposed as top-level names; each scope is also
    reachable explicitly (``session``, ``user``, ``project``, ``global``).
    """
    ctx = variables.merged()
    for scope in VariableScope:
        ctx[scope.value] = variables.scope_values(scope)
    ctx["now"] = datetime.now().isoformat()
    if extra:
        ctx.update(extra)
    return ctx


def evaluate_expression(
    source: str,
    variables: ScopedVariables,
    extra: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Evaluate a Jinja2 expression (``childVar * 2``) to a native value.

    Raises:
        ExpressionError: On syntax errors or undefined names
    """
    try:
        expression = _compile_expression(source)
        return expression(**template_context(variables, extra))
    except jinja2.TemplateError as e:
        raise ExpressionError(f"Cannot evaluate expression {source!r}: {e}", expression=source) from e
    except (TypeError, ValueError, ZeroDivisionError) as e:
        raise ExpressionError(f"Cannot evaluate expression {source!r}: {e}", expression=source) from e


def render_string(
    source: str,
    variables: ScopedVariables,
    extra: Optional[Dict[str, Any]] = None,
) -> Any:
    """Render one string; a lone ``{{ expr }}`` returns its native value"""
    match = _SINGLE_EXPRESSION.match(source.strip())
    try:
        if match and "{{" not in match.group(1):
            expression = _compile_text_expression(match.group(1))
            result = expression(**template_context(variables, extra))
            return None if isinstance(result, jinja2.Undefined) else result
        return _compile_template(source).render(**template_context(variables, extra))
    except jinja2.TemplateError as e:
        raise ExpressionError(f"Cannot render template {source!r}: {e}", expression=source) from e
    except (TypeError, ValueError, ZeroDivisionError) as e:
        raise ExpressionError(f"Cannot render template {source!r}: {e}", expression=source) from e


def render_value(
    value: Any,
    variables: ScopedVariables,
    extra: Optional[Dict[str, Any]] = None,
) -> Any:
    """Render templates inside strings, lists and dicts"""
    if isinstance(value, str):
        return render_string(value, variables, extra) if is_template(value) else value
    if isinstance(value, dict):
        return {k: render_value(v, variables, extra) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables, extra) for v in value]
    return value
