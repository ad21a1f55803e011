# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Session operation handler.

Operations on session-scoped variables:
    get        read a key, optionally into ``assign_to``
    set        write a (templated) value, with optional TTL
    delete     remove a key
    increment  add ``amount``; an undefined key counts as 0
    decrement  subtract ``amount``; an undefined key counts as 0
    merge      shallow (or ``deep``) merge of a mapping into a mapping
    clear      remove every session key
    exists     store whether a key is defined
    custom     evaluate an expression into the key

An optional ``condition`` gates the operation. A false gate skips the
operation and the node still advances.
"""

import copy
import logging
from typing import Any, Dict

from ..conditions import ConditionEvaluator
from ..context import ExecutionContext
from ..exceptions import HandlerError
from ..models import NodeType, SessionOpConfig, SessionOperation
from ..templates import evaluate_expression
from ..variables import MISSING, VariableScope
from .base import Advance, NodeHandler, NodeResult

logger = logging.getLogger("loyaltyflow.handlers.session")

SESSION = VariableScope.SESSION


def deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _Skip(Exception):
    """Operation could not apply to the stored value"""


class SessionOpHandler(NodeHandler):
    node_type = NodeType.SESSION_OP

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config: SessionOpConfig = node.config
        op = config.operation
        record = context.record
        record.input_data = {"operation": op.value, "key": config.key}

        if config.condition is not None:
            if not ConditionEvaluator.evaluate(config.condition, context.variables):
                record.message = f"Operation {op.value} skipped: condition is false"
                record.data["skipped"] = True
                return Advance()

        operation = getattr(self, f"_{op.value}")
        try:
            record.output_data = operation(config, context)
        except _Skip as e:
            record.level = "warning"
            record.message = f"Operation {op.value} skipped: {e}"
            record.data["skipped"] = True
            logger.warning(f"[{context.execution_id}] {node.id}: {record.message}")
            return Advance()

        record.message = f"Operation {op.value} completed"
        return Advance()

    # ------------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------------

    def _get(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        value = context.variables.get(config.key, SESSION)
        exists = value is not MISSING
        value = value if exists else None
        if config.assign_to:
            context.variables.assign(config.assign_to, value)
        return {"value": value, "exists": exists}

    def _set(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        value = context.render(config.value)
        context.variables.set(config.key, value, SESSION, ttl_seconds=config.ttl_seconds)
        return {"value": value}

    def _delete(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        return {"deleted": context.variables.delete(config.key, SESSION)}

    def _add(self, config: SessionOpConfig, context: ExecutionContext, sign: int) -> Dict[str, Any]:
        current = context.variables.get(config.key, SESSION)
        if current is MISSING:
            current = 0
        if not _is_number(current):
            raise _Skip(f"'{config.key}' holds a non-numeric value")
        result = current + sign * config.amount
        context.variables.set(config.key, result, SESSION, ttl_seconds=config.ttl_seconds)
        return {"before": current, "after": result}

    def _increment(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        return self._add(config, context, 1)

    def _decrement(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        return self._add(config, context, -1)

    def _merge(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        update = context.render(config.value)
        if not isinstance(update, dict):
            raise HandlerError(f"Merge value for '{config.key}' did not render to a mapping")
        current = context.variables.get(config.key, SESSION)
        if current is MISSING:
            current = {}
        if not isinstance(current, dict):
            raise _Skip(f"'{config.key}' holds a non-mapping value")
        result = deep_merge(current, update) if config.deep else {**current, **update}
        context.variables.set(config.key, result, SESSION, ttl_seconds=config.ttl_seconds)
        return {"value": result}

    def _clear(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        return {"cleared": context.variables.clear(SESSION)}

    def _exists(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        exists = context.variables.has(config.key, SESSION)
        target = config.assign_to or f"{config.key}_exists"
        context.variables.assign(target, exists)
        return {"exists": exists, "assigned_to": target}

    def _custom(self, config: SessionOpConfig, context: ExecutionContext) -> Dict[str, Any]:
        value = evaluate_expression(config.expression, context.variables, context.template_extra())
        context.variables.set(config.key, value, SESSION, ttl_seconds=config.ttl_seconds)
        return {"value": value}
