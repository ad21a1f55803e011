# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

from ..conditions import ConditionEvaluator, referenced_variables
from ..context import ExecutionContext
from ..models import NodeType
from ..variables import MISSING
from .base import Advance, NodeHandler, NodeResult


class ConditionHandler(NodeHandler):
    """Evaluates the node's condition tree and follows the true or false branch"""

    node_type = NodeType.CONDITION

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        expression = node.config.expression
        result = ConditionEvaluator.evaluate(expression, context.variables)
        true_target, false_target = context.version.condition_targets(node.id)

        inputs = {}
        for ref in referenced_variables(expression):
            value = context.variables.resolve(ref)
            inputs[ref] = None if value is MISSING else value

        branch = "true" if result else "false"
        context.record.input_data = {
            "expression": expression.model_dump(mode="json"),
            "variables": inputs,
        }
        context.record.output_data = {
            "result": result,
            "next_node_id": true_target if result else false_target,
        }
        context.record.message = f"Condition completed: {branch}"
        return Advance(branch=branch)
