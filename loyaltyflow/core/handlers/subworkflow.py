# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Sub-workflow handler.

Runs another published workflow as a nested execution. The child gets a
session namespace derived from the caller's session; ``input_mapping``
seeds it (child variable -> caller reference) and ``output_mapping`` copies
results back (caller reference -> child reference).

A child that suspends suspends the caller too: the caller's wait payload
carries the child's payload plus a ``nested`` pointer, and resuming the
caller resumes the child first.
"""

import logging
from typing import Any, Dict

from ..context import ExecutionContext
from ..exceptions import DefinitionError, DepthExceededError, HandlerError
from ..execution_store import ExecutionStatus
from ..models import MAX_SUBWORKFLOW_DEPTH, NodeType
from ..variables import MISSING
from .base import Advance, NodeHandler, NodeResult, Suspend

logger = logging.getLogger("loyaltyflow.handlers.subworkflow")


class SubWorkflowHandler(NodeHandler):
    node_type = NodeType.SUB_WORKFLOW

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config = node.config
        depth = context.depth + 1
        if depth > MAX_SUBWORKFLOW_DEPTH:
            raise DepthExceededError(
                f"Sub-workflow '{config.workflow_id}' at node '{node.id}' would run at "
                f"depth {depth}, maximum is {MAX_SUBWORKFLOW_DEPTH}",
                depth=depth,
                max_depth=MAX_SUBWORKFLOW_DEPTH,
            )

        try:
            version = processor.definitions.get_version(config.workflow_id, config.version)
        except DefinitionError as e:
            raise HandlerError(
                f"Sub-workflow '{config.workflow_id}' cannot be loaded: {e.message}",
                node_id=node.id,
                node_type=node.type,
                cause=e,
            )

        seed: Dict[str, Any] = {}
        for child_var, parent_ref in config.input_mapping.items():
            value = context.variables.resolve(parent_ref)
            if value is not MISSING:
                seed[child_var] = value

        child = processor.context_manager.create_nested_context(context, version, node.id, seed)
        context.record.input_data = {
            "workflow_id": version.workflow_id,
            "version": version.version,
            "inputs": seed,
        }
        context.record.data["child_execution_id"] = child.execution_id
        logger.info(
            f"[{context.execution_id}] {node.id}: running {version.id} as "
            f"{child.execution_id} (depth {child.depth})"
        )

        outcome = await processor.run(child, version.entry_node_id)
        return self.finish(node, context, child, outcome)

    def finish(self, node, context: ExecutionContext, child: ExecutionContext, outcome) -> NodeResult:
        """Translate a child outcome into the caller's node result"""
        config = node.config
        context.record.data["child_execution_id"] = child.execution_id

        if outcome.status == ExecutionStatus.COMPLETED:
            outputs: Dict[str, Any] = {}
            for parent_ref, child_ref in config.output_mapping.items():
                value = child.variables.resolve(child_ref)
                if value is MISSING:
                    logger.warning(
                        f"[{context.execution_id}] {node.id}: child variable '{child_ref}' is undefined"
                    )
                    continue
                context.variables.assign(parent_ref, value)
                outputs[parent_ref] = value
            context.record.output_data = {"status": "completed", "outputs": outputs}
            context.record.message = f"Sub-workflow {config.workflow_id} completed"
            return Advance()

        if outcome.status == ExecutionStatus.WAITING:
            payload = dict(outcome.wait_payload or {})
            payload["nested"] = {
                "execution_id": child.execution_id,
                "workflow_id": child.execution.workflow_id,
                "node_id": child.execution.current_node_id,
                "depth": child.depth,
            }
            context.record.output_data = {"status": "waiting", "wait_type": outcome.wait_type}
            context.record.message = f"Waiting for sub-workflow {config.workflow_id}"
            return Suspend(outcome.wait_type, payload, resume_at=outcome.resume_at)

        if outcome.status == ExecutionStatus.FAILED and outcome.error_type == DepthExceededError.__name__:
            raise DepthExceededError(
                outcome.error or "Sub-workflow nesting too deep",
                depth=child.depth + 1,
                max_depth=MAX_SUBWORKFLOW_DEPTH,
            )
        raise HandlerError(
            f"Sub-workflow {config.workflow_id} ended {outcome.status.value}: {outcome.error}",
            node_id=node.id,
            node_type=node.type,
        )
