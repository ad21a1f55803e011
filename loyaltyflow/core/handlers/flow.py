# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Flow control handlers: timed delays and explicit terminal nodes.
"""

from datetime import datetime, timedelta

from ..context import ExecutionContext
from ..exceptions import HandlerError
from ..models import NodeType
from .base import Advance, Done, Fail, NodeHandler, NodeResult, Suspend


class DelayHandler(NodeHandler):
    """
    Suspends the execution until ``resume_at``.

    Due delays are picked up by ``WorkflowEngine.resume_due_delays``.
    A zero delay continues immediately.
    """

    node_type = NodeType.DELAY

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        delay_ms = node.config.delay_ms
        limit = processor.config.runtime.max_delay_ms
        if delay_ms > limit:
            raise HandlerError(
                f"Delay of {delay_ms}ms exceeds the configured maximum of {limit}ms",
                node_id=node.id,
                node_type=node.type,
            )
        if delay_ms == 0:
            context.record.message = "Delay of 0ms completed"
            return Advance()

        resume_at = datetime.now() + timedelta(milliseconds=delay_ms)
        payload = {"node_id": node.id, "delay_ms": delay_ms, "resume_at": resume_at.isoformat()}
        context.record.output_data = payload
        context.record.message = f"Waiting for delay of {delay_ms}ms"
        return Suspend("delay", payload, resume_at=resume_at)


class TerminalHandler(NodeHandler):
    node_type = NodeType.TERMINAL

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config = node.config
        message = context.render(config.message) if config.message else None
        context.record.output_data = {"success": config.success, "message": message}
        if config.success:
            context.record.message = "Workflow completed"
            return Done(message=message)
        return Fail(error=str(message or f"Workflow ended at failure node '{node.id}'"))
