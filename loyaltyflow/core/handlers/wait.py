# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

from datetime import datetime, timedelta

from ..context import ExecutionContext
from ..models import NodeType
from .base import NodeHandler, NodeResult, Suspend


class WaitInputHandler(NodeHandler):
    """Suspends the execution until the trigger layer delivers an event"""

    node_type = NodeType.WAIT_INPUT

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config = node.config
        payload = {
            "node_id": node.id,
            "wait_type": config.wait_type.value,
            "variable": config.variable,
            "metadata": context.render(config.metadata),
            "expected_callbacks": [
                conn.branch for conn in context.version.outgoing(node.id) if conn.branch
            ],
        }
        if config.timeout_ms:
            expires_at = datetime.now() + timedelta(milliseconds=config.timeout_ms)
            payload["expires_at"] = expires_at.isoformat()

        context.record.output_data = payload
        context.record.message = f"Waiting for {config.wait_type.value}"
        return Suspend(config.wait_type.value, payload)
