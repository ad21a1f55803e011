# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

import logging
from typing import Any, Dict, List

from ..context import ExecutionContext
from ..models import MessageButton, NodeType
from ..outbound import OutgoingMessage
from .base import Advance, NodeHandler, NodeResult

logger = logging.getLogger("loyaltyflow.handlers.message")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class MessageHandler(NodeHandler):
    """Renders a message with its buttons and hands it to the delivery layer"""

    node_type = NodeType.MESSAGE

    def _render_button(self, button: MessageButton, context: ExecutionContext) -> Dict[str, Any]:
        rendered: Dict[str, Any] = {"text": _text(context.render(button.text))}
        if button.callback_data is not None:
            rendered["callback_data"] = _text(context.render(button.callback_data))
        if button.url is not None:
            rendered["url"] = _text(context.render(button.url))
        return rendered

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config = node.config
        text = _text(context.render(config.text))
        buttons: List[List[Dict[str, Any]]] = [
            [self._render_button(button, context) for button in row]
            for row in config.buttons
        ]

        message = OutgoingMessage(
            execution_id=context.execution_id,
            node_id=node.id,
            session_id=context.execution.session_id,
            chat_id=context.execution.chat_id,
            text=text,
            buttons=buttons,
            parse_mode=config.parse_mode,
        )
        receipt = await processor.outbound.send_message(message)

        context.record.input_data = {"text": config.text}
        context.record.output_data = {"text": text, "buttons": buttons, "receipt": receipt}
        context.record.message = f"Message sent ({len(text)} chars)"
        logger.debug(f"[{context.execution_id}] {node.id}: sent message to {message.chat_id}")
        return Advance()
