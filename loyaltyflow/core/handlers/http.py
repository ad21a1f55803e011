# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
HTTP request handler.

Renders the request from templates, performs it through the outbound
collaborator and maps response fields into variables. Mapping paths are
``status_code``, ``headers.<name>``, ``body`` or ``body.<path>``; any other
path is read from the body.
"""

import logging
from typing import Any, Dict

from ..context import ExecutionContext
from ..exceptions import HandlerError, OutboundError
from ..models import NodeType
from ..outbound import HttpCall, HttpResult
from ..variables import MISSING, dig
from .base import Advance, NodeHandler, NodeResult

logger = logging.getLogger("loyaltyflow.handlers.http")


def extract(result: HttpResult, path: str) -> Any:
    """
    Read one mapping path from a response.

    Raises:
        HandlerError: If the path reads into a body that is not JSON
    """
    parts = [p for p in path.split(".") if p]
    if not parts:
        raise HandlerError(f"Empty response mapping path {path!r}")

    root = parts[0]
    if root == "status_code" and len(parts) == 1:
        return result.status_code
    if root == "headers":
        headers = {k.lower(): v for k, v in result.headers.items()}
        if len(parts) == 1:
            return headers
        return headers.get(".".join(parts[1:]).lower())
    if root == "body":
        parts = parts[1:]
    if not parts:
        return result.body
    if not result.is_json:
        raise HandlerError(f"Response body is not JSON, cannot map {path!r}")
    value = dig(result.body, parts)
    return None if value is MISSING else value


class HttpRequestHandler(NodeHandler):
    node_type = NodeType.HTTP_REQUEST

    async def execute(self, node, context: ExecutionContext, processor) -> NodeResult:
        config = node.config
        call = HttpCall(
            method=config.method,
            url=str(context.render(config.url)),
            headers={k: str(context.render(v)) for k, v in config.headers.items()},
            query=context.render(config.query),
            body=context.render(config.body),
            timeout_ms=config.timeout_ms,
        )
        context.record.http_request = call.to_dict()
        context.record.input_data = {"method": call.method, "url": call.url}

        result = await processor.outbound.http_request(call)
        context.record.http_response = result.to_dict()

        if not result.ok:
            raise OutboundError(
                f"{call.method} {call.url} returned HTTP {result.status_code}",
                url=call.url,
                status_code=result.status_code,
                node_id=node.id,
                node_type=node.type,
            )

        mapped: Dict[str, Any] = {}
        for variable, path in config.response_mapping.items():
            value = extract(result, path)
            context.variables.assign(variable, value)
            mapped[variable] = value

        if config.assign_to:
            context.variables.assign(
                config.assign_to,
                {"status_code": result.status_code, "headers": result.headers, "body": result.body},
            )

        context.record.output_data = {"status_code": result.status_code, "mapped": mapped}
        context.record.message = f"HTTP {call.method} completed with {result.status_code}"
        logger.debug(f"[{context.execution_id}] {node.id}: {call.method} {call.url} -> {result.status_code}")
        return Advance()
