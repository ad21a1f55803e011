# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Node Handler Registry

Maps every node type to its handler. The set of node types is closed;
``HandlerRegistry.default()`` registers one handler for each of them.
"""

import logging
from typing import Dict, List, Optional

from .exceptions import DefinitionError
from .handlers.base import NodeHandler
from .models import NodeType

logger = logging.getLogger("loyaltyflow.registry")


class HandlerRegistry:
    """Static registry of node handlers keyed by node type"""

    def __init__(self):
        self._handlers: Dict[NodeType, NodeHandler] = {}

    @classmethod
    def default(cls) -> "HandlerRegistry":
        """Registry with the built-in handler for every node type"""
        from .handlers import builtin_handlers

        registry = cls()
        for handler in builtin_handlers():
            registry.register(handler)

        missing = [t.value for t in NodeType if t not in registry._handlers]
        if missing:
            raise DefinitionError(f"No handler registered for node types: {missing}")
        return registry

    def register(self, handler: NodeHandler):
        """Register (or replace) the handler of a node type"""
        self._handlers[handler.node_type] = handler
        logger.debug(f"Registered handler for {handler.node_type.value}")

    def get(self, node_type: str) -> NodeHandler:
        """
        Handler for a node type.

        Raises:
            DefinitionError: If the type has no handler
        """
        try:
            handler: Optional[NodeHandler] = self._handlers.get(NodeType(node_type))
        except ValueError:
            handler = None
        if handler is None:
            raise DefinitionError(f"Unknown node type: {node_type}")
        return handler

    def list_types(self) -> List[str]:
        return sorted(t.value for t in self._handlers)
