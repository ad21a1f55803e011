# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Node handler base classes.

A handler executes one node and tells the processor what happens next:

    Advance  continue (optionally along a named branch or to an explicit node)
    Suspend  stop and wait for an external event
    Done     end the execution as completed
    Fail     end the execution as failed

Handlers raise HandlerError (or another FlowError) for failures they detect;
the processor turns exceptions into a failed step.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from ..context import ExecutionContext
from ..models import NodeType

if TYPE_CHECKING:
    from ..processor import WorkflowProcessor


@dataclass(frozen=True)
class Advance:
    branch: Optional[str] = None
    next_node_id: Optional[str] = None


@dataclass(frozen=True)
class Suspend:
    wait_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    resume_at: Optional[datetime] = None


@dataclass(frozen=True)
class Done:
    message: Optional[str] = None


@dataclass(frozen=True)
class Fail:
    error: str
    error_type: str = "HandlerError"


NodeResult = Union[Advance, Suspend, Done, Fail]


class NodeHandler(ABC):
    """Execution strategy for one node type"""

    node_type: NodeType

    @abstractmethod
    async def execute(
        self,
        node: Any,
        context: ExecutionContext,
        processor: "WorkflowProcessor",
    ) -> NodeResult:
        """
        Execute a node.

        Args:
            node: Validated node (its ``config`` matches ``node_type``)
            context: Working set of the running execution
            processor: Running processor, for outbound actions and nesting

        Returns:
            Advance, Suspend, Done or Fail
        """
