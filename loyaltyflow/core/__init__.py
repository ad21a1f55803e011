# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Core - Init file

Durable, resumable workflow execution engine for conversational loyalty
flows. Exports the engine facade and the types its callers handle.
"""

from .config import FlowConfig, get_config, load_config, set_config
from .engine import WorkflowEngine
from .events import Event, EventBus, EventType
from .exceptions import (
    ConcurrencyConflict,
    ConfigError,
    DefinitionError,
    DepthExceededError,
    ExecutionNotFoundError,
    ExpressionError,
    FlowError,
    HandlerError,
    NestedExecutionError,
    OutboundError,
)
from .execution_store import Execution, ExecutionStatus, LogEntry
from .history import HistoryAggregator, StepView
from .models import ResumeEvent, WorkflowVersion
from .outbound import HttpxOutbound, InMemoryOutbound, OutboundActions
from .processor import ExecutionOutcome, WorkflowProcessor

__all__ = [
    # Engine
    "WorkflowEngine",
    "WorkflowProcessor",
    "ExecutionOutcome",
    # Models
    "WorkflowVersion",
    "ResumeEvent",
    "Execution",
    "ExecutionStatus",
    "LogEntry",
    "HistoryAggregator",
    "StepView",
    # Collaborators
    "OutboundActions",
    "HttpxOutbound",
    "InMemoryOutbound",
    "EventBus",
    "Event",
    "EventType",
    # Configuration
    "FlowConfig",
    "get_config",
    "load_config",
    "set_config",
    # Errors
    "FlowError",
    "ConfigError",
    "DefinitionError",
    "HandlerError",
    "ExpressionError",
    "OutboundError",
    "DepthExceededError",
    "ConcurrencyConflict",
    "ExecutionNotFoundError",
    "NestedExecutionError",
]
