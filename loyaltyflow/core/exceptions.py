# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Exception Hierarchy

Exception Hierarchy:
    FlowError (base)
    ├── ConfigError
    ├── DefinitionError
    ├── HandlerError
    │   ├── ExpressionError
    │   └── OutboundError
    ├── DepthExceededError
    ├── ConcurrencyConflict
    ├── ExecutionNotFoundError
    └── NestedExecutionError
"""

from typing import Any, Dict, List, Optional

# ============================================================================
# Base Exceptions
# ============================================================================


class FlowError(Exception):
    """Base exception for all LoyaltyFlow errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigError(FlowError):
    """Configuration could not be loaded or validated"""


# ============================================================================
# Definition Errors
# ============================================================================


class DefinitionError(FlowError):
    """Malformed workflow graph (missing node, dangling connection, bad config)"""

    def __init__(
        self,
        message: str,
        workflow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        errors: Optional[List[str]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.workflow_id = workflow_id
        self.node_id = node_id
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "workflow_id": self.workflow_id,
                "node_id": self.node_id,
                "errors": self.errors,
            }
        )
        return result


# ============================================================================
# Handler Errors
# ============================================================================


class HandlerError(FlowError):
    """A specific node failed while executing"""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.node_type = node_type

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"node_id": self.node_id, "node_type": self.node_type})
        return result


class ExpressionError(HandlerError):
    """Condition or template expression could not be evaluated"""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expression = expression


class OutboundError(HandlerError):
    """Outbound call (HTTP or message delivery) failed"""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.url = url
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"url": self.url, "status_code": self.status_code})
        return result


# ============================================================================
# Execution Errors
# ============================================================================


class DepthExceededError(FlowError):
    """Sub-workflow nesting went past the allowed depth"""

    def __init__(self, message: str, depth: int = 0, max_depth: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.depth = depth
        self.max_depth = max_depth

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"depth": self.depth, "max_depth": self.max_depth})
        return result


class ConcurrencyConflict(FlowError):
    """Status transition rejected because the persisted status did not match"""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        expected_status: Optional[str] = None,
        actual_status: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.execution_id = execution_id
        self.expected_status = expected_status
        self.actual_status = actual_status

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "execution_id": self.execution_id,
                "expected_status": self.expected_status,
                "actual_status": self.actual_status,
            }
        )
        return result


class ExecutionNotFoundError(FlowError):
    """No execution with the given id"""

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(f"Execution not found: {execution_id}", **kwargs)
        self.execution_id = execution_id


class NestedExecutionError(FlowError):
    """Operation targets a sub-workflow execution that is driven by its caller"""

    def __init__(self, execution_id: str, caller_execution_id: Optional[str], **kwargs):
        super().__init__(
            f"Execution {execution_id} is a nested sub-workflow run; "
            f"operate on caller {caller_execution_id} instead",
            **kwargs,
        )
        self.execution_id = execution_id
        self.caller_execution_id = caller_execution_id


def error_type_name(error: BaseException) -> str:
    """Name recorded for an error on executions and log entries"""
    return error.__class__.__name__


def error_message(error: BaseException) -> str:
    """Plain message for an error without appended details"""
    if isinstance(error, FlowError):
        return error.message
    return str(error) or error.__class__.__name__
