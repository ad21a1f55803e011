# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Execution context: the in-memory working set of one run/resume cycle.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .execution_store import Execution, LogEntry
from .models import ResumeEvent, WorkflowVersion
from .templates import render_value
from .variables import ScopedVariables


@dataclass
class StepRecord:
    """I/O a handler captured for the step being executed"""
    message: Optional[str] = None
    level: str = "info"
    input_data: Any = None
    output_data: Any = None
    http_request: Optional[Dict[str, Any]] = None
    http_response: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)


class ExecutionContext:
    """
    Execution row, resolved version and variables of one execution.

    Changes accumulate here (row fields, variable diffs, pending log
    entries) until the context manager persists them in one transaction.
    """

    def __init__(
        self,
        execution: Execution,
        version: WorkflowVersion,
        variables: ScopedVariables,
        resume_event: Optional[ResumeEvent] = None,
    ):
        self.execution = execution
        self.version = version
        self.variables = variables
        self.resume_event = resume_event
        self.pending_logs: List[LogEntry] = []
        self.record = StepRecord()

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def depth(self) -> int:
        return self.execution.depth

    def begin_step(self) -> int:
        """Allocate the next step number and reset the step record"""
        self.execution.step_count += 1
        self.record = StepRecord()
        return self.execution.step_count

    def add_log(self, entry: LogEntry) -> None:
        self.pending_logs.append(entry)

    def template_extra(self) -> Dict[str, Any]:
        return {
            "execution": {
                "id": self.execution.execution_id,
                "workflow_id": self.execution.workflow_id,
                "version": self.execution.version,
                "session_id": self.execution.session_id,
                "user_id": self.execution.user_id,
                "chat_id": self.execution.chat_id,
                "project_id": self.execution.project_id,
            }
        }

    def render(self, value: Any) -> Any:
        """Render templates in a config value against this execution"""
        return render_value(value, self.variables, self.template_extra())
