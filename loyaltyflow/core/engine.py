# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Engine

Facade over the definition store, context manager, processor and restart
controller. This is the surface the trigger layer, the CLI and the HTTP
server call.

Usage:
    engine = WorkflowEngine()
    engine.publish_file("welcome.yaml")
    execution_id = await engine.start("welcome", session_id="tg:42")
    status = await engine.resume(execution_id, ResumeEvent(text="hi"))
"""

import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import FlowConfig, get_config
from .context_manager import ExecutionContextManager
from .definitions import DefinitionStore, VersionRef
from .events import EventBus
from .exceptions import ConcurrencyConflict, NestedExecutionError
from .execution_store import Execution, ExecutionStatus
from .history import HistoryAggregator
from .models import ResumeEvent, WorkflowVersion
from .outbound import HttpxOutbound, OutboundActions
from .processor import WorkflowProcessor
from .registry import HandlerRegistry
from .restart import RestartController
from .storage import Database

logger = logging.getLogger("loyaltyflow.engine")

DateLike = Union[datetime, str, None]


def _parse_date(value: DateLike) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class WorkflowEngine:
    """Durable, resumable workflow execution engine"""

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        database: Optional[Database] = None,
        definitions: Optional[DefinitionStore] = None,
        outbound: Optional[OutboundActions] = None,
        events: Optional[EventBus] = None,
        registry: Optional[HandlerRegistry] = None,
    ):
        self.config = config or get_config()
        self.database = database or Database(self.config.paths.database)
        self.definitions = definitions or DefinitionStore(self.config.paths.definitions_dir)
        self.outbound = outbound or HttpxOutbound(self.config.outbound)
        self.events = events or EventBus()

        self.context_manager = ExecutionContextManager(self.database, self.definitions)
        self.store = self.context_manager.store
        self.variables = self.context_manager.variables
        self.processor = WorkflowProcessor(
            self.context_manager,
            self.outbound,
            registry=registry,
            events=self.events,
            config=self.config,
        )
        runtime = self.config.runtime
        self.restarts = RestartController(
            self.context_manager,
            self.processor,
            max_attempts=runtime.dispatch_max_attempts,
            retry_delay_ms=runtime.dispatch_retry_delay_ms,
            workers=runtime.dispatch_workers,
        )

    # ==========================================================================
    # Definitions
    # ==========================================================================

    def publish(self, definition: Dict[str, Any], activate: bool = True) -> WorkflowVersion:
        return self.definitions.publish(definition, activate=activate)

    def publish_file(self, path: Union[str, Path], activate: bool = True) -> WorkflowVersion:
        return self.definitions.publish_file(path, activate=activate)

    def validate(self, definition: Dict[str, Any]) -> Tuple[WorkflowVersion, List[str]]:
        """Validate without publishing; returns the candidate and lint warnings"""
        return self.definitions.check(definition)

    def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        return self.definitions.list_versions(workflow_id)

    def activate_version(self, workflow_id: str, version: int) -> WorkflowVersion:
        return self.definitions.activate(workflow_id, version)

    # ==========================================================================
    # Running
    # ==========================================================================

    async def start(
        self,
        workflow_id: str,
        session_id: str,
        version: VersionRef = "active",
        initial_variables: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> str:
        """
        Start a workflow for a session and run it until it suspends or ends.

        Args:
            workflow_id: Workflow to run
            session_id: Conversation identity owning session variables
            version: Version number or ``"active"``
            initial_variables: Seed values (``user.x`` style names allowed)
            user_id: Owner of user-scoped variables
            chat_id: Delivery address for messages

        Returns:
            The new execution id

        Raises:
            DefinitionError: Unknown workflow/version or malformed graph
        """
        resolved = self.definitions.get_version(workflow_id, version)
        context = self.context_manager.create_context(
            resolved,
            session_id=session_id,
            user_id=user_id,
            chat_id=chat_id,
            initial_variables=initial_variables,
        )
        await self.processor.run(context, resolved.entry_node_id)
        return context.execution_id

    async def resume(
        self,
        execution_id: str,
        event: Union[ResumeEvent, Dict[str, Any], None] = None,
    ) -> ExecutionStatus:
        """
        Deliver an event to a waiting execution.

        Raises:
            ExecutionNotFoundError: Unknown execution
            NestedExecutionError: The execution is a sub-workflow run
            ConcurrencyConflict: The execution is not waiting; nothing changes
        """
        if isinstance(event, dict):
            event = ResumeEvent.model_validate(event)
        event = event or ResumeEvent()

        execution = self.context_manager.get_execution(execution_id)
        if execution.is_nested:
            raise NestedExecutionError(execution_id, execution.caller_execution_id)

        context = self.context_manager.resume_context(execution_id, event)
        outcome = await self.processor.resume(context, event)
        return outcome.status

    async def restart(
        self,
        execution_id: str,
        from_node_id: Optional[str] = None,
        reset_variables: bool = False,
        skip_completed: bool = False,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a new execution from an existing one and dispatch it in the background"""
        return self.restarts.restart(
            execution_id,
            from_node_id=from_node_id,
            reset_variables=reset_variables,
            skip_completed=skip_completed,
            session_id=session_id,
        )

    def cancel(self, execution_id: str) -> bool:
        """
        Cancel a running or waiting execution and its waiting sub-workflow runs.

        Returns:
            True when this call cancelled it
        """
        execution = self.context_manager.get_execution(execution_id)
        if execution.is_nested:
            raise NestedExecutionError(execution_id, execution.caller_execution_id)

        cancelled = self._cancel_tree(execution_id)
        if cancelled:
            logger.info(f"Cancelled execution {execution_id}")
        return cancelled

    def _cancel_tree(self, execution_id: str) -> bool:
        changed = self.store.compare_and_set_status(
            execution_id,
            [ExecutionStatus.RUNNING, ExecutionStatus.WAITING],
            ExecutionStatus.CANCELLED,
        )
        if changed:
            for child in self.store.children(execution_id):
                self._cancel_tree(child.execution_id)
        return changed

    async def resume_due_delays(self, now: Optional[datetime] = None) -> List[str]:
        """
        Resume executions whose delay has elapsed.

        Returns:
            Ids of executions this call resumed
        """
        resumed = []
        for execution in self.store.due_delays(now):
            try:
                await self.resume(execution.execution_id, ResumeEvent(type="timer"))
            except ConcurrencyConflict:
                logger.debug(f"Delay of {execution.execution_id} already resumed elsewhere")
                continue
            resumed.append(execution.execution_id)
        return resumed

    # ==========================================================================
    # Inspection
    # ==========================================================================

    def get_execution(self, execution_id: str) -> Dict[str, Any]:
        """Execution with its step history, variables by scope and wait payload"""
        execution = self.context_manager.get_execution(execution_id)
        steps = HistoryAggregator.aggregate(self.store.get_logs(execution_id))
        variables = self.context_manager.load_variables(execution)
        return {
            "status": execution.status.value,
            "execution": execution.to_dict(),
            "steps": [step.to_dict() for step in steps],
            "variables_by_scope": variables.by_scope(),
            "wait_payload": execution.wait_payload,
            "children": [child.to_summary() for child in self.store.children(execution_id)],
        }

    def find_waiting_execution(self, workflow_id: str, session_id: str) -> Optional[Execution]:
        return self.store.find_waiting(workflow_id, session_id)

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: DateLike = None,
        date_to: DateLike = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        include_nested: bool = False,
    ) -> Dict[str, Any]:
        """Paginated execution summaries, newest first"""
        runtime = self.config.runtime
        limit = min(max(1, limit or runtime.default_page_size), runtime.max_page_size)
        page = max(1, page)

        executions, total = self.store.list(
            workflow_id=workflow_id,
            status=ExecutionStatus(status) if status else None,
            user_id=user_id,
            date_from=_parse_date(date_from),
            date_to=_parse_date(date_to),
            search=search,
            limit=limit,
            offset=(page - 1) * limit,
            include_nested=include_nested,
        )
        return {
            "executions": [e.to_summary() for e in executions],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    # ==========================================================================
    # Maintenance
    # ==========================================================================

    def cleanup(self, keep_days: int = 30) -> Dict[str, int]:
        """Delete old finished executions and expired variables"""
        executions = self.store.cleanup_old(keep_days)
        variables = self.variables.cleanup_expired()
        logger.info(f"Cleanup removed {executions} executions and {variables} expired variables")
        return {"executions": executions, "variables": variables}

    def mark_stale_as_failed(self, max_age_minutes: int = 60) -> int:
        return self.store.mark_stale_as_failed(max_age_minutes)

    async def join(self):
        """Wait for background restarts to finish"""
        await self.restarts.join()

    async def close(self):
        await self.restarts.close()
