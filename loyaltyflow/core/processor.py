# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Workflow Processor

Drives an execution from a node until it suspends, completes or fails:

    1. look up the handler for the current node
    2. snapshot session variables, execute, snapshot again
    3. append exactly one LogEntry for the step
    4. follow the result (advance / suspend / done / fail)
    5. checkpoint (execution row + variable diffs + logs in one transaction)

Handler exceptions never escape a step: they become an error LogEntry and a
failed execution that keeps every variable written before the failure.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import FlowConfig, get_config
from .context import ExecutionContext
from .context_manager import ExecutionContextManager
from .events import Event, EventBus, EventType
from .exceptions import (
    ConcurrencyConflict,
    DefinitionError,
    FlowError,
    HandlerError,
    error_message,
    error_type_name,
)
from .execution_store import ExecutionStatus, LogEntry
from .handlers.base import Advance, Done, Fail, NodeResult, Suspend
from .models import NodeType, ResumeEvent
from .outbound import OutboundActions
from .registry import HandlerRegistry

logger = logging.getLogger("loyaltyflow.processor")

StepAction = Callable[[], Awaitable[NodeResult]]


@dataclass
class ExecutionOutcome:
    """Where a run stopped"""
    execution_id: str
    status: ExecutionStatus
    wait_type: Optional[str] = None
    wait_payload: Optional[Dict[str, Any]] = None
    resume_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    step_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "wait_type": self.wait_type,
            "wait_payload": self.wait_payload,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "error": self.error,
            "error_type": self.error_type,
            "step_count": self.step_count,
        }


def _raise(error: FlowError) -> StepAction:
    async def action() -> NodeResult:
        raise error
    return action


class WorkflowProcessor:
    """Executes nodes of one execution at a time"""

    def __init__(
        self,
        context_manager: ExecutionContextManager,
        outbound: OutboundActions,
        registry: Optional[HandlerRegistry] = None,
        events: Optional[EventBus] = None,
        config: Optional[FlowConfig] = None,
    ):
        self.context_manager = context_manager
        self.definitions = context_manager.definitions
        self.outbound = outbound
        self.registry = registry or HandlerRegistry.default()
        self.events = events or EventBus()
        self.config = config or get_config()

    # ==========================================================================
    # Entry points
    # ==========================================================================

    async def run(self, context: ExecutionContext, start_node_id: str) -> ExecutionOutcome:
        """Run a freshly created (or restarted) execution from ``start_node_id``"""
        await self.events.emit(
            Event(
                EventType.EXECUTION_START,
                {
                    "execution_id": context.execution_id,
                    "workflow_id": context.version.workflow_id,
                    "version": context.version.version,
                    "start_node_id": start_node_id,
                    "depth": context.depth,
                },
            )
        )
        return await self._drive(context, start_node_id)

    async def resume(
        self, context: ExecutionContext, event: Optional[ResumeEvent] = None
    ) -> ExecutionOutcome:
        """
        Continue a claimed execution from the node it was waiting at.

        The event's variables are written first; a wait node also receives the
        event value in its ``variable``. A caller waiting on a nested
        execution resumes the child and then finishes its sub-workflow node.
        """
        execution = context.execution
        event = event or context.resume_event or ResumeEvent()
        wait_node_id = execution.current_node_id
        nested = (execution.wait_payload or {}).get("nested")
        self._clear_wait(context)

        try:
            wait_node = context.version.get_node(wait_node_id)
        except DefinitionError as e:
            return await self._drive(context, wait_node_id, first_action=_raise(e))

        if nested:
            return await self._drive(
                context,
                wait_node_id,
                first_action=self._resume_child(wait_node, context, nested["execution_id"], event),
            )

        try:
            self._apply_event(context, wait_node, event)
        except FlowError as e:
            return await self._drive(context, wait_node_id, first_action=_raise(e))
        except ValueError as e:
            error = HandlerError(
                f"Invalid resume variable: {e}", node_id=wait_node_id, node_type=wait_node.type, cause=e
            )
            return await self._drive(context, wait_node_id, first_action=_raise(error))

        logger.info(f"[{context.execution_id}] Resumed at {wait_node_id} ({event.type})")
        next_id = context.version.next_node_id(wait_node_id, event.callback_data)
        if next_id is None:
            return await self._finish(context, ExecutionStatus.COMPLETED)
        return await self._drive(context, next_id)

    @staticmethod
    def _apply_event(context: ExecutionContext, wait_node, event: ResumeEvent) -> None:
        for name, value in event.variables.items():
            context.variables.assign(name, value)
        if wait_node.type == NodeType.WAIT_INPUT.value and wait_node.config.variable:
            if event.value is not None:
                context.variables.assign(wait_node.config.variable, event.value)

    def _resume_child(
        self, node, context: ExecutionContext, child_id: str, event: ResumeEvent
    ) -> StepAction:
        handler = self.registry.get(node.type)

        async def action() -> NodeResult:
            child = self.context_manager.resume_context(child_id, event)
            outcome = await self.resume(child, event)
            return handler.finish(node, context, child, outcome)

        return action

    # ==========================================================================
    # Loop
    # ==========================================================================

    async def _drive(
        self,
        context: ExecutionContext,
        node_id: str,
        first_action: Optional[StepAction] = None,
    ) -> ExecutionOutcome:
        runtime = self.config.runtime
        visits: Counter = Counter()
        steps = 0
        action = first_action

        while True:
            steps += 1
            visits[node_id] += 1
            if steps > runtime.max_steps_per_run:
                action = _raise(HandlerError(
                    f"Run exceeded {runtime.max_steps_per_run} steps without suspending",
                    node_id=node_id,
                ))
            elif visits[node_id] > runtime.max_node_visits:
                action = _raise(HandlerError(
                    f"Node '{node_id}' visited more than {runtime.max_node_visits} times in one run",
                    node_id=node_id,
                ))

            result = await self._execute_step(context, node_id, action)
            action = None

            if isinstance(result, Exception):
                return await self._finish(
                    context,
                    ExecutionStatus.FAILED,
                    error=error_message(result),
                    error_type=error_type_name(result),
                )
            if isinstance(result, Fail):
                return await self._finish(
                    context, ExecutionStatus.FAILED, error=result.error, error_type=result.error_type
                )
            if isinstance(result, Done):
                return await self._finish(context, ExecutionStatus.COMPLETED)
            if isinstance(result, Suspend):
                return await self._suspend(context, node_id, result)

            next_id = result.next_node_id or context.version.next_node_id(node_id, result.branch)
            if next_id is None:
                return await self._finish(context, ExecutionStatus.COMPLETED)

            context.execution.current_node_id = next_id
            if runtime.checkpoint_each_step:
                cancelled = self._persist(context)
                if cancelled:
                    return cancelled
            node_id = next_id

    async def _execute_step(
        self,
        context: ExecutionContext,
        node_id: str,
        action: Optional[StepAction] = None,
    ):
        """Execute one node; returns its NodeResult or the exception it raised"""
        execution = context.execution
        execution.current_node_id = node_id
        step = context.begin_step()
        node = context.version.nodes.get(node_id)
        node_type = node.type if node is not None else "unknown"
        before = context.variables.snapshot()
        started_at = datetime.now()
        started = time.monotonic()

        await self.events.emit(
            Event(
                EventType.STEP_START,
                {"execution_id": execution.execution_id, "step": step, "node_id": node_id},
            )
        )

        error: Optional[Exception] = None
        result: Optional[NodeResult] = None
        try:
            if action is not None:
                result = await action()
            elif node is None:
                raise DefinitionError(f"Node '{node_id}' does not exist in {context.version.id}")
            else:
                result = await self.registry.get(node.type).execute(node, context, self)
        except FlowError as e:
            error = e
        except Exception as e:
            logger.exception(f"[{execution.execution_id}] Unexpected error in {node_id}")
            error = HandlerError(f"Unexpected error: {e}", node_id=node_id, node_type=node_type, cause=e)

        record = context.record
        data = dict(record.data)
        if node is not None and node.label:
            data["node_label"] = node.label

        if error is not None:
            level = "error"
            message = f"Node {node_id} ({node_type}) failed: {error_message(error)}"
            data["error_type"] = error_type_name(error)
        elif isinstance(result, Fail):
            level = "error"
            message = f"Node {node_id} ended the execution as failed: {result.error}"
            data["error_type"] = result.error_type
        else:
            level = record.level
            message = record.message or self._default_message(result)

        context.add_log(
            LogEntry(
                execution_id=execution.execution_id,
                step=step,
                node_id=node_id,
                node_type=node_type,
                level=level,
                message=message,
                timestamp=started_at,
                data=data,
                input_data=record.input_data,
                output_data=record.output_data,
                variables_before=before,
                variables_after=context.variables.snapshot(),
                http_request=record.http_request,
                http_response=record.http_response,
                error=error_message(error) if error is not None else None,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )

        if error is not None:
            logger.error(f"[{execution.execution_id}] Step {step} {message}")
            await self.events.emit(
                Event(
                    EventType.STEP_ERROR,
                    {
                        "execution_id": execution.execution_id,
                        "step": step,
                        "node_id": node_id,
                        "error": error_message(error),
                    },
                )
            )
            return error

        logger.debug(f"[{execution.execution_id}] Step {step} {node_id}: {message}")
        await self.events.emit(
            Event(
                EventType.STEP_END,
                {"execution_id": execution.execution_id, "step": step, "node_id": node_id},
            )
        )
        return result

    @staticmethod
    def _default_message(result: Optional[NodeResult]) -> str:
        if isinstance(result, Suspend):
            return f"Waiting for {result.wait_type}"
        if isinstance(result, Done):
            return result.message or "Workflow completed"
        return "Step completed"

    # ==========================================================================
    # Boundaries
    # ==========================================================================

    @staticmethod
    def _clear_wait(context: ExecutionContext) -> None:
        execution = context.execution
        execution.wait_type = None
        execution.wait_payload = None
        execution.resume_at = None

    async def _suspend(
        self, context: ExecutionContext, node_id: str, result: Suspend
    ) -> ExecutionOutcome:
        execution = context.execution
        execution.status = ExecutionStatus.WAITING
        execution.current_node_id = node_id
        execution.wait_type = result.wait_type
        execution.wait_payload = result.payload
        execution.resume_at = result.resume_at

        cancelled = self._persist(context)
        if cancelled:
            return cancelled

        logger.info(f"[{execution.execution_id}] Waiting at {node_id} for {result.wait_type}")
        await self.events.emit(
            Event(
                EventType.EXECUTION_WAITING,
                {
                    "execution_id": execution.execution_id,
                    "node_id": node_id,
                    "wait_type": result.wait_type,
                    "wait_payload": result.payload,
                },
            )
        )
        return self._outcome(context)

    async def _finish(
        self,
        context: ExecutionContext,
        status: ExecutionStatus,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> ExecutionOutcome:
        execution = context.execution
        execution.status = status
        execution.finished_at = datetime.now()
        execution.error = error
        execution.error_type = error_type
        self._clear_wait(context)

        cancelled = self._persist(context)
        if cancelled:
            return cancelled

        if status == ExecutionStatus.FAILED:
            logger.error(f"[{execution.execution_id}] Failed at {execution.current_node_id}: {error}")
        else:
            logger.info(
                f"[{execution.execution_id}] {status.value.capitalize()} after "
                f"{execution.step_count} steps"
            )
        await self.events.emit(
            Event(
                EventType.EXECUTION_END,
                {
                    "execution_id": execution.execution_id,
                    "status": status.value,
                    "error": error,
                    "step_count": execution.step_count,
                },
            )
        )
        return self._outcome(context)

    def _persist(self, context: ExecutionContext) -> Optional[ExecutionOutcome]:
        """Checkpoint; returns the cancelled outcome if the row left ``running``"""
        try:
            self.context_manager.persist(context)
        except ConcurrencyConflict as e:
            logger.warning(f"[{context.execution_id}] Stopped: {e.message}")
            return ExecutionOutcome(
                execution_id=context.execution_id,
                status=ExecutionStatus(e.actual_status or ExecutionStatus.CANCELLED.value),
                step_count=context.execution.step_count,
            )
        return None

    @staticmethod
    def _outcome(context: ExecutionContext) -> ExecutionOutcome:
        execution = context.execution
        return ExecutionOutcome(
            execution_id=execution.execution_id,
            status=execution.status,
            wait_type=execution.wait_type,
            wait_payload=execution.wait_payload,
            resume_at=execution.resume_at,
            error=execution.error,
            error_type=execution.error_type,
            step_count=execution.step_count,
        )
