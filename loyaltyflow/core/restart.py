# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Restart/Resume Controller

Creates a new execution from an existing one and dispatches it in the
background. The original execution is never modified; the new one points
back at it through ``parent_execution_id``.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from .context_manager import ExecutionContextManager
from .dispatch import DispatchJob, DispatchQueue, DispatchTicket
from .exceptions import NestedExecutionError
from .execution_store import ExecutionStatus
from .processor import ExecutionOutcome, WorkflowProcessor

logger = logging.getLogger("loyaltyflow.restart")


class RestartController:
    """Restarts executions through an acknowledged dispatch queue"""

    def __init__(
        self,
        context_manager: ExecutionContextManager,
        processor: WorkflowProcessor,
        max_attempts: int = 3,
        retry_delay_ms: int = 500,
        workers: int = 1,
    ):
        self.context_manager = context_manager
        self.processor = processor
        self.dispatcher = DispatchQueue(
            self.run_job,
            max_attempts=max_attempts,
            retry_delay_ms=retry_delay_ms,
            workers=workers,
            on_failure=self.mark_failed,
        )
        # In-flight dispatches by new execution id
        self.tickets: Dict[str, DispatchTicket] = {}

    def restart(
        self,
        execution_id: str,
        from_node_id: Optional[str] = None,
        reset_variables: bool = False,
        skip_completed: bool = False,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a new execution from ``execution_id`` and dispatch it.

        Args:
            execution_id: Original execution (any status)
            from_node_id: Node to start at; defaults to the entry node
            reset_variables: Start on a fresh session instead of sharing the
                original session's variables
            skip_completed: Without ``from_node_id``, start at the node the
                original stopped at instead of the entry node
            session_id: Session for the new execution when resetting
                variables; generated when omitted

        Returns:
            {new_execution_id, parent_execution_id, restarted_from_node_id}

        Raises:
            ExecutionNotFoundError: Unknown execution
            NestedExecutionError: The execution is a sub-workflow run
            DefinitionError: Unknown version or start node
        """
        original = self.context_manager.get_execution(execution_id)
        if original.is_nested:
            raise NestedExecutionError(execution_id, original.caller_execution_id)

        version = self.context_manager.definitions.get_version(original.workflow_id, original.version)
        if from_node_id:
            start_node_id = from_node_id
        elif skip_completed and original.current_node_id:
            start_node_id = original.current_node_id
        else:
            start_node_id = version.entry_node_id
        version.get_node(start_node_id)

        if reset_variables:
            new_session = session_id or f"{original.session_id}:restart-{uuid.uuid4().hex[:8]}"
        else:
            new_session = session_id or original.session_id

        context = self.context_manager.create_context(
            version,
            session_id=new_session,
            user_id=original.user_id,
            chat_id=original.chat_id,
            start_node_id=start_node_id,
            parent_execution_id=original.execution_id,
            restarted_from_node_id=start_node_id,
            project_id=original.project_id,
        )
        new_id = context.execution_id
        ticket = self.dispatcher.submit(DispatchJob(new_id, start_node_id))
        self.tickets[new_id] = ticket
        ticket.add_done_callback(self._forget)

        logger.info(f"Restarted {execution_id} as {new_id} from {start_node_id} (session {new_session})")
        return {
            "new_execution_id": new_id,
            "parent_execution_id": original.execution_id,
            "restarted_from_node_id": start_node_id,
        }

    async def run_job(self, job: DispatchJob) -> Optional[ExecutionOutcome]:
        """Run a dispatched execution from its persisted position"""
        context = self.context_manager.load_context(job.execution_id)
        execution = context.execution
        if execution.status != ExecutionStatus.RUNNING:
            logger.info(f"Skipping dispatch of {job.execution_id}: already {execution.status.value}")
            return None
        start = execution.current_node_id or job.start_node_id
        return await self.processor.run(context, start)

    def mark_failed(self, ticket: DispatchTicket) -> None:
        """Record a dispatch that exhausted its attempts on the new execution"""
        self.context_manager.store.compare_and_set_status(
            ticket.job.execution_id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.FAILED,
            error=f"Dispatch failed after {ticket.attempts} attempts: {ticket.error}",
            error_type="DispatchError",
        )

    def _forget(self, ticket: DispatchTicket) -> None:
        self.tickets.pop(ticket.job.execution_id, None)

    async def join(self):
        await self.dispatcher.join()

    async def close(self):
        await self.dispatcher.close()
