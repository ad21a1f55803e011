# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Execution Context Manager

Loads an execution with its variables into an ``ExecutionContext`` and
writes the result back. A persist is one transaction holding the execution
row, the variable diffs and the new log entries, so a reader never sees a
log entry without the status that produced it.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from .context import ExecutionContext
from .definitions import DefinitionStore
from .exceptions import ConcurrencyConflict, ExecutionNotFoundError
from .execution_store import Execution, ExecutionStatus, ExecutionStore
from .models import ResumeEvent, WorkflowVersion
from .storage import Database
from .variables import ScopedVariables, VariableScope, VariableStore

logger = logging.getLogger("loyaltyflow.context")


def new_execution_id() -> str:
    return str(uuid.uuid4())


class ExecutionContextManager:
    """Creates, loads and persists execution contexts"""

    def __init__(
        self,
        database: Database,
        definitions: DefinitionStore,
        store: Optional[ExecutionStore] = None,
        variables: Optional[VariableStore] = None,
    ):
        self.database = database
        self.definitions = definitions
        self.store = store or ExecutionStore(database)
        self.variables = variables or VariableStore(database)

    # ==========================================================================
    # Creation
    # ==========================================================================

    def create_context(
        self,
        version: WorkflowVersion,
        session_id: str,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        initial_variables: Optional[Dict[str, Any]] = None,
        start_node_id: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
        restarted_from_node_id: Optional[str] = None,
        project_id: Optional[str] = None,
        depth: int = 0,
        caller_execution_id: Optional[str] = None,
        caller_node_id: Optional[str] = None,
    ) -> ExecutionContext:
        """
        Create a running execution and its context.

        The execution row and the initial variables are written together.
        Unqualified initial variable names go to session scope; ``user.x``
        style names go to the named scope.
        """
        start_node_id = start_node_id or version.entry_node_id
        version.get_node(start_node_id)

        now = datetime.now()
        execution = Execution(
            execution_id=new_execution_id(),
            workflow_id=version.workflow_id,
            version=version.version,
            session_id=session_id,
            status=ExecutionStatus.RUNNING,
            started_at=now,
            updated_at=now,
            project_id=project_id or version.project_id,
            user_id=user_id,
            chat_id=chat_id,
            current_node_id=start_node_id,
            parent_execution_id=parent_execution_id,
            restarted_from_node_id=restarted_from_node_id,
            depth=depth,
            caller_execution_id=caller_execution_id,
            caller_node_id=caller_node_id,
        )

        variables = ScopedVariables.load(self.variables, self._owners(execution))
        for name, value in (initial_variables or {}).items():
            variables.assign(name, value)

        with self.database.transaction() as conn:
            self.store.create(execution, conn=conn)
            self.variables.apply(conn, variables.pending_changes())
        variables.mark_persisted()

        logger.info(
            f"Created execution {execution.execution_id} for {version.id} "
            f"(session {session_id}, start {start_node_id})"
        )
        return ExecutionContext(execution, version, variables)

    def create_nested_context(
        self,
        caller: ExecutionContext,
        version: WorkflowVersion,
        caller_node_id: str,
        seed: Optional[Dict[str, Any]] = None,
    ) -> ExecutionContext:
        """
        Create the execution of a sub-workflow invoked from ``caller``.

        The child gets its own session namespace derived from the caller's;
        user, project and global scopes are shared.
        """
        parent = caller.execution
        return self.create_context(
            version,
            session_id=f"{parent.session_id}/{caller_node_id}",
            user_id=parent.user_id,
            chat_id=parent.chat_id,
            initial_variables=seed,
            project_id=version.project_id or parent.project_id,
            depth=parent.depth + 1,
            caller_execution_id=parent.execution_id,
            caller_node_id=caller_node_id,
        )

    # ==========================================================================
    # Loading
    # ==========================================================================

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def resume_context(
        self, execution_id: str, event: Optional[ResumeEvent] = None
    ) -> ExecutionContext:
        """
        Claim a waiting execution and load its context.

        The claim is a compare-and-set from ``waiting`` to ``running`` on the
        persisted row; a caller that loses the race gets ConcurrencyConflict
        and nothing is changed. The version is resolved before the claim, and
        a failure loading variables puts the row back to ``waiting``.
        """
        execution = self.get_execution(execution_id)
        version = self.definitions.get_version(execution.workflow_id, execution.version)
        claimed = self.store.compare_and_set_status(
            execution_id, [ExecutionStatus.WAITING], ExecutionStatus.RUNNING
        )
        if not claimed:
            current = self.store.get(execution_id) or execution
            raise ConcurrencyConflict(
                f"Execution {execution_id} is {current.status.value}, not waiting",
                execution_id=execution_id,
                expected_status=ExecutionStatus.WAITING.value,
                actual_status=current.status.value,
            )

        try:
            execution = self.get_execution(execution_id)
            variables = ScopedVariables.load(self.variables, self._owners(execution))
        except Exception:
            self.store.compare_and_set_status(
                execution_id, [ExecutionStatus.RUNNING], ExecutionStatus.WAITING
            )
            raise

        context = ExecutionContext(execution, version, variables)
        context.resume_event = event
        return context

    def load_context(self, execution_id: str) -> ExecutionContext:
        """Load an execution, its version and its variables without claiming it"""
        execution = self.get_execution(execution_id)
        version = self.definitions.get_version(execution.workflow_id, execution.version)
        variables = ScopedVariables.load(self.variables, self._owners(execution))
        return ExecutionContext(execution, version, variables)

    def load_variables(self, execution: Execution) -> ScopedVariables:
        """Variables addressable by an execution, for inspection"""
        return ScopedVariables.load(self.variables, self._owners(execution))

    @staticmethod
    def _owners(execution: Execution) -> Dict[VariableScope, Optional[str]]:
        return {
            VariableScope.SESSION: execution.session_id,
            VariableScope.USER: execution.user_id,
            VariableScope.PROJECT: execution.project_id,
        }

    # ==========================================================================
    # Persisting
    # ==========================================================================

    def persist(self, context: ExecutionContext) -> None:
        """
        Write execution row, variable diffs and pending log entries atomically.

        Raises:
            ConcurrencyConflict: If the stored row is no longer ``running``
                (e.g. it was cancelled); nothing is written in that case.
        """
        execution = context.execution
        changes = context.variables.pending_changes()

        with self.database.transaction() as conn:
            if not self.store.save_running(conn, execution):
                row = conn.execute(
                    "SELECT status FROM executions WHERE execution_id = ?",
                    (execution.execution_id,),
                ).fetchone()
                actual = row["status"] if row else None
                raise ConcurrencyConflict(
                    f"Execution {execution.execution_id} changed to {actual} while running",
                    execution_id=execution.execution_id,
                    expected_status=ExecutionStatus.RUNNING.value,
                    actual_status=actual,
                )
            self.variables.apply(conn, changes)
            self.store.add_logs(conn, context.pending_logs)

        context.variables.mark_persisted()
        context.pending_logs = []
