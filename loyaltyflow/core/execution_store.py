# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Execution Store

SQLite persistence for workflow executions and their append-only step log.

Status changes that race (resume, cancel) go through
``compare_and_set_status``: the UPDATE is conditioned on the status read
by the caller, so at most one caller wins.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .storage import Database, dump_json, load_json

logger = logging.getLogger("loyaltyflow.execution_store")


class ExecutionStatus(str, Enum):
    """Workflow execution status"""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Execution:
    """One durable run of a workflow version for a session"""
    execution_id: str
    workflow_id: str
    version: int
    session_id: str
    status: ExecutionStatus
    started_at: datetime
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    current_node_id: Optional[str] = None
    wait_type: Optional[str] = None
    wait_payload: Optional[Dict[str, Any]] = None
    resume_at: Optional[datetime] = None
    step_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    parent_execution_id: Optional[str] = None
    restarted_from_node_id: Optional[str] = None
    depth: int = 0
    caller_execution_id: Optional[str] = None
    caller_node_id: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate duration in milliseconds"""
        if self.started_at and self.finished_at:
            delta = self.finished_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def is_nested(self) -> bool:
        return self.caller_execution_id is not None

    def to_summary(self) -> Dict[str, Any]:
        """Listing view"""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "version": self.version,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "chat_id": self.chat_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "step_count": self.step_count,
            "started_at": _format_time(self.started_at),
            "finished_at": _format_time(self.finished_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "parent_execution_id": self.parent_execution_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.to_summary()
        result.update(
            {
                "project_id": self.project_id,
                "wait_type": self.wait_type,
                "wait_payload": self.wait_payload,
                "resume_at": _format_time(self.resume_at),
                "error_type": self.error_type,
                "updated_at": _format_time(self.updated_at),
                "restarted_from_node_id": self.restarted_from_node_id,
                "depth": self.depth,
                "caller_execution_id": self.caller_execution_id,
                "caller_node_id": self.caller_node_id,
            }
        )
        return result

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Execution":
        """Create Execution from database row"""
        return cls(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            version=row["version"],
            session_id=row["session_id"],
            status=ExecutionStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            project_id=row["project_id"],
            user_id=row["user_id"],
            chat_id=row["chat_id"],
            current_node_id=row["current_node_id"],
            wait_type=row["wait_type"],
            wait_payload=load_json(row["wait_payload"]),
            resume_at=_parse_time(row["resume_at"]),
            step_count=row["step_count"],
            error=row["error"],
            error_type=row["error_type"],
            finished_at=_parse_time(row["finished_at"]),
            updated_at=_parse_time(row["updated_at"]),
            parent_execution_id=row["parent_execution_id"],
            restarted_from_node_id=row["restarted_from_node_id"],
            depth=row["depth"],
            caller_execution_id=row["caller_execution_id"],
            caller_node_id=row["caller_node_id"],
        )


@dataclass
class LogEntry:
    """Append-only record of one executed step"""
    execution_id: str
    step: int
    node_id: str
    node_type: str
    level: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)
    input_data: Optional[Any] = None
    output_data: Optional[Any] = None
    variables_before: Optional[Dict[str, Any]] = None
    variables_after: Optional[Dict[str, Any]] = None
    http_request: Optional[Dict[str, Any]] = None
    http_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step": self.step,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "variables_before": self.variables_before,
            "variables_after": self.variables_after,
            "http_request": self.http_request,
            "http_response": self.http_response,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LogEntry":
        return cls(
            id=row["id"],
            execution_id=row["execution_id"],
            step=row["step"],
            node_id=row["node_id"],
            node_type=row["node_type"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            level=row["level"],
            message=row["message"],
            data=load_json(row["data"]) or {},
            input_data=load_json(row["input_data"]),
            output_data=load_json(row["output_data"]),
            variables_before=load_json(row["variables_before"]),
            variables_after=load_json(row["variables_after"]),
            http_request=load_json(row["http_request"]),
            http_response=load_json(row["http_response"]),
            error=row["error"],
            duration_ms=row["duration_ms"],
        )


class ExecutionStore:
    """
    SQLite-based storage for executions and step logs.

    Usage:
        store = ExecutionStore(database)

        store.create(execution)
        store.compare_and_set_status(
            execution_id, [ExecutionStatus.WAITING], ExecutionStatus.RUNNING
        )
        page, total = store.list(workflow_id="welcome", status=ExecutionStatus.WAITING)
    """

    def __init__(self, database: Database):
        self.database = database

    # ==========================================================================
    # CRUD Operations
    # ==========================================================================

    def create(self, execution: Execution, conn: Optional[sqlite3.Connection] = None) -> Execution:
        """Insert a new execution row"""
        execution.updated_at = execution.updated_at or datetime.now()
        if conn is not None:
            self._insert(conn, execution)
        else:
            with self.database.transaction() as tx:
                self._insert(tx, execution)
        return execution

    def _insert(self, conn: sqlite3.Connection, execution: Execution) -> None:
        conn.execute(
            """
            INSERT INTO executions
            (execution_id, project_id, workflow_id, version, session_id, user_id,
             chat_id, status, current_node_id, wait_type, wait_payload, resume_at,
             step_count, error, error_type, started_at, finished_at, updated_at,
             parent_execution_id, restarted_from_node_id, depth,
             caller_execution_id, caller_node_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.execution_id,
                execution.project_id,
                execution.workflow_id,
                execution.version,
                execution.session_id,
                execution.user_id,
                execution.chat_id,
                execution.status.value,
                execution.current_node_id,
                execution.wait_type,
                dump_json(execution.wait_payload),
                _format_time(execution.resume_at),
                execution.step_count,
                execution.error,
                execution.error_type,
                execution.started_at.isoformat(),
                _format_time(execution.finished_at),
                execution.updated_at.isoformat(),
                execution.parent_execution_id,
                execution.restarted_from_node_id,
                execution.depth,
                execution.caller_execution_id,
                execution.caller_node_id,
            ),
        )

    def get(self, execution_id: str) -> Optional[Execution]:
        """Get execution by ID"""
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
            if row:
                return Execution.from_row(row)
        return None

    def save_running(self, conn: sqlite3.Connection, execution: Execution) -> bool:
        """
        Write the mutable fields of an execution this process is running.

        Only applies while the stored row is still ``running``; returns False
        when another party (cancellation) changed it first.
        """
        execution.updated_at = datetime.now()
        cursor = conn.execute(
            """
            UPDATE executions
            SET status = ?, current_node_id = ?, wait_type = ?, wait_payload = ?,
                resume_at = ?, step_count = ?, error = ?, error_type = ?,
                finished_at = ?, updated_at = ?
            WHERE execution_id = ? AND status = ?
            """,
            (
                execution.status.value,
                execution.current_node_id,
                execution.wait_type,
                dump_json(execution.wait_payload),
                _format_time(execution.resume_at),
                execution.step_count,
                execution.error,
                execution.error_type,
                _format_time(execution.finished_at),
                execution.updated_at.isoformat(),
                execution.execution_id,
                ExecutionStatus.RUNNING.value,
            ),
        )
        return cursor.rowcount == 1

    def compare_and_set_status(
        self,
        execution_id: str,
        expected: Sequence[ExecutionStatus],
        new_status: ExecutionStatus,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> bool:
        """
        Move an execution to ``new_status`` only if it is currently in one of
        ``expected``. Returns True when this call made the transition.
        """
        now = datetime.now().isoformat()
        placeholders = ",".join("?" * len(expected))
        finished_at = now if new_status.is_terminal else None

        with self.database.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE executions
                SET status = ?, updated_at = ?,
                    finished_at = COALESCE(?, finished_at),
                    error = COALESCE(?, error),
                    error_type = COALESCE(?, error_type)
                WHERE execution_id = ? AND status IN ({placeholders})
                """,
                (
                    new_status.value,
                    now,
                    finished_at,
                    error,
                    error_type,
                    execution_id,
                    *[s.value for s in expected],
                ),
            )
            changed = cursor.rowcount == 1

        if changed:
            logger.debug(f"Execution {execution_id} -> {new_status.value}")
        return changed

    # ==========================================================================
    # Listing and Querying
    # ==========================================================================

    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        include_nested: bool = False,
    ) -> Tuple[List[Execution], int]:
        """
        List executions with optional filters, newest first.

        Args:
            workflow_id: Filter by workflow
            status: Filter by status
            user_id: Filter by user
            date_from: Started at or after
            date_to: Started at or before
            search: Case-insensitive match on session id or chat id
            limit: Maximum results
            offset: Pagination offset
            include_nested: Include sub-workflow executions

        Returns:
            Tuple of (page of executions, total matching)
        """
        where = " WHERE 1=1"
        params: List[Any] = []

        if workflow_id:
            where += " AND workflow_id = ?"
            params.append(workflow_id)

        if status:
            where += " AND status = ?"
            params.append(ExecutionStatus(status).value)

        if user_id:
            where += " AND user_id = ?"
            params.append(user_id)

        if date_from:
            where += " AND started_at >= ?"
            params.append(date_from.isoformat())

        if date_to:
            where += " AND started_at <= ?"
            params.append(date_to.isoformat())

        if search:
            where += " AND (LOWER(session_id) LIKE ? OR LOWER(COALESCE(chat_id, '')) LIKE ?)"
            pattern = f"%{search.lower()}%"
            params.extend([pattern, pattern])

        if not include_nested:
            where += " AND caller_execution_id IS NULL"

        with self.database.connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM executions{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM executions{where} ORDER BY started_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [Execution.from_row(row) for row in rows], total

    def count(self, status: Optional[ExecutionStatus] = None) -> int:
        """Count executions"""
        if status:
            query = "SELECT COUNT(*) FROM executions WHERE status = ?"
            params: Tuple[Any, ...] = (ExecutionStatus(status).value,)
        else:
            query = "SELECT COUNT(*) FROM executions"
            params = ()

        with self.database.connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    def find_waiting(self, workflow_id: str, session_id: str) -> Optional[Execution]:
        """Most recent top-level waiting execution of a workflow for a session"""
        with self.database.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM executions
                WHERE workflow_id = ? AND session_id = ? AND status = ?
                  AND caller_execution_id IS NULL
                ORDER BY started_at DESC LIMIT 1
                """,
                (workflow_id, session_id, ExecutionStatus.WAITING.value),
            ).fetchone()
        return Execution.from_row(row) if row else None

    def due_delays(self, now: Optional[datetime] = None) -> List[Execution]:
        """Top-level executions waiting on a delay whose time has come"""
        cutoff = (now or datetime.now()).isoformat()
        with self.database.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM executions
                WHERE status = ? AND resume_at IS NOT NULL AND resume_at <= ?
                  AND caller_execution_id IS NULL
                ORDER BY resume_at ASC
                """,
                (ExecutionStatus.WAITING.value, cutoff),
            ).fetchall()
        return [Execution.from_row(row) for row in rows]

    def children(self, caller_execution_id: str) -> List[Execution]:
        """Sub-workflow executions started by an execution"""
        with self.database.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM executions WHERE caller_execution_id = ? ORDER BY started_at",
                (caller_execution_id,),
            ).fetchall()
        return [Execution.from_row(row) for row in rows]

    # ==========================================================================
    # Logging
    # ==========================================================================

    def add_logs(self, conn: sqlite3.Connection, entries: Iterable[LogEntry]) -> int:
        """Append log entries inside an open transaction"""
        count = 0
        for entry in entries:
            cursor = conn.execute(
                """
                INSERT INTO execution_logs
                (execution_id, step, node_id, node_type, timestamp, level, message,
                 data, input_data, output_data, variables_before, variables_after,
                 http_request, http_response, error, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.execution_id,
                    entry.step,
                    entry.node_id,
                    entry.node_type,
                    entry.timestamp.isoformat(),
                    entry.level,
                    entry.message,
                    dump_json(entry.data),
                    dump_json(entry.input_data),
                    dump_json(entry.output_data),
                    dump_json(entry.variables_before),
                    dump_json(entry.variables_after),
                    dump_json(entry.http_request),
                    dump_json(entry.http_response),
                    entry.error,
                    entry.duration_ms,
                ),
            )
            entry.id = cursor.lastrowid
            count += 1
        return count

    def get_logs(
        self,
        execution_id: str,
        level: Optional[str] = None,
    ) -> List[LogEntry]:
        """Get logs for an execution ordered by (step, timestamp)"""
        query = "SELECT * FROM execution_logs WHERE execution_id = ?"
        params: List[Any] = [execution_id]

        if level:
            query += " AND level = ?"
            params.append(level)

        query += " ORDER BY step ASC, timestamp ASC, id ASC"

        with self.database.connect() as conn:
            return [LogEntry.from_row(row) for row in conn.execute(query, params).fetchall()]

    # ==========================================================================
    # Cleanup
    # ==========================================================================

    def cleanup_old(self, keep_days: int = 30) -> int:
        """
        Delete finished executions (and their logs) older than ``keep_days``.

        Returns:
            Number of executions deleted
        """
        cutoff = datetime.now() - timedelta(days=keep_days)

        with self.database.transaction() as conn:
            rows = conn.execute(
                """
                SELECT execution_id FROM executions
                WHERE status IN ('completed', 'failed', 'cancelled')
                AND started_at < ?
                """,
                (cutoff.isoformat(),),
            ).fetchall()
            ids_to_delete = [row[0] for row in rows]

            if not ids_to_delete:
                return 0

            placeholders = ",".join("?" * len(ids_to_delete))
            conn.execute(
                f"DELETE FROM execution_logs WHERE execution_id IN ({placeholders})",
                ids_to_delete,
            )
            conn.execute(
                f"DELETE FROM executions WHERE execution_id IN ({placeholders})",
                ids_to_delete,
            )
            return len(ids_to_delete)

    def mark_stale_as_failed(self, max_age_minutes: int = 60) -> int:
        """
        Mark executions stuck in 'running' as failed.

        This handles cases where the process crashed mid-cycle.

        Returns:
            Number of executions marked as failed
        """
        now = datetime.now()
        cutoff = now - timedelta(minutes=max_age_minutes)

        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE executions
                SET status = ?, error = 'Process terminated unexpectedly',
                    finished_at = ?, updated_at = ?
                WHERE status = 'running' AND updated_at < ?
                """,
                (ExecutionStatus.FAILED.value, now.isoformat(), now.isoformat(), cutoff.isoformat()),
            )
            return cursor.rowcount
