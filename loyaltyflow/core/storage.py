# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Storage

SQLite database shared by the execution store and the variable store.
Holds three record kinds: executions, execution_logs and variables.

Writes that must be observed together (execution row + variable diffs +
log entries) go through ``Database.transaction()``, which holds a
``BEGIN IMMEDIATE`` write lock until commit.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import get_config

logger = logging.getLogger("loyaltyflow.storage")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS executions (
        execution_id TEXT PRIMARY KEY,
        project_id TEXT,
        workflow_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        session_id TEXT NOT NULL,
        user_id TEXT,
        chat_id TEXT,
        status TEXT NOT NULL,
        current_node_id TEXT,
        wait_type TEXT,
        wait_payload TEXT,
        resume_at TEXT,
        step_count INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        error_type TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        updated_at TEXT NOT NULL,
        parent_execution_id TEXT,
        restarted_from_node_id TEXT,
        depth INTEGER NOT NULL DEFAULT 0,
        caller_execution_id TEXT,
        caller_node_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id, started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)",
    "CREATE INDEX IF NOT EXISTS idx_executions_session ON executions(workflow_id, session_id)",
    "CREATE INDEX IF NOT EXISTS idx_executions_parent ON executions(parent_execution_id)",
    "CREATE INDEX IF NOT EXISTS idx_executions_resume ON executions(status, wait_type, resume_at)",
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        step INTEGER NOT NULL,
        node_id TEXT NOT NULL,
        node_type TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        data TEXT,
        input_data TEXT,
        output_data TEXT,
        variables_before TEXT,
        variables_after TEXT,
        http_request TEXT,
        http_response TEXT,
        error TEXT,
        duration_ms INTEGER,
        UNIQUE (execution_id, step),
        FOREIGN KEY (execution_id) REFERENCES executions(execution_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs(execution_id, step, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS variables (
        scope TEXT NOT NULL,
        owner_key TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        updated_at TEXT NOT NULL,
        expires_at TEXT,
        PRIMARY KEY (scope, owner_key, key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_variables_expiry ON variables(expires_at)",
]


def dump_json(value: Any) -> Optional[str]:
    """Serialize a JSON column; None stays NULL"""
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


class Database:
    """
    SQLite database file with the engine schema.

    Every call opens its own connection, so an in-memory path would lose
    the schema between calls; use a file path (tests use tmp_path).
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Args:
            db_path: Path to SQLite database.
                    Defaults to paths.database from the configuration
        """
        if db_path:
            self.db_path = Path(db_path)
        else:
            self.db_path = get_config().paths.database

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database schema"""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        logger.debug(f"Database ready at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a read connection"""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for an atomic write unit.

        Commits when the block exits normally and rolls back on any
        exception, so no partial write is ever visible.
        """
        with self.connect() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
