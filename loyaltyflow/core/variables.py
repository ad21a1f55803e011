# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Scoped variable state.

Variables live in four scopes keyed by an owner:

    global   -> ""            tenant-independent values
    project  -> project id    tenant configuration
    user     -> user id       per end-user state
    session  -> session id    conversational state (default scope)

``VariableStore`` reads and writes rows directly (last write wins).
``ScopedVariables`` is the in-memory working set of one run/resume cycle;
it tracks changes so they are persisted together with the execution row.

Unqualified reads fall back session -> user -> project -> global.
"""

import copy
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .exceptions import HandlerError
from .storage import Database, dump_json, load_json

logger = logging.getLogger("loyaltyflow.variables")


class _Missing:
    """Marker for an undefined variable (distinct from a stored None)"""

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING: Any = _Missing()

GLOBAL_OWNER = ""


class VariableScope(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"
    USER = "user"
    SESSION = "session"


# Read fallback for references without an explicit scope
SCOPE_PRECEDENCE = (
    VariableScope.SESSION,
    VariableScope.USER,
    VariableScope.PROJECT,
    VariableScope.GLOBAL,
)

_SCOPE_NAMES = {scope.value: scope for scope in VariableScope}


def parse_reference(reference: str) -> Tuple[Optional[VariableScope], str, List[str]]:
    """
    Split a variable reference into (scope, key, path).

    Examples:
        "session.step"          -> (SESSION, "step", [])
        "step"                  -> (None, "step", [])
        "user.profile.name"     -> (USER, "profile", ["name"])
        "{{ project.bonus }}"   -> (PROJECT, "bonus", [])
    """
    ref = reference.strip()
    if ref.startswith("{{") and ref.endswith("}}"):
        ref = ref[2:-2].strip()

    parts = [p for p in ref.split(".") if p]
    if not parts:
        raise ValueError(f"Empty variable reference: {reference!r}")

    if len(parts) > 1 and parts[0] in _SCOPE_NAMES:
        return _SCOPE_NAMES[parts[0]], parts[1], parts[2:]
    return None, parts[0], parts[1:]


def dig(value: Any, path: List[str]) -> Any:
    """Follow a dotted path into dicts and lists; MISSING when absent"""
    current = value
    for part in path:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


@dataclass
class VariableChange:
    """One pending write produced during a cycle"""
    scope: VariableScope
    owner_key: str
    key: str
    value: Any = None
    deleted: bool = False
    expires_at: Optional[datetime] = None


# ============================================================================
# Variable Store
# ============================================================================


class VariableStore:
    """
    Persistent scoped key-value store.

    Usage:
        store = VariableStore(database)
        store.set(VariableScope.SESSION, "sess-1", "step", 3)
        store.get(VariableScope.SESSION, "sess-1", "step")  # 3
    """

    def __init__(self, database: Database):
        self.database = database

    def get(
        self,
        scope: VariableScope,
        owner_key: Optional[str],
        key: str,
        default: Any = MISSING,
    ) -> Any:
        """Read one value; ``default`` (MISSING) when undefined or expired"""
        now = datetime.now().isoformat()
        with self.database.connect() as conn:
            row = conn.execute(
                """
                SELECT value FROM variables
                WHERE scope = ? AND owner_key = ? AND key = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (VariableScope(scope).value, owner_key or GLOBAL_OWNER, key, now),
            ).fetchone()
        if row is None:
            return default
        return load_json(row["value"])

    def set(
        self,
        scope: VariableScope,
        owner_key: Optional[str],
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Write one value (last write wins)"""
        expires_at = datetime.now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        change = VariableChange(
            scope=VariableScope(scope),
            owner_key=owner_key or GLOBAL_OWNER,
            key=key,
            value=value,
            expires_at=expires_at,
        )
        with self.database.transaction() as conn:
            self.apply(conn, [change])

    def delete(self, scope: VariableScope, owner_key: Optional[str], key: str) -> bool:
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM variables WHERE scope = ? AND owner_key = ? AND key = ?",
                (VariableScope(scope).value, owner_key or GLOBAL_OWNER, key),
            )
            return cursor.rowcount > 0

    def load(self, scope: VariableScope, owner_key: Optional[str]) -> Dict[str, Any]:
        """All live values of one owner in one scope"""
        now = datetime.now().isoformat()
        with self.database.connect() as conn:
            rows = conn.execute(
                """
                SELECT key, value FROM variables
                WHERE scope = ? AND owner_key = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key
                """,
                (VariableScope(scope).value, owner_key or GLOBAL_OWNER, now),
            ).fetchall()
        return {row["key"]: load_json(row["value"]) for row in rows}

    def apply(self, conn: sqlite3.Connection, changes: Iterable[VariableChange]) -> int:
        """Write pending changes inside an open transaction"""
        now = datetime.now().isoformat()
        count = 0
        for change in changes:
            if change.deleted:
                conn.execute(
                    "DELETE FROM variables WHERE scope = ? AND owner_key = ? AND key = ?",
                    (change.scope.value, change.owner_key, change.key),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO variables (scope, owner_key, key, value, updated_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (scope, owner_key, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at,
                        expires_at = excluded.expires_at
                    """,
                    (
                        change.scope.value,
                        change.owner_key,
                        change.key,
                        dump_json(change.value),
                        now,
                        change.expires_at.isoformat() if change.expires_at else None,
                    ),
                )
            count += 1
        return count

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired variables, returns number removed"""
        cutoff = (now or datetime.now()).isoformat()
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM variables WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (cutoff,),
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} expired variables")
        return removed


# ============================================================================
# Working Set
# ============================================================================


class ScopedVariables:
    """In-memory variables of one execution for one run/resume cycle"""

    def __init__(
        self,
        owners: Dict[VariableScope, Optional[str]],
        values: Optional[Dict[VariableScope, Dict[str, Any]]] = None,
    ):
        self.owners = {scope: owners.get(scope) for scope in VariableScope}
        self.owners[VariableScope.GLOBAL] = GLOBAL_OWNER
        values = values or {}
        self._values: Dict[VariableScope, Dict[str, Any]] = {
            scope: copy.deepcopy(values.get(scope, {})) for scope in VariableScope
        }
        self._changes: Dict[Tuple[VariableScope, str], VariableChange] = {}

    @classmethod
    def load(
        cls, store: VariableStore, owners: Dict[VariableScope, Optional[str]]
    ) -> "ScopedVariables":
        """Load every scope addressable by the given owners"""
        values = {}
        for scope in VariableScope:
            owner = GLOBAL_OWNER if scope == VariableScope.GLOBAL else owners.get(scope)
            if scope == VariableScope.GLOBAL or owner:
                values[scope] = store.load(scope, owner)
        return cls(owners, values)

    def available(self, scope: VariableScope) -> bool:
        return scope == VariableScope.GLOBAL or bool(self.owners.get(scope))

    def _require(self, scope: VariableScope) -> str:
        if not self.available(scope):
            raise HandlerError(f"Variable scope '{scope.value}' is not available for this execution")
        return self.owners[scope] or GLOBAL_OWNER

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    def get(self, key: str, scope: Optional[VariableScope] = None, default: Any = MISSING) -> Any:
        scopes = (VariableScope(scope),) if scope else SCOPE_PRECEDENCE
        for candidate in scopes:
            values = self._values[candidate]
            if key in values:
                return values[key]
        return default

    def has(self, key: str, scope: Optional[VariableScope] = None) -> bool:
        return self.get(key, scope) is not MISSING

    def resolve(self, reference: str) -> Any:
        """Value of ``[scope.]key[.path]``; MISSING when undefined"""
        scope, key, path = parse_reference(reference)
        return dig(self.get(key, scope), path)

    def scope_values(self, scope: VariableScope) -> Dict[str, Any]:
        return dict(self._values[VariableScope(scope)])

    def snapshot(self, scope: VariableScope = VariableScope.SESSION) -> Dict[str, Any]:
        """Detached copy used for before/after step captures"""
        return copy.deepcopy(self._values[VariableScope(scope)])

    def merged(self) -> Dict[str, Any]:
        """Flat view where narrower scopes shadow wider ones"""
        result: Dict[str, Any] = {}
        for scope in reversed(SCOPE_PRECEDENCE):
            result.update(self._values[scope])
        return result

    def by_scope(self) -> Dict[str, Dict[str, Any]]:
        return {scope.value: dict(self._values[scope]) for scope in reversed(SCOPE_PRECEDENCE)}

    # ------------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        scope: VariableScope = VariableScope.SESSION,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        scope = VariableScope(scope)
        owner = self._require(scope)
        value = copy.deepcopy(value)
        self._values[scope][key] = value
        expires_at = datetime.now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._changes[(scope, key)] = VariableChange(scope, owner, key, value, expires_at=expires_at)

    def assign(self, reference: str, value: Any) -> None:
        """Write through a reference; unqualified references target session scope"""
        scope, key, path = parse_reference(reference)
        scope = scope or VariableScope.SESSION
        if path:
            current = self.get(key, scope)
            root = copy.deepcopy(current) if isinstance(current, dict) else {}
            target = root
            for part in path[:-1]:
                if not isinstance(target.get(part), dict):
                    target[part] = {}
                target = target[part]
            target[path[-1]] = value
            value = root
        self.set(key, value, scope)

    def delete(self, key: str, scope: VariableScope = VariableScope.SESSION) -> bool:
        scope = VariableScope(scope)
        owner = self._require(scope)
        existed = self._values[scope].pop(key, MISSING) is not MISSING
        self._changes[(scope, key)] = VariableChange(scope, owner, key, deleted=True)
        return existed

    def clear(self, scope: VariableScope = VariableScope.SESSION) -> List[str]:
        """Delete every variable of one scope, returns removed keys"""
        keys = sorted(self._values[VariableScope(scope)])
        for key in keys:
            self.delete(key, scope)
        return keys

    # ------------------------------------------------------------------------
    # Change tracking
    # ------------------------------------------------------------------------

    def pending_changes(self) -> List[VariableChange]:
        return list(self._changes.values())

    def mark_persisted(self) -> None:
        self._changes.clear()
