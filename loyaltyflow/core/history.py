# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Log/History Aggregator

Turns the append-only step log of an execution into one view per step:
entries are grouped by ``(step, node_id)``, their messages and captured
I/O merged, and a display status derived from level and message text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .execution_store import LogEntry

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"


@dataclass
class StepView:
    """Inspectable summary of one executed step"""
    step: int
    node_id: str
    node_type: str
    status: str = STATUS_PENDING
    node_label: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None
    messages: List[str] = field(default_factory=list)
    input_data: Any = None
    output_data: Any = None
    variables_before: Optional[Dict[str, Any]] = None
    variables_after: Optional[Dict[str, Any]] = None
    http_request: Optional[Dict[str, Any]] = None
    http_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "node_label": self.node_label,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "messages": self.messages,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "variables_before": self.variables_before,
            "variables_after": self.variables_after,
            "http_request": self.http_request,
            "http_response": self.http_response,
            "error": self.error,
            "data": self.data,
        }


def derive_status(entries: List[LogEntry]) -> str:
    """Display status of a step from its entries' levels and messages"""
    if any(e.level == "error" for e in entries):
        return STATUS_ERROR

    messages = [e.message.lower() for e in entries]
    if any("skip" in m for m in messages):
        return STATUS_SKIPPED
    if any("waiting" in m for m in messages):
        return STATUS_RUNNING
    if any("completed" in m for m in messages):
        return STATUS_COMPLETED
    if any(e.level in ("info", "warning") for e in entries):
        return STATUS_COMPLETED
    return STATUS_PENDING


class HistoryAggregator:
    """Builds per-step views from raw log entries"""

    @staticmethod
    def group(entries: Iterable[LogEntry]) -> Dict[Tuple[int, str], List[LogEntry]]:
        groups: Dict[Tuple[int, str], List[LogEntry]] = {}
        for entry in entries:
            groups.setdefault((entry.step, entry.node_id), []).append(entry)
        for items in groups.values():
            items.sort(key=lambda e: (e.timestamp, e.id or 0))
        return groups

    @classmethod
    def aggregate(cls, entries: Iterable[LogEntry]) -> List[StepView]:
        """
        Merge log entries into step views ordered by step.

        Args:
            entries: LogEntries of one execution, in any order

        Returns:
            One StepView per (step, node_id)
        """
        views = [cls._merge(step, node_id, items) for (step, node_id), items in cls.group(entries).items()]
        views.sort(key=lambda v: (v.step, v.started_at or ""))
        return views

    @staticmethod
    def _merge(step: int, node_id: str, entries: List[LogEntry]) -> StepView:
        first, last = entries[0], entries[-1]
        view = StepView(
            step=step,
            node_id=node_id,
            node_type=first.node_type,
            status=derive_status(entries),
            started_at=first.timestamp.isoformat(),
            finished_at=last.timestamp.isoformat(),
            messages=[e.message for e in entries],
            variables_before=first.variables_before,
            variables_after=last.variables_after,
        )

        for entry in entries:
            if entry.input_data is not None:
                view.input_data = entry.input_data
            if entry.output_data is not None:
                view.output_data = entry.output_data
            if entry.http_request is not None:
                view.http_request = entry.http_request
            if entry.http_response is not None:
                view.http_response = entry.http_response
            if entry.error:
                view.error = entry.error
            view.data.update(entry.data or {})

        view.node_label = view.data.get("node_label")

        recorded = [e.duration_ms for e in entries if e.duration_ms is not None]
        if recorded:
            view.duration_ms = sum(recorded)
        else:
            span = last.timestamp - first.timestamp
            view.duration_ms = int(span.total_seconds() * 1000)
        return view
