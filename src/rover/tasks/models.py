"""Domain models for persisted task records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

CURRENT_SCHEMA_VERSION = "1.1"
DEFAULT_WORKFLOW_NAME = "swe"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ITERATING = "ITERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MERGED = "MERGED"
    PUSHED = "PUSHED"


# Dataclass field name -> key written to description.json.
_DOCUMENT_KEYS: dict[str, str] = {
    "id": "id",
    "uuid": "uuid",
    "title": "title",
    "description": "description",
    "inputs": "inputs",
    "workflow_name": "workflowName",
    "status": "status",
    "created_at": "createdAt",
    "started_at": "startedAt",
    "completed_at": "completedAt",
    "failed_at": "failedAt",
    "last_iteration_at": "lastIterationAt",
    "last_status_check": "lastStatusCheck",
    "iterations": "iterations",
    "worktree_path": "worktreePath",
    "branch_name": "branchName",
    "agent": "agent",
    "source_branch": "sourceBranch",
    "container_id": "containerId",
    "execution_status": "executionStatus",
    "running_at": "runningAt",
    "error_at": "errorAt",
    "exit_code": "exitCode",
    "error": "error",
    "restart_count": "restartCount",
    "last_restart_at": "lastRestartAt",
    "version": "version",
}

DATE_FIELDS = (
    "created_at",
    "started_at",
    "completed_at",
    "failed_at",
    "last_iteration_at",
    "last_status_check",
    "running_at",
    "error_at",
    "last_restart_at",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def isoformat(moment: datetime) -> str:
    """Render a timestamp the way it is stored in task files."""

    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True, frozen=True)
class TaskRecord:
    """Immutable snapshot of one task's persisted state.

    Timestamps are ISO-8601 strings; ``None`` means the event has not
    happened yet. Records are never mutated in place: lifecycle changes go
    through :func:`rover.tasks.transitions.transition`, which returns a new
    record.
    """

    id: int
    uuid: str
    title: str
    description: str
    created_at: str
    status: TaskStatus = TaskStatus.NEW
    inputs: dict[str, str] = field(default_factory=dict)
    workflow_name: str = DEFAULT_WORKFLOW_NAME
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    last_iteration_at: str | None = None
    last_status_check: str | None = None
    iterations: int = 1
    worktree_path: str = ""
    branch_name: str = ""
    agent: str | None = None
    source_branch: str | None = None
    container_id: str | None = None
    execution_status: str | None = None
    running_at: str | None = None
    error_at: str | None = None
    exit_code: int | None = None
    error: str | None = None
    restart_count: int = 0
    last_restart_at: str | None = None
    version: str = CURRENT_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        """Serialize to the on-disk mapping, omitting unset optional fields."""

        document: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, TaskStatus):
                value = value.value
            elif isinstance(value, dict):
                value = dict(value)
            document[key] = value
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> TaskRecord:
        """Build a record from a current-version mapping without defaulting.

        Callers are expected to have validated ``document`` first; legacy
        documents go through :func:`rover.tasks.migration.migrate_legacy`.
        """

        values: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            if key in document:
                values[attr] = document[key]
        values["status"] = TaskStatus(values.get("status", TaskStatus.NEW.value))
        values["inputs"] = dict(values.get("inputs") or {})
        return cls(**values)

    @property
    def is_active(self) -> bool:
        return self.status in {TaskStatus.IN_PROGRESS, TaskStatus.ITERATING}

    def duration_seconds(self) -> float | None:
        """Seconds from start to completion or failure, when both are known."""

        if not self.started_at:
            return None
        end = self.completed_at or self.failed_at
        if not end:
            return None
        return (parse_timestamp(end) - parse_timestamp(self.started_at)).total_seconds()
