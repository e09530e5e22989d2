"""Pure lifecycle transitions for task records.

Every function here takes a :class:`TaskRecord` and returns a new one. No
source-state guards are applied: any status may move to any other status,
matching how existing task directories behave. Persistence is the job of
:class:`rover.tasks.store.Task`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from rover.tasks.models import TaskRecord, TaskStatus, isoformat, utc_now


@dataclass(slots=True, frozen=True)
class SetStatus:
    status: TaskStatus
    error: str | None = None


@dataclass(slots=True, frozen=True)
class Restart:
    """Re-enter IN_PROGRESS and count the attempt."""


@dataclass(slots=True, frozen=True)
class IncrementIteration:
    pass


@dataclass(slots=True, frozen=True)
class SetWorkspace:
    worktree_path: str
    branch_name: str


@dataclass(slots=True, frozen=True)
class UpdateTitle:
    title: str


@dataclass(slots=True, frozen=True)
class UpdateDescription:
    description: str


@dataclass(slots=True, frozen=True)
class SetContainerInfo:
    container_id: str
    execution_status: str


@dataclass(slots=True, frozen=True)
class UpdateExecutionStatus:
    execution_status: str
    exit_code: int | None = None
    error: str | None = None


TaskEvent = (
    SetStatus
    | Restart
    | IncrementIteration
    | SetWorkspace
    | UpdateTitle
    | UpdateDescription
    | SetContainerInfo
    | UpdateExecutionStatus
)


def transition(record: TaskRecord, event: TaskEvent, *, now: datetime | None = None) -> TaskRecord:
    """Apply ``event`` to ``record`` and return the resulting record."""

    timestamp = isoformat(now or utc_now())
    match event:
        case SetStatus(status=status, error=error):
            return _set_status(record, status, timestamp, error)
        case Restart():
            restarted = replace(
                record,
                restart_count=record.restart_count + 1,
                last_restart_at=timestamp,
            )
            return _set_status(restarted, TaskStatus.IN_PROGRESS, timestamp, None)
        case IncrementIteration():
            return replace(
                record,
                iterations=record.iterations + 1,
                last_iteration_at=timestamp,
            )
        case SetWorkspace(worktree_path=worktree_path, branch_name=branch_name):
            return replace(record, worktree_path=worktree_path, branch_name=branch_name)
        case UpdateTitle(title=title):
            return replace(record, title=title)
        case UpdateDescription(description=description):
            return replace(record, description=description)
        case SetContainerInfo(container_id=container_id, execution_status=execution_status):
            updated = replace(
                record,
                container_id=container_id,
                execution_status=execution_status,
            )
            if execution_status == "running":
                updated = replace(updated, running_at=timestamp)
            return updated
        case UpdateExecutionStatus(
            execution_status=execution_status,
            exit_code=exit_code,
            error=error,
        ):
            updated = replace(record, execution_status=execution_status)
            if exit_code is not None:
                updated = replace(updated, exit_code=exit_code)
            if error:
                updated = replace(updated, error=error, error_at=timestamp)
            if execution_status == "completed":
                updated = replace(updated, completed_at=timestamp)
            elif execution_status == "failed":
                updated = replace(updated, failed_at=timestamp)
            return updated
    raise TypeError(f"Unsupported task event: {event!r}")


def _set_status(
    record: TaskRecord,
    status: TaskStatus,
    timestamp: str,
    error: str | None,
) -> TaskRecord:
    changes: dict[str, object] = {"status": status, "last_status_check": timestamp}
    if status is TaskStatus.IN_PROGRESS:
        if not record.started_at:
            changes["started_at"] = timestamp
    elif status is TaskStatus.ITERATING:
        changes["last_iteration_at"] = timestamp
    elif status is TaskStatus.COMPLETED:
        changes["completed_at"] = timestamp
    elif status is TaskStatus.FAILED:
        changes["failed_at"] = timestamp
        if error:
            changes["error"] = error
    elif status in {TaskStatus.MERGED, TaskStatus.PUSHED} and not record.completed_at:
        changes["completed_at"] = timestamp
    return replace(record, **changes)
