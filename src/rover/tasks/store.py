"""Filesystem-backed task store.

Each task lives in ``<project>/.rover/tasks/<id>/description.json``. The
store owns loading, migration and persistence; :class:`Task` is a mutable
handle around an immutable :class:`TaskRecord` that saves after every
transition.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid as uuid_lib
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

from rover.errors import (
    RoverError,
    TaskFileError,
    TaskNotFoundError,
    TaskSchemaError,
    TaskValidationError,
)
from rover.tasks.contracts import load_json, write_json
from rover.tasks.iterations import IterationManager
from rover.tasks.migration import LegacyTaskDocument, migrate_legacy, validate_document
from rover.tasks.models import (
    DEFAULT_WORKFLOW_NAME,
    TaskRecord,
    TaskStatus,
    isoformat,
    parse_timestamp,
    utc_now,
)
from rover.tasks.transitions import (
    IncrementIteration,
    Restart,
    SetContainerInfo,
    SetStatus,
    SetWorkspace,
    TaskEvent,
    UpdateDescription,
    UpdateExecutionStatus,
    UpdateTitle,
    transition,
)

logger = logging.getLogger(__name__)

DESCRIPTION_FILENAME = "description.json"
BACKUP_SUFFIX = ".backup"
WORKSPACE_DIRNAME = "workspace"


class Task:
    """Handle over one persisted task record."""

    def __init__(self, store: TaskStore, record: TaskRecord) -> None:
        self._store = store
        self._record = record

    @property
    def record(self) -> TaskRecord:
        return self._record

    @property
    def id(self) -> int:
        return self._record.id

    @property
    def title(self) -> str:
        return self._record.title

    @property
    def description(self) -> str:
        return self._record.description

    @property
    def status(self) -> TaskStatus:
        return self._record.status

    @property
    def iterations(self) -> int:
        return self._record.iterations

    @property
    def worktree_path(self) -> str:
        return self._record.worktree_path

    @property
    def branch_name(self) -> str:
        return self._record.branch_name

    @property
    def task_dir(self) -> Path:
        return self._store.task_dir(self.id)

    @property
    def iterations_dir(self) -> Path:
        return self._store.iterations.iterations_dir(self.task_dir)

    def iteration_path(self, number: int | None = None) -> Path:
        return self._store.iterations.iteration_path(self.task_dir, number or self.iterations)

    def apply(self, event: TaskEvent, *, now: datetime | None = None) -> TaskRecord:
        """Apply one lifecycle event and persist the result."""

        self._record = transition(self._record, event, now=now or self._store.clock())
        self.save()
        return self._record

    def save(self) -> None:
        self._store.save(self._record)

    def reload(self) -> None:
        self._record = self._store.load(self.id).record

    def mark_in_progress(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.IN_PROGRESS), now=now)

    def mark_iterating(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.ITERATING), now=now)

    def mark_completed(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.COMPLETED), now=now)

    def mark_failed(self, error: str, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.FAILED, error=error), now=now)

    def mark_merged(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.MERGED), now=now)

    def mark_pushed(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.PUSHED), now=now)

    def reset_to_new(self, *, now: datetime | None = None) -> None:
        self.apply(SetStatus(TaskStatus.NEW), now=now)

    def restart(self, *, now: datetime | None = None) -> None:
        self.apply(Restart(), now=now)

    def increment_iteration(self, *, now: datetime | None = None) -> None:
        self.apply(IncrementIteration(), now=now)

    def set_workspace(self, worktree_path: str, branch_name: str) -> None:
        self.apply(SetWorkspace(worktree_path, branch_name))

    def update_title(self, title: str) -> None:
        self.apply(UpdateTitle(title))

    def update_description(self, description: str) -> None:
        self.apply(UpdateDescription(description))

    def set_container_info(self, container_id: str, execution_status: str) -> None:
        self.apply(SetContainerInfo(container_id, execution_status))

    def update_execution_status(
        self,
        execution_status: str,
        *,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> None:
        self.apply(UpdateExecutionStatus(execution_status, exit_code=exit_code, error=error))

    def duration_seconds(self) -> float | None:
        return self._record.duration_seconds()

    def __repr__(self) -> str:
        return f"Task(id={self.id}, status={self.status.value})"


class TaskStore:
    """Create, load, list and delete tasks under one ``.rover/tasks`` directory."""

    def __init__(
        self,
        tasks_dir: Path,
        *,
        iterations: IterationManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.iterations = iterations or IterationManager()
        self.clock = clock

    def task_dir(self, task_id: int) -> Path:
        return self.tasks_dir / str(task_id)

    def description_path(self, task_id: int) -> Path:
        return self.task_dir(task_id) / DESCRIPTION_FILENAME

    def workspace_path(self, task_id: int) -> Path:
        return self.task_dir(task_id) / WORKSPACE_DIRNAME

    def exists(self, task_id: int) -> bool:
        return self.description_path(task_id).exists()

    def next_id(self) -> int:
        """One past the highest numeric task directory."""

        return max(self._task_ids(), default=0) + 1

    def create(  # noqa: PLR0913
        self,
        task_id: int,
        title: str,
        description: str,
        *,
        inputs: Mapping[str, str] | None = None,
        workflow_name: str = DEFAULT_WORKFLOW_NAME,
        agent: str | None = None,
        source_branch: str | None = None,
        task_uuid: str | None = None,
    ) -> Task:
        """Persist a new NEW record; an existing record with the same id is an error."""

        if self.exists(task_id):
            raise TaskFileError(f"Task {task_id} already exists")
        now = isoformat(self.clock())
        record = TaskRecord(
            id=task_id,
            uuid=task_uuid or str(uuid_lib.uuid4()),
            title=title,
            description=description,
            created_at=now,
            inputs=dict(inputs or {}),
            workflow_name=workflow_name,
            last_iteration_at=now,
            agent=agent,
            source_branch=source_branch,
        )
        self.task_dir(task_id).mkdir(parents=True, exist_ok=True)
        self.save(record)
        logger.debug("Created task %s", task_id)
        return Task(self, record)

    def load(self, task_id: int) -> Task:
        """Load a task, upgrading and rewriting older schema versions.

        The previous file is copied to ``description.json.backup`` before an
        upgraded record is written. Current-version records are never
        rewritten on load.
        """

        path = self.description_path(task_id)
        if not path.exists():
            raise TaskNotFoundError(task_id)
        try:
            payload = load_json(path)
        except json.JSONDecodeError as error:
            raise TaskSchemaError(f"Invalid JSON in task {task_id}: {error}") from error
        except TypeError as error:
            raise TaskSchemaError(f"Invalid document in task {task_id}: {error}") from error
        except OSError as error:
            raise TaskFileError(f"Failed to load task {task_id}: {error}") from error

        document = LegacyTaskDocument(payload)
        if document.is_current:
            errors = validate_document(payload)
            if errors:
                raise TaskValidationError(errors)
            return Task(self, TaskRecord.from_document(payload))

        record = migrate_legacy(document, task_id, now=self.clock())
        self._backup(path)
        self.save(record)
        logger.info(
            "Migrated task %s from schema %s to %s",
            task_id,
            document.version,
            record.version,
        )
        return Task(self, record)

    def save(self, record: TaskRecord) -> None:
        """Validate and persist a record."""

        document = record.to_document()
        errors = validate_document(document)
        if errors:
            raise TaskValidationError(errors)
        try:
            write_json(self.description_path(record.id), document)
        except OSError as error:
            raise TaskFileError(f"Failed to save task {record.id}: {error}") from error

    def delete(self, task_id: int) -> None:
        """Remove the task directory with its iterations and description."""

        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            raise TaskNotFoundError(task_id)
        try:
            shutil.rmtree(task_dir)
        except OSError as error:
            raise TaskFileError(f"Failed to delete task {task_id}: {error}") from error

    def list_tasks(self) -> list[Task]:
        """All loadable tasks, newest id first. Broken records are logged and skipped."""

        tasks: list[Task] = []
        for task_id in sorted(self._task_ids(), reverse=True):
            try:
                tasks.append(self.load(task_id))
            except RoverError as error:
                logger.debug("Error loading task %s: %s", task_id, error)
        return tasks

    def refresh_status(self, task: Task) -> TaskStatus:
        """Derive the task status from its latest iteration ``status.json``.

        A COMPLETED report never downgrades a MERGED or PUSHED task.
        """

        latest = self.iterations.latest_iteration(task.task_dir)
        if latest is None:
            return task.status
        report = self.iterations.read_status(self.iterations.iteration_path(task.task_dir, latest))
        if report is None:
            return task.status

        status, moment = _derived_status(report.status, report.completed_at, report.updated_at)
        if status is TaskStatus.COMPLETED and task.status in {
            TaskStatus.MERGED,
            TaskStatus.PUSHED,
        }:
            return task.status
        error = report.error if status is TaskStatus.FAILED else None
        task.apply(SetStatus(status, error=error), now=moment)
        return task.status

    def _backup(self, path: Path) -> None:
        backup = path.with_name(path.name + BACKUP_SUFFIX)
        try:
            shutil.copyfile(path, backup)
        except OSError as error:
            logger.warning("Failed to create backup for %s: %s", path, error)

    def _task_ids(self) -> list[int]:
        if not self.tasks_dir.is_dir():
            return []
        return [
            int(entry.name)
            for entry in self.tasks_dir.iterdir()
            if entry.is_dir() and entry.name.isdigit()
        ]


def _derived_status(
    reported: str,
    completed_at: str | None,
    updated_at: str | None,
) -> tuple[TaskStatus, datetime | None]:
    def _moment(value: str | None) -> datetime | None:
        if not value:
            return None
        try:
            return parse_timestamp(value)
        except ValueError:
            return None

    if reported == "completed":
        return TaskStatus.COMPLETED, _moment(completed_at)
    if reported == "failed":
        return TaskStatus.FAILED, _moment(completed_at)
    if reported == "running":
        return TaskStatus.ITERATING, _moment(updated_at)
    return TaskStatus.IN_PROGRESS, _moment(updated_at)
