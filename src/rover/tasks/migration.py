"""Schema validation and legacy upgrade for ``description.json`` documents."""

from __future__ import annotations

import uuid as uuid_lib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from rover.tasks.models import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_WORKFLOW_NAME,
    TaskRecord,
    TaskStatus,
    isoformat,
    parse_timestamp,
    utc_now,
)

DEFAULT_AGENT = "claude"
UNKNOWN_TITLE = "Unknown Task"

_LEGACY_STATUS_MAP = {
    "new": TaskStatus.NEW,
    "in_progress": TaskStatus.IN_PROGRESS,
    "running": TaskStatus.IN_PROGRESS,
    "iterating": TaskStatus.ITERATING,
    "completed": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "merged": TaskStatus.MERGED,
    "pushed": TaskStatus.PUSHED,
}

_VALIDATED_DATE_KEYS = (
    "createdAt",
    "startedAt",
    "completedAt",
    "failedAt",
    "lastIterationAt",
    "lastStatusCheck",
    "runningAt",
    "errorAt",
    "lastRestartAt",
)


@dataclass(slots=True, frozen=True)
class LegacyTaskDocument:
    """Raw mapping read from disk whose schema version may be outdated."""

    payload: Mapping[str, Any]

    @property
    def version(self) -> str | None:
        value = self.payload.get("version")
        return value if isinstance(value, str) else None

    @property
    def is_current(self) -> bool:
        return self.version == CURRENT_SCHEMA_VERSION

    def text(self, key: str) -> str | None:
        """Return a non-empty string field, or ``None`` for absent or blank values."""

        value = self.payload.get(key)
        if value is None or value == "":
            return None
        return str(value)


def migrate_status(value: object) -> TaskStatus:
    """Map legacy status spellings onto the current enum, defaulting to NEW."""

    if not isinstance(value, str):
        return TaskStatus.NEW
    return _LEGACY_STATUS_MAP.get(value.lower(), TaskStatus.NEW)


def migrate_legacy(
    document: LegacyTaskDocument,
    task_id: int,
    *,
    now: datetime | None = None,
) -> TaskRecord:
    """Upgrade any older document to the current record shape.

    Every field gets an explicit default so the result always validates.
    """

    raw_id = document.payload.get("id")
    if isinstance(raw_id, str) and raw_id.strip().isdigit():
        record_id = int(raw_id)
    else:
        record_id = _positive_int(raw_id) or task_id

    raw_exit_code = document.payload.get("exitCode")
    raw_restarts = document.payload.get("restartCount")
    raw_inputs = document.payload.get("inputs")

    return TaskRecord(
        id=record_id,
        uuid=document.text("uuid") or str(uuid_lib.uuid4()),
        title=document.text("title") or UNKNOWN_TITLE,
        description=document.text("description") or "",
        inputs=(
            {str(key): str(value) for key, value in raw_inputs.items()}
            if isinstance(raw_inputs, Mapping)
            else {}
        ),
        workflow_name=document.text("workflowName") or DEFAULT_WORKFLOW_NAME,
        status=migrate_status(document.payload.get("status")),
        created_at=_valid_date(document.text("createdAt")) or isoformat(now or utc_now()),
        started_at=_valid_date(document.text("startedAt")),
        completed_at=_valid_date(document.text("completedAt")),
        failed_at=_valid_date(document.text("failedAt")),
        last_iteration_at=_valid_date(document.text("lastIterationAt")),
        last_status_check=_valid_date(document.text("lastStatusCheck")),
        iterations=_positive_int(document.payload.get("iterations")) or 1,
        worktree_path=document.text("worktreePath") or "",
        branch_name=document.text("branchName") or "",
        agent=document.text("agent") or DEFAULT_AGENT,
        source_branch=document.text("sourceBranch"),
        container_id=document.text("containerId"),
        execution_status=document.text("executionStatus"),
        running_at=_valid_date(document.text("runningAt")),
        error_at=_valid_date(document.text("errorAt")),
        exit_code=raw_exit_code if isinstance(raw_exit_code, int) else 0,
        error=document.text("error"),
        restart_count=raw_restarts if isinstance(raw_restarts, int) else 0,
        last_restart_at=_valid_date(document.text("lastRestartAt")),
        version=CURRENT_SCHEMA_VERSION,
    )


def validate_document(document: Mapping[str, Any]) -> list[str]:
    """Return the list of invariant violations for a current-version document."""

    errors: list[str] = []
    record_id = document.get("id")
    if not record_id:
        errors.append("id is required")
    elif not isinstance(record_id, int) or isinstance(record_id, bool):
        errors.append("id must be a number")
    if not document.get("uuid"):
        errors.append("uuid is required")
    title = document.get("title")
    if not title:
        errors.append("title is required")
    elif not isinstance(title, str):
        errors.append("title must be a string")
    if not isinstance(document.get("description", ""), str):
        errors.append("description must be a string")
    inputs = document.get("inputs") or {}
    if not isinstance(inputs, Mapping) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in inputs.items()
    ):
        errors.append("inputs must map names to string values")
    if not document.get("createdAt"):
        errors.append("createdAt is required")

    iterations = document.get("iterations")
    if not isinstance(iterations, int) or isinstance(iterations, bool):
        errors.append("iterations must be a number")
    elif iterations < 1:
        errors.append("iterations must be at least 1")

    status = document.get("status")
    if not status:
        errors.append("status is required")
    elif status not in {item.value for item in TaskStatus}:
        errors.append(
            "status must be one of: " + ", ".join(item.value for item in TaskStatus),
        )

    for key in _VALIDATED_DATE_KEYS:
        value = document.get(key)
        if value and (not isinstance(value, str) or _valid_date(value) is None):
            errors.append(f"{key} must be a valid ISO date string")
    return errors


def _positive_int(value: object) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    return None


def _valid_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        parse_timestamp(value)
    except ValueError:
        return None
    return value
