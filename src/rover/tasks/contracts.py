"""File contracts shared by the CLI and the agent container.

``iteration.json`` is written by the CLI before an iteration starts and read
by the agent; ``status.json`` is written by the agent while it runs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rover.errors import TaskFileError, TaskSchemaError, TaskValidationError
from rover.tasks.models import isoformat, parse_timestamp, utc_now

ITERATION_SCHEMA_VERSION = "1.0"
ITERATION_FILENAME = "iteration.json"
ITERATION_STATUS_FILENAME = "status.json"


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


@dataclass(slots=True, frozen=True)
class PreviousContext:
    """What the agent should know about the iteration before this one."""

    plan: str | None = None
    changes: str | None = None
    summary: str | None = None
    iteration_number: int | None = None

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {}
        if self.plan is not None:
            document["plan"] = self.plan
        if self.changes is not None:
            document["changes"] = self.changes
        if self.summary is not None:
            document["summary"] = self.summary
        if self.iteration_number is not None:
            document["iterationNumber"] = self.iteration_number
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> PreviousContext:
        number = document.get("iterationNumber")
        return cls(
            plan=document.get("plan"),
            changes=document.get("changes"),
            summary=document.get("summary"),
            iteration_number=number if isinstance(number, int) else None,
        )


@dataclass(slots=True, frozen=True)
class IterationConfig:
    """Write-once description of one iteration (``iteration.json``)."""

    task_id: int
    iteration: int
    title: str
    description: str
    created_at: str = field(default_factory=lambda: isoformat(utc_now()))
    previous_context: PreviousContext = field(default_factory=PreviousContext)
    version: str = ITERATION_SCHEMA_VERSION

    def validate(self) -> None:
        errors: list[str] = []
        if not self.version:
            errors.append("version is required")
        if self.iteration < 1:
            errors.append("iteration must be at least 1")
        if not self.title:
            errors.append("title is required")
        if not self.description:
            errors.append("description is required")
        try:
            parse_timestamp(self.created_at)
        except ValueError:
            errors.append("createdAt must be a valid ISO date string")
        if errors:
            raise TaskValidationError(errors)

    def to_document(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "id": self.task_id,
            "iteration": self.iteration,
            "title": self.title,
            "description": self.description,
            "createdAt": self.created_at,
            "previousContext": self.previous_context.to_document(),
        }

    def save(self, iteration_path: Path) -> Path:
        self.validate()
        path = iteration_path / ITERATION_FILENAME
        write_json(path, self.to_document())
        return path

    @classmethod
    def load(cls, iteration_path: Path) -> IterationConfig:
        path = iteration_path / ITERATION_FILENAME
        try:
            document = load_json(path)
        except json.JSONDecodeError as error:
            raise TaskSchemaError(f"Invalid JSON in {path}: {error}") from error
        except OSError as error:
            raise TaskFileError(f"Could not read {path}: {error}") from error
        except TypeError as error:
            raise TaskSchemaError(str(error)) from error
        iteration = document.get("iteration")
        task_id = document.get("id")
        if not isinstance(iteration, int) or not isinstance(task_id, int):
            raise TaskValidationError(["id and iteration must be numbers"])
        config = cls(
            task_id=task_id,
            iteration=iteration,
            title=str(document.get("title") or ""),
            description=str(document.get("description") or ""),
            created_at=str(document.get("createdAt") or ""),
            previous_context=PreviousContext.from_document(
                document.get("previousContext") or {},
            ),
            version=str(document.get("version") or ITERATION_SCHEMA_VERSION),
        )
        config.validate()
        return config


@dataclass(slots=True, frozen=True)
class IterationStatus:
    """Progress report written by the agent (``status.json``)."""

    status: str
    task_id: str = ""
    current_step: str = ""
    progress: int = 0
    started_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    @classmethod
    def load(cls, iteration_path: Path) -> IterationStatus:
        path = iteration_path / ITERATION_STATUS_FILENAME
        try:
            document = load_json(path)
        except json.JSONDecodeError as error:
            raise TaskSchemaError(f"Invalid JSON in {path}: {error}") from error
        except OSError as error:
            raise TaskFileError(f"Could not read {path}: {error}") from error
        except TypeError as error:
            raise TaskSchemaError(str(error)) from error
        progress = document.get("progress")
        return cls(
            status=str(document.get("status") or ""),
            task_id=str(document.get("taskId") or ""),
            current_step=str(document.get("currentStep") or ""),
            progress=progress if isinstance(progress, int) else 0,
            started_at=document.get("startedAt"),
            updated_at=document.get("updatedAt"),
            completed_at=document.get("completedAt"),
            error=document.get("error"),
        )
