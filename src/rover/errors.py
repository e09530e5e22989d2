"""Typed error kinds raised by the task store, git adapter and launcher."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error identifiers reported in operation outcomes."""

    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    SCHEMA = "schema"
    FILE = "file"
    VERSION_CONTROL = "version_control"
    NO_UPSTREAM = "no_upstream"
    DIRTY_WORKTREE = "dirty_worktree"
    MERGE_CONFLICT = "merge_conflict"
    LAUNCH = "launch"
    WORKFLOW = "workflow"
    INVALID_STATE = "invalid_state"
    UNEXPECTED = "unexpected"


class RoverError(Exception):
    """Base class for all errors raised by the orchestration engine."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class TaskNotFoundError(RoverError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class IterationNotFoundError(RoverError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, task_id: int, iteration: int) -> None:
        super().__init__(f"Iteration {iteration} not found for task {task_id}")
        self.task_id = task_id
        self.iteration = iteration


class TaskValidationError(RoverError):
    """Record failed the invariant checks run before every persist."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Task validation error: {', '.join(errors)}")
        self.errors = errors


class TaskStateError(RoverError):
    """Operation is not possible in the task's current state."""

    kind = ErrorKind.INVALID_STATE


class TaskSchemaError(RoverError):
    """Persisted record is not valid JSON or not a JSON object."""

    kind = ErrorKind.SCHEMA

    def __init__(self, message: str) -> None:
        super().__init__(f"Task schema error: {message}")


class TaskFileError(RoverError):
    """I/O failure while reading or writing task state."""

    kind = ErrorKind.FILE

    def __init__(self, message: str) -> None:
        super().__init__(f"Task file error: {message}")


class GitError(RoverError):
    """A git command exited with a non-zero status."""

    kind = ErrorKind.VERSION_CONTROL

    def __init__(self, reason: str, *, stderr: str = "") -> None:
        super().__init__(f"Error running git command. Reason: {reason}")
        self.reason = reason
        self.stderr = stderr


class GitNoUpstreamError(GitError):
    """Push failed because the branch has no upstream on the remote yet."""

    kind = ErrorKind.NO_UPSTREAM


class LaunchError(RoverError):
    """Container runtime is unavailable or refused to start the agent."""

    kind = ErrorKind.LAUNCH


class WorkflowValidationError(RoverError):
    kind = ErrorKind.WORKFLOW

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Workflow validation error: {', '.join(errors)}")
        self.errors = errors
