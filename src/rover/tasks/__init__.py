"""Task records, lifecycle transitions and iteration bookkeeping."""

from rover.tasks.models import TaskRecord, TaskStatus
from rover.tasks.store import Task, TaskStore

__all__ = ["Task", "TaskRecord", "TaskStatus", "TaskStore"]
