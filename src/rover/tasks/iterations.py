"""Iteration directories: creation, discovery and previous-run context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from rover.errors import RoverError
from rover.tasks.contracts import (
    ITERATION_FILENAME,
    ITERATION_STATUS_FILENAME,
    IterationConfig,
    IterationStatus,
    PreviousContext,
)

logger = logging.getLogger(__name__)

ITERATIONS_DIRNAME = "iterations"
PLAN_FILENAME = "plan.md"
CHANGES_FILENAME = "changes.md"
SUMMARY_FILENAME = "summary.md"


@dataclass(slots=True, frozen=True)
class IterationContext:
    """Artifacts left by the latest iteration of a task."""

    iteration_number: int
    plan: str | None = None
    changes: str | None = None
    summary: str | None = None

    def as_previous_context(self) -> PreviousContext:
        return PreviousContext(
            plan=self.plan,
            changes=self.changes,
            summary=self.summary,
            iteration_number=self.iteration_number,
        )


class IterationManager:
    """Reads and writes ``<task>/iterations/<n>/`` directories."""

    def create_initial(
        self,
        iteration_path: Path,
        task_id: int,
        title: str,
        description: str,
    ) -> IterationConfig:
        return self.create_iteration(
            iteration_path,
            1,
            task_id,
            title,
            description,
            PreviousContext(),
        )

    def create_iteration(  # noqa: PLR0913
        self,
        iteration_path: Path,
        number: int,
        task_id: int,
        title: str,
        description: str,
        previous_context: PreviousContext,
    ) -> IterationConfig:
        config = IterationConfig(
            task_id=task_id,
            iteration=number,
            title=title,
            description=description,
            previous_context=previous_context,
        )
        config.validate()
        iteration_path.mkdir(parents=True, exist_ok=True)
        config.save(iteration_path)
        return config

    def load(self, iteration_path: Path) -> IterationConfig:
        return IterationConfig.load(iteration_path)

    def exists(self, iteration_path: Path) -> bool:
        return (iteration_path / ITERATION_FILENAME).exists()

    def iterations_dir(self, task_dir: Path) -> Path:
        return task_dir / ITERATIONS_DIRNAME

    def iteration_path(self, task_dir: Path, number: int) -> Path:
        return self.iterations_dir(task_dir) / str(number)

    def list_iterations(self, task_dir: Path) -> list[int]:
        """Iteration numbers found on disk, ascending. Non-numeric dirs are ignored."""

        root = self.iterations_dir(task_dir)
        if not root.is_dir():
            return []
        numbers = [int(entry.name) for entry in root.iterdir() if _is_numeric_dir(entry)]
        return sorted(numbers)

    def latest_iteration(self, task_dir: Path) -> int | None:
        numbers = self.list_iterations(task_dir)
        return numbers[-1] if numbers else None

    def latest_context(self, task_dir: Path) -> IterationContext | None:
        """Read plan, changes and summary of the numerically highest iteration.

        Unreadable files are skipped with a warning; the result is ``None``
        when the task has no iterations yet.
        """

        latest = self.latest_iteration(task_dir)
        if latest is None:
            return None
        path = self.iteration_path(task_dir, latest)
        return IterationContext(
            iteration_number=latest,
            plan=_read_optional(path / PLAN_FILENAME),
            changes=_read_optional(path / CHANGES_FILENAME),
            summary=_read_optional(path / SUMMARY_FILENAME),
        )

    def read_status(self, iteration_path: Path) -> IterationStatus | None:
        if not (iteration_path / ITERATION_STATUS_FILENAME).exists():
            return None
        try:
            return IterationStatus.load(iteration_path)
        except RoverError as error:
            logger.warning("Ignoring unreadable iteration status in %s: %s", iteration_path, error)
            return None

    def iteration_summaries(self, task_dir: Path) -> list[str]:
        """``"Iteration N: <summary>"`` lines in ascending iteration order."""

        summaries: list[str] = []
        for number in self.list_iterations(task_dir):
            summary = _read_optional(self.iteration_path(task_dir, number) / SUMMARY_FILENAME)
            if summary and summary.strip():
                summaries.append(f"Iteration {number}: {summary.strip()}")
        return summaries


def _is_numeric_dir(entry: Path) -> bool:
    return entry.is_dir() and entry.name.isdigit()


def _read_optional(path: Path) -> str | None:
    if not path.exists():
        return None
    try:
        return path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as error:
        logger.warning("Could not read %s: %s", path, error)
        return None
