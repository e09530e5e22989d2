"""Task orchestrator: the single entry point used by the CLI.

Lower layers raise typed :class:`~rover.errors.RoverError` subclasses; the
orchestrator is the only place that catches them and turns them into
explicit outcome values.
"""

from __future__ import annotations

import logging
import secrets
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from rover.agents import get_agent
from rover.agents.base import AiAgent, TaskExpansion
from rover.config import Settings
from rover.errors import (
    ErrorKind,
    GitError,
    IterationNotFoundError,
    LaunchError,
    RoverError,
    TaskStateError,
)
from rover.git import GitAdapter
from rover.launcher import ContainerLauncher, ContainerSpec, agent_command, container_name
from rover.merge import MergeConfirmations, MergeCoordinator, MergeOutcome, PushOutcome
from rover.runner import CommandRunner, SubprocessRunner
from rover.tasks.contracts import IterationConfig, PreviousContext, write_json
from rover.tasks.iterations import IterationContext
from rover.tasks.models import TaskRecord, TaskStatus
from rover.tasks.store import Task, TaskStore
from rover.workflow import Workflow, load_builtin_workflow

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "rover/task"
WORKFLOW_FILENAME = "workflow.yml"
INPUTS_FILENAME = "inputs.json"
TITLE_FALLBACK_LENGTH = 60

AgentFactory = Callable[[str], "AiAgent | None"]


@dataclass(slots=True)
class IterationView:
    number: int
    title: str
    description: str
    created_at: str
    status: str | None = None
    progress: int | None = None
    error: str | None = None


@dataclass(slots=True)
class TaskOperationResult:
    """Outcome of one orchestrator operation, ready for rendering."""

    success: bool
    task_id: int | None = None
    task: TaskRecord | None = None
    message: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    iteration: int | None = None
    output: str | None = None
    warnings: list[str] = field(default_factory=list)
    iterations: list[IterationView] = field(default_factory=list)

    @classmethod
    def failed(cls, error: RoverError, *, task_id: int | None = None) -> TaskOperationResult:
        return cls(success=False, task_id=task_id, error=str(error), error_kind=error.kind)


def generate_branch_name(task_id: int) -> str:
    return f"{BRANCH_PREFIX}-{task_id}-{secrets.token_hex(3)}"


def fallback_title(description: str) -> str:
    first_line = description.strip().splitlines()[0] if description.strip() else "Untitled task"
    if len(first_line) <= TITLE_FALLBACK_LENGTH:
        return first_line
    return first_line[: TITLE_FALLBACK_LENGTH - 3].rstrip() + "..."


def copy_environment_files(
    project_root: Path,
    worktree: Path,
    extra: tuple[str, ...] = (),
) -> list[str]:
    """Copy untracked ``.env*`` development files into a fresh worktree."""

    copied: list[str] = []
    candidates = sorted(path for path in project_root.glob(".env*") if path.is_file())
    candidates.extend(project_root / name for name in extra)
    for source in candidates:
        if not source.is_file():
            continue
        relative = source.relative_to(project_root)
        target = worktree / relative
        if target.exists():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        copied.append(str(relative))
    return copied


class TaskOrchestrator:
    """Create, run, iterate, merge and push tasks for one project."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        runner: CommandRunner | None = None,
        store: TaskStore | None = None,
        git: GitAdapter | None = None,
        launcher: ContainerLauncher | None = None,
        agent_factory: AgentFactory | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.store = store or TaskStore(settings.tasks_dir)
        self.git = git or GitAdapter(settings.project_root, self.runner)
        self.launcher = launcher or ContainerLauncher(
            settings.execution.container_backend,
            runner=self.runner,
        )
        self.agent_factory = agent_factory or self._default_agent

    def create_task(  # noqa: PLR0913
        self,
        description: str,
        *,
        agent: str | None = None,
        source_branch: str | None = None,
        target_branch: str | None = None,
        inputs: Mapping[str, str] | None = None,
        workflow_name: str | None = None,
        start: bool = True,
    ) -> TaskOperationResult:
        """Expand the brief, persist a NEW task and optionally start it."""

        agent_name = (agent or self.settings.agents.default_agent).lower()
        workflow_name = workflow_name or self.settings.execution.workflow_name
        warnings: list[str] = []
        try:
            self._require_repository()
            workflow = load_builtin_workflow(workflow_name)
            provided = dict(inputs or {})
            validation = workflow.validate_inputs({"description": description, **provided})
            if not validation.valid:
                return TaskOperationResult(
                    success=False,
                    error="; ".join(validation.errors),
                    error_kind=ErrorKind.WORKFLOW,
                )
            warnings.extend(validation.warnings)

            expansion = self._expand_task(agent_name, description)
            if expansion is None:
                warnings.append("Could not expand the task with AI; using the description as is")
                expansion = TaskExpansion(
                    title=fallback_title(description),
                    description=description,
                )

            task = self.store.create(
                self.store.next_id(),
                expansion.title,
                expansion.description,
                inputs=provided,
                workflow_name=workflow_name,
                agent=agent_name,
                source_branch=source_branch or self.git.get_current_branch() or None,
            )
        except RoverError as error:
            return TaskOperationResult.failed(error)

        logger.info("Created task %s: %s", task.id, task.title)
        if not start:
            return TaskOperationResult(
                success=True,
                task_id=task.id,
                task=task.record,
                message=f"Task {task.id} created",
                warnings=warnings,
            )
        result = self._start(task, branch_name=target_branch)
        result.warnings[:0] = warnings
        return result

    def start_task(self, task_id: int) -> TaskOperationResult:
        try:
            task = self.store.load(task_id)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        if task.status is not TaskStatus.NEW:
            error = TaskStateError(
                f"Task {task_id} is not in NEW status (current: {task.status.value})",
            )
            return TaskOperationResult.failed(error, task_id=task_id)
        return self._start(task)

    def restart_task(self, task_id: int) -> TaskOperationResult:
        """Relaunch the current iteration of a FAILED task."""

        try:
            task = self.store.load(task_id)
            if task.status is not TaskStatus.FAILED:
                raise TaskStateError(
                    f"Only failed tasks can be restarted (task {task_id} is {task.status.value})",
                )
            self._prepare_workspace(task)
            self._ensure_iteration(task)
            task.restart()
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)

        try:
            self._launch(task)
        except RoverError as error:
            task.mark_failed(f"Restart failed: {error}")
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            iteration=task.iterations,
            message=f"Task {task.id} restarted (attempt {task.record.restart_count})",
        )

    def iterate_task(self, task_id: int, instructions: str) -> TaskOperationResult:
        """Start a new iteration with refined instructions on top of previous work."""

        try:
            task = self.store.load(task_id)
            if not task.worktree_path or not Path(task.worktree_path).exists():
                raise TaskStateError(
                    f"Task {task_id} has no workspace. Start the task before iterating.",
                )
            context = self.store.iterations.latest_context(task.task_dir)
            expansion = self._expand_iteration(task, instructions, context)
            number = task.iterations + 1
            self.store.iterations.create_iteration(
                task.iteration_path(number),
                number,
                task.id,
                expansion.title,
                expansion.description,
                context.as_previous_context() if context else PreviousContext(),
            )
            task.increment_iteration()
            task.mark_iterating()
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)

        try:
            self._launch(task)
        except RoverError as error:
            task.update_execution_status("failed", error=str(error))
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            iteration=task.iterations,
            message=f"Iteration {task.iterations} of task {task.id} started",
        )

    def reset_task(self, task_id: int) -> TaskOperationResult:
        """Drop workspace, branch and iterations and return the task to NEW."""

        try:
            task = self.store.load(task_id)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)

        warnings: list[str] = []
        self._remove_container(task)
        if task.worktree_path:
            warnings.extend(self._remove_worktree(Path(task.worktree_path)))
        if task.branch_name and self.git.branch_exists(task.branch_name):
            try:
                self.git.delete_branch(task.branch_name, force=True)
            except GitError as error:
                warnings.append(f"Could not delete branch {task.branch_name}: {error}")
        shutil.rmtree(task.iterations_dir, ignore_errors=True)

        try:
            task.set_workspace("", "")
            task.reset_to_new()
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            message=f"Task {task.id} has been reset to NEW",
            warnings=warnings,
        )

    def stop_task(
        self,
        task_id: int,
        *,
        remove_container: bool = False,
        remove_workspace: bool = False,
    ) -> TaskOperationResult:
        """Stop the agent container and mark the execution cancelled.

        An active task becomes FAILED so it can be restarted. With
        ``remove_workspace`` the worktree, branch and iterations are dropped too.
        """

        try:
            task = self.store.load(task_id)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)

        warnings: list[str] = []
        name = container_name(task.id, task.iterations)
        try:
            self.launcher.stop(name)
        except LaunchError as error:
            logger.debug("Could not stop container %s: %s", name, error)
            warnings.append("Container was already stopped or removed")
        if remove_container:
            self._remove_container(task)

        if remove_workspace:
            if task.worktree_path:
                warnings.extend(self._remove_worktree(Path(task.worktree_path)))
            if task.branch_name and self.git.branch_exists(task.branch_name):
                try:
                    self.git.delete_branch(task.branch_name, force=True)
                except GitError as error:
                    warnings.append(f"Could not delete branch {task.branch_name}: {error}")
            shutil.rmtree(task.iterations_dir, ignore_errors=True)

        try:
            task.update_execution_status("cancelled")
            if task.record.is_active:
                task.mark_failed("Task was stopped")
            if remove_workspace:
                task.set_workspace("", "")
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            message=f"Task {task.id} stopped",
            warnings=warnings,
        )

    def delete_task(self, task_id: int) -> TaskOperationResult:
        try:
            task = self.store.load(task_id)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)

        self._remove_container(task)
        warnings = self._remove_worktree(Path(task.worktree_path)) if task.worktree_path else []
        try:
            self.store.delete(task_id)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task_id,
            task=task.record,
            message=f"Task {task_id} deleted",
            warnings=warnings,
        )

    def list_tasks(self) -> list[TaskRecord]:
        """All tasks, newest first, with active ones refreshed from their iterations."""

        records: list[TaskRecord] = []
        for task in self.store.list_tasks():
            if task.record.is_active:
                try:
                    self.store.refresh_status(task)
                except RoverError as error:
                    logger.debug("Could not refresh status of task %s: %s", task.id, error)
            records.append(task.record)
        return records

    def inspect_task(self, task_id: int) -> TaskOperationResult:
        try:
            task = self.store.load(task_id)
            if task.record.is_active:
                self.store.refresh_status(task)
            views = [
                self._iteration_view(task, number)
                for number in self._iteration_numbers(task)
                if self.store.iterations.exists(task.iteration_path(number))
            ]
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            iteration=task.iterations,
            iterations=views,
        )

    def diff_task(
        self,
        task_id: int,
        *,
        file_path: str | None = None,
        branch: str | None = None,
        only_files: bool = False,
    ) -> TaskOperationResult:
        try:
            task = self.store.load(task_id)
            if not task.worktree_path or not Path(task.worktree_path).exists():
                raise TaskStateError(f"Task {task_id} has no workspace")
            diff = self.git.diff(
                Path(task.worktree_path),
                file_path=file_path,
                branch=branch,
                only_files=only_files,
                include_untracked=branch is None,
            )
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            output=diff.text,
            message="No changes" if diff.is_empty else None,
        )

    def task_logs(
        self,
        task_id: int,
        *,
        iteration: int | None = None,
        follow: bool = False,
        output: TextIO | None = None,
    ) -> TaskOperationResult:
        """Fetch container logs of an iteration, or stream them with ``follow``."""

        try:
            task = self.store.load(task_id)
            number = iteration or task.iterations
            if not task.iteration_path(number).is_dir():
                raise IterationNotFoundError(task_id, number)
            name = container_name(task.id, number)
            if follow:
                exit_code = self.launcher.follow_logs(name, output=output)
                return TaskOperationResult(
                    success=True,
                    task_id=task.id,
                    iteration=number,
                    message=f"Log stream ended with exit code {exit_code}",
                )
            logs = self.launcher.logs(name)
        except RoverError as error:
            return TaskOperationResult.failed(error, task_id=task_id)
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            iteration=number,
            output=logs,
        )

    def push_task(
        self,
        task_id: int,
        *,
        commit_message: str | None = None,
        edit_message: Callable[[str], str] | None = None,
    ) -> PushOutcome:
        try:
            task = self.store.load(task_id)
        except RoverError as error:
            return PushOutcome(
                task_id=task_id,
                task_title="",
                branch_name="",
                error=str(error),
                error_kind=error.kind,
            )
        try:
            return self._coordinator(task).push(
                task,
                commit_message=commit_message,
                edit_message=edit_message,
            )
        except RoverError as error:
            return PushOutcome(
                task_id=task.id,
                task_title=task.title,
                branch_name=task.branch_name,
                error=f"Failed to push branch: {error}",
                error_kind=error.kind,
            )

    def merge_task(
        self,
        task_id: int,
        *,
        confirmations: MergeConfirmations | None = None,
    ) -> MergeOutcome:
        try:
            task = self.store.load(task_id)
            if not self.git.is_repo():
                raise GitError("not inside a git repository")
        except RoverError as error:
            return MergeOutcome(
                task_id=task_id,
                task_title="",
                branch_name="",
                error=str(error),
                error_kind=error.kind,
            )
        try:
            return self._coordinator(task).merge(
                task,
                confirmations or MergeConfirmations.automatic(),
            )
        except RoverError as error:
            return MergeOutcome(
                task_id=task.id,
                task_title=task.title,
                branch_name=task.branch_name,
                error=str(error),
                error_kind=error.kind,
            )

    def validate_workflow(self, path: Path) -> TaskOperationResult:
        try:
            workflow = Workflow.load(path)
        except RoverError as error:
            return TaskOperationResult.failed(error)
        return TaskOperationResult(
            success=True,
            message=f"Workflow {workflow.name} is valid ({len(workflow.steps)} steps)",
        )

    def _start(self, task: Task, *, branch_name: str | None = None) -> TaskOperationResult:
        try:
            self._prepare_workspace(task, branch_name=branch_name)
            self._ensure_iteration(task)
            task.mark_in_progress()
            self._launch(task)
        except RoverError as error:
            logger.warning("Starting task %s failed, resetting it to NEW: %s", task.id, error)
            task.reset_to_new()
            return TaskOperationResult(
                success=False,
                task_id=task.id,
                task=task.record,
                error=f"{error}. Task {task.id} was reset to NEW; run `rover start {task.id}`",
                error_kind=error.kind,
            )
        return TaskOperationResult(
            success=True,
            task_id=task.id,
            task=task.record,
            iteration=task.iterations,
            message=f"Task {task.id} started in background",
        )

    def _prepare_workspace(self, task: Task, *, branch_name: str | None = None) -> None:
        if task.worktree_path and Path(task.worktree_path).exists():
            return
        self._require_repository()
        worktree = self.store.workspace_path(task.id)
        branch = branch_name or generate_branch_name(task.id)
        self.git.create_worktree(worktree, branch, base=task.record.source_branch)
        copied = copy_environment_files(
            self.settings.project_root,
            worktree,
            self.settings.project_config().env_files,
        )
        if copied:
            logger.debug("Copied environment files into %s: %s", worktree, ", ".join(copied))
        task.set_workspace(str(worktree), branch)

    def _ensure_iteration(self, task: Task) -> None:
        path = task.iteration_path()
        if not self.store.iterations.exists(path):
            self.store.iterations.create_iteration(
                path,
                task.iterations,
                task.id,
                task.title,
                task.description or task.title,
                PreviousContext(),
            )

    def _launch(self, task: Task) -> None:
        workflow = load_builtin_workflow(task.record.workflow_name)
        workflow_path = task.task_dir / WORKFLOW_FILENAME
        workflow.save(workflow_path)
        inputs_path = task.task_dir / INPUTS_FILENAME
        write_json(
            inputs_path,
            {"title": task.title, "description": task.description, **task.record.inputs},
        )
        agent = task.record.agent or self.settings.agents.default_agent
        spec = ContainerSpec(
            name=container_name(task.id, task.iterations),
            image=self.settings.execution.agent_image,
            workspace_path=Path(task.worktree_path),
            output_path=task.iteration_path(),
            command=agent_command(agent, task.id),
            extra_mounts=(
                (workflow_path, "/workflow.yml"),
                (inputs_path, "/inputs.json"),
                (self.store.description_path(task.id), "/task/description.json"),
            ),
        )
        container_id = self.launcher.start(spec)
        task.set_container_info(container_id, "running")

    def _expand_task(self, agent_name: str, description: str) -> TaskExpansion | None:
        agent = self.agent_factory(agent_name)
        if agent is None:
            return None
        return agent.expand_task(description, self.settings.project_root)

    def _expand_iteration(
        self,
        task: Task,
        instructions: str,
        context: IterationContext | None,
    ) -> TaskExpansion:
        agent = self.agent_factory(task.record.agent or self.settings.agents.default_agent)
        plan = context.plan if context else None
        changes = context.changes if context else None
        expansion = (
            agent.expand_iteration_instructions(instructions, plan, changes) if agent else None
        )
        if expansion is not None:
            return expansion
        return TaskExpansion(
            title=f"{task.title} - Iteration Refinement",
            description=f"{task.description}\n\nAdditional requirements:\n{instructions}",
        )

    def _coordinator(self, task: Task) -> MergeCoordinator:
        return MergeCoordinator(
            self.git,
            agent=self.agent_factory(task.record.agent or self.settings.agents.default_agent),
            iterations=self.store.iterations,
            attribution=self.settings.attribution_enabled(),
        )

    def _require_repository(self) -> None:
        if not self.git.is_repo():
            raise GitError("not inside a git repository")
        if not self.git.has_commits():
            raise TaskStateError("The repository has no commits yet. Create an initial commit.")

    def _remove_container(self, task: Task) -> None:
        try:
            self.launcher.remove(container_name(task.id, task.iterations))
        except LaunchError as error:
            logger.debug("Could not remove container of task %s: %s", task.id, error)

    def _remove_worktree(self, worktree: Path) -> list[str]:
        warnings: list[str] = []
        try:
            self.git.remove_worktree(worktree, force=True)
        except GitError as error:
            logger.debug("git worktree remove failed for %s: %s", worktree, error)
            shutil.rmtree(worktree, ignore_errors=True)
            if worktree.exists():
                warnings.append(f"Could not remove workspace directory {worktree}")
        try:
            self.git.prune_worktrees()
        except GitError as error:
            warnings.append(f"Could not prune worktrees: {error}")
        return warnings

    def _iteration_numbers(self, task: Task) -> list[int]:
        return self.store.iterations.list_iterations(task.task_dir)

    def _iteration_view(self, task: Task, number: int) -> IterationView:
        path = task.iteration_path(number)
        config: IterationConfig = self.store.iterations.load(path)
        report = self.store.iterations.read_status(path)
        return IterationView(
            number=number,
            title=config.title,
            description=config.description,
            created_at=config.created_at,
            status=report.status if report else None,
            progress=report.progress if report else None,
            error=report.error if report else None,
        )

    def _default_agent(self, name: str) -> AiAgent | None:
        try:
            agent = get_agent(
                name,
                runner=self.runner,
                timeout_seconds=self.settings.agents.invoke_timeout_seconds,
            )
        except ValueError as error:
            logger.warning("%s", error)
            return None
        if not agent.available():
            logger.warning("AI agent %s is not installed; skipping AI assistance", name)
            return None
        return agent
