"""Controllers for rover CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

from rover.config import Settings
from rover.merge import MergeConfirmations, MergeOutcome, PushOutcome
from rover.orchestrator import TaskOperationResult, TaskOrchestrator
from rover.tasks.models import TaskRecord, TaskStatus, parse_timestamp

STATUS_LABELS = {
    TaskStatus.NEW: "New",
    TaskStatus.IN_PROGRESS: "In progress",
    TaskStatus.ITERATING: "Iterating",
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.FAILED: "Failed",
    TaskStatus.MERGED: "Merged",
    TaskStatus.PUSHED: "Pushed",
}


class OutputMode(str, Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(slots=True)
class CommandOutput:
    """Rendered lines plus the exit status the CLI should report."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task creation."""

    project_root: Path | None
    description: str
    agent: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    workflow_name: str | None = None
    start: bool = True
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for commands addressing a single task."""

    project_root: Path | None
    task_id: int
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class StopTaskCommand:
    project_root: Path | None
    task_id: int
    remove_container: bool = False
    remove_workspace: bool = False
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class IterateTaskCommand:
    project_root: Path | None
    task_id: int
    instructions: str
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class ListTasksCommand:
    project_root: Path | None
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class DiffTaskCommand:
    project_root: Path | None
    task_id: int
    file_path: str | None = None
    branch: str | None = None
    only_files: bool = False
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class TaskLogsCommand:
    project_root: Path | None
    task_id: int
    iteration: int | None = None
    follow: bool = False
    stream: TextIO | None = None
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class PushTaskCommand:
    project_root: Path | None
    task_id: int
    message: str | None = None
    edit_message: Callable[[str], str] | None = None
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class MergeTaskCommand:
    """CLI input for merge; confirmations default to accepting everything."""

    project_root: Path | None
    task_id: int
    confirmations: MergeConfirmations | None = None
    output_mode: OutputMode = OutputMode.TEXT


@dataclass(slots=True)
class ValidateWorkflowCommand:
    project_root: Path | None
    path: Path
    output_mode: OutputMode = OutputMode.TEXT


OrchestratorFactory = Callable[[Path | None], TaskOrchestrator]


def default_orchestrator(project_root: Path | None) -> TaskOrchestrator:
    settings = Settings.from_env(project_root=project_root)
    settings.validate()
    return TaskOrchestrator(settings)


class RoverCliController:
    """Controller layer between click commands and the orchestrator."""

    def __init__(self, orchestrator_factory: OrchestratorFactory = default_orchestrator) -> None:
        self._orchestrator_factory = orchestrator_factory

    def create_task(self, command: CreateTaskCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).create_task(
            command.description,
            agent=command.agent,
            source_branch=command.source_branch,
            target_branch=command.target_branch,
            inputs=command.inputs,
            workflow_name=command.workflow_name,
            start=command.start,
        )
        if command.output_mode is OutputMode.JSON:
            return _json_output(result, result.success)
        lines = _result_header(result)
        if result.task is not None:
            lines.extend(
                [
                    f"Title: {result.task.title}",
                    f"Status: {_status_label(result.task.status)}",
                    f"Branch: {result.task.branch_name or '-'}",
                    f"Workspace: {result.task.worktree_path or '-'}",
                ],
            )
        if result.success and result.task_id is not None:
            lines.append(f"Use `rover logs {result.task_id} --follow` to watch the agent.")
        return CommandOutput(lines=lines, success=result.success)

    def start_task(self, command: TaskIdCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).start_task(command.task_id)
        return self._render_simple(result, command.output_mode)

    def restart_task(self, command: TaskIdCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).restart_task(command.task_id)
        return self._render_simple(result, command.output_mode)

    def reset_task(self, command: TaskIdCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).reset_task(command.task_id)
        return self._render_simple(result, command.output_mode)

    def stop_task(self, command: StopTaskCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).stop_task(
            command.task_id,
            remove_container=command.remove_container,
            remove_workspace=command.remove_workspace,
        )
        output = self._render_simple(result, command.output_mode)
        if command.output_mode is OutputMode.TEXT and result.success:
            output.lines.extend(
                [
                    f"Use `rover logs {command.task_id}` to check the logs",
                    f"Use `rover restart {command.task_id}` to restart the task",
                ],
            )
        return output

    def delete_task(self, command: TaskIdCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).delete_task(command.task_id)
        return self._render_simple(result, command.output_mode)

    def iterate_task(self, command: IterateTaskCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).iterate_task(
            command.task_id,
            command.instructions,
        )
        output = self._render_simple(result, command.output_mode)
        if command.output_mode is OutputMode.TEXT and result.success:
            output.lines.append(f"Iteration: {result.iteration}")
        return output

    def list_tasks(self, command: ListTasksCommand) -> CommandOutput:
        records = self._orchestrator(command.project_root).list_tasks()
        if command.output_mode is OutputMode.JSON:
            return CommandOutput(lines=[_dumps([record.to_document() for record in records])])
        if not records:
            return CommandOutput(lines=["No tasks found. Create one with `rover task`."])
        lines = [f"Tasks: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.id} [{_status_label(record.status)}] {record.title} "
                f"agent={record.agent or '-'} iterations={record.iterations} "
                f"branch={record.branch_name or '-'}",
            )
        return CommandOutput(lines=lines)

    def inspect_task(self, command: TaskIdCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).inspect_task(command.task_id)
        if command.output_mode is OutputMode.JSON:
            return _json_output(result, result.success)
        if not result.success or result.task is None:
            return CommandOutput(lines=_result_header(result), success=False)

        record = result.task
        duration = record.duration_seconds()
        lines = [
            f"Task: {record.id}",
            f"Title: {record.title}",
            f"Status: {_status_label(record.status)}",
            f"Agent: {record.agent or '-'}",
            f"Workflow: {record.workflow_name}",
            f"Created: {_format_time(record.created_at)}",
            f"Started: {_format_time(record.started_at)}",
            f"Completed: {_format_time(record.completed_at)}",
            f"Duration: {f'{duration:.0f}s' if duration is not None else '-'}",
            f"Branch: {record.branch_name or '-'}",
            f"Workspace: {record.worktree_path or '-'}",
            f"Restarts: {record.restart_count}",
            f"Error: {record.error or '-'}",
            "",
            "Description:",
            *[f"  {line}" for line in record.description.splitlines()],
            "",
            f"Iterations: {len(result.iterations)}",
        ]
        for view in result.iterations:
            status = view.status or "pending"
            progress = f" {view.progress}%" if view.progress is not None else ""
            lines.append(f"  #{view.number} [{status}{progress}] {view.title}")
            if view.error:
                lines.append(f"      error: {view.error}")
        return CommandOutput(lines=lines)

    def diff_task(self, command: DiffTaskCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).diff_task(
            command.task_id,
            file_path=command.file_path,
            branch=command.branch,
            only_files=command.only_files,
        )
        if command.output_mode is OutputMode.JSON:
            return _json_output(result, result.success)
        if not result.success:
            return CommandOutput(lines=_result_header(result), success=False)
        if result.message:
            return CommandOutput(lines=[result.message])
        lines = (result.output or "").rstrip("\n").splitlines()
        if not command.only_files and not command.file_path:
            lines.extend(
                [
                    "",
                    f"Tip: use `rover diff {command.task_id} --only-files` to list changed files",
                ],
            )
        return CommandOutput(lines=lines)

    def task_logs(self, command: TaskLogsCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).task_logs(
            command.task_id,
            iteration=command.iteration,
            follow=command.follow,
            output=command.stream,
        )
        if command.output_mode is OutputMode.JSON:
            return _json_output(result, result.success)
        if not result.success:
            return CommandOutput(lines=_result_header(result), success=False)
        if command.follow:
            return CommandOutput(lines=[])
        logs = (result.output or "").rstrip("\n")
        return CommandOutput(lines=logs.splitlines() if logs else ["No logs available"])

    def push_task(self, command: PushTaskCommand) -> CommandOutput:
        outcome = self._orchestrator(command.project_root).push_task(
            command.task_id,
            commit_message=command.message,
            edit_message=command.edit_message,
        )
        if command.output_mode is OutputMode.JSON:
            return _json_output(outcome, outcome.success)
        return CommandOutput(lines=_push_lines(outcome), success=outcome.success)

    def merge_task(self, command: MergeTaskCommand) -> CommandOutput:
        outcome = self._orchestrator(command.project_root).merge_task(
            command.task_id,
            confirmations=command.confirmations,
        )
        if command.output_mode is OutputMode.JSON:
            return _json_output(outcome, outcome.success)
        return CommandOutput(lines=_merge_lines(outcome), success=outcome.success)

    def validate_workflow(self, command: ValidateWorkflowCommand) -> CommandOutput:
        result = self._orchestrator(command.project_root).validate_workflow(command.path)
        return self._render_simple(result, command.output_mode)

    def _render_simple(self, result: TaskOperationResult, mode: OutputMode) -> CommandOutput:
        if mode is OutputMode.JSON:
            return _json_output(result, result.success)
        lines = _result_header(result)
        if result.success and result.task is not None:
            lines.append(f"Status: {_status_label(result.task.status)}")
        return CommandOutput(lines=lines, success=result.success)

    def _orchestrator(self, project_root: Path | None) -> TaskOrchestrator:
        return self._orchestrator_factory(project_root)


def _result_header(result: TaskOperationResult) -> list[str]:
    lines: list[str] = []
    if result.success:
        lines.append(result.message or "Done")
    else:
        lines.append(f"Error: {result.error}")
    lines.extend(f"Warning: {warning}" for warning in result.warnings)
    return lines


def _push_lines(outcome: PushOutcome) -> list[str]:
    if not outcome.success:
        return [f"Error: {outcome.error}"]
    lines = [outcome.message or "Done"]
    if outcome.committed and outcome.commit_message:
        lines.append(f"Committed: {outcome.commit_message.splitlines()[0]}")
    if outcome.pushed:
        lines.append(f"Branch: {outcome.branch_name}")
    if outcome.pull_request_url:
        lines.append(f"Open a pull request: {outcome.pull_request_url}")
    return lines


def _merge_lines(outcome: MergeOutcome) -> list[str]:
    lines: list[str] = []
    if outcome.conflicts:
        lines.append(f"Merge conflicts detected in {len(outcome.conflicts)} file(s):")
        lines.extend(f"  {path}" for path in outcome.conflicts)
    if not outcome.success:
        lines.append(f"Error: {outcome.error}")
    else:
        lines.append(outcome.message or "Done")
        if outcome.commit_message:
            lines.append(f"Committed workspace changes: {outcome.commit_message}")
        if outcome.conflicts_resolved:
            lines.append("Conflicts were resolved with AI assistance")
        if outcome.cleaned_up:
            lines.append("Workspace and branch removed")
        if outcome.cleanup_error:
            lines.append(f"Warning: cleanup failed: {outcome.cleanup_error}")
    if outcome.manual_steps:
        lines.append("To finish manually:")
        lines.extend(f"  {index}. {step}" for index, step in enumerate(outcome.manual_steps, 1))
    return lines


def _json_output(payload: Any, success: bool) -> CommandOutput:
    return CommandOutput(lines=[_dumps(_to_jsonable(payload))], success=success)


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, TaskRecord):
        return value.to_document()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: _to_jsonable(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_to_jsonable(item) for item in value]
    return value


def _status_label(status: TaskStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def _format_time(value: str | None) -> str:
    if not value:
        return "-"
    try:
        return parse_timestamp(value).strftime("%Y-%m-%d %H:%M:%S UTC")
    except ValueError:
        return value
