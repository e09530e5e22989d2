"""CLI entrypoint for rover."""

import logging
from pathlib import Path

import rich_click as click

from rover import __version__
from rover.controllers import (
    CommandOutput,
    CreateTaskCommand,
    DiffTaskCommand,
    IterateTaskCommand,
    ListTasksCommand,
    MergeTaskCommand,
    OutputMode,
    PushTaskCommand,
    RoverCliController,
    StopTaskCommand,
    TaskIdCommand,
    TaskLogsCommand,
    ValidateWorkflowCommand,
)
from rover.merge import MergeConfirmations

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RoverCliController()

json_option = click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print one JSON document instead of text.",
)
task_id_argument = click.argument("task_id", type=click.IntRange(min=1))


@click.group()
@click.version_option(version=__version__, prog_name="rover")
@click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root. Defaults to ROVER_PROJECT_ROOT or the git top-level directory.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def rover(ctx: click.Context, project_root: Path | None, verbose: bool) -> None:
    """Run AI coding agents on isolated git worktrees.

    Typical flow: `rover task` → `rover logs` → `rover iterate` → `rover merge`.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"project_root": project_root}


@rover.command("task")
@click.argument("description")
@click.option(
    "--agent",
    type=click.Choice(["claude", "codex", "gemini", "qwen"], case_sensitive=False),
    default=None,
    help="AI agent that works on the task.",
)
@click.option("--source-branch", default=None, help="Branch the workspace is created from.")
@click.option("--target-branch", default=None, help="Name of the task branch.")
@click.option("--workflow", "workflow_name", default=None, help="Workflow name (default: swe).")
@click.option(
    "--input",
    "raw_inputs",
    multiple=True,
    help="Workflow input as name=value. Can be repeated.",
)
@click.option("--no-start", is_flag=True, default=False, help="Create without running.")
@json_option
@click.pass_context
def task(  # noqa: PLR0913
    ctx: click.Context,
    description: str,
    agent: str | None,
    source_branch: str | None,
    target_branch: str | None,
    workflow_name: str | None,
    raw_inputs: tuple[str, ...],
    no_start: bool,
    as_json: bool,
) -> None:
    """Create a task from a short description and start the agent."""

    _finish(
        CONTROLLER.create_task(
            CreateTaskCommand(
                project_root=_project_root(ctx),
                description=description,
                agent=agent,
                source_branch=source_branch,
                target_branch=target_branch,
                inputs=_parse_inputs(raw_inputs),
                workflow_name=workflow_name,
                start=not no_start,
                output_mode=_mode(as_json),
            ),
        ),
        "Task creation failed.",
    )


@rover.command("start")
@task_id_argument
@json_option
@click.pass_context
def start(ctx: click.Context, task_id: int, as_json: bool) -> None:
    """Start a task that is still NEW."""

    _finish(
        CONTROLLER.start_task(_task_command(ctx, task_id, as_json)),
        f"Could not start task {task_id}.",
    )


@rover.command("restart")
@task_id_argument
@json_option
@click.pass_context
def restart(ctx: click.Context, task_id: int, as_json: bool) -> None:
    """Run the current iteration of a failed task again."""

    _finish(
        CONTROLLER.restart_task(_task_command(ctx, task_id, as_json)),
        f"Could not restart task {task_id}.",
    )


@rover.command("iterate")
@task_id_argument
@click.argument("instructions")
@json_option
@click.pass_context
def iterate(ctx: click.Context, task_id: int, instructions: str, as_json: bool) -> None:
    """Refine a task with new instructions in a new iteration."""

    _finish(
        CONTROLLER.iterate_task(
            IterateTaskCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                instructions=instructions,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not iterate task {task_id}.",
    )


@rover.command("reset")
@task_id_argument
@click.option("--force", "-f", is_flag=True, default=False, help="Skip confirmation.")
@json_option
@click.pass_context
def reset(ctx: click.Context, task_id: int, force: bool, as_json: bool) -> None:
    """Remove workspace, branch and iterations and set the task back to NEW."""

    if not force and not as_json:
        click.confirm(f"Reset task {task_id}? Its workspace will be deleted.", abort=True)
    _finish(
        CONTROLLER.reset_task(_task_command(ctx, task_id, as_json)),
        f"Could not reset task {task_id}.",
    )


@rover.command("stop")
@task_id_argument
@click.option("--remove-all", "-a", is_flag=True, default=False, help="Remove everything.")
@click.option(
    "--remove-container",
    "-c",
    is_flag=True,
    default=False,
    help="Remove the stopped container.",
)
@click.option(
    "--remove-git-worktree-and-branch",
    "-g",
    "remove_workspace",
    is_flag=True,
    default=False,
    help="Remove the workspace, branch and iterations.",
)
@json_option
@click.pass_context
def stop(  # noqa: PLR0913
    ctx: click.Context,
    task_id: int,
    remove_all: bool,
    remove_container: bool,
    remove_workspace: bool,
    as_json: bool,
) -> None:
    """Stop a running task; it can be restarted afterwards."""

    _finish(
        CONTROLLER.stop_task(
            StopTaskCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                remove_container=remove_all or remove_container,
                remove_workspace=remove_all or remove_workspace,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not stop task {task_id}.",
    )


@rover.command("delete")
@task_id_argument
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip confirmation.")
@json_option
@click.pass_context
def delete(ctx: click.Context, task_id: int, yes: bool, as_json: bool) -> None:
    """Delete a task with its workspace and iterations."""

    if not yes and not as_json:
        click.confirm(f"Delete task {task_id}?", abort=True)
    _finish(
        CONTROLLER.delete_task(_task_command(ctx, task_id, as_json)),
        f"Could not delete task {task_id}.",
    )


@rover.command("list")
@json_option
@click.pass_context
def list_tasks(ctx: click.Context, as_json: bool) -> None:
    """Show all tasks, newest first."""

    _finish(
        CONTROLLER.list_tasks(
            ListTasksCommand(project_root=_project_root(ctx), output_mode=_mode(as_json)),
        ),
        "Could not list tasks.",
    )


@rover.command("inspect")
@task_id_argument
@json_option
@click.pass_context
def inspect(ctx: click.Context, task_id: int, as_json: bool) -> None:
    """Show task details and its iterations."""

    _finish(
        CONTROLLER.inspect_task(_task_command(ctx, task_id, as_json)),
        f"Could not inspect task {task_id}.",
    )


@rover.command("diff")
@task_id_argument
@click.argument("file_path", required=False)
@click.option("--branch", default=None, help="Compare the workspace against this branch.")
@click.option("--only-files", is_flag=True, default=False, help="Only list changed files.")
@json_option
@click.pass_context
def diff(  # noqa: PLR0913
    ctx: click.Context,
    task_id: int,
    file_path: str | None,
    branch: str | None,
    only_files: bool,
    as_json: bool,
) -> None:
    """Show changes made in the task workspace."""

    _finish(
        CONTROLLER.diff_task(
            DiffTaskCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                file_path=file_path,
                branch=branch,
                only_files=only_files,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not compute diff for task {task_id}.",
    )


@rover.command("logs")
@task_id_argument
@click.argument("iteration", type=click.IntRange(min=1), required=False)
@click.option("--follow", "-f", is_flag=True, default=False, help="Stream logs until Ctrl+C.")
@json_option
@click.pass_context
def logs(  # noqa: PLR0913
    ctx: click.Context,
    task_id: int,
    iteration: int | None,
    follow: bool,
    as_json: bool,
) -> None:
    """Show agent container logs of an iteration (latest by default)."""

    _finish(
        CONTROLLER.task_logs(
            TaskLogsCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                iteration=iteration,
                follow=follow and not as_json,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not read logs of task {task_id}.",
    )


@rover.command("push")
@task_id_argument
@click.option("--message", "-m", default=None, help="Commit message for pending changes.")
@json_option
@click.pass_context
def push(ctx: click.Context, task_id: int, message: str | None, as_json: bool) -> None:
    """Commit pending workspace changes and push the task branch."""

    _finish(
        CONTROLLER.push_task(
            PushTaskCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                message=message,
                edit_message=None if as_json else _prompt_commit_message,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not push task {task_id}.",
    )


@rover.command("merge")
@task_id_argument
@click.option("--force", "-f", is_flag=True, default=False, help="Skip the merge confirmation.")
@json_option
@click.pass_context
def merge(ctx: click.Context, task_id: int, force: bool, as_json: bool) -> None:
    """Merge the task branch into the current branch.

    Conflicts can be resolved by the task's AI agent after confirmation.
    """

    if not force and not as_json:
        click.confirm(f"Are you sure you want to merge task {task_id}?", abort=True)
    confirmations = MergeConfirmations.automatic() if as_json else _interactive_confirmations()
    _finish(
        CONTROLLER.merge_task(
            MergeTaskCommand(
                project_root=_project_root(ctx),
                task_id=task_id,
                confirmations=confirmations,
                output_mode=_mode(as_json),
            ),
        ),
        f"Could not merge task {task_id}.",
    )


@rover.group()
def workflows() -> None:
    """Workflow definition commands."""


@workflows.command("validate")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@json_option
@click.pass_context
def workflows_validate(ctx: click.Context, path: Path, as_json: bool) -> None:
    """Validate a workflow YAML file."""

    _finish(
        CONTROLLER.validate_workflow(
            ValidateWorkflowCommand(
                project_root=_project_root(ctx),
                path=path,
                output_mode=_mode(as_json),
            ),
        ),
        "Workflow is invalid.",
    )


def _prompt_commit_message(suggestion: str) -> str:
    return click.prompt("Commit message", default=suggestion)


def _interactive_confirmations() -> MergeConfirmations:
    def use_ai(conflicts: list[str]) -> bool:
        click.echo(f"Merge conflicts detected in {len(conflicts)} file(s):")
        for path in conflicts:
            click.echo(f"  {path}")
        return click.confirm(
            "Would you like AI to automatically resolve these merge conflicts?",
            default=True,
        )

    def approve(diffs: dict[str, str]) -> bool:
        for path, text in diffs.items():
            click.echo(f"--- {path}")
            click.echo(text)
        return click.confirm("Do you approve these AI-resolved changes?", default=False)

    def clean_up() -> bool:
        return click.confirm("Remove the task workspace and branch?", default=True)

    return MergeConfirmations(
        use_ai_resolution=use_ai,
        approve_resolution=approve,
        clean_up=clean_up,
    )


def _task_command(ctx: click.Context, task_id: int, as_json: bool) -> TaskIdCommand:
    return TaskIdCommand(
        project_root=_project_root(ctx),
        task_id=task_id,
        output_mode=_mode(as_json),
    )


def _project_root(ctx: click.Context) -> Path | None:
    return (ctx.obj or {}).get("project_root")


def _mode(as_json: bool) -> OutputMode:
    return OutputMode.JSON if as_json else OutputMode.TEXT


def _parse_inputs(raw_inputs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for raw in raw_inputs:
        name, separator, value = raw.partition("=")
        if not separator or not name.strip():
            raise click.BadParameter(f"expected name=value, got {raw!r}", param_hint="--input")
        inputs[name.strip()] = value
    return inputs


def _finish(output: CommandOutput, failure_message: str) -> None:
    _emit_lines(output.lines)
    if not output.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    rover()
