"""Fold a task workspace back into the current branch, or push it to a remote.

The AI collaborator is only asked for commit messages and conflict
resolutions; whether to merge is decided by git state and the operator.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from rover.agents.base import AiAgent
from rover.errors import (
    ErrorKind,
    GitError,
    GitNoUpstreamError,
    TaskStateError,
)
from rover.git import DEFAULT_REMOTE, GitAdapter
from rover.tasks.iterations import IterationManager
from rover.tasks.store import Task

logger = logging.getLogger(__name__)

ATTRIBUTION_TRAILER = "Co-Authored-By: Rover <noreply@endor.dev>"
_CONFLICT_MARKER = re.compile(r"^(?:<{7}(?: |$)|={7}$|>{7}(?: |$))", re.MULTILINE)
MERGE_CONTEXT_COMMITS = 5
FILE_HISTORY_COMMITS = 10
_GITHUB_REMOTE = re.compile(r"github\.com[:/]([^/]+)/([^/.]+?)(?:\.git)?/?$")


@dataclass(slots=True)
class MergeConfirmations:
    """Operator decisions requested during a merge.

    ``use_ai_resolution`` receives the conflicted paths, ``approve_resolution``
    the staged diff per resolved path, ``clean_up`` nothing.
    """

    use_ai_resolution: Callable[[list[str]], bool]
    approve_resolution: Callable[[dict[str, str]], bool]
    clean_up: Callable[[], bool]

    @classmethod
    def automatic(cls) -> MergeConfirmations:
        """Accept everything; used for non-interactive JSON output."""

        return cls(
            use_ai_resolution=lambda _conflicts: True,
            approve_resolution=lambda _diffs: True,
            clean_up=lambda: True,
        )


@dataclass(slots=True)
class MergeOutcome:
    task_id: int
    task_title: str
    branch_name: str
    success: bool = False
    merged: bool = False
    committed: bool = False
    has_worktree_changes: bool = False
    unmerged_commits: list[str] = field(default_factory=list)
    commit_message: str | None = None
    conflicts: list[str] = field(default_factory=list)
    conflicts_resolved: bool = False
    cleaned_up: bool = False
    cleanup_error: str | None = None
    message: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    manual_steps: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PushOutcome:
    task_id: int
    task_title: str
    branch_name: str
    success: bool = False
    has_changes: bool = False
    committed: bool = False
    pushed: bool = False
    commit_message: str | None = None
    pull_request_url: str | None = None
    message: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


def with_attribution(message: str, *, enabled: bool) -> str:
    return f"{message}\n\n{ATTRIBUTION_TRAILER}" if enabled else message


def contains_conflict_markers(content: str) -> bool:
    """True when a line starts with a git conflict marker.

    Only whole-line ``=======`` counts, so Markdown or RST heading underlines pass.
    """

    return _CONFLICT_MARKER.search(content) is not None


def github_pull_request_url(remote_url: str, branch: str) -> str | None:
    match = _GITHUB_REMOTE.search(remote_url.strip())
    if match is None:
        return None
    owner, repo = match.groups()
    return f"https://github.com/{owner}/{repo}/pull/new/{branch}"


class MergeCoordinator:
    """Runs the merge and push protocols for one project."""

    def __init__(
        self,
        git: GitAdapter,
        *,
        agent: AiAgent | None,
        iterations: IterationManager | None = None,
        attribution: bool = True,
    ) -> None:
        self.git = git
        self.agent = agent
        self.iterations = iterations or IterationManager()
        self.attribution = attribution

    def push(
        self,
        task: Task,
        *,
        commit_message: str | None = None,
        edit_message: Callable[[str], str] | None = None,
    ) -> PushOutcome:
        """Commit pending workspace changes and push the task branch.

        Without ``commit_message`` the agent suggests one, falling back to
        ``Task <id>: <title>``; ``edit_message`` lets the operator change the
        suggestion. Nothing to commit and nothing unpushed is a successful no-op.
        """

        worktree = _require_workspace(task)
        outcome = PushOutcome(
            task_id=task.id,
            task_title=task.title,
            branch_name=task.branch_name,
        )
        outcome.has_changes = bool(self.git.uncommitted_changes(worktree))

        if not outcome.has_changes and not self._has_unpushed_commits(task, worktree):
            outcome.success = True
            outcome.message = "No changes to push"
            return outcome

        if outcome.has_changes:
            message = with_attribution(
                commit_message or self._push_message(task, edit_message),
                enabled=self.attribution,
            )
            self.git.add_and_commit(message, worktree=worktree)
            outcome.committed = True
            outcome.commit_message = message

        try:
            self.git.push(task.branch_name, worktree=worktree)
        except GitNoUpstreamError:
            logger.info("Branch %s has no upstream; setting it", task.branch_name)
            self.git.push(task.branch_name, worktree=worktree, set_upstream=True)
        outcome.pushed = True
        task.mark_pushed()

        remote_url = self.git.remote_url(worktree=worktree)
        if remote_url:
            outcome.pull_request_url = github_pull_request_url(remote_url, task.branch_name)
        outcome.success = True
        outcome.message = f"Branch {task.branch_name} pushed"
        return outcome

    def merge(self, task: Task, confirmations: MergeConfirmations) -> MergeOutcome:  # noqa: C901
        """Merge the task branch into the branch checked out in the project root."""

        worktree = _require_workspace(task)
        outcome = MergeOutcome(
            task_id=task.id,
            task_title=task.title,
            branch_name=task.branch_name,
        )

        if self.git.has_uncommitted_changes(skip_untracked=True):
            outcome.error = (
                "Current branch has uncommitted changes. "
                "Commit or stash them before merging."
            )
            outcome.error_kind = ErrorKind.DIRTY_WORKTREE
            return outcome

        outcome.has_worktree_changes = self.git.has_uncommitted_changes(worktree)
        outcome.unmerged_commits = self._unmerged_commits(task.branch_name)
        if not outcome.has_worktree_changes and not outcome.unmerged_commits:
            outcome.success = True
            outcome.message = "No changes to merge"
            return outcome

        if outcome.has_worktree_changes:
            message = self._commit_message(task)
            self.git.add_and_commit(message, worktree=worktree)
            outcome.committed = True
            outcome.commit_message = message.splitlines()[0]
            outcome.unmerged_commits = self._unmerged_commits(task.branch_name)

        if not self.git.merge_branch(task.branch_name, f"merge: {task.title}"):
            outcome.conflicts = self.git.get_merge_conflicts()
            if not self._finish_conflicted_merge(outcome, confirmations):
                return outcome

        outcome.merged = True
        task.mark_merged()
        outcome.success = True
        outcome.message = f"Task {task.id} merged into the current branch"

        if confirmations.clean_up():
            self._clean_up(task, worktree, outcome)
        return outcome

    def _finish_conflicted_merge(
        self,
        outcome: MergeOutcome,
        confirmations: MergeConfirmations,
    ) -> bool:
        """Resolve conflicts and create the merge commit, or abort the merge."""

        if self.agent is None or not confirmations.use_ai_resolution(list(outcome.conflicts)):
            self.git.abort_merge()
            outcome.error = "Merge aborted due to conflicts"
            outcome.error_kind = ErrorKind.MERGE_CONFLICT
            outcome.manual_steps = [
                "Fix conflicts in the listed files",
                "Run: git add <resolved-files>",
                "Run: git commit",
                f"Run: rover merge {outcome.task_id} to complete the process",
            ]
            return False

        if not self.resolve_conflicts(outcome.conflicts):
            self.git.abort_merge()
            outcome.error = "AI failed to resolve merge conflicts"
            outcome.error_kind = ErrorKind.MERGE_CONFLICT
            return False
        outcome.conflicts_resolved = True

        diffs = {path: self.git.show_staged_diff(path) for path in outcome.conflicts}
        if not confirmations.approve_resolution(diffs):
            self.git.abort_merge()
            outcome.error = "AI conflict resolution was rejected; merge aborted"
            outcome.error_kind = ErrorKind.MERGE_CONFLICT
            outcome.manual_steps = [
                "Resolve conflicts manually and run the merge command again",
            ]
            return False

        try:
            self.git.continue_merge()
        except GitError:
            self.git.abort_merge()
            raise
        return True

    def resolve_conflicts(self, conflicts: list[str]) -> bool:
        """Ask the agent to resolve each file; write it, then stage it.

        Stops at the first file that cannot be resolved cleanly.
        """

        if self.agent is None:
            return False
        for relative_path in conflicts:
            path = self.git.repo_root / relative_path
            try:
                content = path.read_text("utf-8")
            except OSError as error:
                logger.warning("Could not read conflicted file %s: %s", relative_path, error)
                return False
            history = self.git.file_history(relative_path, limit=FILE_HISTORY_COMMITS)
            resolved = self.agent.resolve_merge_conflicts(relative_path, history, content)
            if not resolved or contains_conflict_markers(resolved):
                logger.warning("AI could not resolve conflicts in %s", relative_path)
                return False
            try:
                path.write_text(resolved, "utf-8")
                self.git.add(relative_path)
            except (OSError, GitError) as error:
                logger.warning("Could not stage resolved file %s: %s", relative_path, error)
                return False
        return True

    def _suggest_commit_message(self, task: Task) -> str | None:
        """Ask the agent for a message styled after the main branch history."""

        if self.agent is None:
            return None
        recent = self.git.get_recent_commits(
            branch=self.git.get_main_branch(),
            limit=MERGE_CONTEXT_COMMITS,
        )
        return self.agent.generate_commit_message(
            task.title,
            task.description,
            recent,
            self.iterations.iteration_summaries(task.task_dir),
        )

    def _push_message(
        self,
        task: Task,
        edit_message: Callable[[str], str] | None,
    ) -> str:
        message = self._suggest_commit_message(task) or f"Task {task.id}: {task.title}"
        if edit_message is not None:
            message = edit_message(message).strip() or message
        return message

    def _commit_message(self, task: Task) -> str:
        message = self._suggest_commit_message(task)
        if not message:
            logger.warning("Could not generate AI commit message; using task title")
            message = f"{task.title}\n\n{task.description}"
        return with_attribution(message, enabled=self.attribution)

    def _unmerged_commits(self, branch: str) -> list[str]:
        if not self.git.branch_exists(branch):
            return []
        return self.git.unmerged_commits(branch)

    def _has_unpushed_commits(self, task: Task, worktree: Path) -> bool:
        try:
            return self.git.has_unmerged_commits(
                task.branch_name,
                target_branch=f"{DEFAULT_REMOTE}/{task.branch_name}",
                worktree=worktree,
            )
        except GitError:
            # Remote branch does not exist yet.
            return True

    def _clean_up(self, task: Task, worktree: Path, outcome: MergeOutcome) -> None:
        try:
            self.git.remove_worktree(worktree, force=True)
            self.git.delete_branch(task.branch_name)
        except GitError as error:
            logger.warning("Cleanup after merging task %s failed: %s", task.id, error)
            outcome.cleanup_error = str(error)
            outcome.manual_steps = [
                f"git worktree remove {worktree} --force",
                f"git branch -d {task.branch_name}",
            ]
            return
        outcome.cleaned_up = True


def _require_workspace(task: Task) -> Path:
    if not task.worktree_path or not Path(task.worktree_path).exists():
        raise TaskStateError(f"Task {task.id} has no workspace. Start the task first.")
    if not task.branch_name:
        raise TaskStateError(f"Task {task.id} has no branch.")
    return Path(task.worktree_path)
