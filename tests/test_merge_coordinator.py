from __future__ import annotations

from pathlib import Path

import allure
import pytest
from fakes import BRANCH, FakeAgent, FakeRunner, RecordedCall

from rover.errors import ErrorKind, TaskStateError
from rover.git import GitAdapter
from rover.merge import (
    ATTRIBUTION_TRAILER,
    MergeConfirmations,
    MergeCoordinator,
    contains_conflict_markers,
    github_pull_request_url,
)
from rover.tasks.models import TaskStatus
from rover.tasks.store import Task, TaskStore

pytestmark = [
    allure.epic("Merge & Push"),
    allure.feature("Merge Coordinator"),
]


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture()
def task(repo: Path) -> Task:
    store = TaskStore(repo / ".rover" / "tasks")
    task = store.create(1, "Add retry logic", "Retry HTTP calls", agent="claude")
    worktree = store.workspace_path(1)
    worktree.mkdir(parents=True)
    task.set_workspace(str(worktree), BRANCH)
    task.mark_completed()
    return task


def _coordinator(
    repo: Path,
    runner: FakeRunner,
    agent: FakeAgent | None = None,
    *,
    attribution: bool = True,
) -> MergeCoordinator:
    return MergeCoordinator(GitAdapter(repo, runner), agent=agent, attribution=attribution)


def _confirmations(*, use_ai: bool = True, approve: bool = True, clean_up: bool = True):
    seen: dict[str, object] = {}

    def _use_ai(conflicts: list[str]) -> bool:
        seen["conflicts"] = conflicts
        return use_ai

    def _approve(diffs: dict[str, str]) -> bool:
        seen["diffs"] = diffs
        return approve

    return (
        MergeConfirmations(
            use_ai_resolution=_use_ai,
            approve_resolution=_approve,
            clean_up=lambda: clean_up,
        ),
        seen,
    )


def _merge_runner(repo: Path, task: Task) -> FakeRunner:
    return (
        FakeRunner()
        .on("git", "branch", "--show-current", stdout="main\n")
        .on("git", "status", "--porcelain", "-u", "no")
        .on("git", "status", "--porcelain", cwd=Path(task.worktree_path), stdout=" M http.py\n")
        .on("git", "log", f"main..{BRANCH}", stdout="abc123 wip\n")
    )


def test_merge_refuses_dirty_main_tree_without_calling_merge(repo: Path, task: Task) -> None:
    runner = FakeRunner().on("git", "status", "--porcelain", "-u", "no", stdout=" M app.py\n")

    outcome = _coordinator(repo, runner).merge(task, MergeConfirmations.automatic())

    assert outcome.success is False
    assert outcome.error_kind is ErrorKind.DIRTY_WORKTREE
    assert not runner.called("git", "merge")
    assert task.status is TaskStatus.COMPLETED


def test_merge_with_nothing_to_merge_is_successful_noop(repo: Path, task: Task) -> None:
    runner = FakeRunner().on("git", "branch", "--show-current", stdout="main\n")

    outcome = _coordinator(repo, runner).merge(task, MergeConfirmations.automatic())

    assert outcome.success is True
    assert outcome.message == "No changes to merge"
    assert not runner.called("git", "merge")
    assert task.status is TaskStatus.COMPLETED


def test_merge_commits_worktree_changes_with_ai_message(repo: Path, task: Task) -> None:
    runner = _merge_runner(repo, task)
    agent = FakeAgent(commit_message="feat: retry failed requests")

    outcome = _coordinator(repo, runner, agent).merge(task, MergeConfirmations.automatic())

    assert outcome.success is True
    assert outcome.merged is True
    assert outcome.commit_message == "feat: retry failed requests"
    commit = next(call for call in runner.calls if call.args[:2] == ("commit", "-m"))
    assert commit.args[2] == f"feat: retry failed requests\n\n{ATTRIBUTION_TRAILER}"
    assert commit.cwd == Path(task.worktree_path)
    assert ("merge", "--no-ff", BRANCH, "-m", "merge: Add retry logic") in runner.commands()
    assert ("worktree", "remove", task.worktree_path, "--force") in runner.commands()
    assert ("branch", "-d", BRANCH) in runner.commands()
    assert outcome.cleaned_up is True
    assert task.status is TaskStatus.MERGED


def test_merge_falls_back_to_title_and_description_message(repo: Path, task: Task) -> None:
    runner = _merge_runner(repo, task)

    outcome = _coordinator(repo, runner, FakeAgent(), attribution=False).merge(
        task,
        MergeConfirmations.automatic(),
    )

    commit = next(call for call in runner.calls if call.args[:2] == ("commit", "-m"))
    assert commit.args[2] == "Add retry logic\n\nRetry HTTP calls"
    assert outcome.commit_message == "Add retry logic"


def test_merge_resolves_conflicts_writing_before_staging(repo: Path, task: Task) -> None:
    conflicted = repo / "src" / "app.py"
    conflicted.parent.mkdir()
    conflicted.write_text("<<<<<<< HEAD\na = 1\n=======\na = 2\n>>>>>>> branch\n", "utf-8")
    staged_content: list[str] = []

    def _record_stage(_call: RecordedCall) -> None:
        staged_content.append(conflicted.read_text("utf-8"))

    runner = (
        _merge_runner(repo, task)
        .on("git", "merge", exit_code=1, stdout="CONFLICT (content)")
        .on("git", "status", "--porcelain", cwd=repo, stdout="UU src/app.py\n")
        .on("git", "add", "src/app.py", effect=_record_stage)
        .on("git", "diff", "--cached", stdout="+a = 2\n")
    )
    agent = FakeAgent(commit_message="fix", resolutions={"src/app.py": "a = 2\n"})
    confirmations, seen = _confirmations()

    outcome = _coordinator(repo, runner, agent).merge(task, confirmations)

    assert outcome.success is True
    assert outcome.conflicts == ["src/app.py"]
    assert outcome.conflicts_resolved is True
    assert staged_content == ["a = 2\n"]
    assert seen["diffs"] == {"src/app.py": "+a = 2\n"}
    assert ("commit", "--no-edit") in runner.commands()
    assert not runner.called("git", "merge", "--abort")
    assert task.status is TaskStatus.MERGED


def test_merge_aborts_when_resolution_keeps_markers(repo: Path, task: Task) -> None:
    conflicted = repo / "app.py"
    conflicted.write_text("<<<<<<< HEAD\nx\n=======\ny\n>>>>>>> b\n", "utf-8")
    runner = (
        _merge_runner(repo, task)
        .on("git", "merge", "--no-ff", exit_code=1)
        .on("git", "status", "--porcelain", cwd=repo, stdout="UU app.py\n")
    )
    agent = FakeAgent(resolutions={"app.py": "<<<<<<< HEAD\nx\n"})

    outcome = _coordinator(repo, runner, agent).merge(task, MergeConfirmations.automatic())

    assert outcome.success is False
    assert outcome.error_kind is ErrorKind.MERGE_CONFLICT
    assert ("merge", "--abort") in runner.commands()
    assert not runner.called("git", "add", "app.py")
    assert task.status is TaskStatus.COMPLETED


def test_merge_declined_ai_resolution_lists_manual_steps(repo: Path, task: Task) -> None:
    runner = (
        _merge_runner(repo, task)
        .on("git", "merge", "--no-ff", exit_code=1)
        .on("git", "status", "--porcelain", cwd=repo, stdout="AA app.py\n")
    )
    confirmations, seen = _confirmations(use_ai=False)

    outcome = _coordinator(repo, runner, FakeAgent()).merge(task, confirmations)

    assert seen["conflicts"] == ["app.py"]
    assert outcome.error == "Merge aborted due to conflicts"
    assert outcome.manual_steps[-1] == "Run: rover merge 1 to complete the process"
    assert ("merge", "--abort") in runner.commands()


def test_merge_rejected_resolution_aborts(repo: Path, task: Task) -> None:
    (repo / "app.py").write_text("<<<<<<< HEAD\nx\n=======\ny\n>>>>>>> b\n", "utf-8")
    runner = (
        _merge_runner(repo, task)
        .on("git", "merge", "--no-ff", exit_code=1)
        .on("git", "status", "--porcelain", cwd=repo, stdout="UU app.py\n")
    )
    agent = FakeAgent(resolutions={"app.py": "y\n"})
    confirmations, _seen = _confirmations(approve=False)

    outcome = _coordinator(repo, runner, agent).merge(task, confirmations)

    assert outcome.success is False
    assert ("merge", "--abort") in runner.commands()
    assert not runner.called("git", "commit", "--no-edit")


def test_merge_reports_cleanup_failure_but_succeeds(repo: Path, task: Task) -> None:
    runner = _merge_runner(repo, task).on(
        "git",
        "worktree",
        "remove",
        exit_code=1,
        stderr="worktree is locked",
    )

    outcome = _coordinator(repo, runner, FakeAgent(commit_message="m")).merge(
        task,
        MergeConfirmations.automatic(),
    )

    assert outcome.success is True
    assert outcome.cleaned_up is False
    assert "worktree is locked" in (outcome.cleanup_error or "")
    assert outcome.manual_steps[0].startswith("git worktree remove")


def test_merge_commit_message_follows_main_branch_history(repo: Path, task: Task) -> None:
    runner = (
        FakeRunner()
        .on("git", "branch", "--show-current", stdout="feature-x\n")
        .on("git", "status", "--porcelain", "-u", "no")
        .on("git", "status", "--porcelain", cwd=Path(task.worktree_path), stdout=" M http.py\n")
        .on("git", "symbolic-ref", stdout="refs/remotes/origin/trunk\n")
        .on("git", "log", "trunk", stdout="fix: handle empty body\nfeat: add client\n")
    )
    agent = FakeAgent(commit_message="feat: retry failed requests")

    _coordinator(repo, runner, agent).merge(task, MergeConfirmations.automatic())

    assert ("log", "trunk", "--pretty=format:%s", "-n", "5") in runner.commands()
    _title, recent, _summaries = agent.calls[0][1]
    assert recent == ["fix: handle empty body", "feat: add client"]


def test_merge_keeps_workspace_when_cleanup_declined(repo: Path, task: Task) -> None:
    runner = _merge_runner(repo, task)
    confirmations, _seen = _confirmations(clean_up=False)

    outcome = _coordinator(repo, runner, FakeAgent(commit_message="m")).merge(task, confirmations)

    assert outcome.success is True
    assert not runner.called("git", "worktree", "remove")


def test_push_with_nothing_to_push_is_noop_twice(repo: Path, task: Task) -> None:
    runner = FakeRunner()
    coordinator = _coordinator(repo, runner)

    first = coordinator.push(task)
    second = coordinator.push(task)

    for outcome in (first, second):
        assert outcome.success is True
        assert outcome.message == "No changes to push"
    assert not runner.called("git", "push")
    assert task.status is TaskStatus.COMPLETED


def test_push_commits_and_retries_with_upstream(repo: Path, task: Task) -> None:
    runner = (
        FakeRunner()
        .on("git", "status", "--porcelain", stdout=" M http.py\n")
        .on(
            "git",
            "push",
            exit_code=128,
            stderr=f"fatal: The current branch {BRANCH} has no upstream branch.",
        )
        .on("git", "push", "--set-upstream")
        .on("git", "remote", "get-url", stdout="git@github.com:acme/widgets.git\n")
    )

    outcome = _coordinator(repo, runner).push(task)

    assert outcome.success is True
    assert outcome.committed is True
    assert outcome.pushed is True
    assert outcome.commit_message == f"Task 1: Add retry logic\n\n{ATTRIBUTION_TRAILER}"
    assert ("push", "--set-upstream", "origin", BRANCH) in runner.commands()
    assert outcome.pull_request_url == f"https://github.com/acme/widgets/pull/new/{BRANCH}"
    assert task.status is TaskStatus.PUSHED


def test_push_of_unpushed_commits_without_changes(repo: Path, task: Task) -> None:
    runner = FakeRunner().on("git", "log", stdout="abc123 work\n")

    outcome = _coordinator(repo, runner).push(task, commit_message="ignored")

    assert outcome.pushed is True
    assert outcome.committed is False
    assert ("log", f"origin/{BRANCH}..{BRANCH}", "--oneline") in runner.commands()
    assert not runner.called("git", "commit")


def test_push_requires_workspace(repo: Path) -> None:
    store = TaskStore(repo / "tasks")
    task = store.create(2, "No workspace", "nothing")

    with pytest.raises(TaskStateError, match="has no workspace"):
        _coordinator(repo, FakeRunner()).push(task)


@pytest.mark.parametrize(
    ("remote", "expected"),
    [
        ("https://github.com/acme/widgets.git", "https://github.com/acme/widgets/pull/new/b"),
        ("git@github.com:acme/widgets", "https://github.com/acme/widgets/pull/new/b"),
        ("https://gitlab.com/acme/widgets.git", None),
    ],
)
def test_github_pull_request_url(remote: str, expected: str | None) -> None:
    assert github_pull_request_url(remote, "b") == expected


def _push_runner() -> FakeRunner:
    return FakeRunner().on("git", "status", "--porcelain", stdout=" M http.py\n")


def test_push_commits_agent_suggestion_after_operator_edit(repo: Path, task: Task) -> None:
    runner = _push_runner()
    suggestions: list[str] = []

    def _edit(suggestion: str) -> str:
        suggestions.append(suggestion)
        return "feat: retry with backoff"

    outcome = _coordinator(repo, runner, FakeAgent(commit_message="feat: retry")).push(
        task,
        edit_message=_edit,
    )

    assert suggestions == ["feat: retry"]
    assert outcome.commit_message == f"feat: retry with backoff\n\n{ATTRIBUTION_TRAILER}"
    assert outcome.pushed is True


def test_push_without_suggestion_falls_back_to_task_title(repo: Path, task: Task) -> None:
    runner = _push_runner()

    outcome = _coordinator(repo, runner, FakeAgent(), attribution=False).push(
        task,
        edit_message=lambda _suggestion: "  ",
    )

    assert outcome.commit_message == "Task 1: Add retry logic"


def test_push_explicit_message_skips_agent(repo: Path, task: Task) -> None:
    agent = FakeAgent(commit_message="feat: retry")

    outcome = _coordinator(repo, _push_runner(), agent, attribution=False).push(
        task,
        commit_message="chore: bump",
    )

    assert outcome.commit_message == "chore: bump"
    assert agent.calls == []


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ("<<<<<<< HEAD\na\n=======\nb\n>>>>>>> main\n", True),
        ("x = 1\n=======\n", True),
        ("Release notes\n=============\n\nFixed retries.\n", False),
        ("# compare with a == b or a <<<<<<< b\n", False),
    ],
)
def test_contains_conflict_markers_matches_whole_line_markers(
    content: str,
    expected: bool,
) -> None:
    assert contains_conflict_markers(content) is expected
