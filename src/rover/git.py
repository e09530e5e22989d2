"""Version control adapter over the ``git`` CLI.

Every call goes through a :class:`~rover.runner.CommandRunner`. Probes
(``is_repo``, ``has_commits``, ``branch_exists``) never raise; mutating
operations raise :class:`~rover.errors.GitError` on a non-zero exit.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from rover.errors import GitError, GitNoUpstreamError
from rover.runner import CommandResult, CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

CONFLICT_CODES = frozenset({"UU", "AA", "DD", "AU", "UA", "DU", "UD"})
NO_UPSTREAM_MARKER = "has no upstream branch"
DEFAULT_MAIN_BRANCH = "main"
DEFAULT_REMOTE = "origin"
RECENT_COMMITS_LIMIT = 15
EMPTY_FILE = "/dev/null"


@dataclass(slots=True, frozen=True)
class DiffResult:
    """Rendered diff output for a worktree."""

    text: str
    files: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class GitAdapter:
    """Thin typed wrapper over the git commands the orchestrator needs."""

    def __init__(self, repo_root: Path, runner: CommandRunner | None = None) -> None:
        self.repo_root = repo_root
        self.runner = runner or SubprocessRunner()

    def available(self) -> bool:
        return self.runner.available("git")

    def is_repo(self) -> bool:
        return self._probe(["rev-parse", "--is-inside-work-tree"])

    def has_commits(self) -> bool:
        return self._probe(["rev-list", "--count", "HEAD"])

    def branch_exists(self, branch: str) -> bool:
        return self._probe(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"])

    def create_worktree(self, path: Path, branch: str, base: str | None = None) -> None:
        args = ["worktree", "add", "-b", branch, str(path)]
        if base:
            args.append(base)
        self._run(args, reason=f"could not create worktree {path}")

    def remove_worktree(self, path: Path, *, force: bool = True) -> None:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        self._run(args, reason=f"could not remove worktree {path}")

    def prune_worktrees(self) -> None:
        self._run(["worktree", "prune"], reason="could not prune worktrees")

    def delete_branch(self, branch: str, *, force: bool = False) -> None:
        flag = "-D" if force else "-d"
        self._run(["branch", flag, branch], reason=f"could not delete branch {branch}")

    def diff(  # noqa: PLR0913
        self,
        worktree: Path,
        *,
        file_path: str | None = None,
        branch: str | None = None,
        only_files: bool = False,
        include_untracked: bool = False,
    ) -> DiffResult:
        """Diff the worktree against its index or ``branch``.

        With ``include_untracked`` new files are rendered as a diff against an
        empty file, so freshly created files show up before they are staged.
        """

        args = ["diff"]
        if only_files:
            args.append("--name-only")
        if branch:
            args.append(branch)
        if file_path:
            args.extend(["--", file_path])
        result = self._run(args, cwd=worktree, reason="could not compute diff")
        text = result.stdout
        files = [line for line in text.splitlines() if line] if only_files else []

        if include_untracked:
            for untracked in self.untracked_files(worktree):
                if file_path and untracked != file_path:
                    continue
                if only_files:
                    files.append(untracked)
                    continue
                text = _join_output(text, self._untracked_diff(worktree, untracked))

        if only_files:
            text = "\n".join(files) + ("\n" if files else "")
        return DiffResult(text=text, files=tuple(files))

    def untracked_files(self, worktree: Path) -> list[str]:
        result = self._run(
            ["ls-files", "--others", "--exclude-standard"],
            cwd=worktree,
            reason="could not list untracked files",
        )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def uncommitted_changes(
        self,
        worktree: Path | None = None,
        *,
        skip_untracked: bool = False,
    ) -> list[str]:
        """Porcelain status lines; empty when the tree is clean."""

        args = ["status", "--porcelain"]
        if skip_untracked:
            args.extend(["-u", "no"])
        result = self._run(args, cwd=worktree, reason="could not read working tree status")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def has_uncommitted_changes(
        self,
        worktree: Path | None = None,
        *,
        skip_untracked: bool = False,
    ) -> bool:
        return bool(self.uncommitted_changes(worktree, skip_untracked=skip_untracked))

    def unmerged_commits(
        self,
        source_branch: str,
        *,
        target_branch: str | None = None,
        worktree: Path | None = None,
    ) -> list[str]:
        """One-line log entries present on ``source_branch`` but not on the target."""

        target = target_branch or self.get_current_branch()
        result = self._run(
            ["log", f"{target}..{source_branch}", "--oneline"],
            cwd=worktree,
            reason=f"could not compare {source_branch} with {target}",
        )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def has_unmerged_commits(
        self,
        source_branch: str,
        *,
        target_branch: str | None = None,
        worktree: Path | None = None,
    ) -> bool:
        return bool(
            self.unmerged_commits(source_branch, target_branch=target_branch, worktree=worktree),
        )

    def add(self, file_path: str, *, worktree: Path | None = None) -> None:
        self._run(["add", file_path], cwd=worktree, reason=f"could not stage {file_path}")

    def add_and_commit(self, message: str, *, worktree: Path | None = None) -> None:
        self._run(["add", "-A"], cwd=worktree, reason="could not stage changes")
        self._run(["commit", "-m", message], cwd=worktree, reason="could not commit changes")

    def merge_branch(self, branch: str, message: str) -> bool:
        """Merge ``branch`` with ``--no-ff``. Returns False when the merge stopped on conflicts.

        Other failures raise :class:`GitError`.
        """

        result = self.runner.run(
            "git",
            ["merge", "--no-ff", branch, "-m", message],
            cwd=self.repo_root,
        )
        if result.ok:
            return True
        if self.get_merge_conflicts():
            logger.debug("Merge of %s stopped on conflicts", branch)
            return False
        raise GitError(f"could not merge {branch}: {_failure_text(result)}", stderr=result.stderr)

    def abort_merge(self) -> None:
        self._run(["merge", "--abort"], reason="could not abort merge")

    def continue_merge(self) -> None:
        self._run(["commit", "--no-edit"], reason="could not complete merge commit")

    def get_merge_conflicts(self) -> list[str]:
        """Paths reported with an unmerged porcelain status code."""

        result = self.runner.run("git", ["status", "--porcelain"], cwd=self.repo_root)
        if not result.ok:
            return []
        conflicts: list[str] = []
        for line in result.stdout.splitlines():
            if line[:2] in CONFLICT_CODES:
                conflicts.append(line[3:].strip())
        return conflicts

    def show_staged_diff(self, file_path: str) -> str:
        result = self._run(
            ["diff", "--cached", file_path],
            reason=f"could not show staged diff for {file_path}",
        )
        return result.stdout

    def file_history(self, file_path: str, *, limit: int = 10) -> str:
        result = self.runner.run(
            "git",
            ["log", "--oneline", f"-{limit}", "--", file_path],
            cwd=self.repo_root,
        )
        return result.stdout if result.ok else ""

    def push(
        self,
        branch: str,
        *,
        worktree: Path | None = None,
        set_upstream: bool = False,
        remote: str = DEFAULT_REMOTE,
    ) -> None:
        args = ["push"]
        if set_upstream:
            args.extend(["--set-upstream", remote, branch])
        result = self.runner.run("git", args, cwd=worktree or self.repo_root)
        if result.ok:
            return
        details = _failure_text(result)
        if NO_UPSTREAM_MARKER in details:
            raise GitNoUpstreamError(f"branch {branch} has no upstream branch", stderr=details)
        raise GitError(f"could not push {branch}: {details}", stderr=result.stderr)

    def get_current_branch(self, worktree: Path | None = None) -> str:
        result = self._run(
            ["branch", "--show-current"],
            cwd=worktree,
            reason="could not resolve current branch",
        )
        return result.stdout.strip()

    def get_main_branch(self) -> str:
        """Remote default branch, else local ``main``, else ``master``, else ``main``."""

        result = self.runner.run(
            "git",
            ["symbolic-ref", f"refs/remotes/{DEFAULT_REMOTE}/HEAD"],
            cwd=self.repo_root,
        )
        remote_head = result.stdout.strip() if result.ok else ""
        if remote_head:
            return remote_head.replace(f"refs/remotes/{DEFAULT_REMOTE}/", "")
        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return DEFAULT_MAIN_BRANCH

    def get_recent_commits(
        self,
        *,
        branch: str | None = None,
        limit: int = RECENT_COMMITS_LIMIT,
    ) -> list[str]:
        args = ["log"]
        if branch:
            args.append(branch)
        args.extend(["--pretty=format:%s", "-n", str(limit)])
        result = self.runner.run("git", args, cwd=self.repo_root)
        if not result.ok:
            logger.debug("Could not read recent commits: %s", _failure_text(result))
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    def remote_url(
        self,
        remote: str = DEFAULT_REMOTE,
        *,
        worktree: Path | None = None,
    ) -> str | None:
        result = self.runner.run(
            "git",
            ["remote", "get-url", remote],
            cwd=worktree or self.repo_root,
        )
        url = result.stdout.strip()
        return url if result.ok and url else None

    def _untracked_diff(self, worktree: Path, file_path: str) -> str:
        # Exit code 1 means the files differ, which is always the case here.
        result = self.runner.run(
            "git",
            ["diff", "--no-index", EMPTY_FILE, file_path],
            cwd=worktree,
        )
        if result.exit_code not in (0, 1):
            raise GitError(
                f"could not diff untracked file {file_path}: {_failure_text(result)}",
                stderr=result.stderr,
            )
        return result.stdout

    def _probe(self, args: Sequence[str]) -> bool:
        result = self.runner.run("git", args, cwd=self.repo_root)
        if not result.ok:
            logger.debug("git %s failed: %s", " ".join(args), _failure_text(result))
        return result.ok

    def _run(
        self,
        args: Sequence[str],
        *,
        reason: str,
        cwd: Path | None = None,
    ) -> CommandResult:
        result = self.runner.run("git", args, cwd=cwd or self.repo_root)
        if not result.ok:
            raise GitError(f"{reason}: {_failure_text(result)}", stderr=result.stderr)
        return result


def _failure_text(result: CommandResult) -> str:
    return (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"


def _join_output(first: str, second: str) -> str:
    if not first:
        return second
    if not second:
        return first
    return first + second if first.endswith("\n") else f"{first}\n{second}"
