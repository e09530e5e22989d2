"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeAgent, FakeLauncher, FakeRunner, create_worktree_dir

from rover.agents.base import TaskExpansion
from rover.config import Settings
from rover.git import GitAdapter
from rover.orchestrator import TaskOrchestrator
from rover.tasks.store import TaskStore


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def settings(project_root: Path) -> Settings:
    return Settings(project_root=project_root)


@pytest.fixture()
def runner() -> FakeRunner:
    fake = FakeRunner()
    fake.on("git", "branch", "--show-current", stdout="main\n")
    fake.on("git", "worktree", "add", effect=create_worktree_dir)
    return fake


@pytest.fixture()
def store(settings: Settings) -> TaskStore:
    return TaskStore(settings.tasks_dir)


@pytest.fixture()
def agent() -> FakeAgent:
    return FakeAgent(
        expansion=TaskExpansion(
            title="Add retry logic",
            description="Retry failed HTTP requests with exponential backoff.",
        ),
    )


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def orchestrator(  # noqa: PLR0913
    settings: Settings,
    runner: FakeRunner,
    store: TaskStore,
    launcher: FakeLauncher,
    agent: FakeAgent,
    project_root: Path,
) -> TaskOrchestrator:
    return TaskOrchestrator(
        settings,
        runner=runner,
        store=store,
        git=GitAdapter(project_root, runner),
        launcher=launcher,
        agent_factory=lambda _name: agent,
    )
