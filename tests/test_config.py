from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from fakes import FakeRunner

from rover.config import ProjectConfig, Settings, UserSettings, find_project_root

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]

_ENV_NAMES = (
    "ROVER_PROJECT_ROOT",
    "ROVER_DEFAULT_AGENT",
    "ROVER_CONTAINER_BACKEND",
    "ROVER_AGENT_IMAGE",
    "ROVER_WORKFLOW",
    "ROVER_AI_TIMEOUT_SECONDS",
    "ROVER_ATTRIBUTION",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ROVER_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("ROVER_DEFAULT_AGENT", "Gemini")
    monkeypatch.setenv("ROVER_CONTAINER_BACKEND", "podman")
    monkeypatch.setenv("ROVER_AI_TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("ROVER_ATTRIBUTION", "off")

    settings = Settings.from_env()

    assert settings.project_root == tmp_path
    assert settings.tasks_dir == tmp_path / ".rover" / "tasks"
    assert settings.agents.default_agent == "gemini"
    assert settings.agents.invoke_timeout_seconds == 45.0
    assert settings.execution.container_backend == "podman"
    assert settings.attribution_enabled() is False
    settings.validate()


def test_from_env_uses_user_settings_agent(tmp_path: Path) -> None:
    (tmp_path / ".rover").mkdir()
    (tmp_path / ".rover" / "settings.json").write_text(
        json.dumps({"defaultAiAgent": "Codex"}),
        "utf-8",
    )

    settings = Settings.from_env(project_root=tmp_path)

    assert settings.agents.default_agent == "codex"
    assert UserSettings.load(tmp_path).default_ai_agent == "codex"


def test_validate_rejects_unsupported_values(tmp_path: Path) -> None:
    settings = Settings(project_root=tmp_path)
    settings.agents.default_agent = "copilot"

    with pytest.raises(ValueError, match="Unsupported AI agent"):
        settings.validate()

    settings.agents.default_agent = "claude"
    settings.execution.container_backend = "lxc"
    with pytest.raises(ValueError, match="ROVER_CONTAINER_BACKEND"):
        settings.validate()


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ROVER_ATTRIBUTION", "maybe")

    with pytest.raises(ValueError, match="ROVER_ATTRIBUTION"):
        Settings.from_env(project_root=tmp_path)


def test_project_config_reads_rover_json(tmp_path: Path) -> None:
    (tmp_path / "rover.json").write_text(
        json.dumps({"attribution": False, "languages": ["python"], "envFiles": ["config/.env"]}),
        "utf-8",
    )

    config = ProjectConfig.load(tmp_path)

    assert config.attribution is False
    assert config.env_files == ("config/.env",)
    assert Settings(project_root=tmp_path).attribution_enabled() is False


def test_project_config_tolerates_broken_file(tmp_path: Path) -> None:
    (tmp_path / "rover.json").write_text("{broken", "utf-8")

    assert ProjectConfig.load(tmp_path) == ProjectConfig()


def test_find_project_root_uses_git_toplevel(tmp_path: Path) -> None:
    runner = FakeRunner().on("git", "rev-parse", "--show-toplevel", stdout=f"{tmp_path}\n")

    assert find_project_root(runner) == tmp_path


def test_find_project_root_falls_back_to_cwd(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = FakeRunner().on("git", "rev-parse", exit_code=128)

    assert find_project_root(runner) == tmp_path
