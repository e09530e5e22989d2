"""Runtime configuration for the task orchestrator."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from rover.runner import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

SUPPORTED_AGENTS = ("claude", "codex", "gemini", "qwen")
SUPPORTED_CONTAINER_BACKENDS = ("docker", "podman")
PROJECT_CONFIG_FILENAME = "rover.json"
USER_SETTINGS_FILENAME = "settings.json"
ROVER_DIRNAME = ".rover"
DEFAULT_AGENT_IMAGE = "ghcr.io/endorhq/rover/node:latest"


@dataclass(slots=True)
class ExecutionSettings:
    """Container launcher settings."""

    container_backend: str = "docker"
    agent_image: str = DEFAULT_AGENT_IMAGE
    workflow_name: str = "swe"


@dataclass(slots=True)
class AgentSettings:
    """AI collaborator settings."""

    default_agent: str = "claude"
    invoke_timeout_seconds: float = 300.0


@dataclass(slots=True)
class ProjectConfig:
    """Per-project options stored in ``rover.json`` at the project root."""

    attribution: bool = True
    env_files: tuple[str, ...] = ()

    @classmethod
    def load(cls, project_root: Path) -> ProjectConfig:
        """Read ``rover.json``; missing or unreadable files yield defaults."""

        path = project_root / PROJECT_CONFIG_FILENAME
        if not path.exists():
            return cls()
        try:
            raw = json.loads(path.read_text("utf-8"))
        except (OSError, ValueError) as error:
            logger.warning("Could not load project settings from %s: %s", path, error)
            return cls()
        if not isinstance(raw, dict):
            logger.warning("Ignoring %s: expected a JSON object", path)
            return cls()
        return cls(
            attribution=bool(raw.get("attribution", True)),
            env_files=tuple(str(item) for item in raw.get("envFiles", ()) or ()),
        )


@dataclass(slots=True)
class UserSettings:
    """Per-user options stored in ``.rover/settings.json``."""

    default_ai_agent: str | None = None

    @classmethod
    def load(cls, project_root: Path) -> UserSettings:
        path = project_root / ROVER_DIRNAME / USER_SETTINGS_FILENAME
        if not path.exists():
            return cls()
        try:
            raw = json.loads(path.read_text("utf-8"))
        except (OSError, ValueError) as error:
            logger.warning("Could not load user settings from %s: %s", path, error)
            return cls()
        if not isinstance(raw, dict):
            return cls()
        agent = raw.get("defaultAiAgent")
        return cls(default_ai_agent=str(agent).lower() if agent else None)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_root: Path = field(default_factory=Path.cwd)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    attribution_override: bool | None = None

    @classmethod
    def from_env(
        cls,
        project_root: Path | None = None,
        runner: CommandRunner | None = None,
    ) -> Settings:
        """Load settings from environment with defaults for local development."""

        root = project_root or _env_path("ROVER_PROJECT_ROOT") or find_project_root(runner)
        user_settings = UserSettings.load(root)
        default_agent = os.getenv("ROVER_DEFAULT_AGENT") or user_settings.default_ai_agent
        return cls(
            project_root=root,
            execution=ExecutionSettings(
                container_backend=os.getenv("ROVER_CONTAINER_BACKEND", "docker").strip().lower(),
                agent_image=os.getenv("ROVER_AGENT_IMAGE", DEFAULT_AGENT_IMAGE),
                workflow_name=os.getenv("ROVER_WORKFLOW", "swe"),
            ),
            agents=AgentSettings(
                default_agent=(default_agent or "claude").strip().lower(),
                invoke_timeout_seconds=float(os.getenv("ROVER_AI_TIMEOUT_SECONDS", "300")),
            ),
            attribution_override=_env_optional_bool("ROVER_ATTRIBUTION"),
        )

    @property
    def rover_dir(self) -> Path:
        return self.project_root / ROVER_DIRNAME

    @property
    def tasks_dir(self) -> Path:
        return self.rover_dir / "tasks"

    def project_config(self) -> ProjectConfig:
        return ProjectConfig.load(self.project_root)

    def attribution_enabled(self) -> bool:
        """Whether commits get the ``Co-Authored-By`` trailer."""

        if self.attribution_override is not None:
            return self.attribution_override
        return self.project_config().attribution

    def validate(self) -> None:
        """Raise configuration error for unsupported values."""

        if self.agents.default_agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Unsupported AI agent: {self.agents.default_agent!r}. "
                f"Expected one of: {', '.join(SUPPORTED_AGENTS)}",
            )
        if self.execution.container_backend not in SUPPORTED_CONTAINER_BACKENDS:
            raise ValueError(
                "ROVER_CONTAINER_BACKEND must be one of: "
                f"{', '.join(SUPPORTED_CONTAINER_BACKENDS)}",
            )
        if self.agents.invoke_timeout_seconds <= 0:
            raise ValueError("ROVER_AI_TIMEOUT_SECONDS must be > 0.")


def find_project_root(runner: CommandRunner | None = None) -> Path:
    """Resolve the git top-level directory, falling back to the cwd."""

    result = (runner or SubprocessRunner()).run("git", ["rev-parse", "--show-toplevel"])
    if result.ok and result.stdout.strip():
        return Path(result.stdout.strip())
    return Path.cwd()


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_optional_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
