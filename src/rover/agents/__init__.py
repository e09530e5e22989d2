"""AI collaborators used for task expansion, commit messages and conflict resolution."""

from __future__ import annotations

from rover.agents.base import AiAgent, TaskExpansion
from rover.agents.cli_agent import AGENT_COMMANDS, AgentInvokeError, CliAgent
from rover.runner import CommandRunner


def get_agent(
    name: str,
    *,
    runner: CommandRunner | None = None,
    timeout_seconds: float = 300.0,
) -> CliAgent:
    """Return the collaborator for ``name`` (claude, codex, gemini or qwen)."""

    return CliAgent(name.lower(), runner=runner, timeout_seconds=timeout_seconds)


__all__ = [
    "AGENT_COMMANDS",
    "AgentInvokeError",
    "AiAgent",
    "CliAgent",
    "TaskExpansion",
    "get_agent",
]
