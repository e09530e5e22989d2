"""AI collaborator boundary.

All operations are best-effort: an agent that fails or returns unusable
output yields ``None`` and the caller falls back to deterministic behavior.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass(slots=True, frozen=True)
class TaskExpansion:
    """Title and description produced from a short user brief."""

    title: str
    description: str


class AiAgent(Protocol):
    name: str

    def expand_task(self, brief: str, project_path: Path) -> TaskExpansion | None: ...

    def expand_iteration_instructions(
        self,
        instructions: str,
        previous_plan: str | None = None,
        previous_changes: str | None = None,
    ) -> TaskExpansion | None: ...

    def generate_commit_message(
        self,
        task_title: str,
        task_description: str,
        recent_commits: list[str],
        summaries: list[str],
    ) -> str | None: ...

    def resolve_merge_conflicts(
        self,
        file_path: str,
        diff_context: str,
        conflicted_content: str,
    ) -> str | None: ...


def parse_json_response(text: str) -> dict[str, Any] | None:
    """Extract the first JSON object from free-form model output."""

    candidates = [text.strip()]
    candidates.extend(match.strip() for match in _FENCED_BLOCK.findall(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def task_expansion_from(payload: dict[str, Any] | None) -> TaskExpansion | None:
    if not payload or payload.get("error"):
        return None
    title = payload.get("title")
    description = payload.get("description")
    if not isinstance(title, str) or not isinstance(description, str):
        return None
    if not title.strip() or not description.strip():
        return None
    return TaskExpansion(title=title.strip(), description=description.strip())
