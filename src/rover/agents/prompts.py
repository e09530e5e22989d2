"""Prompt templates sent to the AI collaborator."""

from __future__ import annotations

JSON_ONLY_SUFFIX = (
    "You MUST output a valid JSON string as an output. Just output the JSON string and "
    'nothing else. If you had any error, still return a JSON string with an "error" property.'
)

_EXPAND_TASK = """\
You are helping a developer describe a coding task for an autonomous agent.

Expand the following brief into a task with a concise, action-oriented title
(at most 12 words) and a detailed description of what needs to be done, why,
and any relevant context or acceptance criteria.

Brief: {brief}

Respond with a JSON object: {{"title": "...", "description": "..."}}
"""

_EXPAND_ITERATION = """\
A coding agent already worked on a task. The developer now gives new
instructions for the next iteration.
{context_section}
New instructions: {instructions}

Write a focused title (at most 12 words) and a description of what this
iteration must change, building on the previous work instead of repeating it.

Respond with a JSON object: {{"title": "...", "description": "..."}}
"""

_COMMIT_MESSAGE = """\
Write a git commit message for the work below. Match the style of the recent
commits of this repository. Output only the first line of the message, no
quotes and no explanation.

Task: {task_title}
Description: {task_description}
{summaries_section}
Recent commits:
{recent_commits}
"""

_RESOLVE_CONFLICTS = """\
Resolve the git merge conflicts in the file `{file_path}`.

Recent history of the file:
{diff_context}

Keep the intent of both sides whenever possible. Output ONLY the complete
resolved file content, without conflict markers, code fences or commentary.

File content with conflict markers:
{conflicted_content}
"""


def expand_task_prompt(brief: str) -> str:
    return _EXPAND_TASK.format(brief=brief)


def expand_iteration_prompt(
    instructions: str,
    previous_plan: str | None = None,
    previous_changes: str | None = None,
) -> str:
    context_section = ""
    if previous_plan or previous_changes:
        context_section = "\nPrevious iteration context:\n"
        if previous_plan:
            context_section += f"\nPrevious Plan:\n{previous_plan}\n"
        if previous_changes:
            context_section += f"\nPrevious Changes Made:\n{previous_changes}\n"
    return _EXPAND_ITERATION.format(context_section=context_section, instructions=instructions)


def commit_message_prompt(
    task_title: str,
    task_description: str,
    recent_commits: list[str],
    summaries: list[str],
) -> str:
    summaries_section = ""
    if summaries:
        summaries_section = "\nWork completed:\n" + "\n".join(summaries) + "\n"
    formatted = "\n".join(f"{index}. {message}" for index, message in enumerate(recent_commits, 1))
    return _COMMIT_MESSAGE.format(
        task_title=task_title,
        task_description=task_description,
        summaries_section=summaries_section,
        recent_commits=formatted or "(none)",
    )


def resolve_conflicts_prompt(file_path: str, diff_context: str, conflicted_content: str) -> str:
    return _RESOLVE_CONFLICTS.format(
        file_path=file_path,
        diff_context=diff_context or "(no history)",
        conflicted_content=conflicted_content,
    )
