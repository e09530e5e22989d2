"""AI collaborator backed by a locally installed agent CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from rover.agents import prompts
from rover.agents.base import TaskExpansion, parse_json_response, task_expansion_from
from rover.runner import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AgentCommandSpec:
    """How to run one agent CLI non-interactively."""

    binary: str
    args: tuple[str, ...]
    json_args: tuple[str, ...] = ()
    prompt_as_argument: bool = False
    unwrap_result_field: bool = False


AGENT_COMMANDS: dict[str, AgentCommandSpec] = {
    "claude": AgentCommandSpec(
        binary="claude",
        args=("-p",),
        json_args=("--output-format", "json"),
        unwrap_result_field=True,
    ),
    "gemini": AgentCommandSpec(binary="gemini", args=("-p",)),
    "qwen": AgentCommandSpec(binary="qwen", args=("-p",)),
    "codex": AgentCommandSpec(binary="codex", args=("exec",), prompt_as_argument=True),
}


class AgentInvokeError(RuntimeError):
    """Agent CLI is missing, failed or produced unusable output."""


class CliAgent:
    """Run prompts through ``claude``, ``gemini``, ``qwen`` or ``codex``."""

    def __init__(
        self,
        name: str,
        *,
        runner: CommandRunner | None = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        if name not in AGENT_COMMANDS:
            raise ValueError(f"Unsupported AI agent: {name!r}")
        self.name = name
        self.spec = AGENT_COMMANDS[name]
        self.runner = runner or SubprocessRunner()
        self.timeout_seconds = timeout_seconds

    def available(self) -> bool:
        return self.runner.available(self.spec.binary)

    def invoke(self, prompt: str, *, json_output: bool = False) -> str:
        args = list(self.spec.args)
        if json_output:
            args.extend(self.spec.json_args)
            prompt = f"{prompt}\n\n{prompts.JSON_ONLY_SUFFIX}"
        input_text: str | None = prompt
        if self.spec.prompt_as_argument:
            args.append(prompt)
            input_text = None

        result = self.runner.run(
            self.spec.binary,
            args,
            input_text=input_text,
            env={"CLAUDE_NON_INTERACTIVE": "true"} if self.name == "claude" else None,
            timeout_seconds=self.timeout_seconds,
        )
        if not result.ok:
            details = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
            raise AgentInvokeError(f'Failed to invoke "{self.spec.binary}": {details}')

        output = result.stdout.strip()
        if json_output and self.spec.unwrap_result_field:
            try:
                envelope = json.loads(output)
            except ValueError as error:
                raise AgentInvokeError(
                    f'Failed to invoke "{self.spec.binary}": invalid JSON output',
                ) from error
            if not isinstance(envelope, dict) or "result" not in envelope:
                raise AgentInvokeError(f'"{self.spec.binary}" returned no result field')
            return str(envelope["result"])
        return output

    def expand_task(self, brief: str, project_path: Path) -> TaskExpansion | None:
        try:
            response = self.invoke(prompts.expand_task_prompt(brief), json_output=True)
        except AgentInvokeError as error:
            logger.warning("Failed to expand task with %s: %s", self.name, error)
            return None
        logger.debug("Expanded task for %s with %s", project_path, self.name)
        return task_expansion_from(parse_json_response(response))

    def expand_iteration_instructions(
        self,
        instructions: str,
        previous_plan: str | None = None,
        previous_changes: str | None = None,
    ) -> TaskExpansion | None:
        prompt = prompts.expand_iteration_prompt(instructions, previous_plan, previous_changes)
        try:
            response = self.invoke(prompt, json_output=True)
        except AgentInvokeError as error:
            logger.warning("Failed to expand iteration instructions with %s: %s", self.name, error)
            return None
        return task_expansion_from(parse_json_response(response))

    def generate_commit_message(
        self,
        task_title: str,
        task_description: str,
        recent_commits: list[str],
        summaries: list[str],
    ) -> str | None:
        prompt = prompts.commit_message_prompt(
            task_title,
            task_description,
            recent_commits,
            summaries,
        )
        try:
            response = self.invoke(prompt)
        except AgentInvokeError as error:
            logger.warning("Failed to generate commit message with %s: %s", self.name, error)
            return None
        lines = [line.strip() for line in response.splitlines() if line.strip()]
        return lines[0] if lines else None

    def resolve_merge_conflicts(
        self,
        file_path: str,
        diff_context: str,
        conflicted_content: str,
    ) -> str | None:
        prompt = prompts.resolve_conflicts_prompt(file_path, diff_context, conflicted_content)
        try:
            response = self.invoke(prompt)
        except AgentInvokeError as error:
            logger.warning(
                "Failed to resolve conflicts in %s with %s: %s",
                file_path,
                self.name,
                error,
            )
            return None
        return _strip_code_fence(response) or None


def _strip_code_fence(text: str) -> str:
    lines = text.strip().splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        lines = lines[1:-1]
    return "\n".join(lines) + ("\n" if lines else "")
