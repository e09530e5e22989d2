"""Blocking command runner used for git, container and agent CLIs."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Exit status and captured streams of one finished command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Capability to run an external program to completion."""

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        """Run ``program`` with ``args`` and capture its output."""

    def available(self, program: str) -> bool:
        """Return True when ``program`` can be resolved on PATH."""


class SubprocessRunner:
    """Default runner backed by :func:`subprocess.run`.

    Non-zero exit codes are returned, never raised. A missing executable is
    reported as exit code 127 and a timeout as 124, mirroring shell behavior.
    """

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        run_env = os.environ.copy()
        if env:
            run_env.update(env)
        argv = [program, *args]
        logger.debug("Running %s (cwd=%s)", " ".join(argv), cwd or ".")
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=cwd,
                input=input_text,
                env=run_env,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return CommandResult(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                stderr=f"command not found: {program}",
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"command timed out after {timeout_seconds}s: {program}",
            )
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def available(self, program: str) -> bool:
        return shutil.which(program) is not None
