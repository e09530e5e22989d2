"""Execution launcher: runs the agent inside a docker or podman container."""

from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from rover.errors import LaunchError
from rover.runner import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_OUTPUT = "/output"
CONTAINER_WORKFLOW = "/workflow.yml"
CONTAINER_INPUTS = "/inputs.json"
NO_SUCH_CONTAINER = "No such container"

ProcessFactory = Callable[..., "subprocess.Popen[str]"]


@dataclass(slots=True, frozen=True)
class ContainerSpec:
    """Everything needed to start one agent container."""

    name: str
    image: str
    workspace_path: Path
    output_path: Path
    command: tuple[str, ...]
    working_dir: str = CONTAINER_WORKSPACE
    extra_mounts: tuple[tuple[Path, str], ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def run_args(self) -> list[str]:
        args = ["run", "--name", self.name, "-d", "-w", self.working_dir]
        args.extend(["-v", f"{self.workspace_path}:{CONTAINER_WORKSPACE}:Z,rw"])
        args.extend(["-v", f"{self.output_path}:{CONTAINER_OUTPUT}:Z,rw"])
        for host_path, container_path in self.extra_mounts:
            args.extend(["-v", f"{host_path}:{container_path}:Z,ro"])
        for key, value in sorted(self.env.items()):
            args.extend(["-e", f"{key}={value}"])
        args.append(self.image)
        args.extend(self.command)
        return args


def container_name(task_id: int, iteration: int) -> str:
    return f"rover-task-{task_id}-{iteration}"


def agent_command(agent: str, task_id: int) -> tuple[str, ...]:
    """Entry command executed by the agent image."""

    return (
        "rover-agent",
        "run",
        CONTAINER_WORKFLOW,
        "--agent-tool",
        agent,
        "--task-id",
        str(task_id),
        "--status-file",
        f"{CONTAINER_OUTPUT}/status.json",
        "--output",
        CONTAINER_OUTPUT,
    )


class ContainerLauncher:
    """Start, stop and inspect agent containers through the container CLI."""

    def __init__(
        self,
        backend: str = "docker",
        *,
        runner: CommandRunner | None = None,
        process_factory: ProcessFactory = subprocess.Popen,
    ) -> None:
        self.backend = backend
        self.runner = runner or SubprocessRunner()
        self.process_factory = process_factory

    def available(self) -> bool:
        return self.runner.available(self.backend)

    def start(self, spec: ContainerSpec) -> str:
        """Replace any container with the same name and start a detached one.

        Returns the container id printed by the runtime.
        """

        if not self.available():
            raise LaunchError(f"{self.backend} is not installed or not on PATH")
        # A stale container with the same name blocks `run --name`.
        self.runner.run(self.backend, ["rm", "-f", spec.name])
        result = self.runner.run(self.backend, spec.run_args())
        if not result.ok:
            details = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
            raise LaunchError(f"Failed to start container {spec.name}: {details}")
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        logger.info("Started container %s (%s)", spec.name, container_id or "unknown id")
        return container_id or spec.name

    def stop(self, name: str) -> None:
        result = self.runner.run(self.backend, ["stop", name])
        if not result.ok and NO_SUCH_CONTAINER not in result.stderr:
            raise LaunchError(f"Failed to stop container {name}: {result.stderr.strip()}")

    def remove(self, name: str) -> None:
        result = self.runner.run(self.backend, ["rm", "-f", name])
        if not result.ok and NO_SUCH_CONTAINER not in result.stderr:
            raise LaunchError(f"Failed to remove container {name}: {result.stderr.strip()}")

    def wait(self, name: str) -> int:
        result = self.runner.run(self.backend, ["wait", name])
        if not result.ok:
            raise LaunchError(f"Failed to wait for container {name}: {result.stderr.strip()}")
        try:
            return int(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError) as error:
            raise LaunchError(f"Unexpected wait output for {name}: {result.stdout!r}") from error

    def logs(self, name: str) -> str:
        """One-shot logs; stdout and stderr of the container combined."""

        result = self.runner.run(self.backend, ["logs", name])
        if not result.ok:
            if NO_SUCH_CONTAINER in result.stderr:
                raise LaunchError(f"Container {name} no longer exists")
            raise LaunchError(f"Failed to read logs of {name}: {result.stderr.strip()}")
        return _combine_streams(result.stdout, result.stderr)

    def follow_logs(self, name: str, *, output: TextIO | None = None) -> int:
        """Stream logs until the container exits or the user presses Ctrl+C.

        Interrupting stops following, terminates the log process and returns 0.
        """

        sink = output or sys.stdout
        argv = [self.backend, "logs", "-f", name]
        logger.debug("Following logs: %s", " ".join(argv))
        try:
            process = self.process_factory(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as error:
            raise LaunchError(f"{self.backend} is not installed or not on PATH") from error

        try:
            for line in process.stdout or ():
                sink.write(line)
                sink.flush()
            return process.wait()
        except KeyboardInterrupt:
            logger.debug("Stopped following logs of %s", name)
            _terminate_process(process)
            return 0


def _combine_streams(stdout: str, stderr: str) -> str:
    parts: Sequence[str] = [part for part in (stdout, stderr) if part]
    return "".join(parts)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
