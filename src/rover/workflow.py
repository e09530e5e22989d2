"""YAML workflow definitions executed by the agent inside the container."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from rover.errors import WorkflowValidationError

logger = logging.getLogger(__name__)

WORKFLOW_SCHEMA_VERSION = "1.0"
DEFAULT_STEP_TIMEOUT = 60 * 30
DEFAULT_WORKFLOW_TIMEOUT = 3600
DEFAULT_TOOL = "claude"
DEFAULT_MODEL = "claude-3-sonnet"
DEFAULT_STEP_TYPE = "agent"
BUILTIN_WORKFLOWS = ("swe",)


@dataclass(slots=True)
class WorkflowInput:
    name: str
    type: str
    required: bool
    description: str = ""
    default: Any = None
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_document(self) -> dict[str, Any]:
        document = dict(self.source)
        document.update(name=self.name, type=self.type, required=self.required)
        if self.description or "description" in self.source:
            document["description"] = self.description
        _set_optional(document, "default", self.default)
        return document


@dataclass(slots=True)
class WorkflowOutput:
    name: str
    type: str
    description: str = ""
    filename: str | None = None
    required: bool | None = None
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_document(self) -> dict[str, Any]:
        document = dict(self.source)
        document.update(name=self.name, type=self.type)
        if self.description or "description" in self.source:
            document["description"] = self.description
        _set_optional(document, "filename", self.filename)
        _set_optional(document, "required", self.required)
        return document


@dataclass(slots=True)
class WorkflowStep:
    id: str
    name: str
    prompt: str
    outputs: list[WorkflowOutput] = field(default_factory=list)
    type: str = DEFAULT_STEP_TYPE
    tool: str | None = None
    model: str | None = None
    timeout: int | None = None
    retries: int | None = None
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_document(self) -> dict[str, Any]:
        document = dict(self.source)
        document.update(id=self.id, name=self.name)
        if self.type != DEFAULT_STEP_TYPE or "type" in self.source:
            document["type"] = self.type
        _set_optional(document, "tool", self.tool)
        _set_optional(document, "model", self.model)
        document["prompt"] = self.prompt
        document["outputs"] = [output.to_document() for output in self.outputs]
        _set_section(document, "config", (("timeout", self.timeout), ("retries", self.retries)))
        return document


@dataclass(slots=True)
class InputValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class Workflow:
    """Validated workflow definition.

    Only documents that pass :func:`validate_workflow_document` are turned
    into instances, so the accessors below can trust the shape.
    """

    name: str
    description: str
    inputs: list[WorkflowInput] = field(default_factory=list)
    outputs: list[WorkflowOutput] = field(default_factory=list)
    steps: list[WorkflowStep] = field(default_factory=list)
    default_tool: str | None = DEFAULT_TOOL
    default_model: str | None = DEFAULT_MODEL
    timeout: int | None = DEFAULT_WORKFLOW_TIMEOUT
    continue_on_error: bool | None = False
    version: str = WORKFLOW_SCHEMA_VERSION
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> Workflow:
        migrated = migrate_workflow_document(document)
        errors = validate_workflow_document(migrated)
        if errors:
            raise WorkflowValidationError(errors)
        defaults = migrated.get("defaults") or {}
        config = migrated.get("config") or {}
        return cls(
            version=str(migrated["version"]),
            name=migrated["name"],
            description=migrated["description"],
            inputs=[_input_from(item) for item in migrated["inputs"]],
            outputs=[_output_from(item) for item in migrated["outputs"]],
            steps=[_step_from(item) for item in migrated["steps"]],
            default_tool=defaults.get("tool"),
            default_model=defaults.get("model"),
            timeout=config.get("timeout"),
            continue_on_error=config.get("continueOnError"),
            source=migrated,
        )

    @classmethod
    def load(cls, path: Path) -> Workflow:
        """Load and validate a workflow file, rewriting it when it was upgraded."""

        if not path.exists():
            raise WorkflowValidationError([f"workflow configuration not found at {path}"])
        try:
            document = yaml.safe_load(path.read_text("utf-8"))
        except yaml.YAMLError as error:
            raise WorkflowValidationError([f"invalid YAML in {path}: {error}"]) from error
        if not isinstance(document, Mapping):
            raise WorkflowValidationError([f"expected a mapping in {path}"])
        workflow = cls.from_document(document)
        if document.get("version") != workflow.version:
            logger.info("Upgraded workflow %s to schema %s", path, workflow.version)
            workflow.save(path)
        return workflow

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the loaded mapping, keeping keys this model ignores."""

        document = dict(self.source)
        document.update(
            version=self.version,
            name=self.name,
            description=self.description,
            inputs=[item.to_document() for item in self.inputs],
            outputs=[item.to_document() for item in self.outputs],
        )
        _set_section(
            document,
            "defaults",
            (("tool", self.default_tool), ("model", self.default_model)),
        )
        _set_section(
            document,
            "config",
            (("timeout", self.timeout), ("continueOnError", self.continue_on_error)),
        )
        document["steps"] = [step.to_document() for step in self.steps]
        return document

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.to_document(),
            sort_keys=False,
            allow_unicode=True,
            indent=2,
            width=80,
        )

    def save(self, path: Path) -> None:
        errors = validate_workflow_document(self.to_document())
        if errors:
            raise WorkflowValidationError(errors)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_yaml(), "utf-8")

    def step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step not found: {step_id}")

    def step_tool(self, step_id: str, default_tool: str | None = None) -> str | None:
        return self.step(step_id).tool or default_tool or self.default_tool

    def step_model(self, step_id: str, default_model: str | None = None) -> str | None:
        return self.step(step_id).model or default_model or self.default_model

    def step_timeout(self, step_id: str) -> int:
        return self.step(step_id).timeout or self.timeout or DEFAULT_STEP_TIMEOUT

    def step_retries(self, step_id: str) -> int:
        return self.step(step_id).retries or 0

    def validate_inputs(self, provided: Mapping[str, str]) -> InputValidation:
        """Check user-provided inputs against the declared ones."""

        result = InputValidation()
        for item in self.inputs:
            if item.required and not provided.get(item.name) and item.default is None:
                result.errors.append(f'Required input "{item.name}" is missing')

        declared = {item.name for item in self.inputs}
        for name in provided:
            if name not in declared:
                result.warnings.append(
                    f'Unknown input "{name}" provided (not defined in workflow)',
                )

        for name, count in Counter(item.name for item in self.inputs).items():
            if count > 1:
                result.errors.append(
                    f'Input "{name}" is defined {count} times in workflow (should be unique)',
                )
        return result


def load_builtin_workflow(name: str) -> Workflow:
    """Load one of the workflows shipped with the package."""

    if name not in BUILTIN_WORKFLOWS:
        raise WorkflowValidationError([f"unknown workflow: {name}"])
    source = resources.files("rover.workflows").joinpath(f"{name}.yml")
    document = yaml.safe_load(source.read_text("utf-8"))
    if not isinstance(document, Mapping):
        raise WorkflowValidationError([f"built-in workflow {name} is not a mapping"])
    return Workflow.from_document(document)


def migrate_workflow_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Fill version, defaults and config for documents written before they existed."""

    migrated = dict(document)
    if migrated.get("version") == WORKFLOW_SCHEMA_VERSION:
        return migrated
    migrated["version"] = WORKFLOW_SCHEMA_VERSION
    migrated.setdefault("defaults", {"tool": DEFAULT_TOOL, "model": DEFAULT_MODEL})
    migrated.setdefault(
        "config",
        {"timeout": DEFAULT_WORKFLOW_TIMEOUT, "continueOnError": False},
    )
    return migrated


def validate_workflow_document(document: Mapping[str, Any]) -> list[str]:  # noqa: C901
    errors: list[str] = []
    if not isinstance(document.get("version"), str):
        errors.append("version is required")
    for key in ("name", "description"):
        if not isinstance(document.get(key), str) or not document.get(key):
            errors.append(f"{key} is required")

    inputs = document.get("inputs")
    outputs = document.get("outputs")
    steps = document.get("steps")
    for key, value in (("inputs", inputs), ("outputs", outputs), ("steps", steps)):
        if not isinstance(value, list):
            errors.append(f"{key} must be an array")

    if isinstance(inputs, list):
        for index, item in enumerate(inputs):
            item = item if isinstance(item, Mapping) else {}
            if not item.get("name"):
                errors.append(f"input[{index}].name is required")
            if not item.get("type"):
                errors.append(f"input[{index}].type is required")
            if not isinstance(item.get("required"), bool):
                errors.append(f"input[{index}].required must be boolean")

    if isinstance(outputs, list):
        errors.extend(_output_errors(outputs, "output"))

    if isinstance(steps, list):
        for index, step in enumerate(steps):
            step = step if isinstance(step, Mapping) else {}
            for key in ("id", "name", "prompt"):
                if not step.get(key):
                    errors.append(f"step[{index}].{key} is required")
            step_outputs = step.get("outputs")
            if not isinstance(step_outputs, list):
                errors.append(f"step[{index}].outputs must be an array")
            else:
                errors.extend(_output_errors(step_outputs, f"step[{index}].outputs"))

        ids = [step.get("id") for step in steps if isinstance(step, Mapping) and step.get("id")]
        duplicates = [step_id for step_id, count in Counter(ids).items() if count > 1]
        if duplicates:
            errors.append(f"duplicate step IDs found: {', '.join(map(str, duplicates))}")
    return errors


def _output_errors(outputs: list[Any], prefix: str) -> list[str]:
    errors: list[str] = []
    for index, item in enumerate(outputs):
        item = item if isinstance(item, Mapping) else {}
        if not item.get("name"):
            errors.append(f"{prefix}[{index}].name is required")
        if not item.get("type"):
            errors.append(f"{prefix}[{index}].type is required")
        if item.get("type") == "file" and not item.get("filename"):
            errors.append(f"{prefix}[{index}].filename is required for file type outputs")
    return errors


def _input_from(document: Mapping[str, Any]) -> WorkflowInput:
    return WorkflowInput(
        name=document["name"],
        type=document["type"],
        required=document["required"],
        description=document.get("description") or "",
        default=document.get("default"),
        source=dict(document),
    )


def _output_from(document: Mapping[str, Any]) -> WorkflowOutput:
    return WorkflowOutput(
        name=document["name"],
        type=document["type"],
        description=document.get("description") or "",
        filename=document.get("filename"),
        required=document.get("required"),
        source=dict(document),
    )


def _step_from(document: Mapping[str, Any]) -> WorkflowStep:
    config = document.get("config") or {}
    return WorkflowStep(
        id=document["id"],
        type=document.get("type", DEFAULT_STEP_TYPE),
        name=document["name"],
        tool=document.get("tool"),
        model=document.get("model"),
        prompt=document["prompt"],
        outputs=[_output_from(item) for item in document["outputs"]],
        timeout=config.get("timeout"),
        retries=config.get("retries"),
        source=dict(document),
    )


def _set_optional(document: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        document.pop(key, None)
    else:
        document[key] = value


def _set_section(
    document: dict[str, Any],
    key: str,
    values: tuple[tuple[str, Any], ...],
) -> None:
    """Overlay modelled values on a nested mapping such as ``config``."""

    existing = document.get(key)
    section = dict(existing) if isinstance(existing, Mapping) else {}
    for name, value in values:
        _set_optional(section, name, value)
    if section or isinstance(existing, Mapping):
        document[key] = section
