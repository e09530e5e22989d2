from __future__ import annotations

from pathlib import Path

import allure
import pytest
import yaml

from rover.errors import WorkflowValidationError
from rover.workflow import (
    DEFAULT_STEP_TIMEOUT,
    Workflow,
    load_builtin_workflow,
    validate_workflow_document,
)

pytestmark = [
    allure.epic("Workflows"),
    allure.feature("Definition & Validation"),
]


def _document(**overrides) -> dict:
    document = {
        "version": "1.0",
        "name": "review",
        "description": "Review a change",
        "inputs": [{"name": "description", "type": "string", "required": True}],
        "outputs": [],
        "steps": [
            {
                "id": "review",
                "type": "agent",
                "name": "Review",
                "prompt": "Review {{inputs.description}}",
                "outputs": [{"name": "notes", "type": "file", "filename": "notes.md"}],
                "config": {"timeout": 120, "retries": 2},
            },
        ],
    }
    document.update(overrides)
    return document


def test_builtin_swe_workflow_loads() -> None:
    workflow = load_builtin_workflow("swe")

    assert workflow.name == "swe"
    assert [step.id for step in workflow.steps][:2] == ["context", "plan"]
    assert workflow.steps[-1].id == "summary"
    assert {item.name for item in workflow.inputs} >= {"description", "title"}


def test_unknown_builtin_workflow_is_rejected() -> None:
    with pytest.raises(WorkflowValidationError, match="unknown workflow"):
        load_builtin_workflow("deploy")


def test_step_accessors_use_step_then_workflow_defaults() -> None:
    workflow = Workflow.from_document(
        _document(defaults={"tool": "gemini", "model": "gemini-pro"}, config={}),
    )

    assert workflow.step_tool("review") == "gemini"
    assert workflow.step_model("review", "override") == "override"
    assert workflow.step_timeout("review") == 120
    assert workflow.step_retries("review") == 2
    with pytest.raises(KeyError):
        workflow.step("missing")


def test_step_timeout_falls_back_to_default() -> None:
    document = _document(config={})
    del document["steps"][0]["config"]

    assert Workflow.from_document(document).step_timeout("review") == DEFAULT_STEP_TIMEOUT


def test_validation_collects_all_problems() -> None:
    document = _document(
        name="",
        steps=[
            {"id": "a", "name": "A", "prompt": "p", "outputs": []},
            {"id": "a", "name": "B", "prompt": "", "outputs": [{"name": "f", "type": "file"}]},
        ],
    )

    errors = validate_workflow_document(document)

    assert "name is required" in errors
    assert "step[1].prompt is required" in errors
    assert "step[1].outputs[0].filename is required for file type outputs" in errors
    assert "duplicate step IDs found: a" in errors


def test_input_validation_reports_missing_unknown_and_duplicates() -> None:
    workflow = Workflow.from_document(
        _document(
            inputs=[
                {"name": "description", "type": "string", "required": True},
                {"name": "lang", "type": "string", "required": False},
                {"name": "lang", "type": "string", "required": False},
            ],
        ),
    )

    result = workflow.validate_inputs({"extra": "1"})

    assert result.valid is False
    assert 'Required input "description" is missing' in result.errors
    assert 'Input "lang" is defined 2 times in workflow (should be unique)' in result.errors
    assert result.warnings == ['Unknown input "extra" provided (not defined in workflow)']


def test_load_upgrades_document_without_version_and_rewrites_file(tmp_path: Path) -> None:
    path = tmp_path / "review.yml"
    document = _document()
    del document["version"]
    path.write_text(yaml.safe_dump(document), "utf-8")

    workflow = Workflow.load(path)

    assert workflow.version == "1.0"
    assert workflow.default_tool == "claude"
    assert workflow.timeout == 3600
    rewritten = yaml.safe_load(path.read_text("utf-8"))
    assert rewritten["version"] == "1.0"
    assert rewritten["config"] == {"timeout": 3600, "continueOnError": False}


def test_saved_workflow_loads_back_identically(tmp_path: Path) -> None:
    workflow = Workflow.from_document(_document())
    path = tmp_path / "nested" / "review.yml"

    workflow.save(path)

    assert Workflow.load(path).to_document() == workflow.to_document()


def test_load_reports_missing_file_and_bad_yaml(tmp_path: Path) -> None:
    with pytest.raises(WorkflowValidationError, match="not found"):
        Workflow.load(tmp_path / "missing.yml")

    broken = tmp_path / "broken.yml"
    broken.write_text("steps: [unclosed", "utf-8")
    with pytest.raises(WorkflowValidationError, match="invalid YAML"):
        Workflow.load(broken)


def test_save_keeps_keys_the_model_does_not_use(tmp_path: Path) -> None:
    document = _document(
        inputs=[{"name": "description", "type": "string", "required": True}],
        steps=[
            {
                "id": "review",
                "name": "Review",
                "prompt": "Review {{inputs.description}}",
                "outputs": [],
                "config": {"timeout": 5, "continueOnError": True},
                "notes": "kept verbatim",
            },
        ],
        labels=["ci"],
    )
    path = tmp_path / "review.yml"
    path.write_text(yaml.safe_dump(document, sort_keys=False), "utf-8")

    Workflow.load(path).save(path)

    saved = yaml.safe_load(path.read_text("utf-8"))
    assert saved == document
    assert "description" not in saved["inputs"][0]
    assert "type" not in saved["steps"][0]
