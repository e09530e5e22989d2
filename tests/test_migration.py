from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from rover.tasks.contracts import write_json
from rover.tasks.migration import (
    LegacyTaskDocument,
    migrate_legacy,
    migrate_status,
    validate_document,
)
from rover.tasks.models import TaskStatus
from rover.tasks.store import TaskStore

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema Migration"),
]

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)

LEGACY_DOCUMENT = {
    "id": "7",
    "title": "Old task",
    "description": "written by an older release",
    "status": "running",
    "createdAt": "",
    "startedAt": "2025-01-01T00:00:00Z",
    "completedAt": "not a date",
    "iterations": 0,
    "worktreePath": "/tmp/rover/7/workspace",
    "branchName": "rover/task-7-aaaaaa",
    "legacyField": "dropped",
}


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks", clock=lambda: NOW)


def test_load_upgrades_legacy_document_with_explicit_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)
    write_json(store.description_path(7), LEGACY_DOCUMENT)

    record = store.load(7).record

    assert record.id == 7
    assert record.version == "1.1"
    assert record.status is TaskStatus.IN_PROGRESS
    assert record.created_at == "2026-03-01T09:30:00.000Z"
    assert record.started_at == "2025-01-01T00:00:00Z"
    assert record.completed_at is None
    assert record.iterations == 1
    assert record.agent == "claude"
    assert record.exit_code == 0
    assert record.restart_count == 0
    assert record.workflow_name == "swe"
    assert record.uuid
    assert record.branch_name == "rover/task-7-aaaaaa"


def test_load_writes_backup_and_rewrites_upgraded_document(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.description_path(7)
    write_json(path, LEGACY_DOCUMENT)
    original = path.read_text("utf-8")

    store.load(7)

    backup = path.with_name("description.json.backup")
    assert backup.read_text("utf-8") == original
    rewritten = json.loads(path.read_text("utf-8"))
    assert rewritten["version"] == "1.1"
    assert "legacyField" not in rewritten
    assert validate_document(rewritten) == []


def test_second_load_of_migrated_document_does_not_rewrite(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.description_path(7)
    write_json(path, LEGACY_DOCUMENT)
    first = store.load(7).record
    backup = path.with_name("description.json.backup")
    backup.unlink()
    migrated_text = path.read_text("utf-8")

    second = store.load(7).record

    assert second == first
    assert path.read_text("utf-8") == migrated_text
    assert not backup.exists()


def test_current_document_is_not_rewritten_on_load(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.description_path(2)
    path.parent.mkdir(parents=True)
    text = json.dumps(
        {
            "version": "1.1",
            "id": 2,
            "uuid": "b6f5",
            "title": "Current",
            "description": "",
            "status": "COMPLETED",
            "createdAt": "2026-02-01T00:00:00.000Z",
            "iterations": 2,
        },
    )
    path.write_text(text, "utf-8")

    record = store.load(2).record

    assert record.status is TaskStatus.COMPLETED
    assert record.description == ""
    assert path.read_text("utf-8") == text
    assert not path.with_name("description.json.backup").exists()


@pytest.mark.parametrize(
    ("legacy", "expected"),
    [
        ("new", TaskStatus.NEW),
        ("IN_PROGRESS", TaskStatus.IN_PROGRESS),
        ("running", TaskStatus.IN_PROGRESS),
        ("Completed", TaskStatus.COMPLETED),
        ("failed", TaskStatus.FAILED),
        ("merged", TaskStatus.MERGED),
        ("pushed", TaskStatus.PUSHED),
        ("paused", TaskStatus.NEW),
        (None, TaskStatus.NEW),
    ],
)
def test_migrate_status_maps_legacy_spellings(legacy: object, expected: TaskStatus) -> None:
    assert migrate_status(legacy) is expected


def test_migrate_legacy_falls_back_to_directory_id_and_unknown_title() -> None:
    record = migrate_legacy(LegacyTaskDocument({"version": "1.0"}), 12, now=NOW)

    assert record.id == 12
    assert record.title == "Unknown Task"
    assert record.description == ""
    assert validate_document(record.to_document()) == []
