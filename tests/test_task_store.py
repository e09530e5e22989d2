from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from rover.errors import TaskFileError, TaskNotFoundError, TaskSchemaError, TaskValidationError
from rover.tasks.contracts import write_json
from rover.tasks.models import TaskStatus
from rover.tasks.store import TaskStore

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Persistence"),
]

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / ".rover" / "tasks", clock=lambda: NOW)


def test_create_persists_new_record_and_load_returns_it(tmp_path: Path) -> None:
    store = _store(tmp_path)

    task = store.create(3, "Add retry logic", "Retry HTTP calls", agent="claude")
    loaded = store.load(3)

    assert loaded.record == task.record
    assert loaded.status is TaskStatus.NEW
    assert loaded.record.created_at == "2026-03-01T09:30:00.000Z"
    assert loaded.record.last_iteration_at == "2026-03-01T09:30:00.000Z"
    assert loaded.record.started_at is None
    document = json.loads(store.description_path(3).read_text("utf-8"))
    assert document["status"] == "NEW"
    assert document["version"] == "1.1"
    assert document["workflowName"] == "swe"
    assert "startedAt" not in document


def test_create_rejects_existing_task(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(1, "First", "one")

    with pytest.raises(TaskFileError, match="already exists"):
        store.create(1, "Again", "two")


def test_load_missing_task_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(TaskNotFoundError, match="Task 9 not found"):
        _store(tmp_path).load(9)


def test_load_invalid_json_raises_schema_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.task_dir(4).mkdir(parents=True)
    store.description_path(4).write_text("{not json", "utf-8")

    with pytest.raises(TaskSchemaError):
        store.load(4)


def test_load_current_document_with_violations_raises_validation_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    write_json(
        store.description_path(5),
        {
            "version": "1.1",
            "id": 5,
            "uuid": "u-5",
            "title": "",
            "description": "x",
            "status": "SLEEPING",
            "createdAt": "2026-03-01T09:30:00.000Z",
            "iterations": 0,
        },
    )

    with pytest.raises(TaskValidationError) as error:
        store.load(5)

    message = str(error.value)
    assert "title is required" in message
    assert "status must be one of" in message
    assert "iterations must be at least 1" in message


def test_load_rejects_wrongly_typed_fields_as_validation_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    write_json(
        store.description_path(6),
        {
            "version": "1.1",
            "id": 6,
            "uuid": "u-6",
            "title": ["Add", "retries"],
            "description": "x",
            "inputs": ["oops"],
            "status": "FAILED",
            "createdAt": "2026-03-01T09:30:00.000Z",
            "errorAt": "yesterday",
            "iterations": 1,
        },
    )

    with pytest.raises(TaskValidationError) as error:
        store.load(6)

    message = str(error.value)
    assert "title must be a string" in message
    assert "inputs must map names to string values" in message
    assert "errorAt must be a valid ISO date string" in message


def test_next_id_follows_highest_numeric_directory(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.next_id() == 1

    for name in ("2", "41", "notes"):
        (store.tasks_dir / name).mkdir(parents=True)

    assert store.next_id() == 42


def test_list_tasks_is_newest_first_and_skips_broken_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(1, "One", "first")
    store.create(3, "Three", "third")
    store.task_dir(2).mkdir(parents=True)
    store.description_path(2).write_text("[]", "utf-8")
    store.create(4, "Four", "fourth")
    document = json.loads(store.description_path(4).read_text("utf-8"))
    document["inputs"] = ["oops"]
    write_json(store.description_path(4), document)

    tasks = store.list_tasks()

    assert [task.id for task in tasks] == [3, 1]


def test_delete_removes_task_directory(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    store.iterations.create_initial(task.iteration_path(), 1, "One", "first")

    store.delete(1)

    assert not store.task_dir(1).exists()
    with pytest.raises(TaskNotFoundError):
        store.delete(1)


def _write_status(store: TaskStore, task_id: int, iteration: int, payload: dict) -> None:
    path = store.iterations.iteration_path(store.task_dir(task_id), iteration)
    write_json(path / "status.json", payload)


def test_refresh_status_maps_completed_report(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    task.mark_in_progress()
    _write_status(
        store,
        1,
        1,
        {"status": "completed", "progress": 100, "completedAt": "2026-03-01T10:00:00.000Z"},
    )

    assert store.refresh_status(task) is TaskStatus.COMPLETED
    assert task.record.completed_at == "2026-03-01T10:00:00.000Z"
    assert store.load(1).status is TaskStatus.COMPLETED


def test_refresh_status_records_failure_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    _write_status(store, 1, 1, {"status": "failed", "error": "agent crashed"})

    assert store.refresh_status(task) is TaskStatus.FAILED
    assert task.record.error == "agent crashed"


def test_refresh_status_keeps_merged_task_merged(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    task.mark_merged()
    _write_status(store, 1, 1, {"status": "completed"})

    assert store.refresh_status(task) is TaskStatus.MERGED


def test_refresh_status_uses_numerically_latest_iteration(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    _write_status(store, 1, 9, {"status": "completed"})
    _write_status(store, 1, 10, {"status": "running"})

    assert store.refresh_status(task) is TaskStatus.ITERATING


def test_refresh_status_without_report_leaves_task_untouched(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(1, "One", "first")
    before = store.description_path(1).read_text("utf-8")

    assert store.refresh_status(task) is TaskStatus.NEW
    assert store.description_path(1).read_text("utf-8") == before
