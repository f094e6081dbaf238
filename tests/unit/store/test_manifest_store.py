"""Tests for manifest persistence."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from conftest import make_manifest, make_task, write_manifest
from vtm.artifacts.canonical_json import temp_sibling
from vtm.errors import CorruptionError, InitializationError, NotFoundError, ValidationError, WriteError
from vtm.models import TaskFiles, TaskSource
from vtm.store import ManifestStore


def test_load_missing_manifest_raises_initialization_error(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path / "vtm.json")

    with pytest.raises(InitializationError) as exc_info:
        store.load()

    assert "vtm init" in str(exc_info.value)
    assert exc_info.value.exit_code == 3


def test_initialize_creates_empty_manifest(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path / "nested" / "vtm.json")

    manifest = store.initialize("demo", "A demo project")

    assert store.exists()
    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert data["project"] == {"name": "demo", "description": "A demo project"}
    assert data["tasks"] == []
    assert data["history"] == []
    assert data["stats"]["total_tasks"] == 0
    assert manifest.version == "2.0.0"


def test_initialize_refuses_to_overwrite_without_force(store: ManifestStore) -> None:
    with pytest.raises(FileExistsError):
        store.initialize("other")

    store.initialize("other", force=True)
    assert store.load(force_reload=True).project.name == "other"


def test_load_invalid_json_raises_corruption_error(manifest_path: Path) -> None:
    manifest_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptionError) as exc_info:
        ManifestStore(manifest_path).load()

    assert exc_info.value.reason_code == "MANIFEST_CORRUPT"


def test_load_schema_violation_names_every_field(manifest_path: Path) -> None:
    data = make_manifest(make_task("TASK-001")).to_dict()
    data["tasks"][0]["status"] = "done"
    data["tasks"][0]["risk"] = "extreme"
    manifest_path.write_text(json.dumps(data), encoding="utf-8")

    with pytest.raises(CorruptionError) as exc_info:
        ManifestStore(manifest_path).load()

    message = str(exc_info.value)
    assert "tasks.0.status" in message
    assert "tasks.0.risk" in message


def test_round_trip_preserves_document(manifest_path: Path) -> None:
    original = make_manifest(
        make_task("TASK-001", status="completed", commits=("abc123",)),
        make_task(
            "TASK-002",
            dependencies=("TASK-001",),
            files=TaskFiles(create=("src/a.py",), modify=("src/b.py",)),
            source=TaskSource("docs/spec.md", ((10, 20),)),
        ),
    )
    write_manifest(manifest_path, original)

    store = ManifestStore(manifest_path)
    loaded = store.load()
    assert loaded == original

    store.write(loaded)
    assert json.loads(manifest_path.read_text(encoding="utf-8")) == original.to_dict()


def test_load_serves_cached_copy_until_mtime_changes(manifest_path: Path) -> None:
    write_manifest(manifest_path, make_manifest(make_task("TASK-001")))
    store = ManifestStore(manifest_path)

    first = store.load()
    assert store.load() is first

    write_manifest(manifest_path, make_manifest(make_task("TASK-001"), make_task("TASK-002")))
    stat = manifest_path.stat()
    os.utime(manifest_path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

    reloaded = store.load()
    assert reloaded is not first
    assert len(reloaded.tasks) == 2


def test_write_recomputes_stats(store: ManifestStore) -> None:
    manifest = store.load().with_tasks(
        [
            make_task("TASK-001", status="completed"),
            make_task("TASK-002", status="in-progress"),
            make_task("TASK-003"),
            make_task("TASK-004", status="blocked"),
        ]
    )
    store.write(manifest)

    stats = json.loads(store.path.read_text(encoding="utf-8"))["stats"]
    assert stats == {"total_tasks": 4, "completed": 1, "in_progress": 1, "pending": 1, "blocked": 1}


def test_write_refuses_invalid_manifest(store: ManifestStore) -> None:
    before = store.path.read_bytes()
    bad = store.load().with_tasks([make_task("TASK-001", estimated_hours=0)])

    with pytest.raises(ValidationError) as exc_info:
        store.write(bad)

    assert any("estimated_hours" in error for error in exc_info.value.errors)
    assert store.path.read_bytes() == before


def test_failed_replace_leaves_original_untouched(store: ManifestStore, monkeypatch) -> None:
    before = store.path.read_bytes()

    def boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("vtm.artifacts.canonical_json.os.replace", boom)

    with pytest.raises(WriteError):
        store.write(store.load().with_tasks([make_task("TASK-001")]))

    assert store.path.read_bytes() == before
    assert not temp_sibling(store.path).exists()


def test_stat_failure_after_replace_is_not_a_failed_write(store: ManifestStore) -> None:
    class FlakyStatPath(type(store.path)):
        failing = False

        def stat(self, *args, **kwargs):
            if FlakyStatPath.failing and self.name == "vtm.json":
                raise OSError("stale file handle")
            return super().stat(*args, **kwargs)

    store.path = FlakyStatPath(store.path)
    manifest = store.load().with_tasks([make_task("TASK-001")])
    FlakyStatPath.failing = True

    store.write(manifest)

    FlakyStatPath.failing = False
    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert [task["id"] for task in data["tasks"]] == ["TASK-001"]
    assert store.load() is not manifest


def test_get_task_unknown_id(store: ManifestStore) -> None:
    with pytest.raises(NotFoundError):
        store.get_task("TASK-999")


def test_update_task_merges_status_fields(store: ManifestStore) -> None:
    store.write(store.load().with_tasks([make_task("TASK-001")]))

    store.update_task("TASK-001", status="in-progress", validation={"tests_pass": True})
    task = store.get_task("TASK-001")

    assert task.status == "in-progress"
    assert task.validation.tests_pass is True
    assert store.load().stats.in_progress == 1


def test_update_task_rejects_structural_fields_and_bad_status(store: ManifestStore) -> None:
    store.write(store.load().with_tasks([make_task("TASK-001")]))

    with pytest.raises(ValidationError) as exc_info:
        store.update_task("TASK-001", title="renamed", status="done")

    errors = exc_info.value.errors
    assert "field 'title' cannot be changed" in errors
    assert any("invalid status 'done'" in error for error in errors)
    assert store.get_task("TASK-001").title == "Title of TASK-001"


def test_update_task_unknown_id(store: ManifestStore) -> None:
    with pytest.raises(NotFoundError):
        store.update_task("TASK-042", status="completed")


def test_start_and_complete_task(store: ManifestStore) -> None:
    store.write(store.load().with_tasks([make_task("TASK-001", commits=("aaa",))]))

    started = store.start_task("TASK-001", now="2026-03-14T09:00:00+00:00")
    assert started.status == "in-progress"
    assert started.started_at == "2026-03-14T09:00:00+00:00"

    done = store.complete_task(
        "TASK-001",
        commits=["bbb"],
        tests_pass=True,
        ac_verified=["works"],
        now="2026-03-14T11:00:00+00:00",
    )
    assert done.status == "completed"
    assert done.completed_at == "2026-03-14T11:00:00+00:00"
    assert done.commits == ("aaa", "bbb")
    assert done.validation.tests_pass is True
    assert done.validation.ac_verified == ("works",)
    assert done.started_at == "2026-03-14T09:00:00+00:00"
