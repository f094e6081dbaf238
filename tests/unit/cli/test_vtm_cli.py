"""Tests for the vtm CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import make_task, proposal
from vtm.cli import cli
from vtm.errors import ERROR_KINDS
from vtm.store import ManifestStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("VTM_MANIFEST", raising=False)
    monkeypatch.delenv("VTM_CACHE_TTL", raising=False)
    monkeypatch.setenv("VTM_CACHE_DIR", str(tmp_path / "research"))


def _invoke(manifest: Path, *args: str):
    return runner.invoke(cli, ["--manifest", str(manifest), *args])


def _batch(tmp_path: Path, tasks: list, name: str = "batch.json") -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(tasks), encoding="utf-8")
    return path


# init / missing manifest


def test_init_then_stats(manifest_path: Path) -> None:
    result = _invoke(manifest_path, "init", "demo")
    assert result.exit_code == 0
    assert "Manifest created" in result.output

    result = _invoke(manifest_path, "stats", "--json")
    assert result.exit_code == 0
    assert json.loads(result.output)["total_tasks"] == 0


def test_init_twice_needs_force(manifest_path: Path) -> None:
    assert _invoke(manifest_path, "init", "demo").exit_code == 0

    assert _invoke(manifest_path, "init", "demo").exit_code == 1
    assert _invoke(manifest_path, "init", "demo", "--force").exit_code == 0


def test_missing_manifest_exit_code(manifest_path: Path) -> None:
    result = _invoke(manifest_path, "next")

    assert result.exit_code == 3
    assert "vtm init" in result.output


def test_corrupt_manifest_exit_code(manifest_path: Path) -> None:
    manifest_path.write_text("{", encoding="utf-8")

    assert _invoke(manifest_path, "list").exit_code == 4


def test_unknown_task_exit_code(store: ManifestStore) -> None:
    assert _invoke(store.path, "task", "TASK-999").exit_code == 5


# ingest


def test_ingest_preview_then_commit(store: ManifestStore, tmp_path: Path) -> None:
    batch = _batch(tmp_path, [proposal("Model"), proposal("API", deps=[0])])

    preview = _invoke(store.path, "ingest", str(batch), "--json")
    assert preview.exit_code == 0
    assert json.loads(preview.output)["task_ids"] == ["TASK-001", "TASK-002"]
    assert store.load(force_reload=True).tasks == ()

    committed = _invoke(store.path, "ingest", str(batch), "--commit", "--source", "plan.md", "--json")
    assert committed.exit_code == 0
    payload = json.loads(committed.output)
    assert payload["committed"] is True
    assert payload["transaction"]["source"] == "plan.md"

    ready = _invoke(store.path, "next", "--json")
    assert [task["id"] for task in json.loads(ready.output)] == ["TASK-001"]


def test_ingest_error_exit_codes(store: ManifestStore, tmp_path: Path) -> None:
    invalid = _batch(tmp_path, [{"title": "No hours"}], "invalid.json")
    missing = _batch(tmp_path, [proposal("A", deps=["TASK-404"])], "missing.json")
    cycle = _batch(tmp_path, [proposal("A", deps=[1]), proposal("B", deps=[0])], "cycle.json")

    assert _invoke(store.path, "ingest", str(invalid), "--commit").exit_code == 6
    assert _invoke(store.path, "ingest", str(missing), "--commit").exit_code == 7
    result = _invoke(store.path, "ingest", str(cycle), "--commit")
    assert result.exit_code == 8
    assert "Dependency cycle detected" in result.output
    assert store.load(force_reload=True).tasks == ()


# task lifecycle and context


def test_start_complete_and_list(store: ManifestStore) -> None:
    store.write(store.load().with_tasks([make_task("TASK-001"), make_task("TASK-002", dependencies=("TASK-001",))]))

    assert _invoke(store.path, "start", "TASK-001").exit_code == 0
    result = _invoke(store.path, "complete", "TASK-001", "--commits", "abc,def", "--tests-pass")
    assert result.exit_code == 0
    assert "TASK-002" in result.output

    task = store.get_task("TASK-001")
    assert task.status == "completed"
    assert task.commits == ("abc", "def")

    listed = _invoke(store.path, "list", "--status", "pending", "--json")
    assert [item["id"] for item in json.loads(listed.output)] == ["TASK-002"]
    assert _invoke(store.path, "list", "--status", "done").exit_code == 2


def test_context_and_summary(store: ManifestStore) -> None:
    store.write(
        store.load().with_tasks(
            [make_task("TASK-001", status="completed"), make_task("TASK-002", dependencies=("TASK-001",))]
        )
    )

    context = _invoke(store.path, "context", "TASK-002")
    assert context.exit_code == 0
    assert "# Task Context: TASK-002" in context.output
    assert "[x] TASK-001" in context.output

    compact = _invoke(store.path, "context", "TASK-002", "--compact")
    assert compact.output.startswith("Task TASK-002:")

    summary = _invoke(store.path, "summary", "--incomplete")
    assert [item["id"] for item in json.loads(summary.output)] == ["TASK-002"]

    planning = _invoke(store.path, "summary", "--planning")
    assert json.loads(planning.output)["completed_capabilities"] == ["Title of TASK-001"]


# history


def test_history_rollback_blocked_then_forced(store: ManifestStore, tmp_path: Path) -> None:
    base = _batch(tmp_path, [proposal("Base")], "base.json")
    consumer = _batch(tmp_path, [proposal("Consumer", deps=["TASK-001"])], "consumer.json")
    assert _invoke(store.path, "ingest", str(base), "--commit").exit_code == 0
    assert _invoke(store.path, "ingest", str(consumer), "--commit").exit_code == 0

    listed = json.loads(_invoke(store.path, "history", "list", "--json").output)
    base_txn = listed[-1]["id"]

    blocked = _invoke(store.path, "history", "rollback", base_txn)
    assert blocked.exit_code == 9
    assert "TASK-002" in blocked.output

    dry = _invoke(store.path, "history", "rollback", base_txn, "--force", "--dry-run")
    assert dry.exit_code == 0
    assert store.load(force_reload=True).find_task("TASK-001") is not None

    forced = _invoke(store.path, "history", "rollback", base_txn, "--force")
    assert forced.exit_code == 0
    assert store.load(force_reload=True).find_task("TASK-001") is None

    shown = json.loads(_invoke(store.path, "history", "show", base_txn).output)
    assert shown["tasks"] == [{"id": "TASK-001", "title": "unknown", "status": "removed"}]

    stats = json.loads(_invoke(store.path, "history", "stats").output)
    assert stats["action_breakdown"] == {"ingest": 2, "delete": 1}


# cache


def test_cache_round_trip(manifest_path: Path) -> None:
    assert _invoke(manifest_path, "cache", "set", "OAuth2 Alternatives", "Use PKCE", "--tag", "oauth2").exit_code == 0

    hit = _invoke(manifest_path, "cache", "get", "oauth2  alternatives")
    assert hit.exit_code == 0
    assert hit.output.strip() == "Use PKCE"

    assert _invoke(manifest_path, "cache", "get", "unknown").exit_code == 1

    found = json.loads(_invoke(manifest_path, "cache", "search", "--tag", "oauth2").output)
    assert [entry["query"] for entry in found] == ["oauth2 alternatives"]

    stats = json.loads(_invoke(manifest_path, "cache", "stats").output)
    assert stats["entriesCount"] == 1

    cleared = _invoke(manifest_path, "cache", "clear")
    assert "Removed 1 entries" in cleared.output


def test_cache_set_from_missing_file_is_a_usage_error(manifest_path: Path) -> None:
    result = _invoke(manifest_path, "cache", "set", "q", "@missing.txt")

    assert result.exit_code == 2
    assert "missing.txt" in result.output


def test_cache_write_failure_exit_code(manifest_path: Path, monkeypatch) -> None:
    def boom(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr("vtm.artifacts.canonical_json.os.replace", boom)

    result = _invoke(manifest_path, "cache", "set", "q", "answer")

    assert result.exit_code == 10
    assert "Error:" in result.output
    assert "Fix:" in result.output


# error kinds


def test_every_error_kind_has_its_own_exit_code() -> None:
    codes = [kind.exit_code for kind in ERROR_KINDS]

    assert sorted(codes) == list(range(3, 11))
    assert len({kind.reason_code for kind in ERROR_KINDS}) == len(ERROR_KINDS)
    assert all(kind.remedy for kind in ERROR_KINDS)
