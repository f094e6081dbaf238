"""Pytest configuration and fixtures for VTM tests."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from vtm.artifacts.canonical_json import pretty_dumps
from vtm.models import Manifest, Task
from vtm.store import ManifestStore

FIXED_NOW = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)


def pytest_sessionfinish(session, exitstatus):
    """Check that coverage data was collected if --cov was requested.

    This prevents silent "no data collected" scenarios that produce 0% coverage
    without failing the test run.
    """
    cov_enabled = any(str(arg).startswith("--cov") for arg in session.config.invocation_params.args)
    if not cov_enabled:
        return

    coverage_files = list(Path.cwd().glob(".coverage*"))
    if not coverage_files:
        pytest.exit(
            "Coverage was enabled but no data was collected. "
            "Check that tests import from 'vtm' (the package) not 'src/vtm' (filesystem path).",
            returncode=1,
        )


def make_task(task_id: str, *, status: str = "pending", dependencies: tuple[str, ...] = (), **extra: Any) -> Task:
    """Minimal valid task for graph and store tests."""
    fields: dict[str, Any] = {
        "title": f"Title of {task_id}",
        "description": f"Description of {task_id}",
        "acceptance_criteria": ("works",),
    }
    fields.update(extra)
    return Task(id=task_id, status=status, dependencies=tuple(dependencies), **fields)


def make_manifest(*tasks: Task, name: str = "demo") -> Manifest:
    return Manifest.empty(name).with_tasks(tasks)


def write_manifest(path: Path, manifest: Manifest) -> Path:
    path.write_text(pretty_dumps(manifest.to_dict()), encoding="utf-8")
    return path


def proposal(title: str, *, deps: list[Any] | None = None, **extra: Any) -> dict[str, Any]:
    """Raw proposed-task dict as an ingestion batch would carry it."""
    data: dict[str, Any] = {
        "title": title,
        "description": f"{title} description",
        "estimated_hours": 2,
        "acceptance_criteria": [f"{title} done"],
    }
    if deps is not None:
        data["dependencies"] = deps
    data.update(extra)
    return data


class Clock:
    """Injectable clock; ``advance`` moves it forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def manifest_path(tmp_path: Path) -> Path:
    return tmp_path / "vtm.json"


@pytest.fixture
def store(manifest_path: Path) -> ManifestStore:
    """Store over a freshly initialized empty manifest."""
    s = ManifestStore(manifest_path)
    s.initialize("demo")
    return s
