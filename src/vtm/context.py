"""Bounded task context for an external code-generation agent.

Size is controlled by what is left out, never by truncating text: a task is
rendered with its own detail, each dependency only as id/title/status (one
level, no recursion), and dependents only as id/title.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vtm.errors import NotFoundError
from vtm.graph import direct_dependents

if TYPE_CHECKING:
    from vtm.models import Manifest, Task
    from vtm.store import ManifestStore

INCOMPLETE_STATUSES: frozenset[str] = frozenset({"pending", "in-progress"})
STATUS_MARKERS: dict[str, str] = {
    "completed": "[x]",
    "in-progress": "[~]",
    "pending": "[ ]",
    "blocked": "[!]",
}


@dataclass(frozen=True)
class TaskSummary:
    id: str
    title: str
    status: str
    dependencies: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "dependencies": list(self.dependencies),
        }


def build_summary(manifest: Manifest, incomplete_only: bool = False) -> list[TaskSummary]:
    """Lightweight listing without descriptions, criteria or files."""
    return [
        TaskSummary(id=task.id, title=task.title, status=task.status, dependencies=task.dependencies)
        for task in manifest.tasks
        if not incomplete_only or task.status in INCOMPLETE_STATUSES
    ]


def build_planning_summary(manifest: Manifest) -> dict[str, Any]:
    """Incomplete tasks in moderate detail plus completed work as capability titles."""
    incomplete: list[dict[str, Any]] = []
    for task in manifest.tasks:
        if task.status == "completed":
            continue
        entry: dict[str, Any] = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status,
            "estimated_hours": task.estimated_hours,
            "risk": task.risk,
            "test_strategy": task.test_strategy,
        }
        if task.dependencies:
            entry["dependencies"] = list(task.dependencies)
        incomplete.append(entry)
    return {
        "incomplete_tasks": incomplete,
        "completed_capabilities": [task.title for task in manifest.tasks if task.status == "completed"],
    }


def _dependency_line(manifest: Manifest, dep_id: str) -> str:
    dep = manifest.find_task(dep_id)
    if dep is None:
        return f"- {dep_id}: unknown (status: unknown)"
    return f"- {STATUS_MARKERS.get(dep.status, '[?]')} {dep.id}: {dep.title} (status: {dep.status})"


def _file_section(heading: str, paths: tuple[str, ...]) -> list[str]:
    if not paths:
        return []
    return ["", f"## {heading}", *(f"- {path}" for path in paths)]


class ContextBuilder:
    """Render task context from the manifest owned by ``store``."""

    def __init__(self, store: ManifestStore) -> None:
        self.store = store

    def _task(self, manifest: Manifest, task_id: str) -> Task:
        task = manifest.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def build_minimal_context(self, task_id: str) -> str:
        manifest = self.store.load()
        task = self._task(manifest, task_id)

        lines = [
            f"# Task Context: {task.id}",
            "",
            "## Task Details",
            f"**Title**: {task.title}",
            f"**Status**: {task.status}",
            f"**Test Strategy**: {task.test_strategy}",
            f"**Risk**: {task.risk}",
            f"**Estimated**: {task.estimated_hours:g}h",
            "",
            "**Description**:",
            task.description,
            "",
            "## Acceptance Criteria",
        ]
        if task.acceptance_criteria:
            lines.extend(f"- AC{number}: {text}" for number, text in enumerate(task.acceptance_criteria, start=1))
        else:
            lines.append("- (none)")

        if task.dependencies:
            lines.extend(["", f"## Dependencies ({len(task.dependencies)})"])
            lines.extend(_dependency_line(manifest, dep_id) for dep_id in task.dependencies)

        lines.extend(_file_section("Files to Create", task.files.create))
        lines.extend(_file_section("Files to Modify", task.files.modify))
        lines.extend(_file_section("Files to Delete", task.files.delete))

        sources = [
            f"- ADR: {task.adr_source}" if task.adr_source else "",
            f"- Spec: {task.spec_source}" if task.spec_source else "",
            f"- Context: {task.source.describe()}" if task.source else "",
        ]
        if any(sources):
            lines.extend(["", "## Source Documents", *(line for line in sources if line)])

        if task.test_strategy_rationale:
            lines.extend(["", "## Test Strategy Rationale", task.test_strategy_rationale])

        waiting = [dep for dep in direct_dependents(manifest, task.id) if dep.status == "pending"]
        if waiting:
            lines.extend(["", "## Tasks Blocked by This"])
            lines.extend(f"- {dep.id}: {dep.title}" for dep in waiting)

        return "\n".join(lines) + "\n"

    def build_compact_context(self, task_id: str) -> str:
        """Single paragraph for low-risk or Direct tasks; no criteria text."""
        manifest = self.store.load()
        task = self._task(manifest, task_id)

        parts = [
            f"Task {task.id}: {task.title}.",
            f"Test: {task.test_strategy}; risk: {task.risk}; {task.estimated_hours:g}h.",
            f"ACs: {len(task.acceptance_criteria)}.",
        ]
        if task.dependencies:
            rendered = []
            for dep_id in task.dependencies:
                dep = manifest.find_task(dep_id)
                rendered.append(f"{dep_id} ({dep.status if dep else 'unknown'})")
            parts.append(f"Deps: {', '.join(rendered)}.")
        touched = (*task.files.create, *task.files.modify)
        if touched:
            parts.append(f"Files: {', '.join(touched)}.")
        return " ".join(parts) + "\n"

    def build_summary(self, incomplete_only: bool = False) -> list[TaskSummary]:
        return build_summary(self.store.load(), incomplete_only)

    def build_planning_summary(self) -> dict[str, Any]:
        return build_planning_summary(self.store.load())
