"""Validate and merge batches of proposed tasks into the manifest.

A batch is all-or-nothing. Schema validation, id assignment, dependency
resolution and cycle detection all run against an in-memory copy; the
manifest file is replaced exactly once, and only when every check passed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import yaml

from vtm.errors import CycleError, DependencyError, ValidationError
from vtm.graph import build_adjacency, detect_cycle
from vtm.history import next_transaction_id
from vtm.models import IndexRef, ProposedTask, Task, Transaction, format_task_id, task_number
from vtm.schemas.validator import validate_data

if TYPE_CHECKING:
    from pathlib import Path

    from vtm.models import Manifest
    from vtm.store import ManifestStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def load_batch_file(path: Path) -> Any:
    """Read a batch document from JSON or YAML (chosen by file suffix)."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"Cannot parse batch file {path}", [str(exc)]) from exc


def parse_batch(document: Any) -> list[ProposedTask]:
    """Turn a raw batch document into proposed tasks.

    Accepts a list of task objects or a mapping with a ``tasks`` list. Every
    task is checked against the ``task_proposal`` schema and all violations
    across the batch are raised together.
    """
    if isinstance(document, dict) and "tasks" in document:
        document = document["tasks"]
    if document is None:
        return []
    if not isinstance(document, list):
        raise ValidationError("Batch must be a list of tasks or an object with a 'tasks' list")

    errors: list[str] = []
    for index, item in enumerate(document):
        errors.extend(validate_data(item, "task_proposal", prefix=f"tasks[{index}]"))
    if errors:
        raise ValidationError(f"{len(document)} proposed task(s) failed validation", errors)
    return [ProposedTask.from_dict(item) for item in document]


def next_task_number(manifest: Manifest) -> int:
    """One past the highest id ever issued, counting ids removed by rollback."""
    seen = [task.id for task in manifest.tasks]
    for entry in manifest.history:
        seen.extend(entry.tasks_added)
        seen.extend(entry.tasks_removed)
    numbers = [n for n in (task_number(task_id) for task_id in seen) if n is not None]
    return max(numbers, default=0) + 1


@dataclass(frozen=True)
class IngestPreview:
    """Dry-run outcome: the tasks as they would be appended."""

    source: str
    tasks: tuple[Task, ...]
    warnings: tuple[str, ...]

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.id for task in self.tasks)

    def resolved_dependencies(self) -> dict[str, list[str]]:
        return {task.id: list(task.dependencies) for task in self.tasks}

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "task_ids": list(self.task_ids),
            "dependencies": self.resolved_dependencies(),
            "warnings": list(self.warnings),
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(frozen=True)
class IngestResult:
    preview: IngestPreview
    transaction: Transaction | None

    @property
    def committed(self) -> bool:
        return self.transaction is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.preview.to_dict(),
            "committed": self.committed,
            "transaction": self.transaction.to_dict() if self.transaction else None,
        }


class IngestionEngine:
    """Turn proposed-task batches into permanent manifest tasks."""

    def __init__(self, store: ManifestStore, *, now_fn: Callable[[], datetime] = _utc_now) -> None:
        self.store = store
        self.now_fn = now_fn

    def preview(self, batch: Any, source: str, *, strict: bool = False) -> IngestPreview:
        """Run every check and return the would-be tasks. Writes nothing."""
        manifest = self.store.load(force_reload=True)
        return self._plan(manifest, batch, source, strict=strict)

    def commit(self, batch: Any, source: str, *, strict: bool = False) -> IngestResult:
        """Append the batch and its ``ingest`` transaction in one atomic write."""
        manifest = self.store.load(force_reload=True)
        preview = self._plan(manifest, batch, source, strict=strict)
        if not preview.tasks:
            logger.info("Empty batch from %s; nothing to ingest", source)
            return IngestResult(preview=preview, transaction=None)

        now = self.now_fn()
        entry = Transaction(
            id=next_transaction_id(manifest.history, now),
            action="ingest",
            timestamp=now.isoformat(),
            source=source,
            tasks_added=preview.task_ids,
        )
        new_manifest = manifest.with_tasks((*manifest.tasks, *preview.tasks)).with_transaction(entry)
        self.store.write(new_manifest)
        logger.info(
            "Ingested %d task(s) from %s as %s: %s",
            len(preview.tasks),
            source,
            entry.id,
            ", ".join(preview.task_ids),
        )
        return IngestResult(preview=preview, transaction=entry)

    def _plan(self, manifest: Manifest, batch: Any, source: str, *, strict: bool) -> IngestPreview:
        proposed = batch if _is_parsed(batch) else parse_batch(batch)
        if not proposed:
            return IngestPreview(source=source, tasks=(), warnings=())

        first = next_task_number(manifest)
        ids = [format_task_id(first + offset) for offset in range(len(proposed))]
        existing = {task.id: task for task in manifest.tasks}

        missing: list[tuple[str, str]] = []
        new_tasks: list[Task] = []
        for position, (item, task_id) in enumerate(zip(proposed, ids, strict=True)):
            label = f"{task_id} (tasks[{position}] '{item.title}')"
            resolved: list[str] = []
            for ref in item.dependencies:
                if isinstance(ref, IndexRef):
                    if ref.index < len(ids):
                        resolved.append(ids[ref.index])
                    else:
                        missing.append((label, f"{ref} (batch has {len(ids)} tasks)"))
                elif ref.task_id in existing:
                    resolved.append(ref.task_id)
                else:
                    missing.append((label, ref.task_id))
            new_tasks.append(item.to_task(task_id, resolved))
        if missing:
            raise DependencyError(missing)

        cycle = detect_cycle(build_adjacency((*manifest.tasks, *new_tasks)))
        if cycle is not None:
            raise CycleError(cycle)

        warnings: list[str] = []
        for task in new_tasks:
            for dep in task.dependencies:
                dep_task = existing.get(dep)
                if dep_task is not None and dep_task.status != "completed":
                    warnings.append(f"{task.id} depends on {dep} ({dep_task.status}); it will start blocked")
        if strict and warnings:
            raise ValidationError("Strict mode refuses a batch with warnings", warnings)

        return IngestPreview(source=source, tasks=tuple(new_tasks), warnings=tuple(warnings))


def _is_parsed(batch: Any) -> bool:
    return isinstance(batch, (list, tuple)) and all(isinstance(item, ProposedTask) for item in batch) and bool(batch)
