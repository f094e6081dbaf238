"""Manifest persistence with mtime-based caching and atomic replacement."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from vtm.artifacts.canonical_json import atomic_write_text, pretty_dumps
from vtm.errors import CorruptionError, InitializationError, NotFoundError, ValidationError, WriteError
from vtm.models import TASK_STATUSES, Manifest, Task, TaskValidation
from vtm.schemas.validator import validate_data

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

MUTABLE_TASK_FIELDS: frozenset[str] = frozenset(
    {"status", "started_at", "completed_at", "commits", "validation"}
)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class ManifestStore:
    """Owns one manifest file for the lifetime of a command invocation.

    ``load`` serves a cached copy while the file's mtime is unchanged. Every
    mutation re-reads the file first, recomputes stats with a full scan and
    persists through a temp-file rename, so the file on disk is always a
    complete manifest.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._cached: Manifest | None = None
        self._mtime_ns: int | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def initialize(self, name: str, description: str = "", *, force: bool = False) -> Manifest:
        """Create an empty manifest."""
        if self.path.exists() and not force:
            raise FileExistsError(f"Manifest already exists: {self.path}")
        manifest = Manifest.empty(name, description)
        self.write(manifest)
        return manifest

    def load(self, force_reload: bool = False) -> Manifest:
        """Return the manifest, re-reading only if the file changed."""
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except FileNotFoundError as exc:
            raise InitializationError(
                f"Manifest not found at {self.path}. Run `vtm init` to create one."
            ) from exc

        if not force_reload and self._cached is not None and mtime_ns == self._mtime_ns:
            return self._cached

        manifest = self._parse(self.path.read_text(encoding="utf-8"))
        self._cached = manifest
        self._mtime_ns = mtime_ns
        logger.debug("Loaded manifest %s (%d tasks)", self.path, len(manifest.tasks))
        return manifest

    def _parse(self, text: str) -> Manifest:
        try:
            raw: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptionError(f"Manifest {self.path} is not valid JSON: {exc}") from exc

        errors = validate_data(raw, "manifest")
        if errors:
            raise CorruptionError(
                f"Manifest {self.path} failed schema validation:\n"
                + "\n".join(f"  - {error}" for error in errors)
            )
        return Manifest.from_dict(raw)

    def write(self, manifest: Manifest) -> None:
        """Validate, serialize and atomically replace the manifest file."""
        payload = manifest.to_dict()
        errors = validate_data(payload, "manifest")
        if errors:
            raise ValidationError("Refusing to write an invalid manifest", errors)

        try:
            atomic_write_text(self.path, pretty_dumps(payload))
        except OSError as exc:
            raise WriteError(f"Failed to write manifest {self.path}: {exc}") from exc

        # the file is in place; without an mtime the next load re-reads it
        try:
            mtime_ns: int | None = self.path.stat().st_mtime_ns
        except OSError as exc:
            logger.warning("Wrote manifest %s but could not stat it: %s", self.path, exc)
            mtime_ns = None

        self._cached = manifest
        self._mtime_ns = mtime_ns
        logger.info(
            "Wrote manifest %s (%d tasks, %d history entries)",
            self.path,
            len(manifest.tasks),
            len(manifest.history),
        )

    def get_task(self, task_id: str) -> Task:
        task = self.load().find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def update_task(self, task_id: str, **fields: Any) -> Manifest:
        """Shallow-merge status/validation fields into one task and persist.

        Structural fields (title, dependencies, files, ...) are immutable once
        a task exists; passing any of them is a ValidationError.
        """
        problems = [f"field '{name}' cannot be changed" for name in sorted(set(fields) - MUTABLE_TASK_FIELDS)]
        status = fields.get("status")
        if status is not None and status not in TASK_STATUSES:
            problems.append(f"invalid status '{status}'. Must be one of: {', '.join(TASK_STATUSES)}")
        if problems:
            raise ValidationError(f"Invalid update for {task_id}", problems)

        manifest = self.load(force_reload=True)
        current = manifest.find_task(task_id)
        if current is None:
            raise NotFoundError(f"Task {task_id} not found")

        if "commits" in fields:
            fields["commits"] = tuple(fields["commits"])
        if isinstance(fields.get("validation"), dict):
            fields["validation"] = TaskValidation.from_dict(
                {**current.validation.to_dict(), **fields["validation"]}
            )
        updated = replace(current, **fields)

        new_manifest = manifest.with_tasks(updated if task.id == task_id else task for task in manifest.tasks)
        self.write(new_manifest)
        return new_manifest

    def start_task(self, task_id: str, *, now: str | None = None) -> Task:
        manifest = self.update_task(task_id, status="in-progress", started_at=now or utc_now_iso())
        return _require(manifest, task_id)

    def complete_task(
        self,
        task_id: str,
        *,
        commits: Iterable[str] = (),
        tests_pass: bool | None = None,
        ac_verified: Iterable[str] | None = None,
        now: str | None = None,
    ) -> Task:
        current = self.get_task(task_id)
        validation: dict[str, Any] = {}
        if tests_pass is not None:
            validation["tests_pass"] = tests_pass
        if ac_verified is not None:
            validation["ac_verified"] = list(ac_verified)
        manifest = self.update_task(
            task_id,
            status="completed",
            completed_at=now or utc_now_iso(),
            commits=(*current.commits, *commits),
            validation=validation,
        )
        return _require(manifest, task_id)


def _require(manifest: Manifest, task_id: str) -> Task:
    task = manifest.find_task(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task
