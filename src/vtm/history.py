"""Append-only transaction history with dependency-aware rollback.

Transaction ids have the form ``YYYY-MM-DD-NNN``: the UTC date plus a per-day
sequence derived from the history already on disk, so ids sort in the order
they were recorded. Rolling back never edits an existing entry; it appends a
``delete`` transaction whose ``reverts`` field names the original.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from vtm.errors import NotFoundError, RollbackBlockedError, ValidationError
from vtm.graph import transitive_dependents
from vtm.models import Transaction, task_sort_key

if TYPE_CHECKING:
    from collections.abc import Iterable

    from vtm.models import Manifest
    from vtm.store import ManifestStore

logger = logging.getLogger(__name__)

ROLLBACK_SOURCE = "rollback"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def next_transaction_id(history: Iterable[Transaction], now: datetime) -> str:
    """Next ``YYYY-MM-DD-NNN`` id for the UTC date of ``now``."""
    date_str = now.astimezone(UTC).strftime("%Y-%m-%d")
    highest = 0
    for entry in history:
        prefix, _, sequence = entry.id.rpartition("-")
        if prefix == date_str and sequence.isdigit():
            highest = max(highest, int(sequence))
    return f"{date_str}-{highest + 1:03d}"


@dataclass(frozen=True)
class TaskRef:
    """Current view of a task referenced by a transaction."""

    id: str
    title: str
    status: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "title": self.title, "status": self.status}


@dataclass(frozen=True)
class TransactionDetail:
    transaction: Transaction
    tasks: tuple[TaskRef, ...]

    def to_dict(self) -> dict[str, Any]:
        return {**self.transaction.to_dict(), "tasks": [ref.to_dict() for ref in self.tasks]}


@dataclass(frozen=True)
class RollbackPreview:
    """Exactly what rolling back a transaction would affect."""

    transaction_id: str
    tasks_to_remove: tuple[TaskRef, ...]
    blocking_dependents: tuple[TaskRef, ...]
    in_progress_warnings: tuple[str, ...]

    @property
    def blocked(self) -> bool:
        return bool(self.blocking_dependents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "tasks_to_remove": [ref.to_dict() for ref in self.tasks_to_remove],
            "blocking_dependents": [ref.to_dict() for ref in self.blocking_dependents],
            "in_progress_warnings": list(self.in_progress_warnings),
        }


@dataclass(frozen=True)
class RollbackResult:
    preview: RollbackPreview
    transaction: Transaction | None
    dry_run: bool
    forced: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.preview.to_dict(),
            "dry_run": self.dry_run,
            "forced": self.forced,
            "transaction": self.transaction.to_dict() if self.transaction else None,
        }


@dataclass(frozen=True)
class HistoryStats:
    total_entries: int
    oldest_entry: str | None
    newest_entry: str | None
    action_breakdown: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "oldest_entry": self.oldest_entry,
            "newest_entry": self.newest_entry,
            "action_breakdown": dict(self.action_breakdown),
        }


class TransactionLog:
    """Read and extend the history stored inside the manifest."""

    def __init__(self, store: ManifestStore, *, now_fn: Callable[[], datetime] = _utc_now) -> None:
        self.store = store
        self.now_fn = now_fn

    def list_transactions(self, limit: int = 10) -> list[Transaction]:
        """Most recent ``limit`` transactions, newest first."""
        history = self.store.load().history
        if limit <= 0:
            return []
        return list(reversed(history[-limit:]))

    def get(self, transaction_id: str) -> Transaction:
        entry = self.store.load().find_transaction(transaction_id)
        if entry is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return entry

    def detail(self, transaction_id: str) -> TransactionDetail:
        """Transaction plus the *current* title/status of each task it touched."""
        manifest = self.store.load()
        entry = manifest.find_transaction(transaction_id)
        if entry is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        task_ids = entry.tasks_added if entry.action == "ingest" else entry.tasks_removed
        return TransactionDetail(transaction=entry, tasks=tuple(_task_ref(manifest, tid) for tid in task_ids))

    def rollback_preview(self, transaction_id: str) -> RollbackPreview:
        """Side-effect-free computation of what ``rollback`` would remove."""
        manifest = self.store.load()
        entry = self._rollbackable(manifest, transaction_id)
        return _preview(manifest, entry)

    def rollback(self, transaction_id: str, *, force: bool = False, dry_run: bool = False) -> RollbackResult:
        """Remove every task added by an ingest transaction.

        Refuses with RollbackBlockedError when a task outside the batch depends
        on a task inside it, unless ``force``. A forced rollback leaves those
        dependents in place with dangling references.
        """
        manifest = self.store.load(force_reload=True)
        entry = self._rollbackable(manifest, transaction_id)
        preview = _preview(manifest, entry)

        if preview.blocked and not force:
            raise RollbackBlockedError(transaction_id, [ref.id for ref in preview.blocking_dependents])
        if dry_run:
            return RollbackResult(preview=preview, transaction=None, dry_run=True, forced=force)

        removed = {ref.id for ref in preview.tasks_to_remove}
        now = self.now_fn()
        delete_entry = Transaction(
            id=next_transaction_id(manifest.history, now),
            action="delete",
            timestamp=now.isoformat(),
            source=ROLLBACK_SOURCE,
            tasks_removed=tuple(ref.id for ref in preview.tasks_to_remove),
            reverts=entry.id,
            description=f"Rolled back transaction {entry.id}",
        )
        new_manifest = manifest.with_tasks(
            task for task in manifest.tasks if task.id not in removed
        ).with_transaction(delete_entry)
        self.store.write(new_manifest)

        if preview.blocked:
            logger.warning(
                "Forced rollback of %s left dangling references in %s",
                entry.id,
                ", ".join(ref.id for ref in preview.blocking_dependents),
            )
        logger.info("Rolled back %s as %s (%d tasks removed)", entry.id, delete_entry.id, len(removed))
        return RollbackResult(preview=preview, transaction=delete_entry, dry_run=False, forced=force)

    def stats(self) -> HistoryStats:
        history = self.store.load().history
        if not history:
            return HistoryStats(total_entries=0, oldest_entry=None, newest_entry=None, action_breakdown={})
        timestamps = sorted(entry.timestamp for entry in history)
        return HistoryStats(
            total_entries=len(history),
            oldest_entry=timestamps[0],
            newest_entry=timestamps[-1],
            action_breakdown=dict(Counter(entry.action for entry in history)),
        )

    def search(self, text: str) -> list[Transaction]:
        """Transactions whose source contains ``text``, newest first."""
        history = self.store.load().history
        return [entry for entry in reversed(history) if text in entry.source]

    def _rollbackable(self, manifest: Manifest, transaction_id: str) -> Transaction:
        entry = manifest.find_transaction(transaction_id)
        if entry is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if entry.action != "ingest":
            raise ValidationError(f"Transaction {transaction_id} is a '{entry.action}' and cannot be rolled back")
        for later in manifest.history:
            if later.reverts == transaction_id:
                raise ValidationError(f"Transaction {transaction_id} was already rolled back by {later.id}")
        return entry


def _task_ref(manifest: Manifest, task_id: str) -> TaskRef:
    task = manifest.find_task(task_id)
    if task is None:
        return TaskRef(id=task_id, title="unknown", status="removed")
    return TaskRef(id=task.id, title=task.title, status=task.status)


def _preview(manifest: Manifest, entry: Transaction) -> RollbackPreview:
    batch = set(entry.tasks_added)
    to_remove = [task for task in manifest.tasks if task.id in batch]

    dependents: dict[str, TaskRef] = {}
    for task in to_remove:
        for dependent in transitive_dependents(manifest, task.id):
            if dependent.id not in batch:
                dependents[dependent.id] = TaskRef(dependent.id, dependent.title, dependent.status)

    warnings = tuple(
        f"{task.id} is in progress and will be removed" for task in to_remove if task.status == "in-progress"
    )
    return RollbackPreview(
        transaction_id=entry.id,
        tasks_to_remove=tuple(TaskRef(task.id, task.title, task.status) for task in to_remove),
        blocking_dependents=tuple(dependents[key] for key in sorted(dependents, key=task_sort_key)),
        in_progress_warnings=warnings,
    )
