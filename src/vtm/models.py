"""Typed manifest model.

The on-disk manifest is plain JSON; in memory it is a tree of frozen
dataclasses. Ordered collections are tuples, and every mutation goes through
``dataclasses.replace`` so a loaded manifest is never patched in place.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

TaskStatus = Literal["pending", "in-progress", "completed", "blocked"]
TestStrategy = Literal["TDD", "Unit", "Integration", "Direct"]
Risk = Literal["low", "medium", "high"]
TransactionAction = Literal["ingest", "delete"]

TASK_STATUSES: tuple[str, ...] = ("pending", "in-progress", "completed", "blocked")
TEST_STRATEGIES: tuple[str, ...] = ("TDD", "Unit", "Integration", "Direct")
RISKS: tuple[str, ...] = ("low", "medium", "high")

MANIFEST_VERSION = "2.0.0"
TASK_ID_PREFIX = "TASK-"
_TASK_ID_RE = re.compile(r"^TASK-(\d+)$")


def task_number(task_id: str) -> int | None:
    """Return the numeric suffix of a ``TASK-NNN`` id, or None for foreign ids."""
    match = _TASK_ID_RE.match(task_id)
    if match is None:
        return None
    return int(match.group(1))


def format_task_id(number: int) -> str:
    return f"{TASK_ID_PREFIX}{number:03d}"


def task_sort_key(task_id: str) -> tuple[int, int, str]:
    """Sort key placing TASK ids in numeric order and foreign ids last."""
    number = task_number(task_id)
    if number is None:
        return (1, 0, task_id)
    return (0, number, task_id)


def _dedupe(items: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return tuple(seen)


@dataclass(frozen=True)
class TaskFiles:
    create: tuple[str, ...] = ()
    modify: tuple[str, ...] = ()
    delete: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskFiles:
        data = data or {}
        return cls(
            create=tuple(data.get("create", ())),
            modify=tuple(data.get("modify", ())),
            delete=tuple(data.get("delete", ())),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "create": list(self.create),
            "modify": list(self.modify),
            "delete": list(self.delete),
        }


@dataclass(frozen=True)
class TaskValidation:
    tests_pass: bool = False
    ac_verified: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskValidation:
        data = data or {}
        return cls(
            tests_pass=bool(data.get("tests_pass", False)),
            ac_verified=tuple(data.get("ac_verified", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"tests_pass": self.tests_pass, "ac_verified": list(self.ac_verified)}


@dataclass(frozen=True)
class TaskSource:
    """Rich context pointer: a source document plus inclusive line ranges."""

    document: str
    line_ranges: tuple[tuple[int, int], ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSource:
        return cls(
            document=data["document"],
            line_ranges=tuple((int(start), int(end)) for start, end in data.get("line_ranges", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "document": self.document,
            "line_ranges": [[start, end] for start, end in self.line_ranges],
        }

    def describe(self) -> str:
        if not self.line_ranges:
            return self.document
        ranges = ", ".join(f"{start}-{end}" for start, end in self.line_ranges)
        return f"{self.document} (lines {ranges})"


@dataclass(frozen=True)
class Task:
    """A single unit of work in the manifest."""

    id: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    test_strategy: TestStrategy = "TDD"
    test_strategy_rationale: str = ""
    risk: Risk = "medium"
    estimated_hours: float = 1.0
    files: TaskFiles = field(default_factory=TaskFiles)
    status: TaskStatus = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    commits: tuple[str, ...] = ()
    validation: TaskValidation = field(default_factory=TaskValidation)
    adr_source: str = ""
    spec_source: str = ""
    source: TaskSource | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        source = data.get("source")
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            acceptance_criteria=tuple(data.get("acceptance_criteria", ())),
            dependencies=_dedupe(str(dep) for dep in data.get("dependencies", ())),
            test_strategy=data.get("test_strategy", "TDD"),
            test_strategy_rationale=data.get("test_strategy_rationale", ""),
            risk=data.get("risk", "medium"),
            estimated_hours=data.get("estimated_hours", 1.0),
            files=TaskFiles.from_dict(data.get("files")),
            status=data.get("status", "pending"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            commits=tuple(data.get("commits", ())),
            validation=TaskValidation.from_dict(data.get("validation")),
            adr_source=data.get("adr_source", ""),
            spec_source=data.get("spec_source", ""),
            source=TaskSource.from_dict(source) if source else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "test_strategy": self.test_strategy,
            "test_strategy_rationale": self.test_strategy_rationale,
            "risk": self.risk,
            "estimated_hours": self.estimated_hours,
            "files": self.files.to_dict(),
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "commits": list(self.commits),
            "validation": self.validation.to_dict(),
            "adr_source": self.adr_source,
            "spec_source": self.spec_source,
        }
        if self.source is not None:
            data["source"] = self.source.to_dict()
        return data


@dataclass(frozen=True)
class ProjectInfo:
    name: str
    description: str = ""


@dataclass(frozen=True)
class ManifestStats:
    total_tasks: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_tasks": self.total_tasks,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "blocked": self.blocked,
        }


def compute_stats(tasks: Iterable[Task]) -> ManifestStats:
    """Count tasks by status with a full scan."""
    counts = dict.fromkeys(TASK_STATUSES, 0)
    total = 0
    for task in tasks:
        counts[task.status] += 1
        total += 1
    return ManifestStats(
        total_tasks=total,
        completed=counts["completed"],
        in_progress=counts["in-progress"],
        pending=counts["pending"],
        blocked=counts["blocked"],
    )


@dataclass(frozen=True)
class Transaction:
    """One append-only history record."""

    id: str
    action: TransactionAction
    timestamp: str
    source: str
    tasks_added: tuple[str, ...] = ()
    tasks_removed: tuple[str, ...] = ()
    reverts: str | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        return cls(
            id=data["id"],
            action=data["action"],
            timestamp=data["timestamp"],
            source=data.get("source", ""),
            tasks_added=tuple(data.get("tasks_added", ())),
            tasks_removed=tuple(data.get("tasks_removed", ())),
            reverts=data.get("reverts"),
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "action": self.action,
            "timestamp": self.timestamp,
            "source": self.source,
            "tasks_added": list(self.tasks_added),
            "tasks_removed": list(self.tasks_removed),
        }
        if self.reverts is not None:
            data["reverts"] = self.reverts
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class Manifest:
    """The whole task manifest document."""

    version: str
    project: ProjectInfo
    stats: ManifestStats
    tasks: tuple[Task, ...] = ()
    history: tuple[Transaction, ...] = ()

    @classmethod
    def empty(cls, name: str, description: str = "") -> Manifest:
        return cls(
            version=MANIFEST_VERSION,
            project=ProjectInfo(name=name, description=description),
            stats=ManifestStats(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        project = data.get("project", {})
        stats = data.get("stats", {})
        return cls(
            version=data["version"],
            project=ProjectInfo(name=project.get("name", ""), description=project.get("description", "")),
            stats=ManifestStats(**{key: int(stats.get(key, 0)) for key in ManifestStats().to_dict()}),
            tasks=tuple(Task.from_dict(item) for item in data.get("tasks", ())),
            history=tuple(Transaction.from_dict(item) for item in data.get("history", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project": {"name": self.project.name, "description": self.project.description},
            "stats": self.stats.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
            "history": [entry.to_dict() for entry in self.history],
        }

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def find_transaction(self, transaction_id: str) -> Transaction | None:
        for entry in self.history:
            if entry.id == transaction_id:
                return entry
        return None

    def with_tasks(self, tasks: Iterable[Task]) -> Manifest:
        """Return a copy holding ``tasks`` with stats recomputed from scratch."""
        new_tasks = tuple(tasks)
        return replace(self, tasks=new_tasks, stats=compute_stats(new_tasks))

    def with_transaction(self, entry: Transaction) -> Manifest:
        return replace(self, history=(*self.history, entry))


@dataclass(frozen=True)
class CacheEntry:
    """One research-cache record, persisted as its own JSON file."""

    key: str
    query: str
    result: str
    tags: tuple[str, ...]
    timestamp: str
    ttl: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data["key"],
            query=data["query"],
            result=data["result"],
            tags=tuple(data.get("tags", ())),
            timestamp=data["timestamp"],
            ttl=int(data["ttl"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "query": self.query,
            "result": self.result,
            "tags": list(self.tags),
            "timestamp": self.timestamp,
            "ttl": self.ttl,
        }


@dataclass(frozen=True)
class IndexRef:
    """Dependency on another task of the same batch, by zero-based position."""

    index: int

    def __str__(self) -> str:
        return f"index {self.index}"


@dataclass(frozen=True)
class LiteralRef:
    """Dependency on an existing task id."""

    task_id: str

    def __str__(self) -> str:
        return self.task_id


DependencyRef = IndexRef | LiteralRef


@dataclass(frozen=True)
class ProposedTask:
    """A task awaiting ingestion: no permanent id yet."""

    title: str
    description: str
    estimated_hours: float
    acceptance_criteria: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    test_strategy: TestStrategy = "TDD"
    test_strategy_rationale: str = ""
    risk: Risk = "medium"
    files: TaskFiles = field(default_factory=TaskFiles)
    adr_source: str = ""
    spec_source: str = ""
    source: TaskSource | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProposedTask:
        refs: list[DependencyRef] = []
        for raw in data.get("dependencies", ()):
            # bool is an int subclass; schema validation has already rejected it
            if isinstance(raw, int):
                refs.append(IndexRef(raw))
            else:
                refs.append(LiteralRef(str(raw)))
        source = data.get("source")
        return cls(
            title=data["title"],
            description=data["description"],
            estimated_hours=data["estimated_hours"],
            acceptance_criteria=tuple(data.get("acceptance_criteria", ())),
            dependencies=tuple(dict.fromkeys(refs)),
            test_strategy=data.get("test_strategy", "TDD"),
            test_strategy_rationale=data.get("test_strategy_rationale", ""),
            risk=data.get("risk", "medium"),
            files=TaskFiles.from_dict(data.get("files")),
            adr_source=data.get("adr_source", ""),
            spec_source=data.get("spec_source", ""),
            source=TaskSource.from_dict(source) if source else None,
        )

    def to_task(self, task_id: str, dependencies: Iterable[str]) -> Task:
        return Task(
            id=task_id,
            title=self.title,
            description=self.description,
            acceptance_criteria=self.acceptance_criteria,
            dependencies=_dedupe(dependencies),
            test_strategy=self.test_strategy,
            test_strategy_rationale=self.test_strategy_rationale,
            risk=self.risk,
            estimated_hours=self.estimated_hours,
            files=self.files,
            adr_source=self.adr_source,
            spec_source=self.spec_source,
            source=self.source,
        )
