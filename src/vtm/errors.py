"""Error taxonomy for manifest, ingestion, cache and history operations.

Every error carries a stable ``reason_code``, a distinct process ``exit_code``
and an actionable ``remedy`` so the CLI can map kinds without string matching.
"""

from __future__ import annotations

from collections.abc import Sequence


class VtmError(RuntimeError):
    """Base class for all VTM failures."""

    reason_code: str = "VTM_ERROR"
    exit_code: int = 1
    remedy: str = ""

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        if remedy is not None:
            self.remedy = remedy


class InitializationError(VtmError):
    """No manifest exists at the configured path."""

    reason_code = "MANIFEST_MISSING"
    exit_code = 3
    remedy = "Run `vtm init` to create a manifest."


class CorruptionError(VtmError):
    """The manifest exists but cannot be parsed or fails its schema."""

    reason_code = "MANIFEST_CORRUPT"
    exit_code = 4
    remedy = "Restore the manifest from version control or fix the reported fields."


class NotFoundError(VtmError):
    """Unknown task or transaction id."""

    reason_code = "NOT_FOUND"
    exit_code = 5
    remedy = "Check the id with `vtm list` or `vtm history list`."


class ValidationError(VtmError):
    """One or more documents failed validation; all violations are collected."""

    reason_code = "VALIDATION_FAILED"
    exit_code = 6
    remedy = "Fix every listed violation and retry."

    def __init__(self, message: str, errors: Sequence[str] = (), *, remedy: str | None = None) -> None:
        self.errors: tuple[str, ...] = tuple(errors)
        if self.errors:
            message = message + "\n" + "\n".join(f"  - {error}" for error in self.errors)
        super().__init__(message, remedy=remedy)


class DependencyError(VtmError):
    """A dependency reference cannot be resolved."""

    reason_code = "DEPENDENCY_UNRESOLVED"
    exit_code = 7
    remedy = "Reference an existing task id or a valid index into the batch."

    def __init__(self, missing: Sequence[tuple[str, str]]) -> None:
        self.missing: tuple[tuple[str, str], ...] = tuple(missing)
        lines = [f"  - {task}: missing dependency {reference}" for task, reference in self.missing]
        super().__init__("Unresolvable dependency references:\n" + "\n".join(lines))


class CycleError(VtmError):
    """Accepting the batch would introduce a dependency cycle."""

    reason_code = "DEPENDENCY_CYCLE"
    exit_code = 8
    remedy = "Remove one of the dependencies along the reported cycle."

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle: tuple[str, ...] = tuple(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class RollbackBlockedError(VtmError):
    """Rolling back would orphan tasks outside the transaction."""

    reason_code = "ROLLBACK_BLOCKED"
    exit_code = 9
    remedy = "Roll back the dependent transactions first, or pass --force."

    def __init__(self, transaction_id: str, dependents: Sequence[str]) -> None:
        self.transaction_id = transaction_id
        self.dependents: tuple[str, ...] = tuple(dependents)
        super().__init__(
            f"Cannot roll back {transaction_id}: "
            f"{len(self.dependents)} task(s) depend on it: {', '.join(self.dependents)}"
        )


class WriteError(VtmError):
    """Atomic persistence failed; the previous file is untouched."""

    reason_code = "WRITE_FAILED"
    exit_code = 10
    remedy = "Check permissions and free space for the manifest directory."


ERROR_KINDS: tuple[type[VtmError], ...] = (
    InitializationError,
    CorruptionError,
    NotFoundError,
    ValidationError,
    DependencyError,
    CycleError,
    RollbackBlockedError,
    WriteError,
)
