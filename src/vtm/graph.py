"""Pure dependency-graph queries over an in-memory manifest."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from vtm.models import task_sort_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from vtm.models import Manifest, Task


def _sorted_tasks(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=lambda task: task_sort_key(task.id))


def completed_ids(manifest: Manifest) -> set[str]:
    return {task.id for task in manifest.tasks if task.status == "completed"}


def ready_tasks(manifest: Manifest) -> list[Task]:
    """Pending tasks whose every dependency is completed."""
    done = completed_ids(manifest)
    return _sorted_tasks(
        task
        for task in manifest.tasks
        if task.status == "pending" and all(dep in done for dep in task.dependencies)
    )


def blocked_tasks(manifest: Manifest) -> list[Task]:
    """Pending tasks with an incomplete dependency, plus tasks marked blocked.

    A dependency id that no longer resolves counts as incomplete.
    """
    done = completed_ids(manifest)
    return _sorted_tasks(
        task
        for task in manifest.tasks
        if task.status == "blocked"
        or (task.status == "pending" and any(dep not in done for dep in task.dependencies))
    )


def build_adjacency(tasks: Iterable[Task]) -> dict[str, tuple[str, ...]]:
    """Map each task id to the ids it depends on."""
    return {task.id: task.dependencies for task in tasks}


def detect_cycle(edges: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return the first dependency cycle found as a closed path, else None.

    ``edges`` maps a node to the nodes it depends on. Targets absent from
    ``edges`` are treated as leaves. Nodes are visited in sorted id order so
    the reported cycle is deterministic.
    """
    adjacency = {node: sorted(set(targets), key=task_sort_key) for node, targets in edges.items()}
    state: dict[str, int] = {}  # 1 = on the current path, 2 = fully explored

    for root in sorted(adjacency, key=task_sort_key):
        if state.get(root):
            continue
        path: list[str] = [root]
        state[root] = 1
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, next_index = stack[-1]
            targets = adjacency[node]
            if next_index >= len(targets):
                stack.pop()
                path.pop()
                state[node] = 2
                continue
            stack[-1] = (node, next_index + 1)
            target = targets[next_index]
            if target not in adjacency:
                continue
            target_state = state.get(target, 0)
            if target_state == 1:
                return [*path[path.index(target):], target]
            if target_state == 0:
                state[target] = 1
                path.append(target)
                stack.append((target, 0))
    return None


def direct_dependents(manifest: Manifest, task_id: str) -> list[Task]:
    return _sorted_tasks(task for task in manifest.tasks if task_id in task.dependencies)


def transitive_dependents(manifest: Manifest, task_id: str) -> list[Task]:
    """Tasks whose dependency closure includes ``task_id`` (excluding itself)."""
    reverse: dict[str, list[str]] = {}
    for task in manifest.tasks:
        for dep in task.dependencies:
            reverse.setdefault(dep, []).append(task.id)

    seen: set[str] = set()
    queue = deque([task_id])
    while queue:
        current = queue.popleft()
        for dependent in reverse.get(current, ()):
            if dependent not in seen and dependent != task_id:
                seen.add(dependent)
                queue.append(dependent)

    return _sorted_tasks(task for task in manifest.tasks if task.id in seen)
