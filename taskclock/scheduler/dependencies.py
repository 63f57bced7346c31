"""Dependency gating — readiness checks and cycle detection.

Readiness always looks at the most recent ExecutionRecord of each referenced
task, regardless of its age.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskclock.scheduler.errors import TaskValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from taskclock.scheduler.models import ScheduledTask, TaskDependencies
    from taskclock.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


def is_ready(task: ScheduledTask, store: TaskStore) -> bool:
    """Decide whether *task*'s dependencies allow it to run now.

    * no dependencies: always ready
    * ``on_failure="skip"``: ``all`` needs every referenced task's latest
      record to be a success, ``any`` needs at least one
    * ``on_failure="run"``: ordering gate only; every referenced task must
      have run at least once, whatever the outcome

    A referenced task without any record counts as not ready.
    """
    deps = task.dependencies
    if deps is None:
        return True

    latest = [store.latest_record(dep_id) for dep_id in deps.task_ids]

    if deps.on_failure == "run":
        return all(record is not None for record in latest)

    outcomes = [record is not None and record.success for record in latest]
    if deps.mode == "any":
        return any(outcomes)
    return all(outcomes)


def has_fresh_upstream(task: ScheduledTask, store: TaskStore) -> bool:
    """True when some referenced task has run since *task* last ran.

    Dependency-only tasks have no schedule of their own, so this is what
    stops them from re-firing on every tick off the same upstream outcome.
    """
    deps = task.dependencies
    if deps is None:
        return False
    for dep_id in deps.task_ids:
        record = store.latest_record(dep_id)
        if record is None:
            continue
        if task.last_run is None or record.executed_at > task.last_run:
            return True
    return False


def find_cycle(
    task_id: str,
    dependency_ids: Iterable[str],
    graph: Mapping[str, Iterable[str]],
) -> list[str] | None:
    """Return a dependency path leading back to *task_id*, or None.

    *graph* maps every other task id to the ids it depends on. The edges of
    *task_id* itself come from *dependency_ids*, so an update can be checked
    before it is applied.
    """
    stack = [(dep_id, [task_id, dep_id]) for dep_id in dependency_ids]
    seen: set[str] = set()
    while stack:
        current, path = stack.pop()
        if current == task_id:
            return path
        if current in seen:
            continue
        seen.add(current)
        for next_id in graph.get(current, ()):
            stack.append((next_id, [*path, next_id]))
    return None


def check_dependencies(
    task_id: str,
    dependencies: TaskDependencies | None,
    tasks: Mapping[str, ScheduledTask],
) -> None:
    """Reject unknown references and cycles. Raises TaskValidationError."""
    if dependencies is None:
        return

    unknown = [dep_id for dep_id in dependencies.task_ids if dep_id not in tasks]
    if unknown:
        msg = f"Unknown dependency task id(s): {', '.join(unknown)}"
        raise TaskValidationError(msg)

    graph = {
        other_id: other.dependencies.task_ids
        for other_id, other in tasks.items()
        if other_id != task_id and other.dependencies is not None
    }
    cycle = find_cycle(task_id, dependencies.task_ids, graph)
    if cycle:
        msg = f"Dependency cycle detected: {' -> '.join(cycle)}"
        raise TaskValidationError(msg)
