"""Read-only statistics derived from the task store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskclock.scheduler.models import TASK_TYPES

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskclock.scheduler.models import ExecutionRecord, ScheduledTask


@dataclass(frozen=True)
class SchedulerStats:
    total_tasks: int
    enabled_tasks: int
    disabled_tasks: int
    by_type: dict[str, int] = field(default_factory=dict)
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "enabledTasks": self.enabled_tasks,
            "disabledTasks": self.disabled_tasks,
            "byType": dict(self.by_type),
            "totalExecutions": self.total_executions,
            "successfulExecutions": self.successful_executions,
            "failedExecutions": self.failed_executions,
        }


def compute_stats(
    tasks: Iterable[ScheduledTask],
    history: Iterable[ExecutionRecord],
) -> SchedulerStats:
    """Count tasks by status and type, and retained executions by outcome."""
    by_type = dict.fromkeys(TASK_TYPES, 0)
    total = enabled = 0
    for task in tasks:
        total += 1
        enabled += task.enabled
        by_type[task.task_type] = by_type.get(task.task_type, 0) + 1

    succeeded = failed = 0
    for record in history:
        if record.success:
            succeeded += 1
        else:
            failed += 1

    return SchedulerStats(
        total_tasks=total,
        enabled_tasks=enabled,
        disabled_tasks=total - enabled,
        by_type=by_type,
        total_executions=succeeded + failed,
        successful_executions=succeeded,
        failed_executions=failed,
    )
