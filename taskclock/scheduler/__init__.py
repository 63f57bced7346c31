"""Scheduled task system — cron parsing, persistence, execution, and dispatch."""

from taskclock.scheduler.engine import ImportTasksResult, SchedulerEngine
from taskclock.scheduler.errors import PersistenceError, SchedulerError, TaskValidationError
from taskclock.scheduler.executor import TaskExecutor
from taskclock.scheduler.missed import find_missed_tasks
from taskclock.scheduler.models import ExecutionRecord, ExecutionResult, ScheduledTask
from taskclock.scheduler.store import TaskStore

__all__ = [
    "ExecutionRecord",
    "ExecutionResult",
    "ImportTasksResult",
    "PersistenceError",
    "ScheduledTask",
    "SchedulerEngine",
    "SchedulerError",
    "TaskExecutor",
    "TaskStore",
    "TaskValidationError",
    "find_missed_tasks",
]
