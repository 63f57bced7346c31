"""SchedulerEngine — the dispatch loop and the public scheduling API."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskclock.config import settings
from taskclock.scheduler.cron import CronValidation, validate_cron
from taskclock.scheduler.dependencies import check_dependencies, has_fresh_upstream, is_ready
from taskclock.scheduler.errors import TaskValidationError
from taskclock.scheduler.missed import find_missed_tasks
from taskclock.scheduler.models import (
    ExecutionRecord,
    ExecutionResult,
    ScheduledTask,
    build_dependencies,
    build_metadata,
    build_retry_config,
    check_cron,
    make_task_id,
    next_run_for,
    utcnow,
)
from taskclock.scheduler.stats import SchedulerStats, compute_stats

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from taskclock.scheduler.executor import TaskExecutor
    from taskclock.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "task already running"
NOT_FOUND = "task not found"

_UPDATABLE_FIELDS = frozenset(
    {"name", "cron_expression", "metadata", "enabled", "dependencies", "retry_config"}
)
_STOP_GRACE_SECONDS = 5.0

# Heap entry kinds
_SCHEDULED = "scheduled"
_EXTRA = "extra"


@dataclass
class ImportTasksResult:
    success: bool
    imported: int = 0
    errors: list[str] = field(default_factory=list)


class SchedulerEngine:
    """Owns the dispatch loop and exposes task lifecycle operations.

    One coroutine makes every scheduling decision. It keeps a min-heap of
    ``(due_time, seq, task_id, kind)`` entries and sleeps until the earliest
    one, or at most ``tick_seconds``. Mutations wake it early. Stale heap
    entries are discarded lazily when popped.

    Each execution runs as its own asyncio task. ``_in_flight`` holds the
    ids currently executing; a trigger or ``run_task_now`` for an id already
    in it is coalesced away, never queued. All task mutations happen on the
    event loop between awaits, so two writes to the same task never overlap.

    Args:
        store: TaskStore for persistence.
        executor: TaskExecutor to run tasks.
        clock: Returns the current time (aware datetime). Injected for tests.
        tick_seconds: Maximum sleep between dispatch passes.
        autosave_seconds: How often unsaved changes are retried.
        catch_up_missed: Give tasks that missed triggers while the process
            was down one immediate run on startup.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: TaskExecutor,
        *,
        clock: Callable[[], datetime] | None = None,
        tick_seconds: float | None = None,
        autosave_seconds: float | None = None,
        catch_up_missed: bool | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or utcnow
        self._tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self._autosave_seconds = autosave_seconds or settings.scheduler_autosave_seconds
        self._catch_up_missed = (
            settings.scheduler_catch_up_missed if catch_up_missed is None else catch_up_missed
        )

        self._heap: list[tuple[datetime, int, str, str]] = []
        self._seq = itertools.count()
        self._extra_due: dict[str, datetime] = {}
        self._gated: set[str] = set()
        self._in_flight: set[str] = set()
        self._jobs: set[asyncio.Task] = set()

        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._running = False
        self._recovered = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def store(self) -> TaskStore:
        return self._store

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Load the store if needed, queue catch-up runs, and start the loop."""
        if self._running:
            return
        if not self._store.loaded:
            await self._store.load(now=self._clock())
        self._reindex()

        if self._catch_up_missed and not self._recovered:
            now = self._clock()
            for task in find_missed_tasks(self._store, now):
                self._push_extra(task.id, now)
        self._recovered = True

        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="taskclock-dispatch")
        logger.info(
            "Scheduler started with %d enabled task(s) (tz=%s)",
            len(self._store.list_enabled_tasks()),
            self._store.timezone,
        )

    async def stop(self) -> None:
        """Stop the loop, give running tasks a moment, and flush the store."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if self._jobs:
            _, pending = await asyncio.wait(self._jobs, timeout=_STOP_GRACE_SECONDS)
            for job in pending:
                job.cancel()
        await self._store.close()
        logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for every in-progress execution to finish."""
        while self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)

    # -- Dispatch loop ---------------------------------------------------------

    async def _run_loop(self) -> None:
        last_autosave = time.monotonic()
        while self._running:
            self._wakeup.clear()
            try:
                self.dispatch_due()
            except Exception:
                logger.exception("Dispatch pass failed")

            if time.monotonic() - last_autosave >= self._autosave_seconds:
                await self._store.flush()
                last_autosave = time.monotonic()

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_delay())

    def _next_delay(self) -> float:
        delay = self._tick_seconds
        if self._heap:
            until = (self._heap[0][0] - self._clock()).total_seconds()
            delay = max(0.0, min(delay, until))
        return delay

    def dispatch_due(self) -> list[str]:
        """Run one dispatch pass. Returns the ids whose execution started."""
        now = self._clock()
        started = []
        for task in self._collect_due(now):
            if self._try_dispatch(task):
                started.append(task.id)
        return started

    def _collect_due(self, now: datetime) -> list[ScheduledTask]:
        due: dict[str, ScheduledTask] = {}

        while self._heap and self._heap[0][0] <= now:
            when, _, task_id, kind = heapq.heappop(self._heap)
            task = self._store.get_task(task_id)
            if task is None or not task.enabled:
                continue
            if kind == _EXTRA and self._extra_due.get(task_id) != when:
                continue
            if kind == _SCHEDULED and task.next_run != when:
                continue
            due[task_id] = task

        for task_id in list(self._gated):
            task = self._store.get_task(task_id)
            if task is None or not self._still_due(task, now):
                self._gated.discard(task_id)
                continue
            due.setdefault(task_id, task)

        for task in self._store.list_enabled_tasks():
            if task.is_dependency_only:
                due.setdefault(task.id, task)

        return list(due.values())

    def _still_due(self, task: ScheduledTask, now: datetime) -> bool:
        if not task.enabled:
            return False
        if task.next_run is not None and task.next_run <= now:
            return True
        extra = self._extra_due.get(task.id)
        return extra is not None and extra <= now

    def _try_dispatch(self, task: ScheduledTask) -> bool:
        if task.id in self._in_flight:
            logger.debug("Task %s is already running; coalescing trigger", task.id)
            self._gated.discard(task.id)
            self._extra_due.pop(task.id, None)
            return False

        if task.is_dependency_only:
            if not (has_fresh_upstream(task, self._store) and is_ready(task, self._store)):
                return False
        elif not is_ready(task, self._store):
            if task.id not in self._gated:
                logger.debug("Dependencies not met for '%s' (%s); waiting", task.name, task.id)
            self._gated.add(task.id)
            return False

        self._gated.discard(task.id)
        self._extra_due.pop(task.id, None)
        self._in_flight.add(task.id)
        job = asyncio.create_task(self._execute(task.id), name=f"taskclock-run-{task.id}")
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return True

    async def _execute(self, task_id: str) -> ExecutionResult:
        """Run a task the caller has already marked in-flight, then record it."""
        try:
            task = self._store.get_task(task_id)
            if task is None:
                return ExecutionResult(success=False, error=NOT_FOUND)
            try:
                result = await self._executor.execute(task)
            except Exception as exc:
                logger.exception("Executor raised for task %s", task_id)
                result = ExecutionResult(success=False, error=str(exc) or type(exc).__name__)
            await self._complete(task_id, result)
            return result
        finally:
            self._in_flight.discard(task_id)
            self._wakeup.set()

    async def _complete(self, task_id: str, result: ExecutionResult) -> None:
        now = self._clock()
        task = self._store.get_task(task_id)
        if task is None:
            logger.info("Task %s was cancelled while running; result dropped", task_id)
            return

        record = ExecutionRecord(
            task_id=task_id,
            executed_at=now,
            success=result.success,
            result=result.result if result.result is not None else result.message,
            error=result.error,
        )
        task.last_run = now
        task.run_count += 1

        retrying = False
        retry = task.retry_config
        if retry is not None:
            if result.success:
                retry.retry_count = 0
                self._extra_due.pop(task_id, None)
            elif not retry.exhausted and task.enabled:
                delay = retry.next_delay_seconds()
                retry.retry_count += 1
                self._push_extra(task_id, now + timedelta(seconds=delay))
                retrying = True
                logger.info(
                    "Retrying task '%s' in %.1fs (attempt %d/%d)",
                    task.name,
                    delay,
                    retry.retry_count,
                    retry.max_retries,
                )

        task.next_run = next_run_for(task, now, self._store.timezone)
        await self._store.record_execution(record, task)
        self._push(task)

        if not result.success and not retrying and task.notify_on_error:
            await self._executor.notify_failure(task, result.error)

    # -- Heap maintenance ------------------------------------------------------

    def _push(self, task: ScheduledTask) -> None:
        if task.enabled and task.next_run is not None:
            heapq.heappush(self._heap, (task.next_run, next(self._seq), task.id, _SCHEDULED))

    def _push_extra(self, task_id: str, when: datetime) -> None:
        self._extra_due[task_id] = when
        heapq.heappush(self._heap, (when, next(self._seq), task_id, _EXTRA))

    def _forget(self, task_id: str) -> None:
        self._gated.discard(task_id)
        self._extra_due.pop(task_id, None)

    def _reindex(self) -> None:
        """Rebuild the heap from the store."""
        self._heap = [
            (task.next_run, next(self._seq), task.id, _SCHEDULED)
            for task in self._store.list_enabled_tasks()
            if task.next_run is not None
        ]
        self._heap.extend(
            (when, next(self._seq), task_id, _EXTRA)
            for task_id, when in self._extra_due.items()
        )
        heapq.heapify(self._heap)
        self._wakeup.set()

    # -- Task management -------------------------------------------------------

    async def schedule_task(
        self,
        name: str,
        task_type: str,
        cron_expression: str | None,
        metadata: dict[str, Any] | Any,
        enabled: bool = True,
        dependencies: dict[str, Any] | Any | None = None,
        retry_config: dict[str, Any] | Any | None = None,
    ) -> ScheduledTask:
        """Validate, persist, and schedule a new task. Raises TaskValidationError."""
        if not name or not name.strip():
            msg = "Task name is required"
            raise TaskValidationError(msg)
        meta = build_metadata(task_type, metadata)
        deps = build_dependencies(dependencies)
        cron_expression = (cron_expression or "").strip()
        check_cron(cron_expression, deps)

        task_id = make_task_id()
        while self._store.get_task(task_id) is not None:
            task_id = make_task_id()
        check_dependencies(task_id, deps, self._store.tasks_by_id())

        now = self._clock()
        task = ScheduledTask(
            id=task_id,
            name=name.strip(),
            task_type=task_type,
            cron_expression=cron_expression,
            metadata=meta,
            enabled=enabled,
            created_at=now,
            dependencies=deps,
            retry_config=build_retry_config(retry_config),
        )
        task.next_run = next_run_for(task, now, self._store.timezone)

        await self._store.add_task(task)
        self._push(task)
        self._wakeup.set()
        logger.info(
            "Scheduled task: %s (%s) type=%s next_run=%s",
            task.name,
            task.id,
            task.task_type,
            task.next_run.isoformat() if task.next_run else None,
        )
        return task

    async def schedule_script(
        self,
        name: str,
        cron_expression: str,
        script_path: str,
        args: list[str] | None = None,
    ) -> ScheduledTask:
        command = f"{script_path} {' '.join(args)}" if args else script_path
        return await self.schedule_task(
            name, "script", cron_expression, {"target": script_path, "command": command}
        )

    async def schedule_agent_task(
        self,
        name: str,
        cron_expression: str,
        agent_name: str,
        description: str,
    ) -> ScheduledTask:
        return await self.schedule_task(
            name, "agent", cron_expression, {"agentName": agent_name, "description": description}
        )

    async def schedule_reminder(
        self,
        name: str,
        cron_expression: str,
        message: str,
        target_agent: str | None = None,
        chat_id: str | None = None,
    ) -> ScheduledTask:
        metadata: dict[str, Any] = {"message": message, "agentName": target_agent}
        if chat_id:
            metadata["chatId"] = chat_id
        return await self.schedule_task(name, "reminder", cron_expression, metadata)

    async def schedule_command(self, name: str, cron_expression: str, command: str) -> ScheduledTask:
        return await self.schedule_task(name, "command", cron_expression, {"command": command})

    async def schedule_webhook(
        self,
        name: str,
        cron_expression: str,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> ScheduledTask:
        return await self.schedule_task(
            name,
            "webhook",
            cron_expression,
            {"url": url, "method": method, "headers": headers or {}, "body": body},
        )

    async def update_task(self, task_id: str, **changes: Any) -> ScheduledTask | None:
        """Apply partial changes. Returns None if the task does not exist.

        Accepts ``name``, ``cron_expression``, ``metadata``, ``enabled``,
        ``dependencies`` and ``retry_config``. Raises TaskValidationError.
        """
        task = self._store.get_task(task_id)
        if task is None:
            return None

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
            raise TaskValidationError(msg)

        updated = dataclasses.replace(task)
        if "name" in changes:
            if not changes["name"] or not str(changes["name"]).strip():
                msg = "Task name is required"
                raise TaskValidationError(msg)
            updated.name = str(changes["name"]).strip()
        if "metadata" in changes:
            updated.metadata = build_metadata(task.task_type, changes["metadata"])
        if "dependencies" in changes:
            updated.dependencies = build_dependencies(changes["dependencies"])
        if "retry_config" in changes:
            updated.retry_config = build_retry_config(changes["retry_config"])
        if "cron_expression" in changes:
            updated.cron_expression = (changes["cron_expression"] or "").strip()
        if "enabled" in changes:
            updated.enabled = bool(changes["enabled"])

        check_cron(updated.cron_expression, updated.dependencies)
        if "dependencies" in changes:
            check_dependencies(task_id, updated.dependencies, self._store.tasks_by_id())

        if updated.cron_expression != task.cron_expression or updated.enabled != task.enabled:
            updated.next_run = next_run_for(updated, self._clock(), self._store.timezone)
            self._forget(task_id)

        await self._store.replace_task(updated)
        self._push(updated)
        self._wakeup.set()
        logger.info("Updated task: %s (%s) fields=%s", updated.name, task_id, sorted(changes))
        return updated

    async def cancel_task(self, task_id: str) -> bool:
        """Delete a task permanently. Returns False if it does not exist.

        The id is removed from every dependent task's ``task_ids``; a
        dependent left with no ids loses its dependency gate. Raises
        TaskValidationError instead when the task is the only trigger of a
        dependency-only task, which would otherwise never run again.
        """
        if self._store.get_task(task_id) is None:
            return False

        dependents = [
            task
            for task in self._store.list_tasks()
            if task.dependencies is not None and task_id in task.dependencies.task_ids
        ]
        stranded = [
            task.id
            for task in dependents
            if task.is_dependency_only and len(task.dependencies.task_ids) == 1
        ]
        if stranded:
            msg = f"Cannot cancel {task_id}: it is the only trigger of {', '.join(stranded)}"
            raise TaskValidationError(msg)

        for dependent in dependents:
            remaining = [i for i in dependent.dependencies.task_ids if i != task_id]
            dependent.dependencies = (
                dependent.dependencies.model_copy(update={"task_ids": remaining})
                if remaining
                else None
            )
            await self._store.replace_task(dependent)
            logger.info("Dropped dependency on %s from task %s", task_id, dependent.id)

        deleted = await self._store.delete_task(task_id)
        if deleted:
            self._forget(task_id)
            self._wakeup.set()
            logger.info("Cancelled task: %s", task_id)
        return deleted

    async def pause_task(self, task_id: str) -> bool:
        """Disable a task and clear its next run. Run history is untouched."""
        task = self._store.get_task(task_id)
        if task is None:
            return False
        task.enabled = False
        task.next_run = None
        self._forget(task_id)
        await self._store.replace_task(task)
        logger.info("Paused task: %s (%s)", task.name, task_id)
        return True

    async def resume_task(self, task_id: str) -> bool:
        """Re-enable a task. Its next run is computed from now, never backdated."""
        task = self._store.get_task(task_id)
        if task is None:
            return False
        task.enabled = True
        task.next_run = next_run_for(task, self._clock(), self._store.timezone)
        await self._store.replace_task(task)
        self._push(task)
        self._wakeup.set()
        logger.info("Resumed task: %s (%s)", task.name, task_id)
        return True

    async def run_task_now(self, task_id: str) -> ExecutionResult:
        """Execute a task immediately, outside its schedule and dependency gate.

        Shares the in-flight guard with the dispatch loop.
        """
        if self._store.get_task(task_id) is None:
            return ExecutionResult(success=False, error=NOT_FOUND)
        if task_id in self._in_flight:
            return ExecutionResult(success=False, error=ALREADY_RUNNING)
        self._in_flight.add(task_id)
        return await self._execute(task_id)

    # -- Queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self._store.get_task(task_id)

    def get_all_tasks(self) -> list[ScheduledTask]:
        return self._store.list_tasks()

    def get_tasks_by_type(self, task_type: str) -> list[ScheduledTask]:
        return self._store.list_tasks_by_type(task_type)

    def get_enabled_tasks(self) -> list[ScheduledTask]:
        return self._store.list_enabled_tasks()

    def is_running(self, task_id: str) -> bool:
        return task_id in self._in_flight

    def get_stats(self) -> SchedulerStats:
        return compute_stats(self._store.list_tasks(), self._store.history())

    def get_execution_history(self, limit: int = 50) -> list[ExecutionRecord]:
        return self._store.get_history(limit)

    def get_task_history(self, task_id: str, limit: int = 20) -> list[ExecutionRecord]:
        return self._store.get_task_history(task_id, limit)

    def validate_cron_expression(self, expression: str) -> CronValidation:
        return validate_cron(expression)

    def is_ready(self) -> bool:
        """True once the store has been loaded."""
        return self._store.loaded

    def get_tasks_file_path(self) -> Path:
        return self._store.path

    # -- Import / export -------------------------------------------------------

    def export_tasks(self) -> str:
        return self._store.export_all()

    async def import_tasks(self, data: str, merge: bool = True) -> ImportTasksResult:
        """Import an exported document. Never raises for bad input."""
        try:
            result = await self._store.import_all(data, merge=merge, now=self._clock())
        except TaskValidationError as exc:
            logger.warning("Import rejected: %s", exc)
            return ImportTasksResult(success=False, errors=[str(exc)])

        if not merge:
            self._gated.clear()
            self._extra_due.clear()
        self._reindex()
        return ImportTasksResult(
            success=True, imported=result.imported_count, errors=result.errors
        )

    # -- Timezone --------------------------------------------------------------

    def get_timezone(self) -> str:
        return self._store.timezone

    async def set_timezone(self, timezone: str) -> None:
        """Switch the scheduling timezone and recompute every next run."""
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"Invalid timezone: {timezone}"
            raise TaskValidationError(msg) from exc

        now = self._clock()
        for task in self._store.list_tasks():
            task.next_run = next_run_for(task, now, timezone)
        await self._store.set_timezone(timezone)
        self._reindex()
        logger.info("Timezone set to %s", timezone)
