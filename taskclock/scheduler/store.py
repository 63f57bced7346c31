"""TaskStore — JSON-file persistence for scheduled tasks and execution history."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskclock.config import settings
from taskclock.scheduler.dependencies import check_dependencies
from taskclock.scheduler.errors import PersistenceError, TaskValidationError
from taskclock.scheduler.models import (
    ExecutionRecord,
    ScheduledTask,
    format_timestamp,
    next_run_for,
    utcnow,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

PERSISTENCE_VERSION = 1


def _is_valid_timezone(name: Any) -> bool:
    if not isinstance(name, str):
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _as_list(value: Any, key: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("Ignoring non-list %r in task file", key)
        return []
    return value


@dataclass
class ImportResult:
    imported_count: int = 0
    errors: list[str] = field(default_factory=list)


class TaskStore:
    """Persists scheduled tasks and their execution history in one JSON file.

    All reads are served from memory. Every mutation bumps a revision
    counter and is followed by an atomic save (temp file + ``os.replace``).
    A failed save is logged and leaves the store dirty, so the next
    ``flush()`` retries it. Memory stays authoritative in the meantime.

    Singleton accessed via ``TaskStore.get()``.  Pass an explicit *path*
    for test isolation (e.g. ``tmp_path / "tasks.json"``).
    """

    _instance: TaskStore | None = None

    def __init__(
        self,
        path: Path | None = None,
        *,
        history_limit: int | None = None,
        task_history_limit: int | None = None,
        timezone: str | None = None,
    ) -> None:
        self._path = path or settings.tasks_file
        self._history_limit = history_limit or settings.history_limit
        self._task_history_limit = task_history_limit or settings.task_history_limit
        self.timezone = timezone or settings.scheduler_timezone

        self._tasks: dict[str, ScheduledTask] = {}
        self._history: list[ExecutionRecord] = []
        self._latest: dict[str, ExecutionRecord] = {}
        self._persisted_next_runs: dict[str, datetime] = {}

        self._lock = asyncio.Lock()
        self._revision = 0
        self._saved_revision = 0
        self._loaded = False

    @classmethod
    def get(cls) -> TaskStore:
        """Return the shared TaskStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def dirty(self) -> bool:
        return self._revision != self._saved_revision

    def _touch(self) -> None:
        self._revision += 1

    # -- Lifecycle -------------------------------------------------------------

    async def load(self, now: datetime | None = None) -> int:
        """Read the task file, recomputing every ``next_run`` from *now*.

        Persisted ``nextRun`` values are kept aside (see
        ``persisted_next_run``) for missed-run detection only.
        Returns the number of tasks loaded.
        """
        now = now or utcnow()
        try:
            raw = await asyncio.to_thread(self._read)
        except OSError:
            logger.exception("Failed to read task file %s; starting empty", self._path)
            self._loaded = True
            return 0

        if raw is None:
            logger.info("No task file at %s, starting fresh", self._path)
            self._loaded = True
            return 0

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                msg = "top-level value is not an object"
                raise ValueError(msg)
        except ValueError:
            logger.exception("Task file %s is corrupt; starting empty", self._path)
            try:
                backup = await asyncio.to_thread(self._quarantine)
                logger.warning("Corrupt task file moved to %s", backup)
            except OSError:
                logger.exception("Could not move corrupt task file aside")
            self._loaded = True
            return 0

        if data.get("version") != PERSISTENCE_VERSION:
            logger.warning(
                "Task file version mismatch (file: %s, current: %s)",
                data.get("version"),
                PERSISTENCE_VERSION,
            )
        file_timezone = data.get("timezone")
        if file_timezone:
            if _is_valid_timezone(file_timezone):
                self.timezone = file_timezone
            else:
                logger.warning(
                    "Ignoring invalid timezone %r in %s; using %s",
                    file_timezone,
                    self._path,
                    self.timezone,
                )

        for entry in _as_list(data.get("tasks"), "tasks"):
            try:
                task = ScheduledTask.from_dict(entry)
            except TaskValidationError as exc:
                logger.warning("Skipping invalid task in %s: %s", self._path, exc)
                continue
            if task.next_run is not None:
                self._persisted_next_runs[task.id] = task.next_run
            task.next_run = next_run_for(task, now, self.timezone)
            self._tasks[task.id] = task

        for entry in _as_list(data.get("history"), "history"):
            try:
                self._history.append(ExecutionRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed history entry: %r", entry)
        latest = data.get("latest") or {}
        if not isinstance(latest, dict):
            logger.warning("Ignoring non-object 'latest' in task file")
            latest = {}
        for task_id, entry in latest.items():
            with contextlib.suppress(KeyError, TypeError, ValueError):
                self._latest[task_id] = ExecutionRecord.from_dict(entry)
        for record in self._history:
            current = self._latest.get(record.task_id)
            if current is None or record.executed_at >= current.executed_at:
                self._latest[record.task_id] = record

        self._loaded = True
        enabled = sum(1 for t in self._tasks.values() if t.enabled)
        logger.info(
            "Loaded %d task(s) (%d enabled) from %s", len(self._tasks), enabled, self._path
        )
        return len(self._tasks)

    async def save(self) -> None:
        """Atomically write the current state. Raises PersistenceError."""
        async with self._lock:
            revision = self._revision
            text = json.dumps(self._snapshot(), indent=2)
            try:
                await asyncio.to_thread(self._write_atomic, text)
            except OSError as exc:
                msg = f"Failed to write {self._path}: {exc}"
                raise PersistenceError(msg) from exc
            self._saved_revision = max(self._saved_revision, revision)

    async def flush(self) -> bool:
        """Save if there are unsaved changes. Returns False if the save failed."""
        if not self.dirty:
            return True
        try:
            await self.save()
        except PersistenceError:
            logger.exception("Task store flush failed; will retry")
            return False
        return True

    async def close(self) -> None:
        await self.flush()

    # -- File I/O --------------------------------------------------------------

    def _read(self) -> str | None:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    def _quarantine(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        backup = self._path.with_name(f"{self._path.name}.corrupt-{stamp}")
        os.replace(self._path, backup)
        return backup

    def _write_atomic(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    def _snapshot(self, *, include_history: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": PERSISTENCE_VERSION,
            "timezone": self.timezone,
            "savedAt": format_timestamp(utcnow()),
            "tasks": [task.to_dict() for task in self._tasks.values()],
        }
        if include_history:
            data["history"] = [record.to_dict() for record in self._history]
            data["latest"] = {
                task_id: record.to_dict()
                for task_id, record in self._latest.items()
                if task_id in self._tasks
            }
        return data

    async def _commit(self) -> None:
        self._touch()
        await self.flush()

    # -- Tasks -----------------------------------------------------------------

    def get_task(self, task_id: str) -> ScheduledTask | None:
        """Fetch a task by ID, or None if not found."""
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[ScheduledTask]:
        """Return all tasks in creation order."""
        return sorted(self._tasks.values(), key=lambda t: t.created_at)

    def list_enabled_tasks(self) -> list[ScheduledTask]:
        return [t for t in self.list_tasks() if t.enabled]

    def list_tasks_by_type(self, task_type: str) -> list[ScheduledTask]:
        return [t for t in self.list_tasks() if t.task_type == task_type]

    def tasks_by_id(self) -> dict[str, ScheduledTask]:
        return dict(self._tasks)

    def persisted_next_run(self, task_id: str) -> datetime | None:
        """The ``nextRun`` that was on disk when the store was loaded."""
        return self._persisted_next_runs.get(task_id)

    async def add_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a new task. Returns the same task object."""
        if task.id in self._tasks:
            msg = f"Task id already exists: {task.id}"
            raise TaskValidationError(msg)
        self._tasks[task.id] = task
        await self._commit()
        logger.info("Added scheduled task: %s (%s)", task.name, task.id)
        return task

    async def replace_task(self, task: ScheduledTask) -> None:
        """Persist changes to an existing task."""
        self._tasks[task.id] = task
        await self._commit()

    async def delete_task(self, task_id: str) -> bool:
        """Hard-delete a task. Returns True if it existed."""
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self._latest.pop(task_id, None)
        self._persisted_next_runs.pop(task_id, None)
        await self._commit()
        logger.info("Deleted task: %s (%s)", task.name, task_id)
        return True

    async def set_timezone(self, timezone: str) -> None:
        self.timezone = timezone
        await self._commit()

    # -- Execution history -----------------------------------------------------

    async def record_execution(self, record: ExecutionRecord, task: ScheduledTask) -> None:
        """Append *record* and persist the updated *task* in a single save."""
        self._append_record(record)
        if task.id in self._tasks:
            self._tasks[task.id] = task
        await self._commit()

    def _append_record(self, record: ExecutionRecord) -> None:
        self._history.append(record)
        self._latest[record.task_id] = record

        positions = [i for i, r in enumerate(self._history) if r.task_id == record.task_id]
        excess = len(positions) - self._task_history_limit
        if excess > 0:
            for index in reversed(positions[:excess]):
                del self._history[index]

        overflow = len(self._history) - self._history_limit
        if overflow > 0:
            del self._history[:overflow]

    def latest_record(self, task_id: str) -> ExecutionRecord | None:
        return self._latest.get(task_id)

    def get_history(self, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent *limit* records across all tasks, oldest first."""
        if limit <= 0:
            return []
        return list(self._history[-limit:])

    def get_task_history(self, task_id: str, limit: int = 20) -> list[ExecutionRecord]:
        if limit <= 0:
            return []
        return [r for r in self._history if r.task_id == task_id][-limit:]

    def history(self) -> list[ExecutionRecord]:
        return list(self._history)

    # -- Import / export -------------------------------------------------------

    def export_all(self) -> str:
        """Serialize every task (without history) to a JSON document."""
        return json.dumps(self._snapshot(include_history=False), indent=2)

    async def import_all(
        self,
        data: str,
        *,
        merge: bool = True,
        now: datetime | None = None,
    ) -> ImportResult:
        """Load tasks from an exported document.

        Each entry is validated on its own; bad entries are reported in
        ``errors`` and skipped. With *merge* the entries are upserted by id,
        otherwise they replace the whole task set in one step.
        Raises TaskValidationError if *data* is not a task document at all.
        """
        now = now or utcnow()
        try:
            parsed = json.loads(data)
        except ValueError as exc:
            msg = f"Failed to parse import data: {exc}"
            raise TaskValidationError(msg) from exc

        entries = parsed.get("tasks") if isinstance(parsed, dict) else parsed
        if not isinstance(entries, list):
            msg = "Import data has no 'tasks' list"
            raise TaskValidationError(msg)

        result = ImportResult()
        incoming: dict[str, ScheduledTask] = {}
        for index, entry in enumerate(entries):
            label = entry.get("name", f"#{index}") if isinstance(entry, dict) else f"#{index}"
            try:
                task = ScheduledTask.from_dict(entry)
            except TaskValidationError as exc:
                result.errors.append(f'Failed to import task "{label}": {exc}')
                continue
            if task.id in incoming:
                result.errors.append(f'Duplicate task id in import: "{task.id}"')
                continue
            incoming[task.id] = task

        combined = {**self._tasks, **incoming} if merge else dict(incoming)
        # Dropping one task can orphan another's dependency, so repeat until stable
        rejected = True
        while rejected:
            rejected = False
            for task_id in list(incoming):
                try:
                    check_dependencies(task_id, incoming[task_id].dependencies, combined)
                except TaskValidationError as exc:
                    result.errors.append(f'Failed to import task "{incoming[task_id].name}": {exc}')
                    del incoming[task_id]
                    if merge and task_id in self._tasks:
                        combined[task_id] = self._tasks[task_id]
                    else:
                        combined.pop(task_id, None)
                    rejected = True

        for task in incoming.values():
            task.next_run = next_run_for(task, now, self.timezone)

        if merge:
            self._tasks.update(incoming)
        else:
            self._tasks = dict(incoming)
            self._latest = {k: v for k, v in self._latest.items() if k in self._tasks}
            self._persisted_next_runs.clear()

        result.imported_count = len(incoming)
        await self._commit()
        logger.info(
            "Imported %d task(s) (merge=%s, %d error(s))",
            result.imported_count,
            merge,
            len(result.errors),
        )
        return result

