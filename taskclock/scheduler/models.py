"""ScheduledTask, metadata variants, and execution record models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from taskclock.scheduler.cron import CronParseError, next_trigger, parse_cron
from taskclock.scheduler.errors import TaskValidationError

TaskType = Literal["script", "agent", "reminder", "command", "webhook"]
TASK_TYPES: tuple[str, ...] = ("script", "agent", "reminder", "command", "webhook")


def utcnow() -> datetime:
    return datetime.now(UTC)


def make_task_id() -> str:
    """Generate a new task ID."""
    return f"task-{uuid.uuid4().hex[:12]}"


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 timestamp. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _error_summary(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in exc.errors()
    )


# -- Metadata variants -----------------------------------------------------------


class TaskMetadata(BaseModel):
    """Fields shared by every task type.

    Keys are camelCase on the wire (``notifyOnError``) and snake_case in
    Python. Unknown keys are preserved so callers can stash their own context.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    notify_on_error: bool = False
    chat_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("chat_id", mode="before")
    @classmethod
    def _chat_id_to_str(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ScriptMetadata(TaskMetadata):
    target: str | None = None
    command: str | None = None
    working_dir: str | None = None

    @model_validator(mode="after")
    def _needs_target_or_command(self) -> ScriptMetadata:
        if not (self.command or self.target):
            msg = "script tasks need a 'target' or 'command'"
            raise ValueError(msg)
        return self

    @property
    def run_command(self) -> str:
        return self.command or self.target or ""


class AgentMetadata(TaskMetadata):
    agent_name: str = Field(min_length=1)
    description: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _legacy_task_key(cls, data: Any) -> Any:
        # Older task files carry the description under "task" or "message"
        if isinstance(data, dict) and "description" not in data:
            legacy = data.get("task") or data.get("message")
            if legacy:
                data = {**data, "description": legacy}
        return data


class ReminderMetadata(TaskMetadata):
    message: str = Field(min_length=1)
    agent_name: str | None = None


class CommandMetadata(TaskMetadata):
    command: str = Field(min_length=1)
    working_dir: str | None = None
    env: dict[str, str] | None = None
    allow_unsafe: bool = False


class WebhookMetadata(TaskMetadata):
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            msg = "url must start with http:// or https://"
            raise ValueError(msg)
        return value


METADATA_MODELS: dict[str, type[TaskMetadata]] = {
    "script": ScriptMetadata,
    "agent": AgentMetadata,
    "reminder": ReminderMetadata,
    "command": CommandMetadata,
    "webhook": WebhookMetadata,
}


def build_metadata(task_type: str, data: TaskMetadata | dict[str, Any] | None) -> TaskMetadata:
    """Validate *data* against the metadata variant for *task_type*."""
    model = METADATA_MODELS.get(task_type) if isinstance(task_type, str) else None
    if model is None:
        msg = f"Unknown task type: {task_type!r} (expected one of {', '.join(TASK_TYPES)})"
        raise TaskValidationError(msg)
    if isinstance(data, model):
        return data
    if isinstance(data, TaskMetadata):
        data = data.to_dict()
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        msg = f"Invalid {task_type} metadata: {_error_summary(exc)}"
        raise TaskValidationError(msg) from exc


# -- Dependencies & retries ------------------------------------------------------


class TaskDependencies(BaseModel):
    """Gate a task on the latest outcomes of other tasks."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task_ids: list[str] = Field(min_length=1)
    mode: Literal["all", "any"] = "all"
    on_failure: Literal["skip", "run"] = "skip"

    @field_validator("task_ids")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class RetryConfig(BaseModel):
    """Exponential-backoff retry policy. ``initial_delay`` is in milliseconds."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_retries: int = Field(default=3, ge=0)
    retry_count: int = Field(default=0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    initial_delay: int = Field(default=1000, ge=0)

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def next_delay_seconds(self) -> float:
        return self.initial_delay * self.backoff_multiplier**self.retry_count / 1000

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def build_dependencies(
    data: TaskDependencies | dict[str, Any] | None,
) -> TaskDependencies | None:
    if data is None or isinstance(data, TaskDependencies):
        return data
    try:
        return TaskDependencies.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid dependencies: {_error_summary(exc)}"
        raise TaskValidationError(msg) from exc


def build_retry_config(data: RetryConfig | dict[str, Any] | None) -> RetryConfig | None:
    if data is None or isinstance(data, RetryConfig):
        return data
    try:
        return RetryConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid retry config: {_error_summary(exc)}"
        raise TaskValidationError(msg) from exc


def check_cron(cron_expression: str, dependencies: TaskDependencies | None) -> None:
    """A cron expression is required unless the task is dependency-triggered."""
    if not cron_expression:
        if dependencies is None:
            msg = "A cron expression is required for tasks without dependencies"
            raise TaskValidationError(msg)
        return
    try:
        parse_cron(cron_expression)
    except CronParseError as exc:
        msg = f"Invalid cron expression {cron_expression!r}: {exc}"
        raise TaskValidationError(msg) from exc


# -- Task ------------------------------------------------------------------------


@dataclass
class ScheduledTask:
    """A unit of work triggered on a cron schedule or by other tasks.

    Attributes:
        id: Unique identifier, immutable after creation.
        name: Human-readable name.
        task_type: ``script``, ``agent``, ``reminder``, ``command`` or ``webhook``.
        cron_expression: 5-field cron string, or ``""`` for a task triggered
            only by its dependencies.
        metadata: Type-specific payload (see ``METADATA_MODELS``).
        enabled: Whether the task is scheduled.
        created_at: Creation time.
        last_run: Completion time of the last execution attempt.
        next_run: Next planned trigger; None when disabled or when no
            further trigger exists.
        run_count: Completed execution attempts, successful or not.
        dependencies: Optional gate on other tasks' outcomes.
        retry_config: Optional retry policy for failed runs.
    """

    id: str
    name: str
    task_type: str
    cron_expression: str
    metadata: TaskMetadata
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_run: datetime | None = None
    next_run: datetime | None = None
    run_count: int = 0
    dependencies: TaskDependencies | None = None
    retry_config: RetryConfig | None = None

    # -- Convenience properties ------------------------------------------------

    @property
    def is_dependency_only(self) -> bool:
        return not self.cron_expression and self.dependencies is not None

    @property
    def notify_on_error(self) -> bool:
        return self.metadata.notify_on_error

    # -- Serialization ---------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted JSON shape (camelCase keys)."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.task_type,
            "cronExpression": self.cron_expression,
            "enabled": self.enabled,
            "createdAt": format_timestamp(self.created_at),
            "lastRun": format_timestamp(self.last_run),
            "nextRun": format_timestamp(self.next_run),
            "runCount": self.run_count,
            "metadata": self.metadata.to_dict(),
        }
        if self.dependencies is not None:
            data["dependencies"] = self.dependencies.to_dict()
        if self.retry_config is not None:
            data["retryConfig"] = self.retry_config.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledTask:
        """Deserialize and validate a persisted task. Raises TaskValidationError."""
        if not isinstance(data, dict):
            msg = f"Task entry must be an object, got {type(data).__name__}"
            raise TaskValidationError(msg)
        task_id = data.get("id")
        name = data.get("name")
        if not task_id or not isinstance(task_id, str):
            msg = "Task entry is missing an 'id'"
            raise TaskValidationError(msg)
        if not name or not isinstance(name, str):
            msg = f"Task {task_id} is missing a 'name'"
            raise TaskValidationError(msg)

        task_type = data.get("type", "")
        cron_expression = data.get("cronExpression") or ""
        if not isinstance(task_type, str):
            msg = f"Task {task_id} has a non-string type: {task_type!r}"
            raise TaskValidationError(msg)
        if not isinstance(cron_expression, str):
            msg = f"Task {task_id} has a non-string cronExpression: {cron_expression!r}"
            raise TaskValidationError(msg)
        dependencies = build_dependencies(data.get("dependencies"))
        check_cron(cron_expression, dependencies)

        run_count = data.get("runCount") or 0
        if not isinstance(run_count, int) or run_count < 0:
            msg = f"Task {task_id} has an invalid runCount: {run_count!r}"
            raise TaskValidationError(msg)

        try:
            created_at = parse_timestamp(data.get("createdAt")) or utcnow()
            last_run = parse_timestamp(data.get("lastRun"))
            next_run = parse_timestamp(data.get("nextRun"))
        except (TypeError, ValueError) as exc:
            msg = f"Task {task_id} has an invalid timestamp: {exc}"
            raise TaskValidationError(msg) from exc

        return cls(
            id=task_id,
            name=name,
            task_type=task_type,
            cron_expression=cron_expression,
            metadata=build_metadata(task_type, data.get("metadata")),
            enabled=bool(data.get("enabled", True)),
            created_at=created_at,
            last_run=last_run,
            next_run=next_run,
            run_count=run_count,
            dependencies=dependencies,
            retry_config=build_retry_config(data.get("retryConfig")),
        )


def next_run_for(task: ScheduledTask, now: datetime, timezone: str | None = None) -> datetime | None:
    """Next trigger strictly after ``max(now, last_run)``; None if disabled or unscheduled."""
    if not task.enabled or not task.cron_expression:
        return None
    base = max(now, task.last_run) if task.last_run else now
    return next_trigger(task.cron_expression, base, timezone)


# -- Execution -------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one executor call. Never raised, always returned."""

    success: bool
    message: str | None = None
    error: str | None = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable log entry for one execution attempt."""

    task_id: str
    executed_at: datetime
    success: bool
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "executedAt": format_timestamp(self.executed_at),
            "success": self.success,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        task_id = data["taskId"]
        if not isinstance(task_id, str):
            msg = f"taskId must be a string, got {type(task_id).__name__}"
            raise TypeError(msg)
        return cls(
            task_id=task_id,
            executed_at=parse_timestamp(data["executedAt"]) or utcnow(),
            success=bool(data["success"]),
            result=data.get("result"),
            error=data.get("error"),
        )
