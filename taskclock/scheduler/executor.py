"""TaskExecutor — runs a task's type-specific action and normalises the outcome."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Any

from taskclock.collaborators import HttpxClient, ShellProcessRunner
from taskclock.config import settings
from taskclock.scheduler.models import (
    AgentMetadata,
    CommandMetadata,
    ExecutionResult,
    ReminderMetadata,
    ScriptMetadata,
    WebhookMetadata,
)

if TYPE_CHECKING:
    from taskclock.collaborators import AgentDelegate, HttpClient, Notifier, ProcessRunner
    from taskclock.scheduler.models import ScheduledTask

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "timeout"

# First word of a ``command`` task must be one of these unless allowUnsafe is set
SAFE_COMMANDS = frozenset(
    {
        "git", "npm", "node", "docker", "podman", "curl", "wget",
        "ls", "cat", "grep", "find", "echo", "date", "whoami",
    }
)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [truncated {len(text) - limit} chars]"


def _discard_outcome(job: asyncio.Future) -> None:
    if not job.cancelled():
        job.exception()


class TaskExecutor:
    """Executes scheduled tasks by dispatching to the appropriate collaborator.

    ``execute()`` never raises: every failure, including a timeout, comes back
    as ``ExecutionResult(success=False, error=...)``. A timed-out action is
    cancelled and abandoned. If the collaborator ignores the cancellation
    it may keep running in the background; the scheduler does not wait for it.

    Args:
        process_runner: Runs ``script`` and ``command`` tasks.
        http_client: Delivers ``webhook`` tasks.
        agent_delegate: Handles ``agent`` tasks (optional).
        notifier: Sends reminders and failure notifications (optional).
        default_chat_id: Chat used when a task's metadata has no ``chatId``.
    """

    def __init__(
        self,
        *,
        process_runner: ProcessRunner | None = None,
        http_client: HttpClient | None = None,
        agent_delegate: AgentDelegate | None = None,
        notifier: Notifier | None = None,
        default_chat_id: str | None = None,
        output_max_chars: int | None = None,
    ) -> None:
        self._process_runner = process_runner or ShellProcessRunner()
        self._http_client = http_client or HttpxClient()
        self._agent_delegate = agent_delegate
        self._notifier = notifier
        self._default_chat_id = default_chat_id or settings.default_chat_id or None
        self._output_max_chars = output_max_chars or settings.output_max_chars

    def timeout_for(self, task: ScheduledTask) -> float:
        return task.metadata.timeout or settings.timeout_for(task.task_type)

    async def execute(self, task: ScheduledTask) -> ExecutionResult:
        """Run *task* once, bounded by its timeout."""
        timeout = self.timeout_for(task)
        logger.info(
            "Executing task: '%s' (%s) type=%s timeout=%ss",
            task.name,
            task.id,
            task.task_type,
            timeout,
        )

        job = asyncio.ensure_future(self._dispatch(task, timeout))
        try:
            done, _ = await asyncio.wait({job}, timeout=timeout)
        except asyncio.CancelledError:
            job.cancel()
            raise

        if not done:
            job.cancel()
            job.add_done_callback(_discard_outcome)
            logger.warning("Task timed out after %ss: '%s' (%s)", timeout, task.name, task.id)
            return ExecutionResult(success=False, error=TIMEOUT_ERROR)

        try:
            result = job.result()
        except Exception as exc:
            logger.exception("Task execution failed: '%s' (%s)", task.name, task.id)
            return ExecutionResult(success=False, error=str(exc) or type(exc).__name__)

        if result.success:
            logger.info("Task executed successfully: '%s' (%s)", task.name, task.id)
        else:
            logger.warning("Task failed: '%s' (%s): %s", task.name, task.id, result.error)
        return result

    async def _dispatch(self, task: ScheduledTask, timeout: float) -> ExecutionResult:
        """Route to the correct handler based on metadata type."""
        meta = task.metadata
        if isinstance(meta, ScriptMetadata):
            return await self._run_process(meta.run_command, meta.working_dir, None)
        if isinstance(meta, CommandMetadata):
            return await self._handle_command(meta)
        if isinstance(meta, AgentMetadata):
            return await self._handle_agent(meta)
        if isinstance(meta, ReminderMetadata):
            return await self._handle_reminder(task, meta)
        if isinstance(meta, WebhookMetadata):
            return await self._handle_webhook(meta, timeout)
        msg = f"Unknown task type: {task.task_type}"
        raise ValueError(msg)

    # -- Handlers --------------------------------------------------------------

    async def _run_process(
        self,
        command: str,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> ExecutionResult:
        proc = await self._process_runner.run(command, cwd=cwd, env=env)
        stdout = truncate(proc.stdout, self._output_max_chars)
        stderr = truncate(proc.stderr, self._output_max_chars)
        payload = {"exitCode": proc.exit_code, "stdout": stdout, "stderr": stderr}
        if proc.exit_code == 0:
            return ExecutionResult(success=True, message=stdout, result=payload)
        return ExecutionResult(
            success=False,
            message=stdout or None,
            error=f"exit code {proc.exit_code}" + (f": {stderr}" if stderr else ""),
            result=payload,
        )

    async def _handle_command(self, meta: CommandMetadata) -> ExecutionResult:
        parts = meta.command.strip().split()
        base = os.path.basename(parts[0]) if parts else ""
        if base not in SAFE_COMMANDS and not meta.allow_unsafe:
            return ExecutionResult(
                success=False,
                error=(
                    f'Command "{base}" is not in the safe commands list. '
                    "Set allowUnsafe: true in metadata to override."
                ),
            )
        return await self._run_process(meta.command, meta.working_dir, meta.env)

    async def _handle_agent(self, meta: AgentMetadata) -> ExecutionResult:
        if self._agent_delegate is None:
            return ExecutionResult(success=False, error="No agent delegate configured")
        logger.info("Delegating to agent %s (%d chars)", meta.agent_name, len(meta.description))
        text = await self._agent_delegate.delegate(meta.agent_name, meta.description)
        return ExecutionResult(
            success=True,
            message=truncate(text, self._output_max_chars),
            result={"agent": meta.agent_name, "response": text},
        )

    async def _handle_reminder(self, task: ScheduledTask, meta: ReminderMetadata) -> ExecutionResult:
        chat_id = meta.chat_id or self._default_chat_id
        if self._notifier is None:
            return ExecutionResult(success=False, error="No notifier configured")
        if not chat_id:
            return ExecutionResult(success=False, error="No chat id for reminder")

        text = f"[Reminder] {meta.message}\n\n(Scheduled by: {task.name})"
        delivered = await self._notifier.send(chat_id, text)
        if not delivered:
            return ExecutionResult(success=False, error="Reminder was not delivered")
        return ExecutionResult(
            success=True,
            message="Reminder sent",
            result={"chatId": chat_id, "message": meta.message},
        )

    async def _handle_webhook(self, meta: WebhookMetadata, timeout: float) -> ExecutionResult:
        headers = {"Content-Type": "application/json", **meta.headers}
        body: Any = meta.body if meta.method in _BODY_METHODS else None
        logger.info("Calling webhook %s %s", meta.method, meta.url)
        response = await self._http_client.request(meta.url, meta.method, headers, body, timeout)
        text = truncate(response.body, self._output_max_chars)
        payload = {"status": response.status, "response": text}
        if response.status < 400:
            return ExecutionResult(success=True, message=text, result=payload)
        return ExecutionResult(
            success=False,
            message=text,
            error=f"Webhook failed with status {response.status}",
            result=payload,
        )

    # -- Notifications ---------------------------------------------------------

    async def notify_failure(self, task: ScheduledTask, error: str | None) -> bool:
        """Tell the owner a task failed. Never raises; returns True if delivered."""
        chat_id = task.metadata.chat_id or self._default_chat_id
        if self._notifier is None or not chat_id:
            logger.debug("No notifier/chat for failure notice of task %s", task.id)
            return False

        message = (
            f"[Scheduler Error] Task '{task.name}' ({task.id}) failed: "
            f"{error or 'unknown error'}"
        )
        try:
            return await self._notifier.send(chat_id, message)
        except Exception:
            logger.exception("Failed to send failure notification for task %s", task.id)
            return False
