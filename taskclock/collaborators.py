"""Collaborator protocols consumed by the executor, plus default implementations.

The scheduler never talks to a shell, an HTTP server, an agent, or a chat
channel directly. Each of those is injected as an object satisfying one of
the protocols below, which keeps the executor testable with ``AsyncMock``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


@runtime_checkable
class ProcessRunner(Protocol):
    """Runs a shell command and reports its exit status and output."""

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        ...


@runtime_checkable
class HttpClient(Protocol):
    """Issues a single HTTP request."""

    async def request(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> HttpResponse:
        ...


@runtime_checkable
class AgentDelegate(Protocol):
    """Hands a task description to a named agent and returns its reply text."""

    async def delegate(self, agent_name: str, description: str) -> str:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Delivers a plain text message to a chat. Returns True on delivery."""

    async def send(self, chat_id: str, message: str) -> bool:
        ...


class ShellProcessRunner:
    """ProcessRunner backed by ``asyncio.create_subprocess_shell``.

    If the awaiting coroutine is cancelled (e.g. by an executor timeout) the
    child process is killed before the cancellation propagates.
    """

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env={**os.environ, **env} if env else None,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return ProcessResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )


class HttpxClient:
    """HttpClient backed by ``httpx.AsyncClient``.

    Args:
        transport: Optional httpx transport (e.g. ``httpx.MockTransport`` in tests).
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def request(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> HttpResponse:
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            if isinstance(body, (str, bytes)):
                kwargs["content"] = body
            else:
                kwargs["json"] = body

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            resp = await client.request(method, url, **kwargs)

        logger.debug("%s %s -> %d", method, url, resp.status_code)
        return HttpResponse(status=resp.status_code, body=resp.text)
