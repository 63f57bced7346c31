"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from taskclock.collaborators import HttpResponse, ProcessResult
from taskclock.scheduler.executor import TaskExecutor
from taskclock.scheduler.store import TaskStore


class FakeClock:
    """Manually advanced clock for deterministic scheduling tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 8, 0, tzinfo=UTC))


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp file."""
    TaskStore._reset()
    yield TaskStore(tmp_path / "tasks.json", timezone="UTC")
    TaskStore._reset()


@pytest.fixture
def process_runner() -> AsyncMock:
    runner = AsyncMock()
    runner.run.return_value = ProcessResult(exit_code=0, stdout="ok", stderr="")
    return runner


@pytest.fixture
def http_client() -> AsyncMock:
    client = AsyncMock()
    client.request.return_value = HttpResponse(status=200, body='{"ok": true}')
    return client


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.send.return_value = True
    return mock


@pytest.fixture
def agent_delegate() -> AsyncMock:
    mock = AsyncMock()
    mock.delegate.return_value = "done"
    return mock


@pytest.fixture
def executor(
    process_runner: AsyncMock,
    http_client: AsyncMock,
    notifier: AsyncMock,
    agent_delegate: AsyncMock,
) -> TaskExecutor:
    return TaskExecutor(
        process_runner=process_runner,
        http_client=http_client,
        agent_delegate=agent_delegate,
        notifier=notifier,
        default_chat_id="12345",
    )
