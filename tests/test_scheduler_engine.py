"""Tests for SchedulerEngine — dispatch loop, gating, retries, and the public API."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from taskclock.collaborators import ProcessResult
from taskclock.scheduler.engine import ALREADY_RUNNING, NOT_FOUND, SchedulerEngine
from taskclock.scheduler.errors import TaskValidationError
from taskclock.scheduler.executor import TaskExecutor
from taskclock.scheduler.models import AgentMetadata, CommandMetadata, ScheduledTask
from taskclock.scheduler.store import TaskStore

NINE = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
FAIL = ProcessResult(exit_code=1, stdout="", stderr="nope")


@pytest.fixture
def engine(store: TaskStore, executor: TaskExecutor, clock) -> SchedulerEngine:
    return SchedulerEngine(
        store, executor, clock=clock, tick_seconds=0.01, autosave_seconds=60
    )


def _gate(process_runner: AsyncMock) -> asyncio.Event:
    """Make the process runner block until the returned event is set."""
    gate = asyncio.Event()

    async def _wait(*args, **kwargs) -> ProcessResult:
        await gate.wait()
        return ProcessResult(exit_code=0, stdout="ok", stderr="")

    process_runner.run.side_effect = _wait
    return gate


async def _eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)


async def _daily(
    engine: SchedulerEngine,
    name: str = "Daily Report",
    cron: str = "0 9 * * *",
    metadata: dict | None = None,
    **kwargs,
) -> ScheduledTask:
    return await engine.schedule_task(
        name, "command", cron, metadata or {"command": "echo hi"}, **kwargs
    )


# -- Lifecycle -----------------------------------------------------------------


async def test_start_and_stop(engine: SchedulerEngine) -> None:
    assert engine.is_ready() is False

    await engine.start()
    assert engine.running is True
    assert engine.is_ready() is True

    await engine.stop()
    assert engine.running is False


async def test_stop_when_not_running(engine: SchedulerEngine) -> None:
    await engine.stop()


def test_tasks_file_path(engine: SchedulerEngine, tmp_path: Path) -> None:
    assert engine.get_tasks_file_path() == tmp_path / "tasks.json"


async def test_loop_dispatches_due_task(engine: SchedulerEngine, clock) -> None:
    await engine.start()
    try:
        task = await _daily(engine)
        clock.now = NINE
        await _eventually(lambda: task.run_count == 1)
        assert engine.get_task(task.id).next_run == NINE + timedelta(days=1)
    finally:
        await engine.stop()


# -- schedule_task -------------------------------------------------------------


async def test_schedule_task_computes_next_run(engine: SchedulerEngine, store: TaskStore) -> None:
    task = await _daily(engine)

    assert task.id.startswith("task-")
    assert task.next_run == NINE
    assert task.run_count == 0
    saved = json.loads(store.path.read_text())
    assert saved["tasks"][0]["name"] == "Daily Report"


async def test_schedule_task_invalid_cron(engine: SchedulerEngine) -> None:
    with pytest.raises(TaskValidationError):
        await _daily(engine, cron="70 * * * *")
    assert engine.get_all_tasks() == []


@pytest.mark.parametrize(
    ("name", "task_type", "metadata"),
    [
        ("", "command", {"command": "ls"}),
        ("X", "recurring", {"command": "ls"}),
        ("X", "webhook", {"url": "not-a-url"}),
    ],
)
async def test_schedule_task_rejects_bad_input(
    engine: SchedulerEngine, name: str, task_type: str, metadata: dict
) -> None:
    with pytest.raises(TaskValidationError):
        await engine.schedule_task(name, task_type, "* * * * *", metadata)


async def test_dependency_only_task_has_no_next_run(engine: SchedulerEngine) -> None:
    upstream = await _daily(engine, "Upstream")
    task = await engine.schedule_task(
        "Downstream", "command", None, {"command": "echo b"}, dependencies={"taskIds": [upstream.id]}
    )
    assert task.next_run is None
    assert task.is_dependency_only


async def test_schedule_task_unknown_dependency(engine: SchedulerEngine) -> None:
    with pytest.raises(TaskValidationError, match="Unknown dependency"):
        await _daily(engine, dependencies={"taskIds": ["task-missing"]})


async def test_convenience_constructors(engine: SchedulerEngine) -> None:
    script = await engine.schedule_script("Backup", "0 2 * * *", "./backup.sh", ["--full"])
    agent = await engine.schedule_agent_task("News", "0 7 * * *", "researcher", "Summarise news")
    reminder = await engine.schedule_reminder("Standup", "0 9 * * 1-5", "Stand up", chat_id="42")
    command = await engine.schedule_command("Status", "*/5 * * * *", "git status")
    hook = await engine.schedule_webhook(
        "Ping", "0 * * * *", "https://example.com/hook", method="post", body={"a": 1}
    )

    assert script.metadata.run_command == "./backup.sh --full"
    assert isinstance(agent.metadata, AgentMetadata)
    assert reminder.metadata.chat_id == "42"
    assert isinstance(command.metadata, CommandMetadata)
    assert hook.metadata.method == "POST"
    assert [t.id for t in engine.get_tasks_by_type("script")] == [script.id]
    assert len(engine.get_enabled_tasks()) == 5


# -- Dispatch ------------------------------------------------------------------


async def test_task_runs_when_due(engine: SchedulerEngine, clock) -> None:
    task = await _daily(engine)

    assert engine.dispatch_due() == []

    clock.now = NINE
    assert engine.dispatch_due() == [task.id]
    await engine.wait_idle()

    task = engine.get_task(task.id)
    assert task.run_count == 1
    assert task.last_run == NINE
    assert task.next_run == NINE + timedelta(days=1)
    history = engine.get_task_history(task.id)
    assert len(history) == 1
    assert history[0].success is True


async def test_scheduled_trigger_and_manual_run_do_not_overlap(
    engine: SchedulerEngine, process_runner: AsyncMock, clock
) -> None:
    gate = _gate(process_runner)
    task = await _daily(engine)
    clock.now = NINE

    assert engine.dispatch_due() == [task.id]
    assert engine.is_running(task.id)

    manual = await engine.run_task_now(task.id)
    assert manual.success is False
    assert manual.error == ALREADY_RUNNING

    gate.set()
    await engine.wait_idle()
    assert engine.get_task(task.id).run_count == 1
    assert not engine.is_running(task.id)


async def test_trigger_while_running_is_coalesced(
    engine: SchedulerEngine, process_runner: AsyncMock, clock
) -> None:
    gate = _gate(process_runner)
    task = await _daily(engine, cron="* * * * *")

    clock.now = datetime(2024, 1, 1, 8, 1, tzinfo=UTC)
    assert engine.dispatch_due() == [task.id]
    clock.advance(minutes=5)
    assert engine.dispatch_due() == []

    gate.set()
    await engine.wait_idle()
    assert engine.get_task(task.id).run_count == 1
    assert len(engine.get_task_history(task.id)) == 1


async def test_concurrent_run_task_now(engine: SchedulerEngine) -> None:
    task = await _daily(engine)

    results = await asyncio.gather(engine.run_task_now(task.id), engine.run_task_now(task.id))

    assert sorted(r.success for r in results) == [False, True]
    assert [r.error for r in results if not r.success] == [ALREADY_RUNNING]
    assert engine.get_task(task.id).run_count == 1


async def test_run_task_now_unknown(engine: SchedulerEngine) -> None:
    result = await engine.run_task_now("task-missing")
    assert result.success is False
    assert result.error == NOT_FOUND


async def test_run_task_now_on_paused_task(engine: SchedulerEngine) -> None:
    task = await _daily(engine)
    await engine.pause_task(task.id)

    result = await engine.run_task_now(task.id)

    assert result.success is True
    assert engine.get_task(task.id).run_count == 1
    assert engine.get_task(task.id).next_run is None


async def test_cancel_while_running_drops_result(
    engine: SchedulerEngine, process_runner: AsyncMock, clock
) -> None:
    gate = _gate(process_runner)
    task = await _daily(engine)
    clock.now = NINE
    engine.dispatch_due()

    assert await engine.cancel_task(task.id) is True
    gate.set()
    await engine.wait_idle()

    assert engine.get_task(task.id) is None
    assert engine.get_execution_history() == []


# -- Dependencies --------------------------------------------------------------


async def test_failed_dependency_blocks_run(
    engine: SchedulerEngine, process_runner: AsyncMock, clock
) -> None:
    upstream = await _daily(engine, "A", cron="0 10 * * *")
    downstream = await _daily(engine, "B", dependencies={"taskIds": [upstream.id]})

    process_runner.run.return_value = FAIL
    await engine.run_task_now(upstream.id)
    process_runner.run.return_value = ProcessResult(exit_code=0, stdout="ok", stderr="")

    clock.now = NINE
    assert engine.dispatch_due() == []
    assert engine.get_task(downstream.id).run_count == 0
    assert engine.get_task_history(downstream.id) == []

    # Still pending: runs as soon as the upstream succeeds
    await engine.run_task_now(upstream.id)
    assert engine.dispatch_due() == [downstream.id]
    await engine.wait_idle()
    assert engine.get_task(downstream.id).run_count == 1


async def test_on_failure_run_only_orders(
    engine: SchedulerEngine, process_runner: AsyncMock, clock
) -> None:
    upstream = await _daily(engine, "A", cron="0 10 * * *")
    downstream = await _daily(
        engine, "B", dependencies={"taskIds": [upstream.id], "onFailure": "run"}
    )
    clock.now = NINE
    assert engine.dispatch_due() == []

    process_runner.run.return_value = FAIL
    await engine.run_task_now(upstream.id)
    process_runner.run.return_value = ProcessResult(exit_code=0, stdout="ok", stderr="")

    assert engine.dispatch_due() == [downstream.id]
    await engine.wait_idle()


async def test_dependency_only_task_fires_once_per_upstream_run(
    engine: SchedulerEngine, clock
) -> None:
    upstream = await _daily(engine, "A")
    downstream = await engine.schedule_task(
        "B", "command", "", {"command": "echo b"}, dependencies={"taskIds": [upstream.id]}
    )
    assert engine.dispatch_due() == []

    clock.advance(minutes=1)
    await engine.run_task_now(upstream.id)
    clock.advance(minutes=1)
    assert engine.dispatch_due() == [downstream.id]
    await engine.wait_idle()

    clock.advance(minutes=1)
    assert engine.dispatch_due() == []

    clock.advance(minutes=1)
    await engine.run_task_now(upstream.id)
    assert engine.dispatch_due() == [downstream.id]
    await engine.wait_idle()
    assert engine.get_task(downstream.id).run_count == 2


# -- Failures & retries --------------------------------------------------------


async def test_failure_notifies_owner(
    engine: SchedulerEngine, process_runner: AsyncMock, notifier: AsyncMock
) -> None:
    process_runner.run.return_value = FAIL
    task = await _daily(engine, metadata={"command": "ls", "notifyOnError": True})

    result = await engine.run_task_now(task.id)

    assert result.success is False
    notifier.send.assert_awaited_once_with(
        "12345", f"[Scheduler Error] Task 'Daily Report' ({task.id}) failed: exit code 1: nope"
    )
    assert engine.get_task_history(task.id)[0].error == "exit code 1: nope"


async def test_failure_without_notify_flag_is_silent(
    engine: SchedulerEngine, process_runner: AsyncMock, notifier: AsyncMock
) -> None:
    process_runner.run.return_value = FAIL
    task = await _daily(engine)

    await engine.run_task_now(task.id)

    notifier.send.assert_not_awaited()
    assert engine.get_task(task.id).run_count == 1


async def test_retries_with_backoff_then_notify(
    engine: SchedulerEngine, process_runner: AsyncMock, notifier: AsyncMock, clock
) -> None:
    process_runner.run.return_value = FAIL
    task = await _daily(
        engine,
        metadata={"command": "ls", "notifyOnError": True},
        retry_config={"maxRetries": 2, "initialDelay": 1000, "backoffMultiplier": 2},
    )

    await engine.run_task_now(task.id)
    assert task.retry_config.retry_count == 1
    notifier.send.assert_not_awaited()

    clock.advance(seconds=1)
    assert engine.dispatch_due() == [task.id]
    await engine.wait_idle()
    assert engine.get_task(task.id).retry_config.retry_count == 2

    clock.advance(seconds=1)
    assert engine.dispatch_due() == []
    clock.advance(seconds=1)
    assert engine.dispatch_due() == [task.id]
    await engine.wait_idle()

    assert engine.get_task(task.id).run_count == 3
    notifier.send.assert_awaited_once()


async def test_success_resets_retry_count(
    engine: SchedulerEngine, process_runner: AsyncMock
) -> None:
    process_runner.run.return_value = FAIL
    task = await _daily(engine, retry_config={"maxRetries": 3})
    await engine.run_task_now(task.id)
    assert task.retry_config.retry_count == 1

    process_runner.run.return_value = ProcessResult(exit_code=0, stdout="ok", stderr="")
    await engine.run_task_now(task.id)
    assert engine.get_task(task.id).retry_config.retry_count == 0


# -- pause / resume / update / cancel ------------------------------------------


async def test_pause_and_resume(engine: SchedulerEngine, clock) -> None:
    task = await _daily(engine)

    assert await engine.pause_task(task.id) is True
    paused = engine.get_task(task.id)
    assert paused.enabled is False
    assert paused.next_run is None

    clock.now = datetime(2024, 1, 1, 10, 30, tzinfo=UTC)
    assert engine.dispatch_due() == []

    assert await engine.resume_task(task.id) is True
    resumed = engine.get_task(task.id)
    assert resumed.enabled is True
    assert resumed.next_run == NINE + timedelta(days=1)
    assert resumed.next_run > clock.now
    assert resumed.run_count == 0


async def test_pause_resume_unknown(engine: SchedulerEngine) -> None:
    assert await engine.pause_task("task-missing") is False
    assert await engine.resume_task("task-missing") is False


async def test_update_task_recomputes_next_run(engine: SchedulerEngine) -> None:
    task = await _daily(engine)

    updated = await engine.update_task(task.id, cron_expression="30 8 * * *", name="Early Report")

    assert updated.name == "Early Report"
    assert updated.next_run == datetime(2024, 1, 1, 8, 30, tzinfo=UTC)
    assert engine.get_task(task.id).cron_expression == "30 8 * * *"


async def test_update_task_validates(engine: SchedulerEngine) -> None:
    task = await _daily(engine)

    with pytest.raises(TaskValidationError):
        await engine.update_task(task.id, cron_expression="70 * * * *")
    with pytest.raises(TaskValidationError, match="Cannot update"):
        await engine.update_task(task.id, owner="someone")
    with pytest.raises(TaskValidationError):
        await engine.update_task(task.id, metadata={})

    assert engine.get_task(task.id).cron_expression == "0 9 * * *"
    assert await engine.update_task("task-missing", name="x") is None


async def test_update_task_rejects_cycle(engine: SchedulerEngine) -> None:
    first = await _daily(engine, "A")
    second = await _daily(engine, "B", dependencies={"taskIds": [first.id]})

    with pytest.raises(TaskValidationError, match="cycle"):
        await engine.update_task(first.id, dependencies={"taskIds": [second.id]})


async def test_update_task_disable(engine: SchedulerEngine) -> None:
    task = await _daily(engine)
    updated = await engine.update_task(task.id, enabled=False)
    assert updated.next_run is None


async def test_cancel_task(engine: SchedulerEngine) -> None:
    task = await _daily(engine)

    assert await engine.cancel_task(task.id) is True
    assert engine.get_task(task.id) is None
    assert await engine.cancel_task(task.id) is False


async def test_cancel_detaches_dependents(engine: SchedulerEngine, clock) -> None:
    upstream = await _daily(engine, "A")
    downstream = await _daily(engine, "B", dependencies={"taskIds": [upstream.id]})

    assert await engine.cancel_task(upstream.id) is True

    detached = engine.get_task(downstream.id)
    assert detached.dependencies is None
    renamed = await engine.update_task(downstream.id, name="B renamed")
    assert renamed.name == "B renamed"

    clock.now = NINE
    assert engine.dispatch_due() == [downstream.id]
    await engine.wait_idle()


async def test_cancel_prunes_one_of_several_dependencies(engine: SchedulerEngine) -> None:
    first = await _daily(engine, "A")
    second = await _daily(engine, "B")
    downstream = await engine.schedule_task(
        "C", "command", "", {"command": "echo c"},
        dependencies={"taskIds": [first.id, second.id], "mode": "any"},
    )

    assert await engine.cancel_task(first.id) is True

    deps = engine.get_task(downstream.id).dependencies
    assert deps.task_ids == [second.id]
    assert deps.mode == "any"
    saved = json.loads(engine.export_tasks())
    assert [t["dependencies"]["taskIds"] for t in saved["tasks"] if t["id"] == downstream.id] == [[second.id]]


async def test_cancel_refuses_to_strand_dependency_only_task(engine: SchedulerEngine) -> None:
    upstream = await _daily(engine, "A")
    downstream = await engine.schedule_task(
        "B", "command", "", {"command": "echo b"}, dependencies={"taskIds": [upstream.id]}
    )

    with pytest.raises(TaskValidationError, match="only trigger"):
        await engine.cancel_task(upstream.id)

    assert engine.get_task(upstream.id) is not None
    assert engine.get_task(downstream.id).dependencies.task_ids == [upstream.id]


# -- Stats / history / cron ----------------------------------------------------


async def test_stats(engine: SchedulerEngine, process_runner: AsyncMock) -> None:
    task = await _daily(engine)
    reminder = await engine.schedule_reminder("Standup", "0 9 * * *", "Stand up")
    await engine.pause_task(reminder.id)

    await engine.run_task_now(task.id)
    process_runner.run.return_value = FAIL
    await engine.run_task_now(task.id)

    stats = engine.get_stats()
    assert stats.total_tasks == 2
    assert stats.enabled_tasks == 1
    assert stats.disabled_tasks == 1
    assert stats.by_type == {"script": 0, "agent": 0, "reminder": 1, "command": 1, "webhook": 0}
    assert (stats.total_executions, stats.successful_executions, stats.failed_executions) == (2, 1, 1)
    assert len(engine.get_execution_history(limit=1)) == 1


def test_validate_cron_expression(engine: SchedulerEngine) -> None:
    assert engine.validate_cron_expression("*/5 * * * *").valid is True
    assert engine.validate_cron_expression("70 * * * *").valid is False


# -- Import / export -----------------------------------------------------------


async def test_export_import_round_trip(
    engine: SchedulerEngine, executor: TaskExecutor, clock, tmp_path: Path
) -> None:
    first = await _daily(engine, "A")
    await _daily(engine, "B", cron="", dependencies={"taskIds": [first.id]})
    exported = engine.export_tasks()

    other = SchedulerEngine(TaskStore(tmp_path / "other.json"), executor, clock=clock)
    await other.start()
    try:
        await _daily(other, "Stale")
        result = await other.import_tasks(exported, merge=False)
    finally:
        await other.stop()

    assert result.success is True
    assert result.imported == 2
    assert result.errors == []

    def _shape(tasks: list[ScheduledTask]) -> list[tuple]:
        return [(t.id, t.name, t.task_type, t.cron_expression, t.next_run) for t in tasks]

    assert _shape(other.get_all_tasks()) == _shape(engine.get_all_tasks())


async def test_import_garbage(engine: SchedulerEngine) -> None:
    result = await engine.import_tasks("garbage")
    assert result.success is False
    assert result.imported == 0
    assert result.errors


# -- Timezone ------------------------------------------------------------------


async def test_set_timezone_recomputes(engine: SchedulerEngine) -> None:
    task = await _daily(engine)

    await engine.set_timezone("America/Chicago")

    assert engine.get_timezone() == "America/Chicago"
    assert engine.get_task(task.id).next_run.astimezone(UTC) == datetime(2024, 1, 1, 15, 0, tzinfo=UTC)


async def test_set_timezone_invalid(engine: SchedulerEngine) -> None:
    with pytest.raises(TaskValidationError, match="Invalid timezone"):
        await engine.set_timezone("Mars/Olympus_Mons")
    assert engine.get_timezone() == "UTC"


# -- Missed runs ---------------------------------------------------------------


async def _write_missed_task(path: Path) -> None:
    writer = TaskStore(path, timezone="UTC")
    await writer.add_task(
        ScheduledTask(
            id="t1",
            name="Morning",
            task_type="command",
            cron_expression="0 7 * * *",
            metadata=CommandMetadata(command="echo hi"),
            created_at=datetime(2023, 12, 1, tzinfo=UTC),
            next_run=datetime(2024, 1, 1, 7, 0, tzinfo=UTC),
        )
    )


async def test_missed_task_gets_one_catch_up(
    engine: SchedulerEngine, store: TaskStore
) -> None:
    await _write_missed_task(store.path)

    await engine.start()
    try:
        await _eventually(lambda: store.get_task("t1").run_count == 1)
        await asyncio.sleep(0.05)
        assert store.get_task("t1").run_count == 1
        assert store.get_task("t1").next_run == datetime(2024, 1, 2, 7, 0, tzinfo=UTC)
    finally:
        await engine.stop()


async def test_missed_catch_up_disabled(
    store: TaskStore, executor: TaskExecutor, clock
) -> None:
    await _write_missed_task(store.path)
    engine = SchedulerEngine(store, executor, clock=clock, tick_seconds=0.01, catch_up_missed=False)

    await engine.start()
    try:
        await asyncio.sleep(0.05)
        assert store.get_task("t1").run_count == 0
    finally:
        await engine.stop()
