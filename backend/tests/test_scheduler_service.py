"""
Tests for the Task Scheduler — due selection, execution records, ticks.
"""

from datetime import datetime, timedelta

import pytest

from core.exceptions import TaskNotFoundError
from db.domain import Frequency, NewTask, TaskRunStatus, TaskType
from scheduler.handlers import TASK_TEMPLATES, TaskHandler
from scheduler.locks import LocalSchedulerLock

TENANT_ID = "00000000-0000-0000-0000-000000000001"
NOW = datetime(2024, 3, 15, 10, 0)


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    monkeypatch.setattr("core.clock.now", lambda tz_name=None: NOW)


@pytest.fixture
def scheduler(runtime):
    return runtime.scheduler


async def _make_due(store, task_id, minutes_ago=1):
    task = await store.get_task(task_id)
    task.next_run_at = NOW - timedelta(minutes=minutes_ago)
    await store.update_task(task)


def _cleanup_task(**overrides):
    fields = {
        "name": "Purge notifications",
        "task_type": TaskType.CLEANUP,
        "frequency": Frequency.DAILY,
        "config": {"data_type": "notifications", "retention_days": 30},
    }
    fields.update(overrides)
    return NewTask(**fields)


class TestCreateTask:
    async def test_next_run_computed_from_frequency(self, scheduler, store):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task())

        task = await store.get_task(task_id)
        assert task.tenant_id == TENANT_ID
        assert task.next_run_at == datetime(2024, 3, 16)
        assert task.last_run_at is None

    async def test_from_template(self, scheduler, store):
        task_id = await scheduler.create_task(TENANT_ID, TASK_TEMPLATES["weekly_cleanup"])

        task = await store.get_task(task_id)
        assert task.task_type == TaskType.CLEANUP
        assert task.frequency == Frequency.WEEKLY


class TestDueTasks:
    async def test_disabled_task_is_never_due(self, scheduler, store):
        enabled = await scheduler.create_task(TENANT_ID, _cleanup_task())
        disabled = await scheduler.create_task(TENANT_ID, _cleanup_task(enabled=False))
        await _make_due(store, enabled)
        await _make_due(store, disabled)

        due = await scheduler.get_due_tasks()

        assert [task.task_id for task in due] == [enabled]

    async def test_future_task_not_due(self, scheduler):
        await scheduler.create_task(TENANT_ID, _cleanup_task())

        assert await scheduler.get_due_tasks() == []


class TestExecuteTask:
    async def test_success_records_execution_and_reschedules(self, scheduler, store):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task())

        execution = await scheduler.execute_task(task_id)

        assert execution.status == TaskRunStatus.SUCCESS
        assert execution.output == {"data_type": "notifications", "retention_days": 30, "records_deleted": 0}
        assert execution.completed_at == NOW
        assert execution.duration_ms >= 0

        task = await store.get_task(task_id)
        assert task.last_run_status == TaskRunStatus.SUCCESS
        assert task.last_run_at == NOW
        assert task.next_run_at == datetime(2024, 3, 16)

        [recorded] = await store.list_task_executions(task_id)
        assert recorded.status == TaskRunStatus.SUCCESS

    async def test_handler_error_becomes_failed_execution(self, scheduler, store):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task(config={"data_type": "logs"}))

        execution = await scheduler.execute_task(task_id)

        assert execution.status == TaskRunStatus.FAILED
        assert "Unsupported cleanup data type" in execution.error
        task = await store.get_task(task_id)
        assert task.last_run_status == TaskRunStatus.FAILED
        assert task.next_run_at > NOW

    async def test_unknown_task(self, scheduler):
        with pytest.raises(TaskNotFoundError):
            await scheduler.execute_task("missing")

    async def test_completion_email_to_task_recipients(self, scheduler, channel):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task(recipients=["ops@acme.test"]))

        await scheduler.execute_task(task_id)

        [email] = channel.sent
        assert email["to"] == ["ops@acme.test"]
        assert email["subject"] == "Scheduled Task succeeded: Purge notifications"

    async def test_failure_email_carries_the_error(self, scheduler, channel):
        task_id = await scheduler.create_task(
            TENANT_ID, _cleanup_task(config={"data_type": "logs"}, recipients=["ops@acme.test"])
        )

        await scheduler.execute_task(task_id)

        [email] = channel.sent
        assert email["subject"] == "Scheduled Task FAILED: Purge notifications"
        assert "Unsupported cleanup data type" in email["html"]

    async def test_alert_scan_failure_fails_the_task(self, scheduler, store, monkeypatch):
        task_id = await scheduler.create_task(TENANT_ID, TASK_TEMPLATES["hourly_alert_check"])

        async def broken(*args, **kwargs):
            raise RuntimeError("stock view unavailable")

        monkeypatch.setattr(store, "list_item_stock", broken)

        execution = await scheduler.execute_task(task_id)

        assert execution.status == TaskRunStatus.FAILED
        assert "low_stock" in execution.error
        assert (await store.get_task(task_id)).last_run_status == TaskRunStatus.FAILED

    async def test_task_update_error_still_finishes_run(self, scheduler, store, channel, monkeypatch):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task(recipients=["ops@acme.test"]))

        async def broken(task):
            raise RuntimeError("tasks table locked")

        monkeypatch.setattr(store, "update_task", broken)

        execution = await scheduler.execute_task(task_id)

        assert execution.status == TaskRunStatus.SUCCESS
        [recorded] = await store.list_task_executions(task_id)
        assert recorded.status == TaskRunStatus.SUCCESS
        assert recorded.completed_at == NOW
        assert channel.sent[0]["subject"] == "Scheduled Task succeeded: Purge notifications"

    async def test_execution_save_error_still_reschedules(self, scheduler, store, channel, monkeypatch):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task(recipients=["ops@acme.test"]))
        save = store.save_task_execution

        async def fail_on_completion(execution):
            if execution.status != TaskRunStatus.RUNNING:
                raise RuntimeError("executions table locked")
            return await save(execution)

        monkeypatch.setattr(store, "save_task_execution", fail_on_completion)

        execution = await scheduler.execute_task(task_id)

        assert execution.status == TaskRunStatus.SUCCESS
        task = await store.get_task(task_id)
        assert task.next_run_at == datetime(2024, 3, 16)
        assert len(channel.sent) == 1

    async def test_no_recipients_no_email(self, scheduler, channel):
        task_id = await scheduler.create_task(TENANT_ID, _cleanup_task())

        await scheduler.execute_task(task_id)

        assert channel.sent == []


class TestRunScheduler:
    async def test_failing_task_does_not_block_the_rest(self, scheduler, store):
        bad = await scheduler.create_task(TENANT_ID, _cleanup_task(config={"data_type": "logs"}))
        good = await scheduler.create_task(TENANT_ID, _cleanup_task())
        await _make_due(store, bad, minutes_ago=10)
        await _make_due(store, good, minutes_ago=5)

        result = await scheduler.run_scheduler()

        assert result.acquired
        assert result.due == 2
        assert [execution.task_id for execution in result.executions] == [bad, good]
        assert result.succeeded == 1
        assert result.failed == 1
        assert scheduler.state.tasks_executed == 2
        assert scheduler.state.tasks_failed == 1

    async def test_store_error_on_one_task_is_contained(self, scheduler, store, monkeypatch):
        first = await scheduler.create_task(TENANT_ID, _cleanup_task())
        second = await scheduler.create_task(TENANT_ID, _cleanup_task(name="Second"))
        await _make_due(store, first, minutes_ago=10)
        await _make_due(store, second, minutes_ago=5)

        original_get = store.get_task

        async def flaky_get(task_id):
            if task_id == first:
                raise RuntimeError("connection reset")
            return await original_get(task_id)

        monkeypatch.setattr(store, "get_task", flaky_get)

        result = await scheduler.run_scheduler()

        assert result.errors == {first: "connection reset"}
        assert [execution.task_id for execution in result.executions] == [second]

    async def test_skips_tick_when_lock_is_held(self, store, runtime):
        lock = LocalSchedulerLock()
        runtime.scheduler.lock = lock
        task_id = await runtime.scheduler.create_task(TENANT_ID, _cleanup_task())
        await _make_due(store, task_id)

        assert await lock.acquire()
        result = await runtime.scheduler.run_scheduler()
        await lock.release()

        assert result.acquired is False
        assert result.executions == []
        assert runtime.scheduler.state.skipped_ticks == 1
        assert (await store.get_task(task_id)).last_run_at is None

    async def test_lock_released_after_tick(self, scheduler):
        await scheduler.run_scheduler()

        assert await scheduler.lock.acquire()
        await scheduler.lock.release()


class TestLoop:
    async def test_start_and_stop(self, scheduler):
        task = scheduler.start_scheduler(interval_minutes=60)

        assert scheduler.start_scheduler(interval_minutes=60) is task
        assert scheduler.state.running

        await scheduler.stop_scheduler()

        assert not scheduler.state.running
        assert task.cancelled() or task.done()


class TestHandlerRegistry:
    def test_scheduler_requires_every_task_type(self, store, runtime):
        from scheduler.service import TaskScheduler

        handlers = dict(runtime.scheduler.handlers)
        handlers.pop(TaskType.SYNC)

        with pytest.raises(ValueError, match="sync"):
            TaskScheduler(store, handlers, runtime.dispatcher)

    def test_handlers_are_task_handlers(self, runtime):
        assert set(runtime.scheduler.handlers) == set(TaskType)
        assert all(isinstance(handler, TaskHandler) for handler in runtime.scheduler.handlers.values())
