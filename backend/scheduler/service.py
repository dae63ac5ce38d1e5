"""
Task Scheduler — recurring task definitions, due polling, and execution.

``run_scheduler`` is one tick: it takes the single-owner lock, runs every
due task sequentially, and isolates failures per task. ``start_scheduler``
runs a tick immediately and then every ``interval_minutes`` on the event
loop until ``stop_scheduler`` is called. Celery beat drives the same tick
in deployed environments (see ``workers.automation``).
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from core import clock
from core.exceptions import TaskConfigError, TaskNotFoundError
from db.domain import NewTask, ScheduledTask, TaskExecution, TaskRunStatus, TaskType
from db.store import DataStore, with_timeout
from notifications.dispatcher import NotificationDispatcher
from scheduler.handlers import TaskHandler
from scheduler.locks import LocalSchedulerLock, SchedulerLock
from scheduler.schedule import compute_next_run

logger = structlog.get_logger()


@dataclass
class SchedulerState:
    """Runtime counters for one scheduler instance, reported by /health."""

    started_at: datetime | None = None
    running: bool = False
    ticks: int = 0
    skipped_ticks: int = 0
    tasks_executed: int = 0
    tasks_failed: int = 0
    last_tick_at: datetime | None = None

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "running": self.running,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "tasks_executed": self.tasks_executed,
            "tasks_failed": self.tasks_failed,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }


@dataclass
class SchedulerTickResult:
    acquired: bool = True
    due: int = 0
    executions: list[TaskExecution] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(1 for execution in self.executions if execution.status == TaskRunStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return len(self.executions) - self.succeeded + len(self.errors)


class TaskScheduler:
    def __init__(
        self,
        store: DataStore,
        handlers: dict[TaskType, TaskHandler],
        dispatcher: NotificationDispatcher,
        lock: SchedulerLock | None = None,
        state: SchedulerState | None = None,
        store_timeout: float | None = None,
    ):
        missing = set(TaskType) - set(handlers)
        if missing:
            raise ValueError(f"Missing task handlers for: {', '.join(sorted(t.value for t in missing))}")
        self.store = store
        self.handlers = handlers
        self.dispatcher = dispatcher
        self.lock = lock or LocalSchedulerLock()
        self.state = state or SchedulerState()
        self.store_timeout = store_timeout
        self._loop_task: asyncio.Task | None = None

    async def _call(self, awaitable):
        return await with_timeout(awaitable, self.store_timeout)

    # ── Task definitions ────────────────────────────────────────────────

    async def create_task(self, tenant_id: str, new_task: NewTask) -> str:
        now = clock.now()
        task = ScheduledTask(
            tenant_id=tenant_id,
            name=new_task.name,
            description=new_task.description,
            task_type=TaskType(new_task.task_type),
            frequency=new_task.frequency,
            cron_expression=new_task.cron_expression,
            config=dict(new_task.config),
            enabled=new_task.enabled,
            recipients=list(new_task.recipients),
            next_run_at=compute_next_run(new_task.frequency, new_task.cron_expression, now),
            created_at=now,
        )
        await self._call(self.store.save_task(task))
        logger.info(
            "scheduler.task_created",
            tenant_id=tenant_id,
            task_id=task.task_id,
            task_type=task.task_type.value,
            next_run_at=task.next_run_at.isoformat(),
        )
        return task.task_id

    async def get_due_tasks(self, now: datetime | None = None) -> list[ScheduledTask]:
        now = now or clock.now()
        tasks = await self._call(self.store.list_due_tasks(now))
        # The store filters too; never hand back a disabled task regardless.
        return [task for task in tasks if task.enabled and task.next_run_at <= now]

    # ── Execution ───────────────────────────────────────────────────────

    async def execute_task(self, task_id: str) -> TaskExecution:
        """
        Run one task now and record the outcome.

        Handler errors never escape: they become a ``failed`` execution whose
        error is also emailed to the task's recipients. Once the handler has
        run, store errors while recording the outcome are logged and the
        completion email still goes out.
        """
        task = await self._call(self.store.get_task(task_id))
        if task is None:
            raise TaskNotFoundError(task_id)

        log = logger.bind(tenant_id=task.tenant_id, task_id=task.task_id, task_type=task.task_type.value)
        execution = TaskExecution(task_id=task.task_id, started_at=clock.now())
        await self._call(self.store.save_task_execution(execution))
        started = time.perf_counter()

        try:
            handler = self.handlers.get(task.task_type)
            if handler is None:
                raise TaskConfigError(f"No handler for task type {task.task_type.value}")
            execution.output = await handler.execute(task)
            execution.status = TaskRunStatus.SUCCESS
        except Exception as exc:  # noqa: BLE001
            execution.status = TaskRunStatus.FAILED
            execution.error = str(exc) or exc.__class__.__name__
            log.error("scheduler.task_failed", error=execution.error)

        execution.completed_at = clock.now()
        execution.duration_ms = int((time.perf_counter() - started) * 1000)
        try:
            await self._call(self.store.save_task_execution(execution))
        except Exception as exc:  # noqa: BLE001
            log.error("scheduler.execution_save_failed", execution_id=execution.execution_id, error=str(exc))

        task.last_run_at = execution.completed_at
        task.last_run_status = execution.status
        task.next_run_at = compute_next_run(task.frequency, task.cron_expression, execution.completed_at)
        try:
            await self._call(self.store.update_task(task))
        except Exception as exc:  # noqa: BLE001
            log.error("scheduler.task_update_failed", error=str(exc))

        if task.recipients:
            await self.dispatcher.dispatch_task_completion(task, execution)

        log.info(
            "scheduler.task_executed",
            status=execution.status.value,
            duration_ms=execution.duration_ms,
            next_run_at=task.next_run_at.isoformat(),
        )
        return execution

    async def run_scheduler(self) -> SchedulerTickResult:
        """One tick: execute every due task sequentially under the scheduler lock."""
        if not await self.lock.acquire():
            self.state.skipped_ticks += 1
            logger.warning("scheduler.tick_skipped", reason="lock_held")
            return SchedulerTickResult(acquired=False)

        result = SchedulerTickResult()
        try:
            self.state.ticks += 1
            self.state.last_tick_at = clock.now()
            due = await self.get_due_tasks()
            result.due = len(due)
            logger.info("scheduler.tick_started", due=len(due))

            for task in due:
                try:
                    execution = await self.execute_task(task.task_id)
                except Exception as exc:  # noqa: BLE001
                    result.errors[task.task_id] = str(exc)
                    self.state.tasks_failed += 1
                    logger.error("scheduler.task_error", task_id=task.task_id, error=str(exc), exc_info=True)
                    continue
                result.executions.append(execution)
                self.state.tasks_executed += 1
                if execution.status != TaskRunStatus.SUCCESS:
                    self.state.tasks_failed += 1
        finally:
            await self.lock.release()

        logger.info("scheduler.tick_complete", due=result.due, succeeded=result.succeeded, failed=result.failed)
        return result

    # ── Loop ────────────────────────────────────────────────────────────

    def start_scheduler(self, interval_minutes: float = 5) -> asyncio.Task:
        if self._loop_task is not None and not self._loop_task.done():
            return self._loop_task
        self.state.started_at = clock.now()
        self.state.running = True
        self._loop_task = asyncio.create_task(self._loop(interval_minutes * 60), name="task-scheduler")
        logger.info("scheduler.started", interval_minutes=interval_minutes)
        return self._loop_task

    async def stop_scheduler(self) -> None:
        task, self._loop_task = self._loop_task, None
        self.state.running = False
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("scheduler.stopped")

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.run_scheduler()
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler.tick_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(interval_seconds)
