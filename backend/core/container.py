"""
Automation runtime — builds the object graph once per process.

    store ─┬─ dispatcher ─┬─ alert engine ── task handlers ── scheduler
           │              └─ action handlers ── workflow engine
           └─ channel

The API lifespan and the Celery workers each hold one ``AutomationRuntime``.
Tests build one around an ``InMemoryDataStore`` and a recording channel.
"""

from dataclasses import dataclass

import httpx

from alerts.engine import AlertEngine
from alerts.rules import AlertRuleSet
from core.config import Settings, get_settings
from db.domain import TaskType
from db.store import DataStore
from notifications.channels import LogChannel, NotificationChannel, SendGridChannel
from notifications.dispatcher import NotificationDispatcher
from scheduler.handlers import HandlerDependencies, build_task_handlers
from scheduler.locks import SchedulerLock, build_scheduler_lock
from scheduler.service import TaskScheduler
from workflows.actions import ActionDependencies, build_action_handlers
from workflows.engine import WorkflowEngine


@dataclass
class AutomationRuntime:
    settings: Settings
    store: DataStore
    channel: NotificationChannel
    dispatcher: NotificationDispatcher
    alert_engine: AlertEngine
    scheduler: TaskScheduler
    workflow_engine: WorkflowEngine

    async def close(self) -> None:
        await self.scheduler.stop_scheduler()
        await self.scheduler.lock.close()


def build_channel(settings: Settings) -> NotificationChannel:
    if settings.sendgrid_api_key:
        return SendGridChannel(
            settings.sendgrid_api_key,
            settings.alert_from_email,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return LogChannel()


def build_runtime(
    store: DataStore | None = None,
    *,
    settings: Settings | None = None,
    channel: NotificationChannel | None = None,
    rules: AlertRuleSet | None = None,
    lock: SchedulerLock | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AutomationRuntime:
    settings = settings or get_settings()
    if store is None:
        from db.session import get_session_factory
        from db.sql import SQLAlchemyDataStore

        store = SQLAlchemyDataStore(get_session_factory())

    channel = channel or build_channel(settings)
    store_timeout = settings.store_timeout_seconds
    dispatcher = NotificationDispatcher(store, channel, settings.app_url, store_timeout=store_timeout)

    alert_engine = AlertEngine(
        store,
        dispatcher,
        rules or AlertRuleSet(cooldown_minutes=settings.default_alert_cooldown_minutes),
        store_timeout=store_timeout,
    )

    task_handlers = build_task_handlers(
        HandlerDependencies(
            store=store,
            alert_engine=alert_engine,
            report_output_dir=settings.report_output_dir,
            export_output_dir=settings.export_output_dir,
            backup_output_dir=settings.backup_output_dir,
            http_timeout=settings.http_timeout_seconds,
            store_timeout=store_timeout,
            http_client=http_client,
        )
    )
    scheduler = TaskScheduler(
        store,
        task_handlers,
        dispatcher,
        lock=lock
        or build_scheduler_lock(
            settings.scheduler_lock_backend, settings.redis_url, settings.scheduler_lock_ttl_seconds
        ),
        store_timeout=store_timeout,
    )

    action_handlers = build_action_handlers(
        ActionDependencies(
            store=store,
            channel=channel,
            dispatcher=dispatcher,
            report_handler=task_handlers[TaskType.REPORT],
            http_timeout=settings.http_timeout_seconds,
            store_timeout=store_timeout,
            http_client=http_client,
        )
    )
    workflow_engine = WorkflowEngine(store, action_handlers, store_timeout=store_timeout)

    return AutomationRuntime(
        settings=settings,
        store=store,
        channel=channel,
        dispatcher=dispatcher,
        alert_engine=alert_engine,
        scheduler=scheduler,
        workflow_engine=workflow_engine,
    )
