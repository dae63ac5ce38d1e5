"""
Notification Dispatcher — shared by the alert engine, the task scheduler
and workflow actions.

For every alert or event:
  1. Persist an in-app notification record
  2. Select email recipients (tenant admins/supervisors who have not opted
     out of the category, plus any explicit recipients)
  3. Send one email through the notification channel

Delivery is best-effort: neither step ever raises to the caller. Failures
are logged with the tenant and reference so operators can follow up.
"""

from dataclasses import dataclass, field

import structlog

from core import clock
from db.domain import Alert, AlertChannel, Notification, ScheduledTask, TaskExecution, TaskRunStatus
from db.store import DataStore, with_timeout
from notifications import templates
from notifications.channels import NotificationChannel, normalize_recipients

logger = structlog.get_logger()

ALERT_RECIPIENT_ROLES = ("admin", "supervisor")


@dataclass
class NotificationEvent:
    """A non-alert message routed through the dispatcher."""

    tenant_id: str
    category: str
    title: str
    message: str
    severity: str = "info"
    link: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    recipients: list[str] = field(default_factory=list)
    include_tenant_admins: bool = True
    subject: str | None = None
    html_body: str | None = None


class NotificationDispatcher:
    def __init__(
        self,
        store: DataStore,
        channel: NotificationChannel,
        app_url: str,
        store_timeout: float | None = None,
    ):
        self.store = store
        self.channel = channel
        self.app_url = app_url.rstrip("/")
        self.store_timeout = store_timeout

    async def dispatch(self, subject: Alert | NotificationEvent) -> None:
        if isinstance(subject, Alert):
            await self.dispatch_alert(subject)
        else:
            await self.dispatch_event(subject)

    async def dispatch_alert(
        self,
        alert: Alert,
        extra_recipients: list[str] | None = None,
        channels: tuple[AlertChannel, ...] = (AlertChannel.EMAIL, AlertChannel.IN_APP),
    ) -> None:
        category = alert.alert_type.value
        log = logger.bind(tenant_id=alert.tenant_id, alert_id=alert.alert_id, category=category)

        if AlertChannel.IN_APP in channels:
            await self._store_in_app(
                Notification(
                    tenant_id=alert.tenant_id,
                    category=category,
                    title=alert.title,
                    message=alert.message,
                    severity=alert.severity.value,
                    link=f"{self.app_url}/alerts/{alert.alert_id}",
                    reference_type="alert",
                    reference_id=alert.alert_id,
                    created_at=clock.now(),
                ),
                log,
            )

        if AlertChannel.EMAIL in channels:
            recipients = await self._recipients(alert.tenant_id, category, extra_recipients or [], True, log)
            await self._send_email(
                recipients,
                templates.alert_subject(alert),
                templates.render_alert_email(alert, self.app_url),
                log,
            )

    async def dispatch_event(self, event: NotificationEvent) -> None:
        log = logger.bind(tenant_id=event.tenant_id, category=event.category, reference_id=event.reference_id)

        await self._store_in_app(
            Notification(
                tenant_id=event.tenant_id,
                category=event.category,
                title=event.title,
                message=event.message,
                severity=event.severity,
                link=event.link,
                reference_type=event.reference_type,
                reference_id=event.reference_id,
                created_at=clock.now(),
            ),
            log,
        )

        recipients = await self._recipients(
            event.tenant_id, event.category, event.recipients, event.include_tenant_admins, log
        )
        await self._send_email(
            recipients,
            event.subject or event.title,
            event.html_body or f"<p>{event.message}</p>",
            log,
        )

    async def dispatch_task_completion(self, task: ScheduledTask, execution: TaskExecution) -> None:
        """Tell the task's recipients how a run went, failures included."""
        failed = execution.status != TaskRunStatus.SUCCESS
        message = f"Task '{task.name}' finished with status {execution.status.value}"
        if execution.error:
            message = f"{message}: {execution.error}"
        await self.dispatch_event(
            NotificationEvent(
                tenant_id=task.tenant_id,
                category="scheduled_task",
                title=templates.task_subject(task, execution),
                message=message,
                severity="warning" if failed else "info",
                reference_type="task_execution",
                reference_id=execution.execution_id,
                recipients=list(task.recipients),
                include_tenant_admins=False,
                subject=templates.task_subject(task, execution),
                html_body=templates.render_task_email(task, execution),
            )
        )

    async def select_recipients(self, tenant_id: str, category: str) -> list[str]:
        """Tenant admins/supervisors minus those who opted out of ``category``."""
        users = await with_timeout(self.store.list_users(tenant_id, ALERT_RECIPIENT_ROLES), self.store_timeout)
        return [user.email for user in users if user.email and user.wants(category)]

    # ── Internals ───────────────────────────────────────────────────────

    async def _recipients(self, tenant_id, category, explicit, include_admins, log) -> list[str]:
        recipients: list[str] = []
        if include_admins:
            try:
                recipients.extend(await self.select_recipients(tenant_id, category))
            except Exception as exc:  # noqa: BLE001
                log.warning("notification.recipient_lookup_failed", error=str(exc))
        recipients.extend(explicit)
        return normalize_recipients(recipients)

    async def _store_in_app(self, notification: Notification, log) -> None:
        try:
            await with_timeout(self.store.save_notification(notification), self.store_timeout)
        except Exception as exc:  # noqa: BLE001
            log.warning("notification.in_app_failed", error=str(exc))

    async def _send_email(self, recipients: list[str], subject: str, html_body: str, log) -> None:
        if not recipients:
            log.info("notification.no_recipients")
            return
        try:
            sent = await self.channel.send(recipients, subject, html_body)
        except Exception as exc:  # noqa: BLE001
            log.error("notification.email_failed", recipients=len(recipients), error=str(exc))
            return
        if sent:
            log.info("notification.email_sent", recipients=len(recipients))
        else:
            log.error("notification.email_failed", recipients=len(recipients), error="channel returned false")
