"""
Workflow action handlers — one per ``ActionType``.

Every handler renders ``{{path}}`` tokens in its config against the trigger
context before acting, then reports an ``ActionResult``. Handlers may raise
(missing config, unknown entity); the engine records that as a failed
action and moves on to the next one.

Config keys by action type:
  send_email             to, subject, template
  create_purchase_order  supplier_id, items [{item_id, quantity}], site_id
  adjust_inventory       item_id, location_id, adjustment, reason
  update_item            item_id, updates
  create_alert           title, message, severity, alert_type, entity_type, entity_id
  call_webhook           url, method (POST), headers, body
  update_status          entity_type, entity_id, new_status
  run_report             report_type, format, filters
  assign_to_user         user_id, title, message
  execute_script         (always refused)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from core import clock
from core.exceptions import ActionConfigError
from db.domain import (
    ActionResult,
    ActionType,
    Alert,
    AlertSeverity,
    AlertType,
    Frequency,
    Notification,
    ScheduledTask,
    TaskType,
    new_id,
)
from db.store import DataStore, with_timeout
from notifications.channels import NotificationChannel
from notifications.dispatcher import NotificationDispatcher
from workflows.templating import render_template

if TYPE_CHECKING:
    from scheduler.handlers import TaskHandler

logger = structlog.get_logger()

WORKFLOW_ALERT_RULE_ID = "workflow"


@dataclass
class ActionDependencies:
    store: DataStore
    channel: NotificationChannel
    dispatcher: NotificationDispatcher
    report_handler: "TaskHandler | None" = None
    http_timeout: float = 10.0
    store_timeout: float | None = None
    http_client: httpx.AsyncClient | None = None


class ActionHandler(ABC):
    action_type: ActionType

    def __init__(self, deps: ActionDependencies):
        self.deps = deps
        self.store = deps.store

    @abstractmethod
    async def execute(self, config: dict[str, Any], context: dict[str, Any], tenant_id: str) -> ActionResult:
        ...

    def ok(self, message: str) -> ActionResult:
        return ActionResult(action=self.action_type.value, success=True, message=message)

    def failed(self, error: str, message: str | None = None) -> ActionResult:
        return ActionResult(action=self.action_type.value, success=False, message=message, error=error)

    async def _call(self, awaitable):
        return await with_timeout(awaitable, self.deps.store_timeout)


def _require(config: dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if config.get(key) in (None, "")]
    if missing:
        raise ActionConfigError(f"Missing action config: {', '.join(missing)}")


_ACTION_HANDLERS: dict[ActionType, type[ActionHandler]] = {}


def register_action_handler(handler_cls: type[ActionHandler]) -> type[ActionHandler]:
    """Decorator: register a handler class for its action type."""
    _ACTION_HANDLERS[handler_cls.action_type] = handler_cls
    return handler_cls


def build_action_handlers(deps: ActionDependencies) -> dict[ActionType, ActionHandler]:
    return {action_type: handler_cls(deps) for action_type, handler_cls in _ACTION_HANDLERS.items()}


# ──────────────────────────────────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────────────────────────────────


@register_action_handler
class SendEmailAction(ActionHandler):
    action_type = ActionType.SEND_EMAIL

    async def execute(self, config, context, tenant_id):
        _require(config, "to")
        rendered = render_template(config, context)
        to = rendered["to"]
        sent = await self.deps.channel.send(to, rendered.get("subject") or "", rendered.get("template") or "")
        if not sent:
            return self.failed("Notification channel did not accept the message", f"Email failed: {to}")
        return self.ok(f"Email sent to {to}")


@register_action_handler
class CreatePurchaseOrderAction(ActionHandler):
    action_type = ActionType.CREATE_PURCHASE_ORDER

    async def execute(self, config, context, tenant_id):
        rendered = render_template(config, context)
        _require(rendered, "supplier_id", "items")
        lines = []
        for line in rendered["items"]:
            try:
                lines.append({"item_id": line["item_id"], "quantity": float(line["quantity"])})
            except (KeyError, TypeError, ValueError) as exc:
                raise ActionConfigError(f"Invalid purchase order line: {line!r}") from exc
        po_number = await self._call(
            self.store.create_purchase_order(
                tenant_id, rendered["supplier_id"], lines, rendered.get("site_id"), source="workflow"
            )
        )
        return self.ok(f"Created PO {po_number} for supplier {rendered['supplier_id']}")


@register_action_handler
class AdjustInventoryAction(ActionHandler):
    action_type = ActionType.ADJUST_INVENTORY

    async def execute(self, config, context, tenant_id):
        rendered = render_template(config, context)
        _require(rendered, "item_id", "location_id", "adjustment")
        try:
            adjustment = float(rendered["adjustment"])
        except (TypeError, ValueError) as exc:
            raise ActionConfigError(f"adjustment must be numeric, got {rendered['adjustment']!r}") from exc
        on_hand = await self._call(
            self.store.adjust_inventory(
                tenant_id, rendered["item_id"], rendered["location_id"], adjustment, rendered.get("reason")
            )
        )
        return self.ok(f"Adjusted inventory for item {rendered['item_id']} by {adjustment:g} (on hand {on_hand:g})")


@register_action_handler
class UpdateItemAction(ActionHandler):
    action_type = ActionType.UPDATE_ITEM

    async def execute(self, config, context, tenant_id):
        rendered = render_template(config, context)
        _require(rendered, "item_id", "updates")
        await self._call(self.store.update_item(tenant_id, rendered["item_id"], dict(rendered["updates"])))
        return self.ok(f"Updated item {rendered['item_id']}")


@register_action_handler
class CreateAlertAction(ActionHandler):
    action_type = ActionType.CREATE_ALERT

    async def execute(self, config, context, tenant_id):
        _require(config, "title")
        rendered = render_template(config, context)
        try:
            severity = AlertSeverity(rendered.get("severity") or AlertSeverity.WARNING.value)
            alert_type = AlertType(rendered.get("alert_type") or AlertType.REORDER_POINT_REACHED.value)
        except ValueError as exc:
            raise ActionConfigError(str(exc)) from exc

        alert = Alert(
            tenant_id=tenant_id,
            rule_id=WORKFLOW_ALERT_RULE_ID,
            alert_type=alert_type,
            severity=severity,
            title=rendered["title"],
            message=rendered.get("message") or "",
            entity_type=rendered.get("entity_type") or "workflow",
            entity_id=rendered.get("entity_id") or new_id(),
            metadata={"source": "workflow"},
            triggered_at=clock.now(),
        )
        await self._call(self.store.save_alert(alert))
        await self.deps.dispatcher.dispatch_alert(alert)
        return self.ok(f"Alert created: {alert.title}")


@register_action_handler
class CallWebhookAction(ActionHandler):
    action_type = ActionType.CALL_WEBHOOK

    async def execute(self, config, context, tenant_id):
        _require(config, "url")
        url = render_template(config["url"], context)
        method = str(config.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", **render_template(dict(config.get("headers") or {}), context)}
        body = render_template(config.get("body"), context)

        if self.deps.http_client is not None:
            response = await self.deps.http_client.request(
                method, url, headers=headers, json=body, timeout=self.deps.http_timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.deps.http_timeout) as client:
                response = await client.request(method, url, headers=headers, json=body)

        if not response.is_success:
            return self.failed(f"Webhook returned status {response.status_code}")
        return self.ok(f"Webhook called successfully: {url}")


@register_action_handler
class UpdateStatusAction(ActionHandler):
    action_type = ActionType.UPDATE_STATUS

    async def execute(self, config, context, tenant_id):
        rendered = render_template(config, context)
        _require(rendered, "entity_type", "entity_id", "new_status")
        await self._call(
            self.store.update_status(tenant_id, rendered["entity_type"], rendered["entity_id"], rendered["new_status"])
        )
        return self.ok(
            f"Updated {rendered['entity_type']} {rendered['entity_id']} status to {rendered['new_status']}"
        )


@register_action_handler
class RunReportAction(ActionHandler):
    """Runs the scheduled report handler once, outside any schedule."""

    action_type = ActionType.RUN_REPORT

    async def execute(self, config, context, tenant_id):
        if self.deps.report_handler is None:
            return self.failed("Report generation is not configured")
        rendered = render_template(config, context)
        _require(rendered, "report_type")
        task = ScheduledTask(
            tenant_id=tenant_id,
            name=f"Workflow report: {rendered['report_type']}",
            task_type=TaskType.REPORT,
            frequency=Frequency.CUSTOM,
            next_run_at=clock.now(),
            config=rendered,
        )
        output = await self.deps.report_handler.execute(task)
        return self.ok(f"Report {output['report_type']} written to {output['file']} ({output['record_count']} rows)")


@register_action_handler
class AssignToUserAction(ActionHandler):
    action_type = ActionType.ASSIGN_TO_USER

    async def execute(self, config, context, tenant_id):
        rendered = render_template(config, context)
        _require(rendered, "user_id")
        await self._call(
            self.store.save_notification(
                Notification(
                    tenant_id=tenant_id,
                    user_id=rendered["user_id"],
                    category="assignment",
                    title=rendered.get("title") or "New assignment",
                    message=rendered.get("message") or "",
                    reference_type=rendered.get("entity_type"),
                    reference_id=rendered.get("entity_id"),
                    created_at=clock.now(),
                )
            )
        )
        return self.ok(f"Assigned to user {rendered['user_id']}")


@register_action_handler
class ExecuteScriptAction(ActionHandler):
    action_type = ActionType.EXECUTE_SCRIPT

    async def execute(self, config, context, tenant_id):
        logger.warning("workflow.script_refused", tenant_id=tenant_id)
        return self.failed("Script execution is disabled")


_missing = set(ActionType) - set(_ACTION_HANDLERS)
if _missing:
    raise RuntimeError(f"No action handler registered for: {', '.join(sorted(a.value for a in _missing))}")
