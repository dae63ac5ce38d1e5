"""
Scheduled task handlers — one per task type.

Handlers receive the full ``ScheduledTask`` and return a JSON-safe output
payload that is stored on the ``TaskExecution``. Raising marks the run as
failed with the exception message as the error.

Config keys by task type:
  report       report_type, format (csv|json), filters
  export       entity_type, format (csv|json), destination
  backup       destination, include_attachments
  alert_check  site_id (optional)
  sync         integration_type, direction (pull|push), url, headers
  cleanup      data_type, retention_days
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pandas as pd
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core import clock
from core.exceptions import AlertScanError, TaskConfigError
from db.domain import Frequency, NewTask, ScheduledTask, TaskType
from db.store import OPEN_PURCHASE_ORDER_STATUSES, PURGEABLE_DATA_TYPES, DataStore, with_timeout

if TYPE_CHECKING:
    from alerts.engine import AlertEngine

logger = structlog.get_logger()

SUPPORTED_FORMATS = ("csv", "json")
REPORT_TYPES = ("inventory_summary", "low_stock", "alerts", "purchase_orders", "vendor_scorecard", "forecast")
EXPORT_ENTITY_TYPES = ("items", "alerts", "purchase_orders", "tasks", "workflows")


@dataclass
class HandlerDependencies:
    store: DataStore
    alert_engine: "AlertEngine"
    report_output_dir: str
    export_output_dir: str
    backup_output_dir: str
    http_timeout: float = 10.0
    store_timeout: float | None = None
    http_client: httpx.AsyncClient | None = None


class TaskHandler(ABC):
    task_type: TaskType

    def __init__(self, deps: HandlerDependencies):
        self.deps = deps
        self.store = deps.store

    @abstractmethod
    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        ...

    async def _read(self, awaitable):
        return await with_timeout(awaitable, self.deps.store_timeout)


_TASK_HANDLERS: dict[TaskType, type[TaskHandler]] = {}


def register_task_handler(handler_cls: type[TaskHandler]) -> type[TaskHandler]:
    """Decorator: register a handler class for its task type."""
    _TASK_HANDLERS[handler_cls.task_type] = handler_cls
    return handler_cls


def build_task_handlers(deps: HandlerDependencies) -> dict[TaskType, TaskHandler]:
    return {task_type: handler_cls(deps) for task_type, handler_cls in _TASK_HANDLERS.items()}


# ──────────────────────────────────────────────────────────────────────────
# Shared helpers
# ──────────────────────────────────────────────────────────────────────────


def _output_format(config: dict[str, Any]) -> str:
    fmt = str(config.get("format") or "csv").lower()
    if fmt not in SUPPORTED_FORMATS:
        raise TaskConfigError(f"Unsupported format '{fmt}'; expected one of {', '.join(SUPPORTED_FORMATS)}")
    return fmt


def _positive_days(filters: dict[str, Any], key: str, default: int) -> int:
    try:
        days = int(filters.get(key, default))
    except (TypeError, ValueError) as exc:
        raise TaskConfigError(f"{key} must be an integer") from exc
    if days <= 0:
        raise TaskConfigError(f"{key} must be positive")
    return days


def _local_directory(destination: str | None, default: str) -> Path:
    target = destination or default
    if "://" in target:
        raise TaskConfigError(f"Only local filesystem destinations are supported, got '{target}'")
    return Path(target)


def _file_name(prefix: str, tenant_id: str, ext: str) -> str:
    stamp = clock.now().strftime("%Y%m%dT%H%M%S")
    return f"{prefix}_{tenant_id}_{stamp}_{uuid.uuid4().hex[:8]}.{ext}"


def _write_frame(frame: pd.DataFrame, path: Path, fmt: str) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "csv":
        frame.to_csv(path, index=False)
    else:
        frame.to_json(path, orient="records", date_format="iso")
    return path.stat().st_size


def _alert_row(alert) -> dict[str, Any]:
    return {
        "alert_id": alert.alert_id,
        "type": alert.alert_type.value,
        "severity": alert.severity.value,
        "title": alert.title,
        "entity_type": alert.entity_type,
        "entity_id": alert.entity_id,
        "triggered_at": alert.triggered_at,
        "acknowledged_by": alert.acknowledged_by,
        "resolved": alert.resolved,
    }


async def _item_rows(store_read, store: DataStore, tenant_id: str, site_id: str | None = None) -> list[dict]:
    items = await store_read(store.list_item_stock(tenant_id, site_id))
    return [
        {
            "item_id": item.item_id,
            "sku": item.sku,
            "name": item.name,
            "on_hand": item.on_hand,
            "reorder_point": item.reorder_point,
            "unit_cost": item.unit_cost,
            "value": round(item.on_hand * (item.unit_cost or 0), 2),
        }
        for item in items
    ]


# ──────────────────────────────────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────────────────────────────────


@register_task_handler
class ReportTaskHandler(TaskHandler):
    task_type = TaskType.REPORT

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        report_type = task.config.get("report_type")
        if report_type not in REPORT_TYPES:
            raise TaskConfigError(f"Unsupported report type: {report_type}")
        fmt = _output_format(task.config)
        filters = dict(task.config.get("filters") or {})

        frame = await self.build_report(task.tenant_id, report_type, filters)
        path = Path(self.deps.report_output_dir) / _file_name(report_type, task.tenant_id, fmt)
        size = await asyncio.to_thread(_write_frame, frame, path, fmt)

        logger.info("task.report_written", tenant_id=task.tenant_id, report_type=report_type, rows=len(frame))
        return {
            "report_type": report_type,
            "format": fmt,
            "record_count": len(frame),
            "file": str(path),
            "size": size,
        }

    async def build_report(self, tenant_id: str, report_type: str, filters: dict[str, Any]) -> pd.DataFrame:
        site_id = filters.get("site_id")

        if report_type == "inventory_summary":
            return pd.DataFrame(await _item_rows(self._read, self.store, tenant_id, site_id))

        if report_type == "low_stock":
            rows = await _item_rows(self._read, self.store, tenant_id, site_id)
            return pd.DataFrame([row for row in rows if 0 < row["reorder_point"] and row["on_hand"] <= row["reorder_point"]])

        if report_type == "alerts":
            alerts = await self._read(self.store.list_alerts(tenant_id, bool(filters.get("include_resolved"))))
            return pd.DataFrame([_alert_row(alert) for alert in alerts])

        if report_type == "purchase_orders":
            return pd.DataFrame(await self._read(self.store.list_purchase_orders(tenant_id)))

        if report_type == "vendor_scorecard":
            orders = pd.DataFrame(await self._read(self.store.list_purchase_orders(tenant_id)))
            if orders.empty:
                return pd.DataFrame(columns=["supplier", "total_orders", "open_orders", "received_orders", "receive_rate"])
            orders["is_open"] = orders["status"].isin(OPEN_PURCHASE_ORDER_STATUSES)
            orders["is_received"] = orders["status"] == "received"
            scorecard = (
                orders.groupby("supplier")
                .agg(
                    total_orders=("po_id", "count"),
                    open_orders=("is_open", "sum"),
                    received_orders=("is_received", "sum"),
                )
                .reset_index()
            )
            scorecard["receive_rate"] = (scorecard["received_orders"] / scorecard["total_orders"]).round(3)
            return scorecard

        # forecast: straight-line projection of trailing consumption
        historical_days = _positive_days(filters, "historical_days", 90)
        forecast_days = _positive_days(filters, "forecast_days", 30)
        since = clock.now() - timedelta(days=historical_days)
        items = pd.DataFrame(await _item_rows(self._read, self.store, tenant_id, site_id))
        if items.empty:
            return items
        consumed = await self._read(self.store.consumption_totals(tenant_id, since, site_id))
        items["daily_usage"] = items["item_id"].map(lambda item_id: consumed.get(item_id, 0) / historical_days)
        items["forecast_demand"] = (items["daily_usage"] * forecast_days).round(2)
        items["projected_on_hand"] = (items["on_hand"] - items["forecast_demand"]).round(2)
        return items[["item_id", "sku", "name", "on_hand", "daily_usage", "forecast_demand", "projected_on_hand"]]


@register_task_handler
class ExportTaskHandler(TaskHandler):
    task_type = TaskType.EXPORT

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        entity_type = task.config.get("entity_type")
        if entity_type not in EXPORT_ENTITY_TYPES:
            raise TaskConfigError(f"Unsupported export entity type: {entity_type}")
        fmt = _output_format(task.config)
        directory = _local_directory(task.config.get("destination"), self.deps.export_output_dir)

        rows = await self.export_rows(task.tenant_id, entity_type)
        path = directory / _file_name(entity_type, task.tenant_id, fmt)
        size = await asyncio.to_thread(_write_frame, pd.DataFrame(rows), path, fmt)

        return {
            "entity_type": entity_type,
            "format": fmt,
            "record_count": len(rows),
            "destination": str(path),
            "size": size,
        }

    async def export_rows(self, tenant_id: str, entity_type: str) -> list[dict[str, Any]]:
        if entity_type == "items":
            return await _item_rows(self._read, self.store, tenant_id)
        if entity_type == "alerts":
            return [_alert_row(alert) for alert in await self._read(self.store.list_alerts(tenant_id, True))]
        if entity_type == "purchase_orders":
            return await self._read(self.store.list_purchase_orders(tenant_id))
        if entity_type == "tasks":
            tasks = await self._read(self.store.list_tasks(tenant_id))
            return [
                {
                    "task_id": task.task_id,
                    "name": task.name,
                    "task_type": task.task_type.value,
                    "frequency": task.frequency.value,
                    "enabled": task.enabled,
                    "last_run_at": task.last_run_at,
                    "last_run_status": task.last_run_status.value if task.last_run_status else None,
                    "next_run_at": task.next_run_at,
                }
                for task in tasks
            ]
        workflows = await self._read(self.store.list_workflows(tenant_id, enabled_only=False))
        return [
            {
                "workflow_id": workflow.workflow_id,
                "name": workflow.name,
                "trigger_type": workflow.trigger.trigger_type.value,
                "enabled": workflow.enabled,
                "conditions": len(workflow.conditions),
                "actions": len(workflow.actions),
                "execution_count": workflow.execution_count,
                "last_executed_at": workflow.last_executed_at,
            }
            for workflow in workflows
        ]


@register_task_handler
class BackupTaskHandler(TaskHandler):
    """JSON snapshot of a tenant's automation records."""

    task_type = TaskType.BACKUP

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        directory = _local_directory(task.config.get("destination"), self.deps.backup_output_dir)
        snapshot = await self.snapshot(task.tenant_id)
        payload = json.dumps(
            {"tenant_id": task.tenant_id, "created_at": clock.now().isoformat(), "records": snapshot},
            default=str,
            indent=2,
        )
        path = directory / _file_name("backup", task.tenant_id, "json")
        await asyncio.to_thread(self._write, path, payload)

        return {
            "backup_file": str(path),
            "size": len(payload.encode("utf-8")),
            "include_attachments": bool(task.config.get("include_attachments", False)),
            "record_counts": {name: len(rows) for name, rows in snapshot.items()},
        }

    async def snapshot(self, tenant_id: str) -> dict[str, list[dict[str, Any]]]:
        alerts = await self._read(self.store.list_alerts(tenant_id, True))
        tasks = await self._read(self.store.list_tasks(tenant_id))
        workflows = await self._read(self.store.list_workflows(tenant_id, enabled_only=False))

        task_executions = []
        for scheduled in tasks:
            task_executions.extend(await self._read(self.store.list_task_executions(scheduled.task_id)))
        workflow_executions = []
        for workflow in workflows:
            workflow_executions.extend(await self._read(self.store.list_workflow_executions(workflow.workflow_id)))

        return {
            "alerts": [_alert_row(alert) for alert in alerts],
            "tasks": [vars(scheduled) for scheduled in tasks],
            "task_executions": [vars(execution) for execution in task_executions],
            "workflows": [
                {
                    "workflow_id": workflow.workflow_id,
                    "name": workflow.name,
                    "enabled": workflow.enabled,
                    "trigger_type": workflow.trigger.trigger_type.value,
                    "trigger_config": workflow.trigger.config,
                    "conditions": [condition.to_dict() for condition in workflow.conditions],
                    "actions": [action.to_dict() for action in workflow.actions],
                }
                for workflow in workflows
            ],
            "workflow_executions": [
                {
                    "execution_id": execution.execution_id,
                    "workflow_id": execution.workflow_id,
                    "status": execution.status.value,
                    "triggered_by": execution.triggered_by,
                    "triggered_at": execution.triggered_at,
                    "results": [result.to_dict() for result in execution.results],
                }
                for execution in workflow_executions
            ],
        }

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")


@register_task_handler
class AlertCheckTaskHandler(TaskHandler):
    task_type = TaskType.ALERT_CHECK

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        result = await self.deps.alert_engine.run_checks(task.tenant_id, task.config.get("site_id"))
        # Alerts from the healthy categories are already saved and sent
        if result.errors:
            raise AlertScanError(result.errors)
        return result.summary()


@register_task_handler
class SyncTaskHandler(TaskHandler):
    """Pull records from, or push item stock to, an integration endpoint."""

    task_type = TaskType.SYNC

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        url = task.config.get("url")
        if not url:
            raise TaskConfigError("Sync task requires a 'url'")
        direction = str(task.config.get("direction") or "pull").lower()
        if direction not in ("pull", "push"):
            raise TaskConfigError(f"Unsupported sync direction: {direction}")
        headers = dict(task.config.get("headers") or {})

        if direction == "pull":
            payload = await self._request("GET", url, headers)
            records = payload.get("records", []) if isinstance(payload, dict) else payload
            synced = len(records or [])
        else:
            rows = await _item_rows(self._read, self.store, task.tenant_id)
            await self._request("POST", url, headers, json.loads(json.dumps({"records": rows}, default=str)))
            synced = len(rows)

        return {
            "integration_type": task.config.get("integration_type"),
            "direction": direction,
            "records_synced": synced,
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, headers: dict, body: Any = None) -> Any:
        if self.deps.http_client is not None:
            response = await self.deps.http_client.request(
                method, url, headers=headers, json=body, timeout=self.deps.http_timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.deps.http_timeout) as client:
                response = await client.request(method, url, headers=headers, json=body)
        response.raise_for_status()
        return response.json() if response.content else None


@register_task_handler
class CleanupTaskHandler(TaskHandler):
    task_type = TaskType.CLEANUP

    async def execute(self, task: ScheduledTask) -> dict[str, Any]:
        data_type = task.config.get("data_type")
        if data_type not in PURGEABLE_DATA_TYPES:
            raise TaskConfigError(f"Unsupported cleanup data type: {data_type}")
        try:
            retention_days = int(task.config.get("retention_days", 90))
        except (TypeError, ValueError) as exc:
            raise TaskConfigError("retention_days must be an integer") from exc
        if retention_days < 0:
            raise TaskConfigError("retention_days must not be negative")

        cutoff = clock.now() - timedelta(days=retention_days)
        deleted = await self._read(self.store.purge(task.tenant_id, data_type, cutoff))
        return {"data_type": data_type, "retention_days": retention_days, "records_deleted": deleted}


_missing = set(TaskType) - set(_TASK_HANDLERS)
if _missing:
    raise RuntimeError(f"No task handler registered for: {', '.join(sorted(t.value for t in _missing))}")


# ──────────────────────────────────────────────────────────────────────────
# Templates
# ──────────────────────────────────────────────────────────────────────────

TASK_TEMPLATES: dict[str, NewTask] = {
    "daily_inventory_report": NewTask(
        name="Daily Inventory Report",
        description="Automated daily inventory summary",
        task_type=TaskType.REPORT,
        frequency=Frequency.DAILY,
        config={"report_type": "inventory_summary", "format": "csv", "filters": {}},
    ),
    "weekly_vendor_scorecard": NewTask(
        name="Weekly Vendor Performance",
        description="Weekly supplier scorecard report",
        task_type=TaskType.REPORT,
        frequency=Frequency.WEEKLY,
        config={"report_type": "vendor_scorecard", "format": "csv", "filters": {}},
    ),
    "monthly_forecast": NewTask(
        name="Monthly Demand Forecast",
        description="Monthly inventory forecasting report",
        task_type=TaskType.REPORT,
        frequency=Frequency.MONTHLY,
        config={
            "report_type": "forecast",
            "format": "json",
            "filters": {"forecast_days": 30, "historical_days": 90},
        },
    ),
    "hourly_alert_check": NewTask(
        name="Hourly Alert Check",
        description="Check for critical inventory alerts",
        task_type=TaskType.ALERT_CHECK,
        frequency=Frequency.HOURLY,
    ),
    "daily_backup": NewTask(
        name="Daily Automation Backup",
        description="Automated daily backup",
        task_type=TaskType.BACKUP,
        frequency=Frequency.DAILY,
        config={"destination": None, "include_attachments": True},
    ),
    "weekly_cleanup": NewTask(
        name="Weekly Data Cleanup",
        description="Clean up old execution logs",
        task_type=TaskType.CLEANUP,
        frequency=Frequency.WEEKLY,
        config={"data_type": "task_executions", "retention_days": 90},
    ),
}
