"""
Data Store — the persistence capability consumed by the automation core.

The threshold monitor, the task scheduler and the workflow engine never
touch SQLAlchemy directly: they talk to a ``DataStore``. Two implementations
ship with the project:

  - ``db.sql.SQLAlchemyDataStore``  — async SQLAlchemy (Postgres / SQLite)
  - ``db.memory.InMemoryDataStore`` — dict-backed, for tests and embedding

Every call an engine makes through the store is wrapped in
``with_timeout`` so an unresponsive database degrades to a recorded
failure instead of blocking a scheduler tick forever.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from datetime import date, datetime
from typing import Any, TypeVar

from core.exceptions import StoreTimeoutError
from db.domain import (
    Alert,
    ItemStock,
    LotStock,
    Notification,
    ProductionOrderSnapshot,
    PurchaseOrderSnapshot,
    ScheduledTask,
    TaskExecution,
    TriggerType,
    User,
    Workflow,
    WorkflowExecution,
)

T = TypeVar("T")

# Movement types that count as consumption for stockout estimates
CONSUMPTION_EVENT_TYPES = ("issue", "consume", "sale", "ship", "scrap")

OPEN_PRODUCTION_STATUSES = ("planned", "released", "in_progress")
OPEN_PURCHASE_ORDER_STATUSES = ("approved", "sent", "partially_received")

# data_type -> what ``purge`` deletes
PURGEABLE_DATA_TYPES = ("task_executions", "workflow_executions", "notifications", "resolved_alerts")


async def with_timeout(awaitable: Awaitable[T], seconds: float | None) -> T:
    """Await a store call, raising ``StoreTimeoutError`` past ``seconds``."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise StoreTimeoutError(f"Data store call exceeded {seconds}s") from exc


class DataStore(ABC):
    """Read access to domain entities, read/write access to automation records."""

    # ── Domain reads (threshold monitor) ────────────────────────────────

    @abstractmethod
    async def list_item_stock(
        self,
        tenant_id: str,
        site_id: str | None = None,
        *,
        with_reorder_point: bool = False,
    ) -> list[ItemStock]:
        """Items with on-hand summed over balances in scope (all sites, or one)."""
        ...

    @abstractmethod
    async def consumption_totals(
        self,
        tenant_id: str,
        since: datetime,
        site_id: str | None = None,
    ) -> dict[str, float]:
        """item_id -> total consumed quantity since ``since``."""
        ...

    @abstractmethod
    async def items_with_movement(
        self,
        tenant_id: str,
        since: datetime,
        site_id: str | None = None,
    ) -> set[str]:
        """Ids of items with at least one inventory event since ``since``."""
        ...

    @abstractmethod
    async def list_expiring_lots(
        self,
        tenant_id: str,
        start: date,
        end: date,
        site_id: str | None = None,
    ) -> list[LotStock]:
        """Lots with remaining quantity > 0 expiring within [start, end]."""
        ...

    @abstractmethod
    async def list_overdue_production_orders(
        self,
        tenant_id: str,
        as_of: datetime,
        site_id: str | None = None,
    ) -> list[ProductionOrderSnapshot]:
        ...

    @abstractmethod
    async def list_purchase_orders_due(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        site_id: str | None = None,
    ) -> list[PurchaseOrderSnapshot]:
        ...

    @abstractmethod
    async def list_purchase_orders(self, tenant_id: str) -> list[dict[str, Any]]:
        ...

    # ── Domain writes (workflow actions) ────────────────────────────────

    @abstractmethod
    async def create_purchase_order(
        self,
        tenant_id: str,
        supplier_id: str,
        lines: list[dict[str, Any]],
        site_id: str | None = None,
        source: str = "workflow",
    ) -> str:
        """Create a draft PO and return its PO number."""
        ...

    @abstractmethod
    async def adjust_inventory(
        self,
        tenant_id: str,
        item_id: str,
        site_id: str,
        quantity: float,
        reason: str | None = None,
    ) -> float:
        """Apply a signed adjustment, log an ``adjust`` event, return new on-hand."""
        ...

    @abstractmethod
    async def update_item(self, tenant_id: str, item_id: str, updates: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_status(self, tenant_id: str, entity_type: str, entity_id: str, status: str) -> None:
        ...

    # ── Alerts ──────────────────────────────────────────────────────────

    @abstractmethod
    async def save_alert(self, alert: Alert) -> Alert:
        ...

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None:
        ...

    @abstractmethod
    async def mark_alert_acknowledged(self, alert_id: str, user_id: str, at: datetime) -> Alert | None:
        ...

    @abstractmethod
    async def mark_alert_resolved(self, alert_id: str, at: datetime) -> Alert | None:
        ...

    @abstractmethod
    async def find_active_alert(self, dedup_key: str, since: datetime) -> Alert | None:
        """Unresolved alert with ``dedup_key`` triggered at or after ``since``."""
        ...

    @abstractmethod
    async def list_alerts(self, tenant_id: str, include_resolved: bool = False) -> list[Alert]:
        ...

    # ── Notifications ───────────────────────────────────────────────────

    @abstractmethod
    async def save_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def list_users(self, tenant_id: str, roles: tuple[str, ...]) -> list[User]:
        ...

    # ── Scheduled tasks ─────────────────────────────────────────────────

    @abstractmethod
    async def save_task(self, task: ScheduledTask) -> ScheduledTask:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> ScheduledTask | None:
        ...

    @abstractmethod
    async def update_task(self, task: ScheduledTask) -> ScheduledTask:
        ...

    @abstractmethod
    async def list_tasks(self, tenant_id: str) -> list[ScheduledTask]:
        ...

    @abstractmethod
    async def list_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Enabled tasks across all tenants with ``next_run_at <= now``, oldest first."""
        ...

    @abstractmethod
    async def save_task_execution(self, execution: TaskExecution) -> TaskExecution:
        """Insert or update (by execution_id) one execution record."""
        ...

    @abstractmethod
    async def list_task_executions(self, task_id: str) -> list[TaskExecution]:
        ...

    # ── Workflows ───────────────────────────────────────────────────────

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        ...

    @abstractmethod
    async def list_workflows(
        self,
        tenant_id: str,
        trigger_type: TriggerType | None = None,
        enabled_only: bool = True,
    ) -> list[Workflow]:
        ...

    @abstractmethod
    async def record_workflow_run(self, workflow_id: str, executed_at: datetime) -> None:
        """Increment the execution count and stamp ``last_executed_at``."""
        ...

    @abstractmethod
    async def save_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        ...

    @abstractmethod
    async def list_workflow_executions(self, workflow_id: str) -> list[WorkflowExecution]:
        ...

    # ── Maintenance ─────────────────────────────────────────────────────

    @abstractmethod
    async def purge(self, tenant_id: str, data_type: str, cutoff: datetime) -> int:
        """Delete ``data_type`` records older than ``cutoff``; return rows deleted."""
        ...
