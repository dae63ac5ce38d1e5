"""
In-memory DataStore.

Backs the engine tests and lets the automation core run embedded without a
database. Records are deep-copied on the way in and out so callers cannot
mutate stored state behind the store's back, mirroring a real database.
"""

import copy
import itertools
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from core import clock
from core.exceptions import EntityNotFoundError
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
    new_id,
)
from db.store import (
    CONSUMPTION_EVENT_TYPES,
    OPEN_PRODUCTION_STATUSES,
    OPEN_PURCHASE_ORDER_STATUSES,
    PURGEABLE_DATA_TYPES,
    DataStore,
)

UPDATABLE_ITEM_FIELDS = {"name", "sku", "status", "reorder_point", "unit_cost"}


@dataclass
class _Item:
    item_id: str
    tenant_id: str
    sku: str
    name: str
    reorder_point: float = 0
    unit_cost: float = 0
    status: str = "active"
    # site_id -> quantity
    balances: dict[str, float] = field(default_factory=dict)


@dataclass
class _Event:
    tenant_id: str
    item_id: str
    event_type: str
    quantity: float
    created_at: datetime
    site_id: str | None = None
    reason: str | None = None


@dataclass
class _Lot:
    lot_id: str
    tenant_id: str
    item_id: str
    lot_number: str
    expiration_date: date | None
    quantity: float
    site_id: str | None = None


@dataclass
class _ProductionOrder:
    order_id: str
    tenant_id: str
    item_id: str
    status: str
    scheduled_end: datetime | None
    order_number: str | None = None
    site_id: str | None = None


@dataclass
class _PurchaseOrder:
    po_id: str
    tenant_id: str
    supplier_id: str
    status: str
    expected_delivery: datetime | None = None
    po_number: str | None = None
    site_id: str | None = None
    source: str = "manual"
    lines: list[dict[str, Any]] = field(default_factory=list)


class InMemoryDataStore(DataStore):
    def __init__(self):
        self.items: dict[str, _Item] = {}
        self.events: list[_Event] = []
        self.lots: dict[str, _Lot] = {}
        self.suppliers: dict[str, str] = {}
        self.production_orders: dict[str, _ProductionOrder] = {}
        self.purchase_orders: dict[str, _PurchaseOrder] = {}
        self.users: dict[str, User] = {}
        self.alerts: dict[str, Alert] = {}
        self.notifications: dict[str, Notification] = {}
        self.tasks: dict[str, ScheduledTask] = {}
        self.task_executions: dict[str, TaskExecution] = {}
        self.workflows: dict[str, Workflow] = {}
        self.workflow_executions: dict[str, WorkflowExecution] = {}
        self._po_sequence = itertools.count(1)

    # ── Seeding helpers ─────────────────────────────────────────────────

    def add_item(
        self,
        tenant_id: str,
        sku: str,
        name: str,
        *,
        reorder_point: float = 0,
        unit_cost: float = 0,
        balances: dict[str, float] | None = None,
        item_id: str | None = None,
    ) -> str:
        item_id = item_id or new_id()
        self.items[item_id] = _Item(
            item_id=item_id,
            tenant_id=tenant_id,
            sku=sku,
            name=name,
            reorder_point=reorder_point,
            unit_cost=unit_cost,
            balances=dict(balances or {}),
        )
        return item_id

    def add_event(
        self,
        tenant_id: str,
        item_id: str,
        event_type: str,
        quantity: float,
        created_at: datetime,
        site_id: str | None = None,
    ) -> None:
        self.events.append(_Event(tenant_id, item_id, event_type, quantity, created_at, site_id))

    def add_lot(
        self,
        tenant_id: str,
        item_id: str,
        lot_number: str,
        expiration_date: date | None,
        quantity: float,
        site_id: str | None = None,
    ) -> str:
        lot_id = new_id()
        self.lots[lot_id] = _Lot(lot_id, tenant_id, item_id, lot_number, expiration_date, quantity, site_id)
        return lot_id

    def add_supplier(self, name: str, supplier_id: str | None = None) -> str:
        supplier_id = supplier_id or new_id()
        self.suppliers[supplier_id] = name
        return supplier_id

    def add_production_order(
        self,
        tenant_id: str,
        item_id: str,
        status: str,
        scheduled_end: datetime | None,
        order_number: str | None = None,
        site_id: str | None = None,
    ) -> str:
        order_id = new_id()
        self.production_orders[order_id] = _ProductionOrder(
            order_id, tenant_id, item_id, status, scheduled_end, order_number, site_id
        )
        return order_id

    def add_purchase_order(
        self,
        tenant_id: str,
        supplier_id: str,
        status: str,
        expected_delivery: datetime | None,
        po_number: str | None = None,
        site_id: str | None = None,
    ) -> str:
        po_id = new_id()
        self.purchase_orders[po_id] = _PurchaseOrder(
            po_id, tenant_id, supplier_id, status, expected_delivery, po_number, site_id
        )
        return po_id

    def add_user(self, user: User) -> None:
        self.users[user.user_id] = copy.deepcopy(user)

    # ── Domain reads ────────────────────────────────────────────────────

    async def list_item_stock(self, tenant_id, site_id=None, *, with_reorder_point=False):
        rows = []
        for item in self.items.values():
            if item.tenant_id != tenant_id:
                continue
            if with_reorder_point and not item.reorder_point > 0:
                continue
            if site_id is None:
                on_hand = sum(item.balances.values())
            else:
                on_hand = item.balances.get(site_id, 0)
            rows.append(
                ItemStock(
                    item_id=item.item_id,
                    sku=item.sku,
                    name=item.name,
                    on_hand=on_hand,
                    reorder_point=item.reorder_point,
                    unit_cost=item.unit_cost,
                )
            )
        return rows

    def _events_in_scope(self, tenant_id, since, site_id):
        for event in self.events:
            if event.tenant_id != tenant_id or event.created_at < since:
                continue
            if site_id is not None and event.site_id != site_id:
                continue
            yield event

    async def consumption_totals(self, tenant_id, since, site_id=None):
        totals: dict[str, float] = {}
        for event in self._events_in_scope(tenant_id, since, site_id):
            if event.event_type in CONSUMPTION_EVENT_TYPES:
                totals[event.item_id] = totals.get(event.item_id, 0) + abs(event.quantity)
        return totals

    async def items_with_movement(self, tenant_id, since, site_id=None):
        return {event.item_id for event in self._events_in_scope(tenant_id, since, site_id)}

    async def list_expiring_lots(self, tenant_id, start, end, site_id=None):
        rows = []
        for lot in self.lots.values():
            if lot.tenant_id != tenant_id or lot.expiration_date is None or lot.quantity <= 0:
                continue
            if site_id is not None and lot.site_id != site_id:
                continue
            if not start <= lot.expiration_date <= end:
                continue
            item = self.items.get(lot.item_id)
            rows.append(
                LotStock(
                    lot_id=lot.lot_id,
                    lot_number=lot.lot_number,
                    item_id=lot.item_id,
                    item_name=item.name if item else "Unknown",
                    sku=item.sku if item else "",
                    expiration_date=lot.expiration_date,
                    quantity=lot.quantity,
                )
            )
        return sorted(rows, key=lambda lot: lot.expiration_date)

    async def list_overdue_production_orders(self, tenant_id, as_of, site_id=None):
        rows = []
        for order in self.production_orders.values():
            if order.tenant_id != tenant_id or order.status not in OPEN_PRODUCTION_STATUSES:
                continue
            if site_id is not None and order.site_id != site_id:
                continue
            if order.scheduled_end is None or order.scheduled_end >= as_of:
                continue
            item = self.items.get(order.item_id)
            rows.append(
                ProductionOrderSnapshot(
                    order_id=order.order_id,
                    order_number=order.order_number,
                    item_name=item.name if item else "Unknown",
                    item_sku=item.sku if item else "",
                    status=order.status,
                    scheduled_end=order.scheduled_end,
                )
            )
        return rows

    async def list_purchase_orders_due(self, tenant_id, start, end, site_id=None):
        rows = []
        for po in self.purchase_orders.values():
            if po.tenant_id != tenant_id or po.status not in OPEN_PURCHASE_ORDER_STATUSES:
                continue
            if site_id is not None and po.site_id != site_id:
                continue
            if po.expected_delivery is None or not start <= po.expected_delivery <= end:
                continue
            rows.append(
                PurchaseOrderSnapshot(
                    po_id=po.po_id,
                    po_number=po.po_number,
                    supplier_name=self.suppliers.get(po.supplier_id, "Unknown"),
                    status=po.status,
                    expected_delivery=po.expected_delivery,
                )
            )
        return rows

    async def list_purchase_orders(self, tenant_id):
        return [
            {
                "po_id": po.po_id,
                "po_number": po.po_number,
                "supplier": self.suppliers.get(po.supplier_id, "Unknown"),
                "status": po.status,
                "expected_delivery": po.expected_delivery,
                "source": po.source,
                "line_count": len(po.lines),
            }
            for po in self.purchase_orders.values()
            if po.tenant_id == tenant_id
        ]

    # ── Domain writes ───────────────────────────────────────────────────

    async def create_purchase_order(self, tenant_id, supplier_id, lines, site_id=None, source="workflow"):
        if supplier_id not in self.suppliers:
            raise EntityNotFoundError(supplier_id)
        po_number = f"AUTO-PO-{next(self._po_sequence):06d}"
        po_id = new_id()
        self.purchase_orders[po_id] = _PurchaseOrder(
            po_id=po_id,
            tenant_id=tenant_id,
            supplier_id=supplier_id,
            status="draft",
            po_number=po_number,
            site_id=site_id,
            source=source,
            lines=copy.deepcopy(lines),
        )
        return po_number

    def _tenant_item(self, tenant_id, item_id) -> _Item:
        item = self.items.get(item_id)
        if item is None or item.tenant_id != tenant_id:
            raise EntityNotFoundError(item_id)
        return item

    async def adjust_inventory(self, tenant_id, item_id, site_id, quantity, reason=None):
        item = self._tenant_item(tenant_id, item_id)
        item.balances[site_id] = item.balances.get(site_id, 0) + quantity
        self.events.append(
            _Event(tenant_id, item_id, "adjust", quantity, clock.now(), site_id=site_id, reason=reason)
        )
        return item.balances[site_id]

    async def update_item(self, tenant_id, item_id, updates):
        item = self._tenant_item(tenant_id, item_id)
        unknown = set(updates) - UPDATABLE_ITEM_FIELDS
        if unknown:
            raise ValueError(f"Cannot update item fields: {', '.join(sorted(unknown))}")
        for key, value in updates.items():
            setattr(item, key, value)

    async def update_status(self, tenant_id, entity_type, entity_id, status):
        collections = {
            "item": self.items,
            "production_order": self.production_orders,
            "purchase_order": self.purchase_orders,
        }
        records = collections.get(entity_type)
        if records is None:
            raise ValueError(f"Unsupported entity type: {entity_type}")
        record = records.get(entity_id)
        if record is None or record.tenant_id != tenant_id:
            raise EntityNotFoundError(entity_id)
        record.status = status

    # ── Alerts ──────────────────────────────────────────────────────────

    async def save_alert(self, alert):
        self.alerts[alert.alert_id] = copy.deepcopy(alert)
        return alert

    async def get_alert(self, alert_id):
        alert = self.alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def mark_alert_acknowledged(self, alert_id, user_id, at):
        alert = self.alerts.get(alert_id)
        if alert is None:
            return None
        alert.acknowledged_by = user_id
        alert.acknowledged_at = at
        return copy.deepcopy(alert)

    async def mark_alert_resolved(self, alert_id, at):
        alert = self.alerts.get(alert_id)
        if alert is None:
            return None
        alert.resolved = True
        alert.resolved_at = at
        return copy.deepcopy(alert)

    async def find_active_alert(self, dedup_key, since):
        matches = [
            alert
            for alert in self.alerts.values()
            if alert.dedup_key == dedup_key and not alert.resolved and alert.triggered_at >= since
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda alert: alert.triggered_at))

    async def list_alerts(self, tenant_id, include_resolved=False):
        return [
            copy.deepcopy(alert)
            for alert in sorted(self.alerts.values(), key=lambda a: a.triggered_at)
            if alert.tenant_id == tenant_id and (include_resolved or not alert.resolved)
        ]

    # ── Notifications ───────────────────────────────────────────────────

    async def save_notification(self, notification):
        self.notifications[notification.notification_id] = copy.deepcopy(notification)
        return notification

    async def list_users(self, tenant_id, roles):
        wanted = {role.lower() for role in roles}
        return [
            copy.deepcopy(user)
            for user in self.users.values()
            if user.tenant_id == tenant_id and user.role.lower() in wanted
        ]

    # ── Scheduled tasks ─────────────────────────────────────────────────

    async def save_task(self, task):
        self.tasks[task.task_id] = copy.deepcopy(task)
        return task

    async def get_task(self, task_id):
        task = self.tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def update_task(self, task):
        if task.task_id not in self.tasks:
            raise EntityNotFoundError(task.task_id)
        self.tasks[task.task_id] = copy.deepcopy(task)
        return task

    async def list_tasks(self, tenant_id):
        return [copy.deepcopy(task) for task in self.tasks.values() if task.tenant_id == tenant_id]

    async def list_due_tasks(self, now):
        due = [task for task in self.tasks.values() if task.enabled and task.next_run_at <= now]
        return [copy.deepcopy(task) for task in sorted(due, key=lambda task: task.next_run_at)]

    async def save_task_execution(self, execution):
        self.task_executions[execution.execution_id] = copy.deepcopy(execution)
        return execution

    async def list_task_executions(self, task_id):
        return [
            copy.deepcopy(execution)
            for execution in sorted(self.task_executions.values(), key=lambda e: e.started_at)
            if execution.task_id == task_id
        ]

    # ── Workflows ───────────────────────────────────────────────────────

    async def save_workflow(self, workflow):
        self.workflows[workflow.workflow_id] = copy.deepcopy(workflow)
        return workflow

    async def get_workflow(self, workflow_id):
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def list_workflows(self, tenant_id, trigger_type=None, enabled_only=True):
        rows = []
        for workflow in self.workflows.values():
            if workflow.tenant_id != tenant_id:
                continue
            if enabled_only and not workflow.enabled:
                continue
            if trigger_type is not None and workflow.trigger.trigger_type != TriggerType(trigger_type):
                continue
            rows.append(copy.deepcopy(workflow))
        return rows

    async def record_workflow_run(self, workflow_id, executed_at):
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            return
        workflow.execution_count += 1
        workflow.last_executed_at = executed_at

    async def save_workflow_execution(self, execution):
        self.workflow_executions[execution.execution_id] = copy.deepcopy(execution)
        return execution

    async def list_workflow_executions(self, workflow_id):
        return [
            copy.deepcopy(execution)
            for execution in sorted(self.workflow_executions.values(), key=lambda e: e.triggered_at)
            if execution.workflow_id == workflow_id
        ]

    # ── Maintenance ─────────────────────────────────────────────────────

    async def purge(self, tenant_id, data_type, cutoff):
        if data_type not in PURGEABLE_DATA_TYPES:
            raise ValueError(f"Unsupported data type: {data_type}")

        if data_type == "task_executions":
            tenant_tasks = {tid for tid, task in self.tasks.items() if task.tenant_id == tenant_id}
            doomed = [
                eid
                for eid, execution in self.task_executions.items()
                if execution.task_id in tenant_tasks and execution.started_at < cutoff
            ]
            records: dict = self.task_executions
        elif data_type == "workflow_executions":
            doomed = [
                eid
                for eid, execution in self.workflow_executions.items()
                if execution.tenant_id == tenant_id and execution.triggered_at < cutoff
            ]
            records = self.workflow_executions
        elif data_type == "notifications":
            doomed = [
                nid
                for nid, notification in self.notifications.items()
                if notification.tenant_id == tenant_id and notification.created_at < cutoff
            ]
            records = self.notifications
        else:
            doomed = [
                aid
                for aid, alert in self.alerts.items()
                if alert.tenant_id == tenant_id and alert.resolved and alert.resolved_at and alert.resolved_at < cutoff
            ]
            records = self.alerts

        for record_id in doomed:
            del records[record_id]
        return len(doomed)
