"""
SQLAlchemy DataStore — async implementation over ``db.models``.

Each call opens its own short-lived session from the injected
``async_sessionmaker`` and commits before returning, so reads are
point-in-time and the engines never hold a transaction across external calls.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from core import clock
from core.exceptions import EntityNotFoundError
from db.domain import (
    ActionResult,
    Alert,
    AlertSeverity,
    AlertType,
    ExecutionStatus,
    Frequency,
    ItemStock,
    LotStock,
    Notification,
    ProductionOrderSnapshot,
    PurchaseOrderSnapshot,
    ScheduledTask,
    TaskExecution,
    TaskRunStatus,
    TaskType,
    TriggerType,
    User,
    Workflow,
    WorkflowAction,
    WorkflowCondition,
    WorkflowExecution,
    WorkflowTrigger,
)
from db.models import (
    AlertRecord,
    InventoryBalance,
    InventoryEvent,
    Item,
    Lot,
    NotificationRecord,
    ProductionOrder,
    PurchaseOrder,
    PurchaseOrderLine,
    ScheduledTaskRecord,
    Supplier,
    TaskExecutionRecord,
    WorkflowExecutionRecord,
    WorkflowRecord,
)
from db.models import User as UserRecord
from db.store import (
    CONSUMPTION_EVENT_TYPES,
    OPEN_PRODUCTION_STATUSES,
    OPEN_PURCHASE_ORDER_STATUSES,
    PURGEABLE_DATA_TYPES,
    DataStore,
)

logger = structlog.get_logger()

UPDATABLE_ITEM_FIELDS = {"name", "sku", "status", "reorder_point", "unit_cost"}
STATUS_ENTITIES = {
    "item": Item,
    "production_order": ProductionOrder,
    "purchase_order": PurchaseOrder,
}


# ──────────────────────────────────────────────────────────────────────────
# Row <-> domain mapping
# ──────────────────────────────────────────────────────────────────────────


def _alert_to_domain(row: AlertRecord) -> Alert:
    return Alert(
        alert_id=row.alert_id,
        tenant_id=row.tenant_id,
        rule_id=row.rule_id,
        alert_type=AlertType(row.alert_type),
        severity=AlertSeverity(row.severity),
        title=row.title,
        message=row.message,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        metadata=dict(row.alert_metadata or {}),
        triggered_at=row.triggered_at,
        acknowledged_at=row.acknowledged_at,
        acknowledged_by=row.acknowledged_by,
        resolved=row.resolved,
        resolved_at=row.resolved_at,
    )


def _task_to_domain(row: ScheduledTaskRecord) -> ScheduledTask:
    return ScheduledTask(
        task_id=row.task_id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        task_type=TaskType(row.task_type),
        frequency=Frequency(row.frequency),
        cron_expression=row.cron_expression,
        config=dict(row.config or {}),
        enabled=row.enabled,
        recipients=list(row.recipients or []),
        last_run_at=row.last_run_at,
        last_run_status=TaskRunStatus(row.last_run_status) if row.last_run_status else None,
        next_run_at=row.next_run_at,
        created_at=row.created_at,
    )


def _task_columns(task: ScheduledTask) -> dict[str, Any]:
    return {
        "tenant_id": task.tenant_id,
        "name": task.name,
        "description": task.description,
        "task_type": task.task_type.value,
        "frequency": task.frequency.value,
        "cron_expression": task.cron_expression,
        "config": task.config,
        "enabled": task.enabled,
        "recipients": task.recipients,
        "last_run_at": task.last_run_at,
        "last_run_status": task.last_run_status.value if task.last_run_status else None,
        "next_run_at": task.next_run_at,
        "created_at": task.created_at or clock.now(),
    }


def _task_execution_to_domain(row: TaskExecutionRecord) -> TaskExecution:
    return TaskExecution(
        execution_id=row.execution_id,
        task_id=row.task_id,
        status=TaskRunStatus(row.status),
        started_at=row.started_at,
        completed_at=row.completed_at,
        output=row.output,
        error=row.error,
        duration_ms=row.duration_ms,
    )


def _workflow_to_domain(row: WorkflowRecord) -> Workflow:
    return Workflow(
        workflow_id=row.workflow_id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        enabled=row.enabled,
        trigger=WorkflowTrigger(TriggerType(row.trigger_type), dict(row.trigger_config or {})),
        conditions=[WorkflowCondition.from_dict(c) for c in row.conditions or []],
        actions=[WorkflowAction.from_dict(a) for a in row.actions or []],
        execution_count=row.execution_count,
        last_executed_at=row.last_executed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _workflow_execution_to_domain(row: WorkflowExecutionRecord) -> WorkflowExecution:
    return WorkflowExecution(
        execution_id=row.execution_id,
        workflow_id=row.workflow_id,
        tenant_id=row.tenant_id,
        triggered_by=row.triggered_by,
        triggered_at=row.triggered_at,
        status=ExecutionStatus(row.status),
        results=[ActionResult(**result) for result in row.results or []],
        duration_ms=row.duration_ms,
    )


# ──────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────


class SQLAlchemyDataStore(DataStore):
    """The session factory must be built with ``expire_on_commit=False``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Domain reads ────────────────────────────────────────────────────

    async def list_item_stock(self, tenant_id, site_id=None, *, with_reorder_point=False):
        balance_filter = [InventoryBalance.item_id == Item.item_id]
        if site_id is not None:
            balance_filter.append(InventoryBalance.site_id == site_id)

        on_hand = (
            select(func.coalesce(func.sum(InventoryBalance.quantity), 0))
            .where(*balance_filter)
            .correlate(Item)
            .scalar_subquery()
        )
        query = select(Item, on_hand.label("on_hand")).where(Item.tenant_id == tenant_id)
        if with_reorder_point:
            query = query.where(Item.reorder_point > 0)

        async with self._session_factory() as db:
            result = await db.execute(query.order_by(Item.sku))
            return [
                ItemStock(
                    item_id=item.item_id,
                    sku=item.sku,
                    name=item.name,
                    on_hand=float(qty or 0),
                    reorder_point=item.reorder_point or 0,
                    unit_cost=item.unit_cost or 0,
                )
                for item, qty in result.all()
            ]

    async def consumption_totals(self, tenant_id, since, site_id=None):
        query = (
            select(InventoryEvent.item_id, func.sum(func.abs(InventoryEvent.quantity)))
            .where(
                InventoryEvent.tenant_id == tenant_id,
                InventoryEvent.created_at >= since,
                InventoryEvent.event_type.in_(CONSUMPTION_EVENT_TYPES),
            )
            .group_by(InventoryEvent.item_id)
        )
        if site_id is not None:
            query = query.where(InventoryEvent.site_id == site_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return {item_id: float(total or 0) for item_id, total in result.all()}

    async def items_with_movement(self, tenant_id, since, site_id=None):
        query = (
            select(InventoryEvent.item_id)
            .where(InventoryEvent.tenant_id == tenant_id, InventoryEvent.created_at >= since)
            .distinct()
        )
        if site_id is not None:
            query = query.where(InventoryEvent.site_id == site_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return set(result.scalars().all())

    async def list_expiring_lots(self, tenant_id, start, end, site_id=None):
        query = (
            select(Lot)
            .options(selectinload(Lot.item))
            .where(
                Lot.tenant_id == tenant_id,
                Lot.quantity > 0,
                Lot.expiration_date.is_not(None),
                Lot.expiration_date >= start,
                Lot.expiration_date <= end,
            )
            .order_by(Lot.expiration_date)
        )
        if site_id is not None:
            query = query.where(Lot.site_id == site_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                LotStock(
                    lot_id=lot.lot_id,
                    lot_number=lot.lot_number,
                    item_id=lot.item_id,
                    item_name=lot.item.name if lot.item else "Unknown",
                    sku=lot.item.sku if lot.item else "",
                    expiration_date=lot.expiration_date,
                    quantity=lot.quantity,
                )
                for lot in result.scalars().all()
            ]

    async def list_overdue_production_orders(self, tenant_id, as_of, site_id=None):
        query = (
            select(ProductionOrder)
            .options(selectinload(ProductionOrder.item))
            .where(
                ProductionOrder.tenant_id == tenant_id,
                ProductionOrder.status.in_(OPEN_PRODUCTION_STATUSES),
                ProductionOrder.scheduled_end.is_not(None),
                ProductionOrder.scheduled_end < as_of,
            )
        )
        if site_id is not None:
            query = query.where(ProductionOrder.site_id == site_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                ProductionOrderSnapshot(
                    order_id=order.order_id,
                    order_number=order.order_number,
                    item_name=order.item.name if order.item else "Unknown",
                    item_sku=order.item.sku if order.item else "",
                    status=order.status,
                    scheduled_end=order.scheduled_end,
                )
                for order in result.scalars().all()
            ]

    async def list_purchase_orders_due(self, tenant_id, start, end, site_id=None):
        query = (
            select(PurchaseOrder)
            .options(selectinload(PurchaseOrder.supplier))
            .where(
                PurchaseOrder.tenant_id == tenant_id,
                PurchaseOrder.status.in_(OPEN_PURCHASE_ORDER_STATUSES),
                PurchaseOrder.expected_delivery >= start,
                PurchaseOrder.expected_delivery <= end,
            )
        )
        if site_id is not None:
            query = query.where(PurchaseOrder.site_id == site_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                PurchaseOrderSnapshot(
                    po_id=po.po_id,
                    po_number=po.po_number,
                    supplier_name=po.supplier.name if po.supplier else "Unknown",
                    status=po.status,
                    expected_delivery=po.expected_delivery,
                )
                for po in result.scalars().all()
            ]

    async def list_purchase_orders(self, tenant_id):
        query = (
            select(PurchaseOrder)
            .options(selectinload(PurchaseOrder.supplier), selectinload(PurchaseOrder.lines))
            .where(PurchaseOrder.tenant_id == tenant_id)
            .order_by(PurchaseOrder.created_at)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                {
                    "po_id": po.po_id,
                    "po_number": po.po_number,
                    "supplier": po.supplier.name if po.supplier else "Unknown",
                    "status": po.status,
                    "expected_delivery": po.expected_delivery,
                    "source": po.source,
                    "line_count": len(po.lines),
                }
                for po in result.scalars().all()
            ]

    # ── Domain writes ───────────────────────────────────────────────────

    async def create_purchase_order(self, tenant_id, supplier_id, lines, site_id=None, source="workflow"):
        async with self._session_factory() as db:
            supplier = await db.get(Supplier, supplier_id)
            if supplier is None or supplier.tenant_id != tenant_id:
                raise EntityNotFoundError(supplier_id)

            count = await db.scalar(select(func.count()).select_from(PurchaseOrder).where(PurchaseOrder.tenant_id == tenant_id))
            po_number = f"AUTO-PO-{(count or 0) + 1:06d}"
            po = PurchaseOrder(
                tenant_id=tenant_id,
                supplier_id=supplier_id,
                site_id=site_id,
                po_number=po_number,
                status="draft",
                source=source,
                lines=[PurchaseOrderLine(item_id=line["item_id"], quantity=float(line["quantity"])) for line in lines],
            )
            db.add(po)
            await db.commit()
            return po_number

    async def adjust_inventory(self, tenant_id, item_id, site_id, quantity, reason=None):
        async with self._session_factory() as db:
            item = await db.get(Item, item_id)
            if item is None or item.tenant_id != tenant_id:
                raise EntityNotFoundError(item_id)

            result = await db.execute(
                select(InventoryBalance).where(
                    InventoryBalance.item_id == item_id,
                    InventoryBalance.site_id == site_id,
                )
            )
            balance = result.scalar_one_or_none()
            if balance is None:
                balance = InventoryBalance(tenant_id=tenant_id, item_id=item_id, site_id=site_id, quantity=0)
                db.add(balance)
            balance.quantity = (balance.quantity or 0) + quantity

            db.add(
                InventoryEvent(
                    tenant_id=tenant_id,
                    item_id=item_id,
                    site_id=site_id,
                    event_type="adjust",
                    quantity=quantity,
                    reason=reason,
                )
            )
            await db.commit()
            return balance.quantity

    async def update_item(self, tenant_id, item_id, updates):
        unknown = set(updates) - UPDATABLE_ITEM_FIELDS
        if unknown:
            raise ValueError(f"Cannot update item fields: {', '.join(sorted(unknown))}")
        async with self._session_factory() as db:
            item = await db.get(Item, item_id)
            if item is None or item.tenant_id != tenant_id:
                raise EntityNotFoundError(item_id)
            for key, value in updates.items():
                setattr(item, key, value)
            await db.commit()

    async def update_status(self, tenant_id, entity_type, entity_id, status):
        model = STATUS_ENTITIES.get(entity_type)
        if model is None:
            raise ValueError(f"Unsupported entity type: {entity_type}")
        async with self._session_factory() as db:
            record = await db.get(model, entity_id)
            if record is None or record.tenant_id != tenant_id:
                raise EntityNotFoundError(entity_id)
            record.status = status
            await db.commit()

    # ── Alerts ──────────────────────────────────────────────────────────

    async def save_alert(self, alert):
        async with self._session_factory() as db:
            db.add(
                AlertRecord(
                    alert_id=alert.alert_id,
                    tenant_id=alert.tenant_id,
                    rule_id=alert.rule_id,
                    alert_type=alert.alert_type.value,
                    severity=alert.severity.value,
                    title=alert.title,
                    message=alert.message,
                    entity_type=alert.entity_type,
                    entity_id=alert.entity_id,
                    dedup_key=alert.dedup_key,
                    alert_metadata=alert.metadata,
                    triggered_at=alert.triggered_at,
                    resolved=alert.resolved,
                )
            )
            await db.commit()
        return alert

    async def get_alert(self, alert_id):
        async with self._session_factory() as db:
            row = await db.get(AlertRecord, alert_id)
            return _alert_to_domain(row) if row else None

    async def mark_alert_acknowledged(self, alert_id, user_id, at):
        async with self._session_factory() as db:
            row = await db.get(AlertRecord, alert_id)
            if row is None:
                return None
            row.acknowledged_by = user_id
            row.acknowledged_at = at
            await db.commit()
            return _alert_to_domain(row)

    async def mark_alert_resolved(self, alert_id, at):
        async with self._session_factory() as db:
            row = await db.get(AlertRecord, alert_id)
            if row is None:
                return None
            row.resolved = True
            row.resolved_at = at
            await db.commit()
            return _alert_to_domain(row)

    async def find_active_alert(self, dedup_key, since):
        query = (
            select(AlertRecord)
            .where(
                AlertRecord.dedup_key == dedup_key,
                AlertRecord.resolved.is_(False),
                AlertRecord.triggered_at >= since,
            )
            .order_by(AlertRecord.triggered_at.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            row = (await db.execute(query)).scalar_one_or_none()
            return _alert_to_domain(row) if row else None

    async def list_alerts(self, tenant_id, include_resolved=False):
        query = select(AlertRecord).where(AlertRecord.tenant_id == tenant_id)
        if not include_resolved:
            query = query.where(AlertRecord.resolved.is_(False))
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(AlertRecord.triggered_at))
            return [_alert_to_domain(row) for row in result.scalars().all()]

    # ── Notifications ───────────────────────────────────────────────────

    async def save_notification(self, notification):
        async with self._session_factory() as db:
            db.add(
                NotificationRecord(
                    notification_id=notification.notification_id,
                    tenant_id=notification.tenant_id,
                    user_id=notification.user_id,
                    category=notification.category,
                    severity=notification.severity,
                    title=notification.title,
                    message=notification.message,
                    link=notification.link,
                    reference_type=notification.reference_type,
                    reference_id=notification.reference_id,
                    read=notification.read,
                    created_at=notification.created_at or clock.now(),
                )
            )
            await db.commit()
        return notification

    async def list_users(self, tenant_id, roles):
        wanted = [role.lower() for role in roles]
        query = select(UserRecord).where(UserRecord.tenant_id == tenant_id, func.lower(UserRecord.role).in_(wanted))
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                User(
                    user_id=row.user_id,
                    tenant_id=row.tenant_id,
                    email=row.email,
                    role=row.role,
                    alert_preferences=dict(row.alert_preferences or {}),
                )
                for row in result.scalars().all()
            ]

    # ── Scheduled tasks ─────────────────────────────────────────────────

    async def save_task(self, task):
        async with self._session_factory() as db:
            db.add(ScheduledTaskRecord(task_id=task.task_id, **_task_columns(task)))
            await db.commit()
        return task

    async def get_task(self, task_id):
        async with self._session_factory() as db:
            row = await db.get(ScheduledTaskRecord, task_id)
            return _task_to_domain(row) if row else None

    async def update_task(self, task):
        async with self._session_factory() as db:
            result = await db.execute(
                update(ScheduledTaskRecord)
                .where(ScheduledTaskRecord.task_id == task.task_id)
                .values(**_task_columns(task))
            )
            if result.rowcount == 0:
                raise EntityNotFoundError(task.task_id)
            await db.commit()
        return task

    async def list_tasks(self, tenant_id):
        query = select(ScheduledTaskRecord).where(ScheduledTaskRecord.tenant_id == tenant_id)
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(ScheduledTaskRecord.created_at))
            return [_task_to_domain(row) for row in result.scalars().all()]

    async def list_due_tasks(self, now):
        query = (
            select(ScheduledTaskRecord)
            .where(ScheduledTaskRecord.enabled.is_(True), ScheduledTaskRecord.next_run_at <= now)
            .order_by(ScheduledTaskRecord.next_run_at)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_task_to_domain(row) for row in result.scalars().all()]

    async def save_task_execution(self, execution):
        async with self._session_factory() as db:
            await db.merge(
                TaskExecutionRecord(
                    execution_id=execution.execution_id,
                    task_id=execution.task_id,
                    status=execution.status.value,
                    started_at=execution.started_at,
                    completed_at=execution.completed_at,
                    output=execution.output,
                    error=execution.error,
                    duration_ms=execution.duration_ms,
                )
            )
            await db.commit()
        return execution

    async def list_task_executions(self, task_id):
        query = select(TaskExecutionRecord).where(TaskExecutionRecord.task_id == task_id)
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(TaskExecutionRecord.started_at))
            return [_task_execution_to_domain(row) for row in result.scalars().all()]

    # ── Workflows ───────────────────────────────────────────────────────

    async def save_workflow(self, workflow):
        now = clock.now()
        async with self._session_factory() as db:
            await db.merge(
                WorkflowRecord(
                    workflow_id=workflow.workflow_id,
                    tenant_id=workflow.tenant_id,
                    name=workflow.name,
                    description=workflow.description,
                    enabled=workflow.enabled,
                    trigger_type=workflow.trigger.trigger_type.value,
                    trigger_config=workflow.trigger.config,
                    conditions=[condition.to_dict() for condition in workflow.conditions],
                    actions=[action.to_dict() for action in workflow.actions],
                    execution_count=workflow.execution_count,
                    last_executed_at=workflow.last_executed_at,
                    created_at=workflow.created_at or now,
                    updated_at=now,
                )
            )
            await db.commit()
        return workflow

    async def get_workflow(self, workflow_id):
        async with self._session_factory() as db:
            row = await db.get(WorkflowRecord, workflow_id)
            return _workflow_to_domain(row) if row else None

    async def list_workflows(self, tenant_id, trigger_type=None, enabled_only=True):
        query = select(WorkflowRecord).where(WorkflowRecord.tenant_id == tenant_id)
        if trigger_type is not None:
            query = query.where(WorkflowRecord.trigger_type == TriggerType(trigger_type).value)
        if enabled_only:
            query = query.where(WorkflowRecord.enabled.is_(True))
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(WorkflowRecord.created_at))
            return [_workflow_to_domain(row) for row in result.scalars().all()]

    async def record_workflow_run(self, workflow_id, executed_at):
        async with self._session_factory() as db:
            await db.execute(
                update(WorkflowRecord)
                .where(WorkflowRecord.workflow_id == workflow_id)
                .values(
                    execution_count=WorkflowRecord.execution_count + 1,
                    last_executed_at=executed_at,
                )
            )
            await db.commit()

    async def save_workflow_execution(self, execution):
        async with self._session_factory() as db:
            db.add(
                WorkflowExecutionRecord(
                    execution_id=execution.execution_id,
                    workflow_id=execution.workflow_id,
                    tenant_id=execution.tenant_id,
                    triggered_by=execution.triggered_by,
                    triggered_at=execution.triggered_at,
                    status=execution.status.value,
                    results=[result.to_dict() for result in execution.results],
                    duration_ms=execution.duration_ms,
                )
            )
            await db.commit()
        return execution

    async def list_workflow_executions(self, workflow_id):
        query = select(WorkflowExecutionRecord).where(WorkflowExecutionRecord.workflow_id == workflow_id)
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(WorkflowExecutionRecord.triggered_at))
            return [_workflow_execution_to_domain(row) for row in result.scalars().all()]

    # ── Maintenance ─────────────────────────────────────────────────────

    async def purge(self, tenant_id, data_type, cutoff):
        if data_type not in PURGEABLE_DATA_TYPES:
            raise ValueError(f"Unsupported data type: {data_type}")

        if data_type == "task_executions":
            tenant_tasks = select(ScheduledTaskRecord.task_id).where(ScheduledTaskRecord.tenant_id == tenant_id)
            statement = delete(TaskExecutionRecord).where(
                TaskExecutionRecord.task_id.in_(tenant_tasks),
                TaskExecutionRecord.started_at < cutoff,
            )
        elif data_type == "workflow_executions":
            statement = delete(WorkflowExecutionRecord).where(
                WorkflowExecutionRecord.tenant_id == tenant_id,
                WorkflowExecutionRecord.triggered_at < cutoff,
            )
        elif data_type == "notifications":
            statement = delete(NotificationRecord).where(
                NotificationRecord.tenant_id == tenant_id,
                NotificationRecord.created_at < cutoff,
            )
        else:
            statement = delete(AlertRecord).where(
                AlertRecord.tenant_id == tenant_id,
                AlertRecord.resolved.is_(True),
                AlertRecord.resolved_at < cutoff,
            )

        async with self._session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            logger.info("store.purged", tenant_id=tenant_id, data_type=data_type, deleted=result.rowcount)
            return result.rowcount
