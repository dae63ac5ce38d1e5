"""
Tests for the SQLAlchemy DataStore against SQLite.

Covers the reads the threshold monitor depends on, alert dedup lookups,
task and workflow persistence round-trips, and purge.
"""

from datetime import date, datetime, timedelta

import pytest

from core.exceptions import EntityNotFoundError
from db.domain import (
    ActionResult,
    ActionType,
    Alert,
    AlertSeverity,
    AlertType,
    ConditionOperator,
    ExecutionStatus,
    Frequency,
    LogicalOperator,
    ScheduledTask,
    TaskExecution,
    TaskRunStatus,
    TaskType,
    TriggerType,
    Workflow,
    WorkflowAction,
    WorkflowCondition,
    WorkflowExecution,
    WorkflowTrigger,
)
from db.models import InventoryBalance, InventoryEvent, Item, Lot, PurchaseOrder, Site, Supplier, Tenant, User
from db.sql import SQLAlchemyDataStore

TENANT_ID = "00000000-0000-0000-0000-000000000001"
NOW = datetime(2024, 3, 15, 10, 0)


@pytest.fixture
async def seeded(sql_session_factory):
    async with sql_session_factory() as db:
        db.add(Tenant(tenant_id=TENANT_ID, name="Acme Manufacturing"))
        site = Site(tenant_id=TENANT_ID, name="Main Plant")
        supplier = Supplier(tenant_id=TENANT_ID, name="Acme Metals")
        widget = Item(tenant_id=TENANT_ID, sku="SKU-1", name="Widget", reorder_point=10, unit_cost=2)
        bolt = Item(tenant_id=TENANT_ID, sku="SKU-2", name="Bolt", reorder_point=0, unit_cost=0.1)
        db.add_all([site, supplier, widget, bolt])
        await db.flush()

        db.add_all(
            [
                InventoryBalance(tenant_id=TENANT_ID, item_id=widget.item_id, site_id=site.site_id, quantity=8),
                InventoryBalance(tenant_id=TENANT_ID, item_id=bolt.item_id, site_id=site.site_id, quantity=50),
                InventoryEvent(
                    tenant_id=TENANT_ID,
                    item_id=widget.item_id,
                    site_id=site.site_id,
                    event_type="issue",
                    quantity=-30,
                    created_at=NOW - timedelta(days=2),
                ),
                InventoryEvent(
                    tenant_id=TENANT_ID,
                    item_id=widget.item_id,
                    site_id=site.site_id,
                    event_type="receipt",
                    quantity=100,
                    created_at=NOW - timedelta(days=200),
                ),
                Lot(
                    tenant_id=TENANT_ID,
                    item_id=widget.item_id,
                    lot_number="L-1",
                    expiration_date=date(2024, 3, 20),
                    quantity=5,
                ),
                PurchaseOrder(
                    tenant_id=TENANT_ID,
                    supplier_id=supplier.supplier_id,
                    po_number="PO-1",
                    status="sent",
                    expected_delivery=NOW + timedelta(days=1),
                ),
                User(tenant_id=TENANT_ID, email="admin@acme.test", role="Admin", alert_preferences={"low_stock": False}),
                User(tenant_id=TENANT_ID, email="viewer@acme.test", role="viewer"),
            ]
        )
        await db.commit()
        ids = {"site": site.site_id, "supplier": supplier.supplier_id, "widget": widget.item_id, "bolt": bolt.item_id}
    return SQLAlchemyDataStore(sql_session_factory), ids


class TestDomainReads:
    async def test_item_stock(self, seeded):
        store, ids = seeded

        stock = {item.sku: item for item in await store.list_item_stock(TENANT_ID)}
        with_reorder = await store.list_item_stock(TENANT_ID, with_reorder_point=True)

        assert stock["SKU-1"].on_hand == 8
        assert stock["SKU-2"].on_hand == 50
        assert [item.sku for item in with_reorder] == ["SKU-1"]

    async def test_consumption_and_movement(self, seeded):
        store, ids = seeded
        since = NOW - timedelta(days=30)

        assert await store.consumption_totals(TENANT_ID, since) == {ids["widget"]: 30}
        assert await store.items_with_movement(TENANT_ID, since) == {ids["widget"]}

    async def test_expiring_lots_and_due_pos(self, seeded):
        store, _ = seeded

        [lot] = await store.list_expiring_lots(TENANT_ID, date(2024, 3, 15), date(2024, 4, 14))
        [po] = await store.list_purchase_orders_due(TENANT_ID, NOW, NOW + timedelta(days=7))

        assert lot.item_name == "Widget"
        assert po.supplier_name == "Acme Metals"

    async def test_users_by_role(self, seeded):
        store, _ = seeded

        [admin] = await store.list_users(TENANT_ID, ("admin", "supervisor"))

        assert admin.email == "admin@acme.test"
        assert admin.wants("low_stock") is False


class TestDomainWrites:
    async def test_purchase_order_and_adjustment(self, seeded):
        store, ids = seeded

        po_number = await store.create_purchase_order(
            TENANT_ID, ids["supplier"], [{"item_id": ids["widget"], "quantity": 12}]
        )
        on_hand = await store.adjust_inventory(TENANT_ID, ids["widget"], ids["site"], 5, "recount")

        assert po_number == "AUTO-PO-000002"
        assert on_hand == 13
        orders = {row["po_number"]: row for row in await store.list_purchase_orders(TENANT_ID)}
        assert orders[po_number]["line_count"] == 1
        assert orders[po_number]["source"] == "workflow"

    async def test_unknown_entities(self, seeded):
        store, _ = seeded

        with pytest.raises(EntityNotFoundError):
            await store.update_item(TENANT_ID, "missing", {"name": "x"})
        with pytest.raises(ValueError):
            await store.update_status(TENANT_ID, "spaceship", "x", "launched")


class TestAlerts:
    async def test_dedup_lookup(self, seeded):
        store, ids = seeded
        alert = Alert(
            tenant_id=TENANT_ID,
            rule_id="low-stock-default",
            alert_type=AlertType.LOW_STOCK,
            severity=AlertSeverity.WARNING,
            title="Low Stock Alert: Widget",
            message="m",
            entity_type="item",
            entity_id=ids["widget"],
            metadata={"current_stock": 8},
            triggered_at=NOW,
        )
        await store.save_alert(alert)

        found = await store.find_active_alert(alert.dedup_key, NOW - timedelta(hours=4))
        assert found.alert_id == alert.alert_id
        assert found.metadata == {"current_stock": 8}
        assert await store.find_active_alert(alert.dedup_key, NOW + timedelta(minutes=1)) is None

        await store.mark_alert_resolved(alert.alert_id, NOW)
        assert await store.find_active_alert(alert.dedup_key, NOW - timedelta(hours=4)) is None
        assert await store.list_alerts(TENANT_ID) == []
        assert len(await store.list_alerts(TENANT_ID, include_resolved=True)) == 1


class TestTasksAndWorkflows:
    async def test_task_round_trip(self, seeded):
        store, _ = seeded
        task = ScheduledTask(
            tenant_id=TENANT_ID,
            name="Nightly",
            task_type=TaskType.REPORT,
            frequency=Frequency.DAILY,
            next_run_at=NOW - timedelta(minutes=1),
            config={"report_type": "inventory_summary"},
            recipients=["ops@acme.test"],
            created_at=NOW,
        )
        await store.save_task(task)

        [due] = await store.list_due_tasks(NOW)
        assert due.config == {"report_type": "inventory_summary"}
        assert due.recipients == ["ops@acme.test"]

        execution = TaskExecution(task_id=task.task_id, started_at=NOW)
        await store.save_task_execution(execution)
        execution.status = TaskRunStatus.SUCCESS
        execution.output = {"record_count": 2}
        await store.save_task_execution(execution)

        [stored] = await store.list_task_executions(task.task_id)
        assert stored.status == TaskRunStatus.SUCCESS
        assert stored.output == {"record_count": 2}

        task.enabled = False
        await store.update_task(task)
        assert await store.list_due_tasks(NOW) == []

    async def test_workflow_round_trip(self, seeded):
        store, _ = seeded
        workflow = Workflow(
            tenant_id=TENANT_ID,
            name="Reorder",
            trigger=WorkflowTrigger(TriggerType.STOCK_BELOW_THRESHOLD),
            conditions=[
                WorkflowCondition("item.on_hand", ConditionOperator.LESS_THAN, 5, LogicalOperator.OR),
            ],
            actions=[WorkflowAction(ActionType.SEND_EMAIL, {"to": "buyer@acme.test"}, order=1)],
        )
        await store.save_workflow(workflow)

        [loaded] = await store.list_workflows(TENANT_ID, TriggerType.STOCK_BELOW_THRESHOLD)
        assert loaded.conditions[0].logical_operator == LogicalOperator.OR
        assert loaded.actions[0].action_type == ActionType.SEND_EMAIL

        await store.record_workflow_run(workflow.workflow_id, NOW)
        assert (await store.get_workflow(workflow.workflow_id)).execution_count == 1

        await store.save_workflow_execution(
            WorkflowExecution(
                workflow_id=workflow.workflow_id,
                tenant_id=TENANT_ID,
                triggered_by="system",
                triggered_at=NOW - timedelta(days=40),
                status=ExecutionStatus.PARTIAL,
                results=[ActionResult("send_email", False, error="smtp down")],
            )
        )
        [execution] = await store.list_workflow_executions(workflow.workflow_id)
        assert execution.results[0].error == "smtp down"

        assert await store.purge(TENANT_ID, "workflow_executions", NOW - timedelta(days=30)) == 1
        assert await store.list_workflow_executions(workflow.workflow_id) == []


class TestAlertEngineOverSQL:
    async def test_check_then_suppress(self, seeded, settings, channel, monkeypatch):
        from core.container import build_runtime

        monkeypatch.setattr("core.clock.now", lambda tz_name=None: NOW)
        store, ids = seeded
        runtime = build_runtime(store, settings=settings, channel=channel)

        first = await runtime.alert_engine.check_alerts(TENANT_ID)
        second = await runtime.alert_engine.check_alerts(TENANT_ID)

        low_stock = [alert for alert in first if alert.alert_type == AlertType.LOW_STOCK]
        assert [alert.entity_id for alert in low_stock] == [ids["widget"]]
        assert [alert for alert in second if alert.alert_type == AlertType.LOW_STOCK] == []
        # The only admin has opted out of low stock
        assert all("admin@acme.test" not in email["to"] for email in channel.sent if "Low Stock" in email["subject"])
