"""
API Tests — alerts, tasks and workflows routes over the in-memory runtime.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from db.domain import Alert, AlertSeverity, AlertType

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"


def _alert(tenant_id=TENANT_ID, resolved=False) -> Alert:
    return Alert(
        tenant_id=tenant_id,
        rule_id="low-stock-default",
        alert_type=AlertType.LOW_STOCK,
        severity=AlertSeverity.WARNING,
        title="Low Stock Alert: Widget",
        message="Widget is running low.",
        entity_type="item",
        entity_id="item-1",
        triggered_at=datetime(2024, 3, 15, 10, 0),
        resolved=resolved,
    )


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data


@pytest.mark.asyncio
class TestAlertsAPI:
    async def test_check_creates_alerts(self, client: AsyncClient, store):
        store.add_item(TENANT_ID, "SKU-9", "Gasket", balances={"site-a": 0})

        response = await client.post("/api/v1/alerts/check", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["triggered"] == 1
        assert data["critical"] == 1
        assert data["alerts"][0]["alert_type"] == "out_of_stock"

    async def test_list_alerts_scoped_to_tenant(self, client: AsyncClient, store):
        await store.save_alert(_alert())
        await store.save_alert(_alert(tenant_id=OTHER_TENANT_ID))

        response = await client.get("/api/v1/alerts/")

        assert response.status_code == 200
        assert [alert["tenant_id"] for alert in response.json()] == [TENANT_ID]

    async def test_acknowledge_records_user(self, client: AsyncClient, store):
        alert = await store.save_alert(_alert())

        response = await client.patch(f"/api/v1/alerts/{alert.alert_id}/acknowledge")

        assert response.status_code == 200
        assert response.json()["acknowledged_by"] == "user-123"
        assert response.json()["acknowledged_at"] is not None

    async def test_resolve_twice_is_rejected(self, client: AsyncClient, store):
        alert = await store.save_alert(_alert())

        first = await client.patch(f"/api/v1/alerts/{alert.alert_id}/resolve")
        second = await client.patch(f"/api/v1/alerts/{alert.alert_id}/resolve")

        assert first.status_code == 200
        assert first.json()["resolved"] is True
        assert second.status_code == 400

    async def test_other_tenant_alert_not_found(self, client: AsyncClient, store):
        alert = await store.save_alert(_alert(tenant_id=OTHER_TENANT_ID))

        response = await client.patch(f"/api/v1/alerts/{alert.alert_id}/acknowledge")

        assert response.status_code == 404

    async def test_unknown_alert(self, client: AsyncClient):
        response = await client.patch("/api/v1/alerts/missing/resolve")
        assert response.status_code == 404


@pytest.mark.asyncio
class TestTasksAPI:
    async def test_templates(self, client: AsyncClient):
        response = await client.get("/api/v1/tasks/templates")

        assert response.status_code == 200
        assert response.json()["hourly_alert_check"]["task_type"] == "alert_check"

    async def test_create_and_list(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/tasks/",
            json={
                "name": "Nightly cleanup",
                "task_type": "cleanup",
                "frequency": "daily",
                "config": {"data_type": "notifications", "retention_days": 30},
            },
        )

        assert response.status_code == 201
        created = response.json()
        assert created["enabled"] is True
        assert created["last_run_status"] is None

        listed = await client.get("/api/v1/tasks/")
        assert [task["task_id"] for task in listed.json()] == [created["task_id"]]

    async def test_invalid_task_type(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/tasks/",
            json={"name": "x", "task_type": "teleport", "frequency": "daily"},
        )
        assert response.status_code == 422

    async def test_from_template_then_run(self, client: AsyncClient, store):
        store.add_item(TENANT_ID, "SKU-9", "Gasket", balances={"site-a": 0})
        created = await client.post("/api/v1/tasks/templates/hourly_alert_check")
        task_id = created.json()["task_id"]

        run = await client.post(f"/api/v1/tasks/{task_id}/run")
        history = await client.get(f"/api/v1/tasks/{task_id}/executions")

        assert created.status_code == 201
        assert run.status_code == 200
        assert run.json()["status"] == "success"
        assert run.json()["output"]["triggered"] == 1
        assert len(history.json()) == 1

    async def test_unknown_template(self, client: AsyncClient):
        response = await client.post("/api/v1/tasks/templates/nope")
        assert response.status_code == 404

    async def test_run_unknown_task(self, client: AsyncClient):
        response = await client.post("/api/v1/tasks/missing/run")
        assert response.status_code == 404

    async def test_due_is_empty_for_new_tasks(self, client: AsyncClient):
        await client.post("/api/v1/tasks/templates/daily_inventory_report")

        response = await client.get("/api/v1/tasks/due")

        assert response.status_code == 200
        assert response.json() == []


@pytest.mark.asyncio
class TestWorkflowsAPI:
    async def _create(self, client: AsyncClient) -> dict:
        response = await client.post(
            "/api/v1/workflows/",
            json={
                "name": "Low stock escalation",
                "trigger_type": "stock_below_threshold",
                "conditions": [{"field": "item.on_hand", "operator": "less_than", "value": 5}],
                "actions": [
                    {
                        "action_type": "send_email",
                        "config": {
                            "to": "buyer@acme.test",
                            "subject": "Reorder {{item.name}}",
                            "template": "Only {{item.on_hand}} left",
                        },
                        "order": 1,
                    }
                ],
            },
        )
        assert response.status_code == 201
        return response.json()

    async def test_trigger_runs_matching_workflow(self, client: AsyncClient, channel):
        workflow = await self._create(client)

        response = await client.post(
            "/api/v1/workflows/trigger",
            json={"trigger_type": "stock_below_threshold", "context": {"item": {"name": "Widget", "on_hand": 2}}},
        )

        assert response.status_code == 200
        [execution] = response.json()
        assert execution["workflow_id"] == workflow["workflow_id"]
        assert execution["status"] == "success"
        assert execution["triggered_by"] == "user-123"
        assert channel.sent[0]["subject"] == "Reorder Widget"

    async def test_condition_not_met(self, client: AsyncClient, channel):
        await self._create(client)

        response = await client.post(
            "/api/v1/workflows/trigger",
            json={"trigger_type": "stock_below_threshold", "context": {"item": {"name": "Widget", "on_hand": 20}}},
        )

        [execution] = response.json()
        assert execution["status"] == "failed"
        assert execution["results"][0]["action"] == "conditions_check"
        assert channel.sent == []

    async def test_execute_by_id_and_history(self, client: AsyncClient):
        workflow = await self._create(client)

        run = await client.post(
            f"/api/v1/workflows/{workflow['workflow_id']}/execute",
            json={"context": {"item": {"name": "Widget", "on_hand": 1}}},
        )
        history = await client.get(f"/api/v1/workflows/{workflow['workflow_id']}/executions")
        listed = await client.get("/api/v1/workflows/")

        assert run.status_code == 200
        assert len(history.json()) == 1
        assert listed.json()[0]["execution_count"] == 1

    async def test_execute_unknown_workflow(self, client: AsyncClient):
        response = await client.post("/api/v1/workflows/missing/execute")
        assert response.status_code == 404
