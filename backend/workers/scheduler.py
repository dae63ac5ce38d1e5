"""Tenant fan-out for Celery beat: one tenant-scoped task per active tenant."""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy import select

from core import clock
from workers.automation import worker_session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")
DISPATCHABLE_PREFIX = "workers."


async def list_active_tenants(session_factory, statuses: tuple[str, ...] = DEFAULT_ACTIVE_STATUSES) -> list[str]:
    from db.models import Tenant

    async with session_factory() as db:
        result = await db.execute(
            select(Tenant.tenant_id).where(Tenant.status.in_(statuses)).order_by(Tenant.created_at)
        )
        return [str(tenant_id) for tenant_id in result.scalars().all()]


def fan_out(task_name: str, tenant_ids: list[str], payload: dict) -> int:
    """Send ``task_name`` once per tenant with ``tenant_id`` merged into its kwargs."""
    for tenant_id in tenant_ids:
        celery_app.send_task(task_name, kwargs={**payload, "tenant_id": tenant_id})
    return len(tenant_ids)


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """Dispatch a tenant-scoped worker task across all active tenants."""
    if not task_name.startswith(DISPATCHABLE_PREFIX):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)
    log = logger.bind(task_name=task_name, run_id=self.request.id or "manual")

    async def _tenants() -> list[str]:
        async with worker_session_factory() as session_factory:
            return await list_active_tenants(session_factory, selected_statuses)

    try:
        tenant_ids = asyncio.run(_tenants())
    except Exception as exc:  # noqa: BLE001
        log.error("scheduler.dispatch_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    summary = {
        "status": "success",
        "task_name": task_name,
        "tenant_count": len(tenant_ids),
        "dispatched_count": fan_out(task_name, tenant_ids, dict(task_kwargs or {})),
        "statuses": list(selected_statuses),
        "triggered_at": clock.now().isoformat(),
    }
    log.info("scheduler.dispatch_complete", **summary)
    return summary
