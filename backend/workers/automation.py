"""
Automation Workers — Celery entry points for the scheduler and alert checks.

Workers:
  1. run_scheduler_tick: execute every due scheduled task (all tenants)
  2. run_alert_check: run the threshold scans for one tenant

Each invocation builds its own engine and runtime inside ``asyncio.run`` so
no connection outlives the event loop that opened it.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@asynccontextmanager
async def worker_session_factory():
    """A session factory over a per-invocation database engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from core.config import get_settings

    engine = create_async_engine(get_settings().database_url)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@asynccontextmanager
async def worker_runtime():
    """An ``AutomationRuntime`` over a per-invocation database engine."""
    from core.config import get_settings
    from core.container import build_runtime
    from db.sql import SQLAlchemyDataStore

    async with worker_session_factory() as session_factory:
        runtime = build_runtime(SQLAlchemyDataStore(session_factory), settings=get_settings())
        try:
            yield runtime
        finally:
            await runtime.close()


@celery_app.task(
    name="workers.automation.run_scheduler_tick",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
)
def run_scheduler_tick(self):
    """Run one scheduler pass over every due task."""

    async def _tick():
        async with worker_runtime() as runtime:
            result = await runtime.scheduler.run_scheduler()
            return {
                "acquired": result.acquired,
                "due": result.due,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "errors": result.errors,
            }

    try:
        return asyncio.run(_tick())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.tick_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.automation.run_alert_check",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
)
def run_alert_check(self, tenant_id: str, site_id: str | None = None):
    """Run the threshold scans for one tenant and notify on new alerts."""
    from core.logging import bind_tenant_context, clear_log_context

    async def _check():
        async with worker_runtime() as runtime:
            result = await runtime.alert_engine.run_checks(tenant_id, site_id)
            return result.summary()

    bind_tenant_context(tenant_id)
    try:
        summary = asyncio.run(_check())
        logger.info("alerts.check.completed", **summary)
        return summary
    except Exception as exc:  # noqa: BLE001
        logger.error("alerts.check.failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
    finally:
        clear_log_context()
