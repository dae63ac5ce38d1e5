import asyncio
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.scheduler import dispatch_active_tenants


def test_dispatch_active_tenants_fans_out_only_active_and_trial(tmp_path, monkeypatch):
    from db.models import Tenant

    db_path = tmp_path / "dispatch.db"
    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Tenant(
                        tenant_id="00000000-0000-0000-0000-000000000101",
                        name="Active Plant",
                        status="active",
                    ),
                    Tenant(
                        tenant_id="00000000-0000-0000-0000-000000000102",
                        name="Trial Plant",
                        status="trial",
                    ),
                    Tenant(
                        tenant_id="00000000-0000-0000-0000-000000000103",
                        name="Inactive Plant",
                        status="inactive",
                    ),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)

    result = dispatch_active_tenants.run(
        task_name="workers.automation.run_alert_check",
        task_kwargs={"site_id": None},
    )
    assert result["status"] == "success"
    assert result["tenant_count"] == 2
    assert result["dispatched_count"] == 2

    task_names = {task for task, _ in dispatched_calls}
    assert task_names == {"workers.automation.run_alert_check"}
    tenant_ids = {kwargs["tenant_id"] for _, kwargs in dispatched_calls}
    assert tenant_ids == {
        "00000000-0000-0000-0000-000000000101",
        "00000000-0000-0000-0000-000000000102",
    }
    assert all("site_id" in kwargs for _, kwargs in dispatched_calls)

    asyncio.run(engine.dispose())


def test_dispatch_rejects_non_worker_task_names(monkeypatch):
    sent = []
    monkeypatch.setattr("workers.scheduler.celery_app.send_task", lambda *args, **kwargs: sent.append(args))

    result = dispatch_active_tenants.run(task_name="os.system")

    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}
    assert sent == []
