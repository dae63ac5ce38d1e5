"""
Test Configuration — fixtures for the automation runtime, stores and API client.

Engine tests run against ``InMemoryDataStore`` with a recording channel;
SQL store tests get a fresh SQLite file per test so sessions opened by the
store share the same database.
"""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings
from core.container import build_runtime
from db.domain import User
from db.memory import InMemoryDataStore
from db.session import Base
from notifications.channels import NotificationChannel

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"


class RecordingChannel(NotificationChannel):
    """Captures every send; can be told to refuse or to blow up."""

    def __init__(self, result: bool = True, error: Exception | None = None):
        self.result = result
        self.error = error
        self.sent: list[dict] = []

    async def send(self, to, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return self.result


@pytest.fixture
def settings(tmp_path):
    return Settings(
        app_env="test",
        app_url="https://app.test",
        report_output_dir=str(tmp_path / "reports"),
        export_output_dir=str(tmp_path / "exports"),
        backup_output_dir=str(tmp_path / "backups"),
        store_timeout_seconds=5.0,
    )


@pytest.fixture
def store():
    store = InMemoryDataStore()
    store.add_user(User(user_id="u-admin", tenant_id=TENANT_ID, email="admin@acme.test", role="admin"))
    store.add_user(User(user_id="u-super", tenant_id=TENANT_ID, email="super@acme.test", role="supervisor"))
    store.add_user(User(user_id="u-viewer", tenant_id=TENANT_ID, email="viewer@acme.test", role="viewer"))
    return store


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def runtime(store, channel, settings):
    return build_runtime(store, settings=settings, channel=channel)


@pytest.fixture
async def sql_session_factory(tmp_path):
    """Session factory over a throwaway SQLite file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "user-123",
        "email": "ops@acme.test",
        "tenant_id": TENANT_ID,
    }


@pytest.fixture
async def client(runtime, mock_user):
    """Async test client bound to the in-memory runtime."""
    from api.deps import get_current_user, get_runtime
    from api.main import app

    app.dependency_overrides[get_current_user] = lambda: mock_user
    app.dependency_overrides[get_runtime] = lambda: runtime

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def channel_factory():
    return RecordingChannel
