"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so the lock manager and the
per-item sessions get real, separate connections. Mocks all external services.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import ghl_ingest.models  # noqa: F401  (registers tables on Base.metadata)
from ghl_ingest.config import Settings
from ghl_ingest.database import Base
from ghl_ingest.integrations.downstream import DownstreamClient
from ghl_ingest.models.location import Location, InstallState
from ghl_ingest.services.queue_store import build_queues
from ghl_ingest.utils.locks import InstallLockManager
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerContext


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        cron_secret="test-cron-secret",
        ghl_public_key="",
        verify_webhook_signatures=False,
        downstream_timeout_seconds=2.0,
        handler_timeout_seconds=5.0,
        cron_concurrency=4,
        alert_webhook_url="",
    )


class FakeDownstream(DownstreamClient):
    """Records calls; set *_error to make the next calls raise."""

    def __init__(self):
        self.setup_calls: list[str] = []
        self.sync_calls: list[str] = []
        self.refresh_calls: list[str] = []
        self.setup_error = None
        self.sync_error = None
        self.refresh_error = None
        self.setup_delay = 0.0
        self.refresh_delay = 0.0
        self.refresh_response = {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 86400,
        }

    async def setup_location(self, location_id, full_sync=True):
        self.setup_calls.append(location_id)
        if self.setup_delay:
            await asyncio.sleep(self.setup_delay)
        if self.setup_error:
            raise self.setup_error
        return {"success": True}

    async def sync_agency(self, company_id):
        self.sync_calls.append(company_id)
        if self.sync_error:
            raise self.sync_error
        return {"locations": [{"id": "loc_1"}, {"id": "loc_2"}]}

    async def refresh_location_token(self, location):
        self.refresh_calls.append(location.location_id)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return dict(self.refresh_response)


@pytest.fixture
def downstream():
    return FakeDownstream()


@pytest.fixture
def lock_manager(session_factory):
    return InstallLockManager(session_factory)


@pytest.fixture
def queues(settings):
    return build_queues(settings)


@pytest.fixture
def ctx(db, settings, lock_manager, downstream, queues):
    """Handler context bound to the shared test session."""
    return HandlerContext(
        session=db,
        settings=settings,
        webhook_id="wh_test_1",
        lock_manager=lock_manager,
        downstream=downstream,
        sync_queue=queues[2],
    )


@pytest.fixture
async def installed_location(db):
    """A fully installed location that webhooks can reference."""
    now = utcnow()
    location = Location(
        location_id="loc_abc",
        company_id="comp_1",
        name="Test Plumbing",
        app_installed=True,
        install_state=InstallState.COMPLETE,
        install_type="Location",
        installed_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(location)
    await db.commit()
    return location


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("ghl_ingest.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock
