"""Pytest configuration and fixtures for VDRS tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from vdrs.main import fastapi_app as app
from vdrs.models.base import Base
# Import the control table model so it is registered with Base.metadata
from vdrs.models.retention_policy import RetentionPolicyRecord  # noqa: F401
from vdrs.models import storage  # noqa: F401
from vdrs.models.telemetry import AnomalyEvent, DeviceStatusRecord, TelemetryRecord
from vdrs.core.config import Settings, get_settings
from vdrs.core.deps import get_db, get_maintenance_worker, get_storage_engine
from vdrs.services.maintenance_worker_service import MaintenanceWorkerService
from vdrs.storage.engine import StorageEngine

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed "now" for deterministic chunk routing: noon UTC, mid-chunk
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

TAIPEI_101 = (121.5654, 25.0330)


class FakeClock:
    """Manually advanced clock injected into the storage engine."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with background maintenance disabled."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        maintenance_enabled=False,
        ingest_sub_batch_size=500,
    )


@pytest.fixture
def storage(test_settings: Settings, clock: FakeClock) -> StorageEngine:
    """Fresh storage engine on the fake clock."""
    return StorageEngine(test_settings, clock=clock)


@pytest.fixture
def make_record() -> Callable[..., TelemetryRecord]:
    """Factory for telemetry records around Taipei 101."""

    def factory(plate: str = "ABC-1234", time: datetime = NOW, **fields: Any) -> TelemetryRecord:
        values: dict[str, Any] = {
            "longitude": TAIPEI_101[0],
            "latitude": TAIPEI_101[1],
            "speed": 40.0,
            "gps_status": "A",
        }
        values.update(fields)
        return TelemetryRecord(entity_id=plate, time=time, **values)

    return factory


@pytest.fixture
def make_anomaly() -> Callable[..., AnomalyEvent]:
    def factory(plate: str = "ABC-1234", time: datetime = NOW, **fields: Any) -> AnomalyEvent:
        values: dict[str, Any] = {"anomaly_type": "harsh_braking", "severity": "medium"}
        values.update(fields)
        return AnomalyEvent(entity_id=plate, time=time, **values)

    return factory


@pytest.fixture
def make_status() -> Callable[..., DeviceStatusRecord]:
    """Factory for tracker device status reports."""

    def factory(imei: str = "861234567890123", time: datetime = NOW, **fields: Any) -> DeviceStatusRecord:
        values: dict[str, Any] = {"battery_level": 87, "csq": 22, "health_score": 0.95}
        values.update(fields)
        return DeviceStatusRecord(entity_id=imei, time=time, **values)

    return factory


def telemetry_item(plate: str = "ABC-1234", time: datetime = NOW, **fields: Any) -> dict[str, Any]:
    """JSON body item as posted by a tracker gateway."""
    item: dict[str, Any] = {
        "license_plate": plate,
        "time": time.isoformat(),
        "longitude": TAIPEI_101[0],
        "latitude": TAIPEI_101[1],
        "speed": 40.0,
        "gps_status": "A",
    }
    item.update(fields)
    return item


@pytest.fixture
def make_item() -> Callable[..., dict[str, Any]]:
    return telemetry_item


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def durable_storage(test_settings: Settings, clock: FakeClock, session_factory) -> Callable[[], StorageEngine]:
    """Factory for storage engines writing through to the shared test database."""

    def factory() -> StorageEngine:
        return StorageEngine(test_settings, clock=clock, session_factory=session_factory)

    return factory


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def maintenance_worker(storage: StorageEngine, session_factory) -> MaintenanceWorkerService:
    return MaintenanceWorkerService(
        storage=storage,
        session_factory=session_factory,
        tenant_id="default",
    )


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory,
    storage: StorageEngine,
    test_settings: Settings,
    maintenance_worker: MaintenanceWorkerService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database, storage and settings overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_engine] = lambda: storage
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_maintenance_worker] = lambda: maintenance_worker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
