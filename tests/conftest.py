from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.deps.scheduling import get_clock
from app.core.database import Base, get_db, get_session_factory
from app.main import app
from app.models.business import Business
from app.models.event_availability import EventAvailability
from app.models.service import Service
from app.models.service_event import ServiceEvent
from app.services.availability_cache import (
    AvailabilityCache,
    MemoryCacheBackend,
    get_availability_cache,
)
from app.services.reservation import SlotLockRegistry, get_lock_registry

ROME = ZoneInfo("Europe/Rome")

# Tuesday morning, every test date lies after it
FROZEN_NOW = datetime(2030, 1, 1, 8, 0, tzinfo=ROME)


@pytest.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database file for each test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}", echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache() -> AvailabilityCache:
    return AvailabilityCache(MemoryCacheBackend(), ttl_seconds=30)


@pytest.fixture
def lock_registry() -> SlotLockRegistry:
    return SlotLockRegistry()


@pytest.fixture
def clock():
    return lambda: FROZEN_NOW


@pytest.fixture(autouse=True)
def override_dependencies(session_factory, cache, lock_registry, clock):
    """Point the API at the test database, cache and clock."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_availability_cache] = lambda: cache
    app.dependency_overrides[get_lock_registry] = lambda: lock_registry
    app.dependency_overrides[get_clock] = lambda: clock
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client():
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
async def business(db: AsyncSession) -> Business:
    business = Business(
        name="Studio Roma", timezone="Europe/Rome", min_lead_time_minutes=15
    )
    db.add(business)
    await db.commit()
    return business


@pytest.fixture
async def service(db: AsyncSession, business: Business) -> Service:
    service = Service(business_id=business.id, name="Consultation")
    db.add(service)
    await db.commit()
    return service


@pytest.fixture
def make_event(db: AsyncSession, business: Business, service: Service):
    """Factory creating an event with its availability windows."""

    async def _make_event(
        duration_minutes: int = 60,
        buffer_minutes: int = 0,
        slot_interval_minutes: int = 60,
        windows=(),
        is_active: bool = True,
        name: str = "Session",
    ) -> ServiceEvent:
        event = ServiceEvent(
            business_id=business.id,
            service_id=service.id,
            name=name,
            duration_minutes=duration_minutes,
            buffer_minutes=buffer_minutes,
            slot_interval_minutes=slot_interval_minutes,
            is_active=is_active,
        )
        db.add(event)
        await db.flush()
        for window in windows:
            db.add(
                EventAvailability(event_id=event.id, business_id=business.id, **window)
            )
        await db.commit()
        return event

    return _make_event
