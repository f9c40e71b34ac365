"""
Centralized Test Configuration.
"""

import asyncio
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from routedesk.app.main import app
from routedesk.app.db.session import get_db, get_session_factory, Base
from routedesk.app.core.redis_client import get_redis
from routedesk.app.domain.billing.pricing_resolver import PricingResolver
from routedesk.app.models.batch import Batch
from routedesk.app.models.enums import RouteStatus
from routedesk.app.models.route import Route
from routedesk.app.schemas.stop import Stop, dump_stops
from routedesk.app.services.events import event_bus
import routedesk.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockLock:
    """In-process stand-in for redis.asyncio.lock.Lock."""

    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    async def __aenter__(self):
        lock = self.redis.locks.setdefault(self.name, asyncio.Lock())
        await lock.acquire()
        self.redis.lock_history.append(self.name)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.redis.locks[self.name].release()
        return False


class MockRedis:
    def __init__(self):
        self.store = {}
        self.published = []
        self.locks = {}
        self.lock_history = []
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def lock(self, name, timeout=None, blocking_timeout=None):
        return MockLock(self, name)

    async def flushdb(self):
        if not self._closed:
            self.store = {}
        self.published = []
        self.locks = {}
        self.lock_history = []

    async def aclose(self):
        self._closed = True
        self.store = {}


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.
    Global override is safer here than per-test override to avoid app state flux.
    """

    # Patch the global redis client used by the event bus and earnings locks
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()
    event_bus.clear_subscribers()

    yield

    event_bus.clear_subscribers()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
async def pricing_rule(db_session):
    """Default zone table active as version 1."""
    rule = await PricingResolver.ensure_default(db_session)
    await db_session.commit()
    return rule


# Stop / route builders

def make_stop(stop_id, index=0, **fields):
    """Stop in Goiania by default, addressed by its id."""
    data = {
        "id": stop_id,
        "order_ref": f"ORD-{stop_id}",
        "address": f"Rua {stop_id}, {index + 1}",
        "city": "Goiania",
        "neighborhood": "Setor Bueno",
    }
    data.update(fields)
    return Stop(**data)


@pytest.fixture
def stop_factory():
    return make_stop


@pytest.fixture
def route_factory(db_session):
    async def _create(
        stops=None,
        status=RouteStatus.DISPATCHED,
        driver_id=7,
        batch=None,
        origin=(-16.6869, -49.2648),
        code="R-1",
    ):
        route = Route(
            code=code,
            status=status,
            driver_id=driver_id,
            origin_lat=origin[0] if origin else None,
            origin_lng=origin[1] if origin else None,
            batch_id=batch.id if batch else None,
            stops=dump_stops(stops or []),
            removed_stops=[],
            revision=0,
        )
        db_session.add(route)
        await db_session.commit()
        await db_session.refresh(route)
        return route

    return _create


@pytest.fixture
def batch_factory(db_session):
    async def _create(stop_pool, code="B-1", stop_count=0):
        batch = Batch(code=code, stop_pool=list(stop_pool), route_ids=[], stop_count=stop_count)
        db_session.add(batch)
        await db_session.commit()
        await db_session.refresh(batch)
        return batch

    return _create
