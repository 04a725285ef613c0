import base64
import os

os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("FEED_RATE_LIMIT_PER_MINUTE", "0")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("PUBLIC_BASE_URL", "http://feeds.test")
os.environ.setdefault("PUBLIC_SITE_URL", "https://imobiliaria.test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", base64.urlsafe_b64encode(bytes(range(32))).decode())

import pytest
import httpx

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

# Import Base + all models so metadata is complete
import app.models  # noqa: F401
from app.models.base import Base
from app.models.listing import Listing
from app.models.portal import Portal

from app.main import app
from app.core.db import get_db

from factories import build_listing, build_portal


INTERNAL_KEY = os.environ["INTERNAL_ADMIN_KEY"]


def _test_db_url() -> str:
    return os.getenv("DATABASE_URL_TEST", "sqlite+aiosqlite:///:memory:")


def _enable_sqlite_savepoints(engine, *, begin: str = "BEGIN") -> None:
    # let SQLAlchemy, not the driver, emit BEGIN so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql(begin)


@pytest.fixture
async def async_engine():
    """Fresh schema per test."""
    url = _test_db_url()
    if url.startswith("sqlite"):
        engine = create_async_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_async_engine(url, pool_pre_ping=True)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def concurrent_session_factory(tmp_path):
    """
    Sessions on separate connections, for drains running side by side.
    On sqlite this is a file database where every transaction takes the write
    lock up front and waits for it instead of failing with "database is locked".
    """
    url = _test_db_url()
    if url.startswith("sqlite"):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}", connect_args={"timeout": 30})
        _enable_sqlite_savepoints(engine, begin="BEGIN IMMEDIATE")
    else:
        engine = create_async_engine(url, pool_pre_ping=True)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


@pytest.fixture
async def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession):
    """
    HTTP client that uses the test DB session via dependency override.
    """
    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Internal-Admin-Key": INTERNAL_KEY}


@pytest.fixture
def make_listing(db_session):
    async def _make(**overrides) -> Listing:
        listing = build_listing(**overrides)
        db_session.add(listing)
        await db_session.flush()
        return listing
    return _make


@pytest.fixture
def make_portal(db_session):
    async def _make(**overrides) -> Portal:
        portal = build_portal(**overrides)
        db_session.add(portal)
        await db_session.flush()
        return portal
    return _make
