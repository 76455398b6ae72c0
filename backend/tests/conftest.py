"""
Test Configuration — Fixtures for async DB, test client, and seeded machines.

Every test gets its own in-memory SQLite database. StaticPool keeps the
single connection alive so the schema survives across sessions, and app
code is free to commit and roll back as it does in production.
"""

from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_db
from api.main import app
from core.config import Settings
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

DUAL_LANE_MACHINE = "T1.2-M01"
SINGLE_LANE_MACHINE = "T1.1-M03"
UNASSIGNED_MACHINE = "T1.3-M02"


@pytest.fixture
def settings():
    return Settings(database_url=TEST_DATABASE_URL, app_env="test", reconcile_mode="sync")


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(test_db):
    """Create an async test client with the DB dependency overridden."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """A dual-lane, a single-lane and an unassigned machine."""
    from db.models import ActiveProductAssignment, Machine

    test_db.add_all(
        [
            Machine(machine_id=DUAL_LANE_MACHINE, factory_id="T1", name="2M Double Layer", lane_count=2,
                    expected_cycle_seconds=240),
            Machine(machine_id=SINGLE_LANE_MACHINE, factory_id="T1", name="Stretch Film", lane_count=1,
                    expected_cycle_seconds=300),
            Machine(machine_id=UNASSIGNED_MACHINE, factory_id="T1", name="1M Single Layer", lane_count=1),
        ]
    )
    test_db.add_all(
        [
            ActiveProductAssignment(machine_id=DUAL_LANE_MACHINE, lane_id=1, product_sku="SKU-A"),
            ActiveProductAssignment(machine_id=DUAL_LANE_MACHINE, lane_id=2, product_sku="SKU-B"),
            ActiveProductAssignment(machine_id=SINGLE_LANE_MACHINE, lane_id=1, product_sku="SKU-C"),
        ]
    )
    await test_db.commit()
    return test_db


@pytest.fixture
def received_at():
    return datetime(2026, 3, 2, 8, 0, 0)
