"""Shared fixtures: in-memory database and item factory."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricewatch.db.models import Base, TrackedItem


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_item(session_factory):
    """Insert a tracked item and return its id."""
    counter = {"n": 0}

    async def _make_item(**fields) -> int:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "marketplace": "amazon",
            "marketplace_id": f"B0TEST{n:04d}",
            "url": f"https://www.amazon.de/dp/B0TEST{n:04d}",
            "refetch_interval_hours": 24,
            "base_priority": 5,
            "priority_score": 5,
        }
        values.update(fields)
        async with session_factory() as session:
            item = TrackedItem(**values)
            session.add(item)
            await session.commit()
            return item.id

    return _make_item
