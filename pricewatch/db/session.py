"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pricewatch.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
)


async def init_models() -> None:
    """Create tables that do not exist yet."""
    from pricewatch.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
