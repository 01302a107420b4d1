from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from support_routing.core.config import get_settings
from support_routing.infra.db.models import Base
from support_routing.infra.db.seed import seed_demo_directory

_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine() -> AsyncEngine:
    global _session_factory

    settings = get_settings()
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )
    _session_factory = async_sessionmaker(
        engine, autoflush=False, expire_on_commit=False
    )
    return engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database engine is not initialized; call init_engine().")
    return _session_factory


async def close_engine(engine: AsyncEngine) -> None:
    global _session_factory

    await engine.dispose()
    _session_factory = None


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


async def initialize_database(engine: AsyncEngine) -> None:
    settings = get_settings()
    if settings.db_auto_create:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    if settings.db_seed_demo_directory:
        async with get_session_factory()() as session:
            await seed_demo_directory(session)
            await session.commit()
