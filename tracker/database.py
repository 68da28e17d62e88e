from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from tracker.core.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine; the process entry point owns its lifecycle."""
    kwargs = {}
    if settings.database_url.startswith("sqlite"):
        # aiosqlite connections are cheap and must not be shared across loops
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_pre_ping"] = True

    return create_async_engine(
        settings.database_url,
        echo=False,
        future=True,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_db_and_tables(engine: AsyncEngine):
    # importing the models registers every table on SQLModel.metadata
    import tracker.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
