from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator, Optional

from fieldsync.core.config import Settings, get_settings


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Async engine for the SQLite file named in the settings."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{settings.db_path}",
        echo=settings.debug,
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Process-wide engine and session factory
engine = create_engine_for(get_settings())
async_session_maker = create_session_maker(engine)

# Create declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables on the given engine, or the process-wide one."""
    # Import models so their tables are registered on Base
    import fieldsync.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
