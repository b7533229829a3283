"""Database configuration and session management"""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator
import logging

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def to_async_url(url: str) -> str:
    """Map a plain PostgreSQL URL onto the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


database_url = to_async_url(settings.DATABASE_URL)

engine_kwargs = {
    "echo": settings.DEBUG,
}

# Pool parameters only for non-SQLite databases
if not database_url.startswith("sqlite"):
    engine_kwargs.update({
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 3600,
    })

engine = create_async_engine(database_url, **engine_kwargs)

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


def insert_ignoring_duplicates(session: AsyncSession, model, index_elements: list[str], **values):
    """
    Build ``INSERT ... ON CONFLICT (index_elements) DO NOTHING`` for the session's dialect.

    The unique constraint is the arbiter of "was this a duplicate": callers check
    ``result.rowcount`` (1 = inserted, 0 = skipped).
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise NotImplementedError(f"insert-ignore is not supported for dialect {dialect!r}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=index_elements)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI endpoints to get database session.

    Usage:
        @router.get("/chats")
        async def list_chats(db: AsyncSession = Depends(get_db)):
            result = await db.execute(select(Chat))
            return result.scalars().all()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Create tables (no migrations tool in this project; create_all is idempotent)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")
