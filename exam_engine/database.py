"""
exam_engine/database.py
Async engine, session factory and table bootstrap
"""
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from exam_engine.config.settings import settings
from exam_engine.orm.base import Base
import exam_engine.orm  # noqa: F401  registers all models

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str):
    """SQLite gets a busy timeout for concurrent writers; other backends a larger pool."""
    if "sqlite" in url.lower():
        return create_async_engine(
            url,
            echo=False,
            future=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )
    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=1800,
    )


engine = build_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create tables that do not exist yet."""
    logger.info("Initializing database...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✓ Database tables ready")


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
