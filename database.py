"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the settlement store.
PostgreSQL URLs are routed through asyncpg, everything else (local sqlite)
through its own async driver.
"""

import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_async_database_url(database_url: str) -> str:
    """Convert a plain database URL into its async-driver form"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        database_url = database_url.replace("sslmode=", "ssl=")
    elif database_url.startswith("sqlite://") and "+aiosqlite" not in database_url:
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine with pooling suited to the backend"""
    url = build_async_database_url(database_url)
    if url.startswith("postgresql+asyncpg://"):
        return create_async_engine(
            url,
            pool_size=7,
            max_overflow=15,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=30,
            echo=Config.DATABASE_ECHO,
        )
    return create_async_engine(url, echo=Config.DATABASE_ECHO)


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

async_engine = create_engine_for_url(Config.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables(engine: AsyncEngine = None):
    """Create all tables that do not exist yet"""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ DATABASE: Settlement tables ready")


async def dispose_engine():
    """Close pooled connections on shutdown"""
    await async_engine.dispose()
    logger.info("🔌 DATABASE: Engine disposed")
