"""
Netyora Chat - Database Connection

HTTP requests get one session each through get_db. The realtime socket
and the background sweep open a short session per command or per pass
from AsyncSessionLocal, so no transaction outlives its unit of work.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from .config import settings
from .logging import get_logger

logger = get_logger("netyora.chat.database")


def _engine_options() -> dict:
    options = {"echo": settings.DB_ECHO}
    # SQLite doesn't support pool_size/max_overflow
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
            pool_pre_ping=True,
        )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options())

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Dependency for handlers that open one short session per unit of work"""
    return AsyncSessionLocal


async def check_connection() -> bool:
    """Ping the chat store"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}", action="db_ping_failed")
        return False
