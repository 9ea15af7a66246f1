"""Database engine, session factory and column defaults.

Automation runs open their own sessions from ``AsyncSessionLocal``; request
handlers get one through ``get_db``.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator
import uuid
from datetime import datetime, timezone

from deskflow.config import get_settings

settings = get_settings()

# Convert PostgreSQL URL to async
database_url = settings.DATABASE_URL
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://")

engine_kwargs = {
    "echo": settings.DEBUG,
}

if database_url.startswith("sqlite"):
    # dispatched runs and request sessions write to the same file
    engine_kwargs["connect_args"] = {"timeout": 15}
else:
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


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI endpoints to get database session.

    Usage:
        @router.get("/automations")
        async def list_rules(db: AsyncSession = Depends(get_db)):
            result = await db.execute(select(AutomationRule))
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


def new_uuid() -> str:
    """Primary key default for string-keyed tables."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Python-side timestamps keep microseconds on SQLite, which creation order relies on
    return datetime.now(timezone.utc)
