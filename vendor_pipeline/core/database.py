from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

from vendor_pipeline.core.config import settings

APPLICATION_NAME = "vendor-pipeline"


def sync_database_url(url: str = settings.DATABASE_URL) -> str:
    """The psycopg2 form of the asyncpg URL, for Alembic."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


# Shared by the API workers and the background cycle; the cycle's
# advisory lock holds one extra connection while it runs.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    poolclass=AsyncAdaptedQueuePool,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    connect_args={"server_settings": {"application_name": APPLICATION_NAME}},
)

# expire_on_commit=False: leads are read after commit to build API responses
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """Yield a session for one request; the unit of work commits explicitly."""
    async with AsyncSessionLocal() as session:
        yield session
