from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from vendor_pipeline.core.cache import CacheService
from vendor_pipeline.core.database import get_db
from vendor_pipeline.api.deps import get_cache_service

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health(
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
) -> dict:
    """Liveness plus database and Redis reachability."""
    await db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "database": "ok",
        "redis": "ok" if cache.is_available else "unavailable",
    }
