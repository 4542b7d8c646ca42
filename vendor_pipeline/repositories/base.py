from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from vendor_pipeline.core.exceptions import ConcurrentUpdateError


class BaseRepository:
    """Thin base class that holds the database session.

    Every concrete repository receives an ``AsyncSession`` at
    construction time so that several repositories can share the same
    unit of work.  A versioned UPDATE that matches no row (the lead was
    changed by someone else since it was read) surfaces as
    ``ConcurrentUpdateError``.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def flush(self) -> None:
        """Flush pending changes without committing."""
        try:
            await self._db.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdateError(str(exc)) from exc

    async def commit(self) -> None:
        try:
            await self._db.commit()
        except StaleDataError as exc:
            raise ConcurrentUpdateError(str(exc)) from exc

    async def rollback(self) -> None:
        await self._db.rollback()
