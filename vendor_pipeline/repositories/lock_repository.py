import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

# Arbitrary application-wide key for the pipeline cycle leader lock
PIPELINE_CYCLE_LOCK_KEY = 724_311_907


class AdvisoryLock:
    """PostgreSQL session-level advisory lock held on a dedicated connection.

    Only one process at a time may run the pipeline cycle; others see
    ``acquired == False`` and skip.
    """

    def __init__(self, engine: AsyncEngine, key: int = PIPELINE_CYCLE_LOCK_KEY) -> None:
        self._engine = engine
        self._key = key

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        async with self._engine.connect() as conn:
            acquired = bool(
                await conn.scalar(
                    text("SELECT pg_try_advisory_lock(:key)"), {"key": self._key}
                )
            )
            await conn.commit()
            try:
                yield acquired
            finally:
                if acquired:
                    await conn.execute(
                        text("SELECT pg_advisory_unlock(:key)"), {"key": self._key}
                    )
                    await conn.commit()
