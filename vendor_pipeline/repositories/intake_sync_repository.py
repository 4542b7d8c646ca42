from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select

from vendor_pipeline.models.intake_sync import LeadIntakeSync
from vendor_pipeline.repositories.base import BaseRepository


class IntakeSyncRepository(BaseRepository):
    async def last_submitted_at(self) -> Optional[datetime]:
        """Watermark for the next intake fetch."""
        return await self._db.scalar(select(func.max(LeadIntakeSync.submitted_at)))

    async def exists(self, external_lead_id: str) -> bool:
        result = await self._db.execute(
            select(LeadIntakeSync.sync_id).where(
                LeadIntakeSync.external_lead_id == external_lead_id
            )
        )
        return result.first() is not None

    async def create(self, **kwargs: Any) -> LeadIntakeSync:
        sync = LeadIntakeSync(**kwargs)
        self._db.add(sync)
        return sync
