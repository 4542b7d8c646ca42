from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from vendor_pipeline.models.deal import Deal
from vendor_pipeline.repositories.base import BaseRepository


class DealRepository(BaseRepository):
    async def get_by_lead(self, lead_id: UUID) -> Optional[Deal]:
        result = await self._db.execute(
            select(Deal).where(Deal.vendor_lead_id == lead_id)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs: Any) -> Deal:
        """Insert a deal and flush so ``deal_id`` is populated."""
        deal = Deal(**kwargs)
        self._db.add(deal)
        await self._db.flush()
        return deal
