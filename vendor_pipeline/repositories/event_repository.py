from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select

from vendor_pipeline.models.pipeline_event import PipelineEvent
from vendor_pipeline.repositories.base import BaseRepository


class EventRepository(BaseRepository):
    """Audit trail of stage changes and notable pipeline actions."""

    async def add(
        self,
        lead_id: UUID,
        event_type: str,
        from_stage: Optional[str] = None,
        to_stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        actor: str = "pipeline",
    ) -> PipelineEvent:
        event = PipelineEvent(
            vendor_lead_id=lead_id,
            event_type=event_type,
            from_stage=from_stage,
            to_stage=to_stage,
            details=details,
            actor=actor,
        )
        self._db.add(event)
        return event

    async def list_for_lead(self, lead_id: UUID) -> List[PipelineEvent]:
        result = await self._db.execute(
            select(PipelineEvent)
            .where(PipelineEvent.vendor_lead_id == lead_id)
            .order_by(PipelineEvent.created_at)
        )
        return list(result.scalars().all())
