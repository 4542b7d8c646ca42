from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import case, extract, func, select
from sqlalchemy.orm import selectinload

from vendor_pipeline.core.constants import (
    CONVERSATIONAL_STAGES,
    NEGOTIATION_STAGES,
    POST_ACCEPTANCE_STAGES,
    RETRY_SOURCE_STAGES,
    TERMINAL_STAGES,
)
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.repositories.base import BaseRepository
from vendor_pipeline.schemas.common import PipelineStage


def _values(stages) -> List[str]:
    return [s.value for s in stages]


class LeadRepository(BaseRepository):
    """Encapsulates every SQL query that touches the ``vendor_leads`` table.

    The ``*_ids`` methods return candidate ids for the pipeline cycle.
    They take no locks; callers re-load each lead with
    ``get_for_update`` and re-check the predicate before acting.
    """

    async def get_by_id(self, lead_id: UUID) -> Optional[VendorLead]:
        """Return a single lead by primary key, or ``None``."""
        result = await self._db.execute(
            select(VendorLead).where(VendorLead.lead_id == lead_id)
        )
        return result.scalar_one_or_none()

    async def get_with_messages(self, lead_id: UUID) -> Optional[VendorLead]:
        result = await self._db.execute(
            select(VendorLead)
            .options(selectinload(VendorLead.messages))
            .where(VendorLead.lead_id == lead_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(
        self, lead_id: UUID, skip_locked: bool = False
    ) -> Optional[VendorLead]:
        """Load a lead with a row lock, refreshing any identity-map copy.

        With *skip_locked* a lead locked by another transaction yields
        ``None`` instead of blocking.
        """
        result = await self._db.execute(
            select(VendorLead)
            .where(VendorLead.lead_id == lead_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_recent_by_phone(
        self, phone: str, since: datetime
    ) -> Optional[VendorLead]:
        """Find a lead with the same phone created after *since*.

        Manual-entry duplicate detection is a 24-hour application-level
        window; the same vendor may come back later as a new lead.
        """
        result = await self._db.execute(
            select(VendorLead)
            .where(VendorLead.vendor_phone == phone, VendorLead.created_at >= since)
            .order_by(VendorLead.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_for_inbound(self, phone: str) -> Optional[VendorLead]:
        """Most relevant lead for an inbound SMS from *phone*.

        Prefers the newest lead still in progress, falling back to the
        newest closed one.
        """
        closed_last = case(
            (VendorLead.stage.in_(_values(TERMINAL_STAGES)), 1), else_=0
        )
        result = await self._db.execute(
            select(VendorLead)
            .where(VendorLead.vendor_phone == phone)
            .order_by(closed_last, VendorLead.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def exists_external_id(self, external_lead_id: str) -> bool:
        result = await self._db.execute(
            select(VendorLead.lead_id).where(
                VendorLead.external_lead_id == external_lead_id
            )
        )
        return result.first() is not None

    async def create(self, **kwargs: Any) -> VendorLead:
        """Insert a new lead and return the model instance."""
        lead = VendorLead(**kwargs)
        self._db.add(lead)
        return lead

    async def set_stage(self, lead: VendorLead, stage: PipelineStage) -> None:
        lead.stage = stage.value

    # ------------------------------------------------------------------
    # Cycle candidate selection
    # ------------------------------------------------------------------

    async def _ids(self, *criteria, order_by=None, limit: int = 200) -> List[UUID]:
        query = select(VendorLead.lead_id).where(*criteria)
        query = query.order_by(order_by if order_by is not None else VendorLead.created_at)
        result = await self._db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def new_lead_ids(self, limit: int = 200) -> List[UUID]:
        return await self._ids(VendorLead.stage == PipelineStage.NEW_LEAD.value, limit=limit)

    async def unanswered_lead_ids(self, cutoff: datetime, limit: int = 200) -> List[UUID]:
        """Leads whose latest inbound message is older than *cutoff* and unanswered."""
        return await self._ids(
            VendorLead.stage.in_(_values(CONVERSATIONAL_STAGES)),
            VendorLead.conversation_state["opted_out"].as_boolean().is_not(True),
            VendorLead.last_inbound_at.is_not(None),
            VendorLead.last_inbound_at <= cutoff,
            (VendorLead.last_outbound_at.is_(None))
            | (VendorLead.last_outbound_at < VendorLead.last_inbound_at),
            order_by=VendorLead.last_inbound_at,
            limit=limit,
        )

    async def pending_validation_ids(self, limit: int = 200) -> List[UUID]:
        return await self._ids(
            VendorLead.stage == PipelineStage.DEAL_VALIDATION.value,
            VendorLead.validation_passed.is_(None),
            limit=limit,
        )

    async def due_retry_ids(
        self, now: datetime, max_retries: int, limit: int = 200
    ) -> List[UUID]:
        return await self._ids(
            VendorLead.stage.in_(_values(RETRY_SOURCE_STAGES)),
            VendorLead.retry_count < max_retries,
            VendorLead.next_retry_at <= now,
            order_by=VendorLead.next_retry_at,
            limit=limit,
        )

    async def expired_offer_ids(
        self, now: datetime, max_retries: int, limit: int = 200
    ) -> List[UUID]:
        return await self._ids(
            VendorLead.stage.in_(_values(NEGOTIATION_STAGES - {PipelineStage.OFFER_MADE})),
            VendorLead.retry_count >= max_retries,
            VendorLead.next_retry_at <= now,
            order_by=VendorLead.next_retry_at,
            limit=limit,
        )

    async def finalisable_ids(self, limit: int = 200) -> List[UUID]:
        return await self._ids(
            VendorLead.stage.in_(_values(POST_ACCEPTANCE_STAGES)),
            VendorLead.solicitor_name.is_not(None),
            VendorLead.deal_id.is_(None),
            limit=limit,
        )

    async def stale_conversation_ids(self, cutoff: datetime, limit: int = 200) -> List[UUID]:
        return await self._ids(
            VendorLead.stage == PipelineStage.AI_CONVERSATION.value,
            func.coalesce(VendorLead.last_contact_at, VendorLead.created_at) < cutoff,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Operator queries
    # ------------------------------------------------------------------

    async def list_leads(
        self, stage: Optional[PipelineStage], limit: int, offset: int
    ) -> Tuple[Sequence[VendorLead], int]:
        """Return one page of leads (newest first) and the total count."""
        filters = [VendorLead.stage == stage.value] if stage else []
        total = await self._db.scalar(
            select(func.count()).select_from(VendorLead).where(*filters)
        )
        result = await self._db.execute(
            select(VendorLead)
            .where(*filters)
            .order_by(VendorLead.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), int(total or 0)

    async def count_by_stage(self) -> Dict[str, int]:
        result = await self._db.execute(
            select(VendorLead.stage, func.count()).group_by(VendorLead.stage)
        )
        return {stage: count for stage, count in result.all()}

    async def pipeline_metrics(self) -> Dict[str, Any]:
        """Funnel counts, average durations and offer totals in one query.

        Durations only average leads where both timestamps are set;
        a deal not yet closed counts up to now.
        """

        def hours(later, earlier):
            return extract("epoch", later - earlier) / 3600

        has_offer = VendorLead.offer_amount.is_not(None)
        accepted = VendorLead.offer_accepted_at.is_not(None)
        result = await self._db.execute(
            select(
                func.count().label("total"),
                func.count(VendorLead.offer_sent_at).label("with_offer"),
                func.count(VendorLead.offer_accepted_at).label("accepted"),
                func.avg(
                    hours(VendorLead.validated_at, VendorLead.conversation_started_at)
                ).label("conversation_hours"),
                func.avg(
                    hours(VendorLead.offer_sent_at, VendorLead.conversation_started_at)
                ).label("time_to_offer_hours"),
                func.avg(
                    hours(
                        func.coalesce(VendorLead.deal_closed_at, func.now()),
                        VendorLead.offer_accepted_at,
                    )
                    / 24
                ).label("time_to_close_days"),
                func.sum(VendorLead.offer_amount).filter(has_offer).label("total_offered"),
                func.sum(VendorLead.offer_amount)
                .filter(has_offer, accepted)
                .label("total_accepted"),
                func.avg(VendorLead.bmv_score).filter(has_offer).label("avg_offer_bmv"),
            )
        )
        return dict(result.mappings().one())

    async def export_rows(
        self,
        stage: Optional[PipelineStage] = None,
        motivation_min: Optional[int] = None,
        created_from: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Tuple[VendorLead, int]]:
        """Leads matching the export filters, newest first, with SMS counts."""
        sms_count = (
            select(func.count(SMSMessage.message_id))
            .where(SMSMessage.vendor_lead_id == VendorLead.lead_id)
            .correlate(VendorLead)
            .scalar_subquery()
        )
        filters = []
        if stage is not None:
            filters.append(VendorLead.stage == stage.value)
        if motivation_min is not None:
            filters.append(VendorLead.motivation_score >= motivation_min)
        if created_from is not None:
            filters.append(VendorLead.created_at >= created_from)
        if created_before is not None:
            filters.append(VendorLead.created_at < created_before)

        result = await self._db.execute(
            select(VendorLead, sms_count.label("sms_count"))
            .where(*filters)
            .order_by(VendorLead.created_at.desc())
        )
        return [(lead, int(count or 0)) for lead, count in result.all()]
