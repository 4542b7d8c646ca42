import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from vendor_pipeline.core.constants import OPERATOR_STAGE_TARGETS
from vendor_pipeline.core.exceptions import InvalidStageTransitionError, LeadNotFoundError
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.schemas.lead import (
    ManualMessageRequest,
    SolicitorUpdate,
    StageUpdateRequest,
)
from vendor_pipeline.schemas.pipeline import PipelineStatsResponse
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService
from vendor_pipeline.services.reporting import build_pipeline_stats
from vendor_pipeline.services.stage_transitions import transition_lead

logger = logging.getLogger(__name__)


class LeadOperationsService:
    """Operator actions on a single lead, each committed on success."""

    def __init__(self, negotiation: NegotiationService, messenger: LeadMessenger) -> None:
        self._negotiation = negotiation
        self._messenger = messenger

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_lead(self, uow, lead_id: UUID) -> VendorLead:
        lead = await uow.leads.get_with_messages(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Vendor lead {lead_id} not found")
        return lead

    async def list_leads(
        self, uow, stage: Optional[PipelineStage], limit: int, offset: int
    ) -> Tuple[Sequence[VendorLead], int]:
        return await uow.leads.list_leads(stage, limit, offset)

    async def stage_counts(self, uow) -> Dict[str, int]:
        counts = await uow.leads.count_by_stage()
        return {stage.value: counts.get(stage.value, 0) for stage in PipelineStage}

    async def pipeline_stats(self, uow) -> PipelineStatsResponse:
        by_stage = await self.stage_counts(uow)
        metrics = await uow.leads.pipeline_metrics()
        return build_pipeline_stats(by_stage, metrics)

    async def export_leads(
        self,
        uow,
        stage: Optional[PipelineStage] = None,
        motivation_min: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[Tuple[VendorLead, int]]:
        """Leads for the CSV export; both dates are inclusive UTC days."""
        created_from = (
            datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
        )
        created_before = (
            datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
            if date_to
            else None
        )
        rows = await uow.leads.export_rows(
            stage=stage,
            motivation_min=motivation_min,
            created_from=created_from,
            created_before=created_before,
        )
        logger.info("Exporting %d lead(s)", len(rows))
        return rows

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def move_stage(
        self, uow, lead_id: UUID, request: StageUpdateRequest, actor: str = "operator"
    ) -> VendorLead:
        """Move a lead by hand to one of ``OPERATOR_STAGE_TARGETS``.

        Raises:
            InvalidStageTransitionError: For any other target, or an edge
                the pipeline graph does not allow.
        """
        if request.stage not in OPERATOR_STAGE_TARGETS:
            raise InvalidStageTransitionError(
                f"{request.stage.value} cannot be set directly; use the offer "
                "endpoints or let the pipeline advance the lead"
            )
        lead = await self._lock(uow, lead_id)
        await transition_lead(uow, lead, request.stage, actor=actor, reason=request.reason)
        if request.stage == PipelineStage.DEAD_LEAD:
            lead.next_retry_at = None
        elif request.stage == PipelineStage.PAPERWORK_SENT:
            lead.lockout_agreement_sent = True
        await uow.commit()
        return lead

    async def accept_offer(self, uow, lead_id: UUID, actor: str = "operator") -> VendorLead:
        lead = await self._lock(uow, lead_id)
        await self._negotiation.accept_offer(uow, lead, actor=actor)
        await uow.commit()
        return lead

    async def reject_offer(
        self, uow, lead_id: UUID, reason: Optional[str], actor: str = "operator"
    ) -> VendorLead:
        lead = await self._lock(uow, lead_id)
        await self._negotiation.reject_offer(uow, lead, reason=reason, actor=actor)
        await uow.commit()
        return lead

    async def record_solicitor(
        self, uow, lead_id: UUID, data: SolicitorUpdate, actor: str = "operator"
    ) -> VendorLead:
        lead = await self._lock(uow, lead_id)
        await self._negotiation.record_solicitor(
            uow,
            lead,
            solicitor_name=data.solicitor_name,
            solicitor_firm=data.solicitor_firm,
            solicitor_phone=data.solicitor_phone,
            solicitor_email=str(data.solicitor_email) if data.solicitor_email else None,
            actor=actor,
        )
        await uow.commit()
        return lead

    async def send_manual_message(
        self, uow, lead_id: UUID, request: ManualMessageRequest, actor: str = "operator"
    ) -> Tuple[VendorLead, bool]:
        """Send an operator-written SMS; returns whether it went out."""
        lead = await self._lock(uow, lead_id)
        message = await self._messenger.send(uow, lead, request.body)
        await uow.events.add(
            lead.lead_id,
            "manual_message_sent",
            details={"sent": message is not None},
            actor=actor,
        )
        await uow.commit()
        return lead, message is not None

    @staticmethod
    async def _lock(uow, lead_id: UUID) -> VendorLead:
        lead = await uow.leads.get_for_update(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Vendor lead {lead_id} not found")
        return lead
