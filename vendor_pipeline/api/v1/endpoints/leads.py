from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from vendor_pipeline.api.deps import (
    get_lead_intake_service,
    get_lead_operations_service,
    get_uow,
)
from vendor_pipeline.core.rate_limit import limiter
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.repositories.unit_of_work import PipelineUnitOfWork
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.schemas.lead import (
    LeadActionResponse,
    LeadListResponse,
    ManualMessageRequest,
    OfferRejectRequest,
    SolicitorUpdate,
    StageUpdateRequest,
    VendorLeadCreate,
    VendorLeadCreateResponse,
    VendorLeadDetail,
    VendorLeadOut,
)
from vendor_pipeline.services.lead_intake_service import LeadIntakeService
from vendor_pipeline.services.lead_operations_service import LeadOperationsService

router = APIRouter(prefix="/leads", tags=["Leads"])


def _action(lead: VendorLead, message: str) -> LeadActionResponse:
    return LeadActionResponse(lead_id=lead.lead_id, stage=lead.stage, message=message)


@router.post("", response_model=VendorLeadCreateResponse, status_code=201)
@limiter.limit("10/minute")
async def create_lead(
    request: Request,
    request_body: VendorLeadCreate,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadIntakeService = Depends(get_lead_intake_service),
) -> VendorLeadCreateResponse:
    """Enter a seller lead by hand.

    Rate-limited to 10 requests/minute per IP.  The next pipeline cycle
    sends the opening SMS.
    """
    lead = await service.create_manual_lead(uow, request_body)
    return VendorLeadCreateResponse(lead_id=lead.lead_id, stage=lead.stage)


@router.get("", response_model=LeadListResponse)
async def list_leads(
    stage: Optional[PipelineStage] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadListResponse:
    items, total = await service.list_leads(uow, stage, limit, offset)
    return LeadListResponse(
        items=[VendorLeadOut.model_validate(lead) for lead in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{lead_id}", response_model=VendorLeadDetail)
async def get_lead(
    lead_id: UUID,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> VendorLeadDetail:
    """A lead with its conversation state, offer breakdown and SMS log."""
    lead = await service.get_lead(uow, lead_id)
    return VendorLeadDetail.model_validate(lead)


@router.patch("/{lead_id}/stage", response_model=LeadActionResponse)
async def move_stage(
    lead_id: UUID,
    request_body: StageUpdateRequest,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadActionResponse:
    """Close a lead, send it to validation, or mark paperwork sent.

    Offers and acceptances go through the offer endpoints instead.
    """
    lead = await service.move_stage(uow, lead_id, request_body)
    return _action(lead, f"Lead moved to {lead.stage}")


@router.post("/{lead_id}/offer/accept", response_model=LeadActionResponse)
async def accept_offer(
    lead_id: UUID,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadActionResponse:
    """Record an acceptance the seller gave outside SMS (e.g. by phone)."""
    lead = await service.accept_offer(uow, lead_id)
    return _action(lead, "Offer accepted")


@router.post("/{lead_id}/offer/reject", response_model=LeadActionResponse)
async def reject_offer(
    lead_id: UUID,
    request_body: OfferRejectRequest,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadActionResponse:
    lead = await service.reject_offer(uow, lead_id, request_body.reason)
    return _action(lead, "Offer rejection recorded")


@router.put("/{lead_id}/solicitor", response_model=LeadActionResponse)
async def record_solicitor(
    lead_id: UUID,
    request_body: SolicitorUpdate,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadActionResponse:
    lead = await service.record_solicitor(uow, lead_id, request_body)
    return _action(lead, "Solicitor details recorded")


@router.post("/{lead_id}/messages", response_model=LeadActionResponse)
@limiter.limit("30/minute")
async def send_message(
    request: Request,
    lead_id: UUID,
    request_body: ManualMessageRequest,
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> LeadActionResponse:
    """Send a hand-written SMS; it is logged like any other outbound message."""
    lead, sent = await service.send_manual_message(uow, lead_id, request_body)
    return _action(lead, "Message sent" if sent else "Not sent: seller opted out")
