from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from vendor_pipeline.api.deps import (
    get_lead_operations_service,
    get_pipeline_service,
    get_uow,
)
from vendor_pipeline.core.rate_limit import limiter
from vendor_pipeline.repositories.unit_of_work import PipelineUnitOfWork
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.schemas.pipeline import CycleReport, PipelineStatsResponse
from vendor_pipeline.services.lead_operations_service import LeadOperationsService
from vendor_pipeline.services.pipeline_service import VendorPipelineService
from vendor_pipeline.services.reporting import iter_leads_csv

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


@router.get("/stats", response_model=PipelineStatsResponse)
async def pipeline_stats(
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> PipelineStatsResponse:
    """Stage counts, conversion rates, average timings and offer totals."""
    return await service.pipeline_stats(uow)


@router.get("/export")
@limiter.limit("10/minute")
async def export_pipeline(
    request: Request,
    stage: Optional[PipelineStage] = Query(None),
    motivation_min: Optional[int] = Query(None, ge=1, le=10),
    date_from: Optional[date] = Query(None, description="Created on or after (UTC day)"),
    date_to: Optional[date] = Query(None, description="Created on or before (UTC day)"),
    uow: PipelineUnitOfWork = Depends(get_uow),
    service: LeadOperationsService = Depends(get_lead_operations_service),
) -> StreamingResponse:
    """Download matching leads as CSV, newest first."""
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to")

    rows = await service.export_leads(
        uow,
        stage=stage,
        motivation_min=motivation_min,
        date_from=date_from,
        date_to=date_to,
    )
    filename = f"vendor-pipeline-export-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return StreamingResponse(
        iter_leads_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/run", response_model=CycleReport)
@limiter.limit("6/minute")
async def run_pipeline_cycle(
    request: Request,
    service: VendorPipelineService = Depends(get_pipeline_service),
) -> CycleReport:
    """Run one pipeline cycle now.

    If another instance is mid-cycle the report comes back with
    ``skipped`` set and nothing else happens.
    """
    return await service.run_cycle()
